from .coupling_layer import CouplingLayer
from .coupling_layer_glow import CouplingLayerGlow, CouplingState
from .coupling_layer_irim import CouplingLayerIRIM, IRIMState
