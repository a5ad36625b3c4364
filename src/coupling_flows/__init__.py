from .config import CouplingLayerConfig, DEFAULT_SETTING_GLOW_BLOCK, DEFAULT_SETTING_IRIM_BLOCK
from .exceptions import ConfigurationError, DimensionError
from .layers import Conv1x1, InvertibleLayer, NeuralNetLayer, ResidualBlock, SigmoidLayer
from .coupling import CouplingLayer, CouplingLayerGlow, CouplingLayerIRIM, CouplingState, IRIMState
from .utils import channel_mask, glow_logdet_backward, glow_logdet_forward, tensor_cat, tensor_split

__version__ = "0.1.0"

__all__ = [
    "CouplingLayerConfig",
    "DEFAULT_SETTING_GLOW_BLOCK",
    "DEFAULT_SETTING_IRIM_BLOCK",
    "ConfigurationError",
    "DimensionError",
    "NeuralNetLayer",
    "InvertibleLayer",
    "SigmoidLayer",
    "Conv1x1",
    "ResidualBlock",
    "CouplingLayer",
    "CouplingLayerGlow",
    "CouplingLayerIRIM",
    "CouplingState",
    "IRIMState",
    "channel_mask",
    "glow_logdet_forward",
    "glow_logdet_backward",
    "tensor_split",
    "tensor_cat",
]
