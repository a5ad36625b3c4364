from .layer import NeuralNetLayer, InvertibleLayer
from .interfaces import ActivationGate, MixingTransform, Predictor
from .activations import SigmoidLayer
from .conv1x1 import Conv1x1
from .residual_block import ResidualBlock
