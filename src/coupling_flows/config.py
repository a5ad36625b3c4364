from dataclasses import dataclass
from typing import Any

from .exceptions import ConfigurationError

AFFINE = "affine"
ADDITIVE = "additive"
VARIANTS = (AFFINE, ADDITIVE)


# Predictor hyper-parameters for the Glow-style layer: shape preserving 3x3 / 1x1 convolutions
DEFAULT_SETTING_GLOW_BLOCK = {"k1": 3, "k2": 1, "p1": 1, "p2": 0, "s1": 1, "s2": 1}

# Predictor hyper-parameters for the iRIM-style layer: 4x downsampling and upsampling
DEFAULT_SETTING_IRIM_BLOCK = {"k1": 4, "k2": 3, "p1": 0, "p2": 1, "s1": 4, "s2": 1}


@dataclass(frozen=True)
class CouplingLayerConfig:
    """
    Immutable composition of a coupling layer.

    The mixing transform and the predictor are shared with the caller; their
    parameters are updated by an external optimizer, never by the layer.
    """

    mixing: Any
    predictor: Any
    activation: Any = None
    variant: str = AFFINE
    track_logdet: bool = False

    def __post_init__(self):
        if self.variant not in VARIANTS:
            raise ConfigurationError(f"Unknown coupling variant {self.variant!r}, expected one of {VARIANTS}.")

    @property
    def affine(self):
        return self.variant == AFFINE
