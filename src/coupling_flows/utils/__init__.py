from . import logging
from .logdet import glow_logdet_backward, glow_logdet_forward
from .parameters import (
    params_add,
    params_dot,
    params_randn_like,
    params_scale,
    params_zeros_like,
)
from .tensor_ops import channel_mask, check_shapes, tensor_cat, tensor_split
