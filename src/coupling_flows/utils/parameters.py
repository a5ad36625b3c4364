"""
Arithmetic on parameter lists.

Gradients and perturbations of layer parameters are plain lists of tensors,
ordered like `get_params()` of the layer they belong to.
"""
import torch


def params_zeros_like(params):
    return [torch.zeros_like(p) for p in params]


def params_randn_like(params, generator=None):
    return [torch.randn(p.shape, dtype=p.dtype, device=p.device, generator=generator) for p in params]


def params_add(a, b):
    if len(a) != len(b):
        raise ValueError(f"Cannot add parameter lists of length {len(a)} and {len(b)}.")
    return [x + y for x, y in zip(a, b)]


def params_scale(a, alpha):
    return [alpha * x for x in a]


def params_dot(a, b):
    """Euclidean inner product of two parameter lists."""
    if len(a) != len(b):
        raise ValueError(f"Cannot take the inner product of parameter lists of length {len(a)} and {len(b)}.")
    total = torch.zeros((), dtype=a[0].dtype, device=a[0].device) if a else torch.zeros(())
    for x, y in zip(a, b):
        total = total + torch.sum(x * y)
    return total
