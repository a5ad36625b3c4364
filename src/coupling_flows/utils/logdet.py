import torch

from .tensor_ops import batch_size


def glow_logdet_forward(S):
    """
    Log-determinant of an affine coupling, normalized by the batch size.

    Args:
        S (torch.Tensor): Scale factors of shape (batch, channels, *spatial).

    Returns:
        torch.Tensor: 0-d tensor, sum(log|S|) / batch_size.
    """
    return torch.sum(torch.log(torch.abs(S))) / batch_size(S)


def glow_logdet_backward(S):
    """
    Derivative of `glow_logdet_forward` with respect to S.

    Args:
        S (torch.Tensor): Scale factors of shape (batch, channels, *spatial).

    Returns:
        torch.Tensor: Elementwise 1 / S / batch_size.
    """
    return 1.0 / S / batch_size(S)
