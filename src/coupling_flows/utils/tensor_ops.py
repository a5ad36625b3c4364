import torch

from ..exceptions import DimensionError

CHANNEL_DIM = 1
BATCH_DIM = 0


def _as_mask(mask, n_channels, device):
    mask = torch.as_tensor(mask, device=device).to(torch.bool).flatten()
    if mask.numel() != n_channels:
        raise DimensionError(
            f"Channel mask has {mask.numel()} entries, but the tensor has {n_channels} channels."
        )
    return mask


def channel_mask(n_channels, selected, device=None):
    """
    Builds a boolean channel mask from a list of selected channel indices.

    Args:
        n_channels (int): Total number of channels.
        selected (iterable of int): Indices of the channels that go to the first group.

    Returns:
        torch.Tensor: Boolean mask of shape (n_channels,).
    """
    mask = torch.zeros(n_channels, dtype=torch.bool, device=device)
    mask[list(selected)] = True
    return mask


def tensor_split(X, mask=None):
    """
    Splits a tensor into two channel groups.

    Without a mask, the first half of the channels goes to X1 and the second
    half to X2. With a boolean mask, X1 holds the selected channels and X2 the
    remaining ones, each in their original order.

    Args:
        X (torch.Tensor): Tensor of shape (batch, channels, *spatial).
        mask (torch.Tensor, optional): Boolean mask of shape (channels,).

    Returns:
        tuple: (X1, X2)
    """
    n_channels = X.shape[CHANNEL_DIM]
    if mask is None:
        if n_channels % 2 != 0:
            raise DimensionError(f"Cannot split an odd number of channels ({n_channels}) in half.")
        k = n_channels // 2
        return X[:, :k], X[:, k:]

    mask = _as_mask(mask, n_channels, X.device)
    return X[:, mask], X[:, ~mask]


def tensor_cat(X1, X2, mask=None):
    """
    Reassembles two channel groups, the exact inverse of `tensor_split`.

    Args:
        X1 (torch.Tensor): First channel group.
        X2 (torch.Tensor): Second channel group.
        mask (torch.Tensor, optional): Boolean mask that was used for splitting.

    Returns:
        torch.Tensor: Tensor with X1.shape[1] + X2.shape[1] channels.
    """
    if X1.shape[:CHANNEL_DIM] != X2.shape[:CHANNEL_DIM] or X1.shape[CHANNEL_DIM + 1:] != X2.shape[CHANNEL_DIM + 1:]:
        raise DimensionError(
            f"Cannot concatenate tensors of shape {tuple(X1.shape)} and {tuple(X2.shape)}."
        )
    if mask is None:
        return torch.cat((X1, X2), dim=CHANNEL_DIM)

    k1, k2 = X1.shape[CHANNEL_DIM], X2.shape[CHANNEL_DIM]
    mask = _as_mask(mask, k1 + k2, X1.device)
    n_selected = int(mask.sum())
    if n_selected != k1:
        raise DimensionError(
            f"Channel mask selects {n_selected} channels, but the first tensor has {k1}."
        )

    shape = list(X1.shape)
    shape[CHANNEL_DIM] = k1 + k2
    X = X1.new_empty(shape)
    X[:, mask] = X1
    X[:, ~mask] = X2
    return X


def check_shapes(dX, X):
    """Raises a DimensionError if a gradient does not match its activation."""
    if dX.shape != X.shape:
        raise DimensionError(
            f"Gradient of shape {tuple(dX.shape)} does not match activation of shape {tuple(X.shape)}."
        )


def batch_size(X):
    return X.shape[BATCH_DIM]
