import torch
import torch.nn as nn
from torch.func import jvp

from .layer import NeuralNetLayer
from ..exceptions import DimensionError
from ..utils.tensor_ops import CHANNEL_DIM, check_shapes


def householder(v):
    """Householder reflection I - 2 v v^T / (v^T v)."""
    eye = torch.eye(v.shape[0], dtype=v.dtype, device=v.device)
    return eye - 2 * torch.outer(v, v) / torch.dot(v, v)


def mix_channels(X, W):
    """Applies the (k, k) matrix W along the channel axis of X."""
    return torch.einsum("ij,bj...->bi...", W, X)


class Conv1x1(NeuralNetLayer):
    """
    Orthogonal 1x1 convolution parameterized by three Householder reflections.

    The weight W = H(v1) H(v2) H(v3) is orthogonal, so the layer is volume
    preserving and its inverse is the transpose. Works for inputs of any
    spatial rank.

    Args:
        k (int): Number of channels.
        freeze (bool): If True, the Householder vectors are stored as buffers
            and receive no gradients.
    """

    def __init__(self, k, freeze=False):
        super().__init__()
        self.k = k
        self.freeze = freeze

        for name in ("v1", "v2", "v3"):
            v = torch.randn(k)
            if freeze:
                self.register_buffer(name, v)
            else:
                setattr(self, name, nn.Parameter(v))

    def _vectors(self):
        return [self.v1, self.v2, self.v3]

    @staticmethod
    def _weight(v1, v2, v3):
        return householder(v1) @ householder(v2) @ householder(v3)

    def weight(self):
        return self._weight(*self._vectors())

    def _check_channels(self, X):
        if X.shape[CHANNEL_DIM] != self.k:
            raise DimensionError(
                f"Conv1x1 was built for {self.k} channels, got input with {X.shape[CHANNEL_DIM]}."
            )

    def forward(self, X):
        self._check_channels(X)
        return mix_channels(X, self.weight())

    def inverse(self, X_):
        self._check_channels(X_)
        return mix_channels(X_, self.weight().T)

    def _param_grad(self, fn, grad_output):
        # Gradient of <grad_output, fn(v1, v2, v3)> with respect to the Householder vectors
        if self.freeze:
            return []
        with torch.enable_grad():
            vs = [v.detach().requires_grad_(True) for v in self._vectors()]
            out = fn(*vs)
            return list(torch.autograd.grad(out, vs, grad_outputs=grad_output))

    def forward_adjoint(self, dX, X, set_grad=True):
        """
        Backpropagates through `inverse`.

        Args:
            dX (torch.Tensor): Gradient with respect to the output X of `inverse`.
            X (torch.Tensor): Output of `inverse`.
            set_grad (bool): Accumulate parameter gradients instead of returning them.

        Returns:
            tuple: (dX_, X_) or (dX_, dtheta, X_) if set_grad is False.
        """
        self._check_channels(X)
        check_shapes(dX, X)
        with torch.no_grad():
            W = self.weight()
            X_ = mix_channels(X, W)
            dX_ = mix_channels(dX, W)

        dtheta = self._param_grad(lambda *vs: mix_channels(X_, self._weight(*vs).T), dX)
        if set_grad:
            self._accumulate_grad(dtheta)
            return dX_, X_
        return dX_, dtheta, X_

    def inverse_adjoint(self, dX_, X_, set_grad=True):
        """
        Backpropagates through `forward`.

        Args:
            dX_ (torch.Tensor): Gradient with respect to the output X_ of `forward`.
            X_ (torch.Tensor): Output of `forward`.
            set_grad (bool): Accumulate parameter gradients instead of returning them.

        Returns:
            tuple: (dX, X) or (dX, dtheta, X) if set_grad is False.
        """
        self._check_channels(X_)
        check_shapes(dX_, X_)
        with torch.no_grad():
            W = self.weight()
            X = mix_channels(X_, W.T)
            dX = mix_channels(dX_, W.T)

        dtheta = self._param_grad(lambda *vs: mix_channels(X, self._weight(*vs)), dX_)
        if set_grad:
            self._accumulate_grad(dtheta)
            return dX, X
        return dX, dtheta, X

    def _linearize(self, dX, dtheta, X, transpose):
        self._check_channels(X)
        check_shapes(dX, X)
        vs = [v.detach() for v in self._vectors()]
        if self.freeze:
            dvs = [torch.zeros_like(v) for v in vs]
        else:
            dvs = list(dtheta)
            if len(dvs) != len(vs):
                raise ValueError(f"Conv1x1 expects {len(vs)} parameter perturbations, got {len(dvs)}.")

        def fn(x, v1, v2, v3):
            W = self._weight(v1, v2, v3)
            return mix_channels(x, W.T if transpose else W)

        out, dout = jvp(fn, (X.detach(), *vs), (dX.detach(), *dvs))
        return dout, out

    def jacobian(self, dX, dtheta, X):
        """
        Linearization of `forward`.

        Returns:
            tuple: (dX_, X_)
        """
        return self._linearize(dX, dtheta, X, transpose=False)

    def jacobian_inverse(self, dX_, dtheta, X_):
        """
        Linearization of `inverse`.

        Returns:
            tuple: (dX, X)
        """
        return self._linearize(dX_, dtheta, X_, transpose=True)

    def __repr__(self):
        return f"{self.__class__.__name__}(k={self.k}, freeze={self.freeze})"
