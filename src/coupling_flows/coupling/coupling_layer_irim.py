from typing import NamedTuple

import torch
from torch import Tensor

from .coupling_layer import CouplingLayer
from ..config import ADDITIVE, DEFAULT_SETTING_IRIM_BLOCK, CouplingLayerConfig
from ..exceptions import ConfigurationError
from ..layers.conv1x1 import Conv1x1
from ..layers.residual_block import ResidualBlock
from ..utils import logging
from ..utils.parameters import params_add
from ..utils.tensor_ops import check_shapes, tensor_cat


class IRIMState(NamedTuple):
    """Activations of an i-RIM coupling layer recomputed from its output."""

    X: Tensor
    X_: Tensor
    Y1_: Tensor


class CouplingLayerIRIM(CouplingLayer):
    """
    Additive coupling layer of invertible recurrent inference machines
    (Putzky and Welling, 2019).

        X_  = C(X),  (X1_, X2_) = split(X_)
        Y2_ = X2_ + RB(X1_)
        Y   = C^-1(cat(X1_, Y2_))

    Unlike `CouplingLayerGlow`, the layer maps back through the inverse of the
    mixing transform, so input and output live in the same domain.

    Args:
        C: Mixing transform acting on all channels, e.g. `Conv1x1`.
        RB: Predictor with as many output channels as input channels.
    """

    def __init__(self, C, RB):
        super().__init__(C, RB)
        if RB.n_out != RB.n_in:
            raise ConfigurationError(
                f"The i-RIM coupling layer needs a predictor with {RB.n_in} output channels, got {RB.n_out}."
            )
        self.config = CouplingLayerConfig(mixing=C, predictor=RB, variant=ADDITIVE)
        logging.debug("Built {} with {}.", type(self).__name__, RB)

    @classmethod
    def build(cls, n_in, n_hidden, freeze_conv=False, ndims=2, **block_kwargs):
        """
        Creates the layer together with its 1x1 convolution and residual block.

        Args:
            n_in (int): Number of input channels (must be even).
            n_hidden (int): Number of hidden channels of the residual block.
            freeze_conv (bool): Do not train the 1x1 convolution.
            ndims (int): Number of spatial dimensions (2 or 3).
            **block_kwargs: Overrides of `DEFAULT_SETTING_IRIM_BLOCK` (k1, k2, p1, p2, s1, s2).
        """
        if n_in % 2 != 0:
            raise ConfigurationError(f"Coupling layers need an even number of channels, got {n_in}.")
        settings = {**DEFAULT_SETTING_IRIM_BLOCK, **block_kwargs}

        C = Conv1x1(n_in, freeze=freeze_conv)
        RB = ResidualBlock(n_in // 2, n_hidden, n_out=n_in // 2, ndims=ndims, **settings)
        return cls(C, RB)

    def forward(self, X, mask=None):
        X_ = self.C.forward(X)
        X1_, X2_ = self._split(X_, mask)

        Y2_ = X2_ + self.RB.forward(X1_)
        return self.C.inverse(tensor_cat(X1_, Y2_, mask))

    def inverse(self, Y, mask=None, save=False):
        """
        Args:
            Y (torch.Tensor): Output of `forward`.
            mask (torch.Tensor, optional): The mask used in `forward`.
            save (bool): Also return the recomputed activations.

        Returns:
            torch.Tensor or IRIMState: X, or the state (X, X_, Y1_) if save is True.
        """
        Y_ = self.C.forward(Y)
        Y1_, Y2_ = self._split(Y_, mask)

        X2_ = Y2_ - self.RB.forward(Y1_)
        X_ = tensor_cat(Y1_, X2_, mask)
        X = self.C.inverse(X_)
        if save:
            return IRIMState(X, X_, Y1_)
        return X

    def backward(self, dY, Y, mask=None, set_grad=True):
        """
        Backpropagates dY without stored activations.

        Args:
            dY (torch.Tensor): Gradient with respect to Y.
            Y (torch.Tensor): Output of `forward`.
            mask (torch.Tensor, optional): The mask used in `forward`.
            set_grad (bool): Accumulate parameter gradients instead of returning them.

        Returns:
            tuple: (dX, X), or (dX, dtheta, X) if set_grad is False. The
            gradients of the mixing transform from both of its traversals are summed.
        """
        check_shapes(dY, Y)
        with torch.no_grad():
            X, X_, Y1_ = self.inverse(Y, mask=mask, save=True)

            if set_grad:
                dY_ = self.C.forward_adjoint(dY, Y)[0]
            else:
                dY_, dtheta_C1, _ = self.C.forward_adjoint(dY, Y, set_grad=False)
            dY1_, dY2_ = self._split(dY_, mask)

            if set_grad:
                dX1_ = self.RB.backward(dY2_, Y1_) + dY1_
            else:
                dX1_, dtheta_RB = self.RB.backward(dY2_, Y1_, set_grad=False)
                dX1_ = dX1_ + dY1_

            dX_ = tensor_cat(dX1_, dY2_, mask)
            if set_grad:
                dX = self.C.inverse_adjoint(dX_, X_)[0]
                return dX, X

            dX, dtheta_C2, _ = self.C.inverse_adjoint(dX_, X_, set_grad=False)
            return dX, params_add(dtheta_C1, dtheta_C2) + dtheta_RB, X

    def backward_inv(self, dX, X, mask=None, set_grad=True):
        """
        Backpropagates through `inverse`: the reverse-direction gradient.

        Args:
            dX (torch.Tensor): Gradient with respect to the output X of `inverse`.
            X (torch.Tensor): Output of `inverse`.
            mask (torch.Tensor, optional): The mask used in `forward`.
            set_grad (bool): Accumulate parameter gradients instead of returning them.

        Returns:
            tuple: (dY, Y), or (dY, dtheta, Y) if set_grad is False.
        """
        check_shapes(dX, X)
        with torch.no_grad():
            if set_grad:
                dX_, X_ = self.C.forward_adjoint(dX, X)
            else:
                dX_, dtheta_C1, X_ = self.C.forward_adjoint(dX, X, set_grad=False)
            X1_, X2_ = self._split(X_, mask)
            dX1_, dX2_ = self._split(dX_, mask)

            # Recompute the mixed output
            Y1_ = X1_
            Y2_ = X2_ + self.RB.forward(Y1_)

            # X2_ = Y2_ - RB(Y1_)
            if set_grad:
                dY1_ = self.RB.backward(-dX2_, Y1_) + dX1_
            else:
                dY1_, dtheta_RB = self.RB.backward(-dX2_, Y1_, set_grad=False)
                dY1_ = dY1_ + dX1_

            Y_ = tensor_cat(Y1_, Y2_, mask)
            dY_ = tensor_cat(dY1_, dX2_, mask)
            if set_grad:
                return self.C.inverse_adjoint(dY_, Y_)

            dY, dtheta_C2, Y = self.C.inverse_adjoint(dY_, Y_, set_grad=False)
            return dY, params_add(dtheta_C1, dtheta_C2) + dtheta_RB, Y

    def jacobian(self, dX, dtheta, X, mask=None):
        """
        Forward-mode linearization along the same path as `forward`.

        Args:
            dX (torch.Tensor): Perturbation of the input.
            dtheta (list): Perturbation of the parameters, ordered like `get_params()`.
            X (torch.Tensor): Input of the layer.
            mask (torch.Tensor, optional): Boolean channel mask.

        Returns:
            tuple: (dY, Y)
        """
        check_shapes(dX, X)
        dtheta_C, dtheta_RB = self._split_dtheta(dtheta)

        dX_, X_ = self.C.jacobian(dX, dtheta_C, X)
        X1_, X2_ = self._split(X_, mask)
        dX1_, dX2_ = self._split(dX_, mask)

        dT, T = self.RB.jacobian(dX1_, dtheta_RB, X1_)
        Y2_ = X2_ + T
        dY2_ = dX2_ + dT

        return self.C.jacobian_inverse(tensor_cat(dX1_, dY2_, mask), dtheta_C, tensor_cat(X1_, Y2_, mask))

    def __repr__(self):
        return f"{self.__class__.__name__}(C={self.C!r}, RB={self.RB!r})"
