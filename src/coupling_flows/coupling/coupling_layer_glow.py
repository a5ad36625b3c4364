from typing import NamedTuple, Optional

import torch
from torch import Tensor

from .coupling_layer import CouplingLayer
from ..config import ADDITIVE, AFFINE, DEFAULT_SETTING_GLOW_BLOCK, CouplingLayerConfig
from ..exceptions import ConfigurationError
from ..layers.activations import SigmoidLayer
from ..layers.interfaces import ActivationGate
from ..layers.conv1x1 import Conv1x1
from ..layers.residual_block import ResidualBlock
from ..utils import logging
from ..utils.logdet import glow_logdet_backward, glow_logdet_forward
from ..utils.parameters import params_scale, params_zeros_like
from ..utils.tensor_ops import check_shapes, tensor_cat, tensor_split


class CouplingState(NamedTuple):
    """Activations of a Glow coupling layer recomputed from its output."""

    X: Tensor
    X1: Tensor
    X2: Tensor
    S: Optional[Tensor]


class CouplingLayerGlow(CouplingLayer):
    """
    Real NVP / Glow style coupling layer with a 1x1 convolution and a residual block.

        X_ = C(X),  (X1, X2) = split(X_)
        Y1 = S(X2) * X1 + T(X2)     (affine)
        Y1 = X1 + T(X2)             (additive)
        Y  = cat(Y1, X2)

    The output stays in the domain of the mixing transform; `inverse` undoes
    the mixing at the end. Activations are never stored: `backward`
    reconstructs them from the output with `inverse`.

    Args:
        C: Mixing transform acting on all channels, e.g. `Conv1x1`.
        RB: Predictor, e.g. `ResidualBlock`. For the affine variant it must be
            in fan-out mode and produce twice as many channels as it consumes
            (log-scale and shift); for the additive variant it must produce
            as many channels as it consumes.
        logdet (bool): Whether to compute the log-determinant of the layer.
        activation: Gate turning the raw log-scale into a scale factor,
            defaults to `SigmoidLayer()`.
        affine (bool): Affine (scale and shift) or additive (shift only) coupling.

    Example:
        >>> L = CouplingLayerGlow.build(8, 16, logdet=True)
        >>> X = torch.randn(2, 8, 4, 4)
        >>> Y, logdet = L.forward(X)
        >>> torch.allclose(L.inverse(Y), X, atol=1e-5)
        True
    """

    def __init__(self, C, RB, logdet=False, activation=None, affine=True):
        super().__init__(C, RB)
        if affine:
            if not RB.fan:
                raise ConfigurationError("Set ResidualBlock.fan == True for the affine coupling layer.")
            if RB.n_out != 2 * RB.n_in:
                raise ConfigurationError(
                    f"The affine coupling layer needs a predictor with {2 * RB.n_in} output channels "
                    f"(log-scale and shift), got {RB.n_out}."
                )
            activation = SigmoidLayer() if activation is None else activation
            if not isinstance(activation, ActivationGate):
                raise ConfigurationError(
                    f"{type(activation).__name__} does not implement the activation gate interface."
                )
        elif RB.n_out != RB.n_in:
            raise ConfigurationError(
                f"The additive coupling layer needs a predictor with {RB.n_in} output channels, got {RB.n_out}."
            )

        self.activation = activation
        self.config = CouplingLayerConfig(
            mixing=C,
            predictor=RB,
            activation=activation,
            variant=AFFINE if affine else ADDITIVE,
            track_logdet=logdet,
        )
        logging.debug("Built {} ({}, logdet={}) with {}.", type(self).__name__, self.config.variant, logdet, RB)

    @classmethod
    def build(cls, n_in, n_hidden, affine=True, freeze_conv=False, logdet=False, activation=None, ndims=2,
              **block_kwargs):
        """
        Creates the layer together with its 1x1 convolution and residual block.

        Args:
            n_in (int): Number of input channels (must be even).
            n_hidden (int): Number of hidden channels of the residual block.
            affine (bool): Affine or additive coupling.
            freeze_conv (bool): Do not train the 1x1 convolution.
            logdet (bool): Whether to compute the log-determinant.
            activation: Gate for the scale factor.
            ndims (int): Number of spatial dimensions (2 or 3).
            **block_kwargs: Overrides of `DEFAULT_SETTING_GLOW_BLOCK` (k1, k2, p1, p2, s1, s2).
        """
        if n_in % 2 != 0:
            raise ConfigurationError(f"Coupling layers need an even number of channels, got {n_in}.")
        settings = {**DEFAULT_SETTING_GLOW_BLOCK, **block_kwargs}
        n_out = n_in if affine else n_in // 2

        C = Conv1x1(n_in, freeze=freeze_conv)
        RB = ResidualBlock(n_in // 2, n_hidden, n_out=n_out, fan=True, ndims=ndims, **settings)
        return cls(C, RB, logdet=logdet, activation=activation, affine=affine)

    @property
    def affine(self):
        return self.config.affine

    @property
    def logdet(self):
        return self.config.track_logdet

    def _scale_shift(self, X2):
        logS, T = tensor_split(self.RB.forward(X2))
        return self.activation.forward(logS), T

    def forward(self, X, mask=None):
        """
        Args:
            X (torch.Tensor): Input of shape (batch, channels, *spatial).
            mask (torch.Tensor, optional): Boolean channel mask selecting the
                transformed half. Defaults to a contiguous split.

        Returns:
            torch.Tensor: Y, or (Y, logdet) if the layer tracks the log-determinant.
        """
        X_ = self.C.forward(X)
        X1, X2 = self._split(X_, mask)

        if self.affine:
            S, T = self._scale_shift(X2)
            Y1 = S * X1 + T
        else:
            S = None
            Y1 = X1 + self.RB.forward(X2)

        Y = tensor_cat(Y1, X2, mask)
        if not self.logdet:
            return Y
        if self.affine:
            return Y, glow_logdet_forward(S)
        return Y, torch.zeros((), dtype=Y.dtype, device=Y.device)

    def inverse(self, Y, mask=None, save=False):
        """
        Args:
            Y (torch.Tensor): Output of `forward`.
            mask (torch.Tensor, optional): The mask used in `forward`.
            save (bool): Also return the recomputed activations.

        Returns:
            torch.Tensor or CouplingState: X, or the state (X, X1, X2, S) if save is True.
        """
        Y1, Y2 = self._split(Y, mask)
        X2 = Y2

        if self.affine:
            S, T = self._scale_shift(X2)
            eps = torch.finfo(Y.dtype).eps
            if logging.debug_enabled():
                n_saturated = int(torch.count_nonzero(S.detach().abs() < eps))
                if n_saturated:
                    logging.debug("{} scale factors saturated below {:.2e} during inversion.", n_saturated, eps)
            # eps avoids a division by zero when the gate saturates
            X1 = (Y1 - T) / (S + eps)
        else:
            S = None
            X1 = Y1 - self.RB.forward(X2)

        X = self.C.inverse(tensor_cat(X1, X2, mask))
        if save:
            return CouplingState(X, X1, X2, S)
        return X

    def backward(self, dY, Y, mask=None, set_grad=True):
        """
        Backpropagates dY without stored activations.

        The input is recomputed from Y with `inverse`, then the gradient is
        propagated through the recomputed state. With `set_grad=True`, the
        parameter gradients are accumulated into the collaborators and the
        log-determinant (if tracked) is subtracted from the objective.

        Args:
            dY (torch.Tensor): Gradient with respect to Y.
            Y (torch.Tensor): Output of `forward`.
            mask (torch.Tensor, optional): The mask used in `forward`.
            set_grad (bool): Accumulate parameter gradients instead of returning them.

        Returns:
            tuple: (dX, X) if set_grad is True. Otherwise (dX, dtheta, X), or
            (dX, dtheta, X, dtheta_logdet) if the layer tracks the log-determinant.
        """
        check_shapes(dY, Y)
        with torch.no_grad():
            state = self.inverse(Y, mask=mask, save=True)
            return self._gradient(state, dY, mask, set_grad)

    def _gradient(self, state, dY, mask, set_grad):
        X, X1, X2, S = state
        dY1, dY2 = self._split(dY, mask)

        dT = dY1
        if self.affine:
            dS = dY1 * X1
            if self.logdet and set_grad:
                dS = dS - glow_logdet_backward(S)
            dX1 = dY1 * S
            draw = tensor_cat(self.activation.backward(dS, S), dT)
        else:
            dX1 = dY1
            draw = dT

        if set_grad:
            dX2 = self.RB.backward(draw, X2) + dY2
        else:
            dX2, dtheta_RB = self.RB.backward(draw, X2, set_grad=False)
            dX2 = dX2 + dY2

        X_ = tensor_cat(X1, X2, mask)
        dX_ = tensor_cat(dX1, dX2, mask)
        if set_grad:
            dX = self.C.inverse_adjoint(dX_, X_)[0]
            return dX, X

        dX, dtheta_C, _ = self.C.inverse_adjoint(dX_, X_, set_grad=False)
        dtheta = dtheta_C + dtheta_RB
        if not self.logdet:
            return dX, dtheta, X
        if not self.affine:
            return dX, dtheta, X, params_zeros_like(dtheta)

        dS_logdet = self.activation.backward(glow_logdet_backward(S), S)
        _, dtheta_logdet = self.RB.backward(tensor_cat(dS_logdet, torch.zeros_like(dT)), X2, set_grad=False)
        return dX, dtheta, X, params_zeros_like(dtheta_C) + dtheta_logdet

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
                dX_, dtheta_C, X_ = self.C.forward_adjoint(dX, X, set_grad=False)
            X1, X2 = self._split(X_, mask)
            dX1, dX2 = self._split(dX_, mask)

            if self.affine:
                S, T = self._scale_shift(X2)
                Y1 = S * X1 + T
                dT = -dX1 / S
                dS = X1 * dT
                if self.logdet and set_grad:
                    dS = dS + glow_logdet_backward(S)
                dY1 = -dT
                draw = tensor_cat(self.activation.backward(dS, S), dT)
            else:
                Y1 = X1 + self.RB.forward(X2)
                dT = -dX1
                dY1 = dX1
                draw = dT

            if set_grad:
                dY2 = self.RB.backward(draw, X2) + dX2
            else:
                dY2, dtheta_RB = self.RB.backward(draw, X2, set_grad=False)
                dY2 = dY2 + dX2

            dY = tensor_cat(dY1, dY2, mask)
            Y = tensor_cat(Y1, X2, mask)
            if set_grad:
                return dY, Y
            return dY, dtheta_C + dtheta_RB, Y

    def jacobian(self, dX, dtheta, X, mask=None):
        """
        Forward-mode linearization along the same path as `forward`.

        Args:
            dX (torch.Tensor): Perturbation of the input.
            dtheta (list): Perturbation of the parameters, ordered like `get_params()`.
            X (torch.Tensor): Input of the layer.
            mask (torch.Tensor, optional): Boolean channel mask.

        Returns:
            tuple: (dY, Y), or (dY, Y, logdet, GNdtheta) if the layer tracks the
            log-determinant, where GNdtheta is the Gauss-Newton approximation of
            the log-determinant Hessian applied to dtheta.
        """
        check_shapes(dX, X)
        dtheta_C, dtheta_RB = self._split_dtheta(dtheta)

        dX_, X_ = self.C.jacobian(dX, dtheta_C, X)
        X1, X2 = self._split(X_, mask)
        dX1, dX2 = self._split(dX_, mask)

        if self.affine:
            draw, raw = self.RB.jacobian(dX2, dtheta_RB, X2)
            logS, T = tensor_split(raw)
            dlogS, dT = tensor_split(draw)
            S = self.activation.forward(logS)
            dS = self.activation.backward(dlogS, None, x=logS)
            Y1 = S * X1 + T
            dY1 = dS * X1 + S * dX1 + dT
        else:
            dT, T = self.RB.jacobian(dX2, dtheta_RB, X2)
            Y1 = X1 + T
            dY1 = dX1 + dT

        Y = tensor_cat(Y1, X2, mask)
        dY = tensor_cat(dY1, dX2, mask)
        if not self.logdet:
            return dY, Y
        if not self.affine:
            return dY, Y, torch.zeros((), dtype=Y.dtype, device=Y.device), params_zeros_like(dtheta)

        # Gauss-Newton approximation of the logdet terms
        JdlogS = tensor_split(self.RB.jacobian(torch.zeros_like(dX2), dtheta_RB, X2)[0])[0]
        draw_gn = tensor_cat(self.activation.backward(JdlogS, S), torch.zeros_like(S))
        GNdtheta = params_zeros_like(dtheta_C) + params_scale(self.RB.adjoint_jacobian(draw_gn, X2)[1], -1)
        return dY, Y, glow_logdet_forward(S), GNdtheta

    def __repr__(self):
        return (f"{self.__class__.__name__}(C={self.C!r}, RB={self.RB!r}, "
                f"affine={self.affine}, logdet={self.logdet})")
