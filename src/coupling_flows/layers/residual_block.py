import torch
import torch.nn as nn
import torch.nn.functional as F
from torch.func import functional_call, jvp

from .layer import NeuralNetLayer
from ..exceptions import ConfigurationError, DimensionError
from ..utils.tensor_ops import CHANNEL_DIM, check_shapes

_CONV = {2: (nn.Conv2d, nn.ConvTranspose2d), 3: (nn.Conv3d, nn.ConvTranspose3d)}


class ResidualBlock(NeuralNetLayer):
    """
    Convolutional predictor used inside the coupling layers.

        Y1 = ReLU(conv1(X))
        Y2 = ReLU(Y1 + conv2(Y1))
        Y3 = conv_transpose(Y2)

    In fan-out mode the output is Y3 itself, with n_out channels. Otherwise
    the transposed convolution produces 2 * n_out channels that are gated
    down to n_out with a gated linear unit.

    Args:
        n_in (int): Number of input channels.
        n_hidden (int): Number of hidden channels.
        n_out (int, optional): Number of output channels, defaults to n_in.
        k1, p1, s1 (int): Kernel size, padding and stride of the first
            convolution and of the transposed convolution.
        k2, p2, s2 (int): Kernel size, padding and stride of the middle
            convolution. It must preserve the spatial shape.
        fan (bool): Fan-out mode (no output gating).
        ndims (int): Number of spatial dimensions (2 or 3).
    """

    def __init__(self, n_in, n_hidden, n_out=None, k1=3, k2=3, p1=1, p2=1, s1=1, s2=1,
                 fan=False, ndims=2):
        super().__init__()
        if ndims not in _CONV:
            raise ConfigurationError(f"ResidualBlock supports ndims 2 or 3, got {ndims}.")
        if s2 != 1 or 2 * p2 != k2 - 1:
            raise ConfigurationError(
                f"The middle convolution must preserve the spatial shape (got k2={k2}, p2={p2}, s2={s2})."
            )

        self.n_in = n_in
        self.n_hidden = n_hidden
        self.n_out = n_in if n_out is None else n_out
        self.fan = fan
        self.ndims = ndims

        conv, conv_transpose = _CONV[ndims]
        self.conv1 = conv(n_in, n_hidden, k1, stride=s1, padding=p1)
        self.conv2 = conv(n_hidden, n_hidden, k2, stride=s2, padding=p2)
        n_final = self.n_out if fan else 2 * self.n_out
        self.conv3 = conv_transpose(n_hidden, n_final, k1, stride=s1, padding=p1)

        self._initialize_weights()

    def _initialize_weights(self):
        for layer in (self.conv1, self.conv2):
            nn.init.xavier_normal_(layer.weight, gain=1.0)
            nn.init.zeros_(layer.bias)

        # Small outputs keep the coupling close to the identity at initialization
        nn.init.normal_(self.conv3.weight, mean=0.0, std=0.05)
        nn.init.normal_(self.conv3.bias, mean=0.0, std=0.005)

    def forward(self, X):
        if X.dim() != self.ndims + 2 or X.shape[CHANNEL_DIM] != self.n_in:
            raise DimensionError(
                f"ResidualBlock expects a {self.ndims}-D input with {self.n_in} channels, "
                f"got shape {tuple(X.shape)}."
            )
        Y1 = F.relu(self.conv1(X))
        Y2 = F.relu(Y1 + self.conv2(Y1))
        Y3 = self.conv3(Y2, output_size=list(X.shape[2:]))
        if self.fan:
            return Y3
        return F.glu(Y3, dim=CHANNEL_DIM)

    def _named_params(self):
        return dict(self.named_parameters())

    def backward(self, draw, X, set_grad=True):
        """
        Vector-Jacobian product with respect to the input and the parameters.

        Args:
            draw (torch.Tensor): Gradient with respect to the block output.
            X (torch.Tensor): Block input.
            set_grad (bool): Accumulate parameter gradients into `.grad`
                instead of returning them.

        Returns:
            torch.Tensor or tuple: dX, or (dX, dtheta) if set_grad is False.
        """
        with torch.enable_grad():
            x = X.detach().requires_grad_(True)
            params = {name: p.detach().requires_grad_(True) for name, p in self._named_params().items()}
            raw = functional_call(self, params, (x,))
            check_shapes(draw, raw)
            grads = torch.autograd.grad(raw, [x, *params.values()], grad_outputs=draw)

        dX, dtheta = grads[0], list(grads[1:])
        if set_grad:
            self._accumulate_grad(dtheta)
            return dX
        return dX, dtheta

    def adjoint_jacobian(self, draw, X):
        return self.backward(draw, X, set_grad=False)

    def jacobian(self, dX, dtheta, X):
        """
        Jacobian-vector product with respect to the input and the parameters.

        Args:
            dX (torch.Tensor): Perturbation of the input.
            dtheta (list): Perturbation of the parameters, ordered like `get_params()`.
            X (torch.Tensor): Block input.

        Returns:
            tuple: (draw, raw)
        """
        check_shapes(dX, X)
        params = {name: p.detach() for name, p in self._named_params().items()}
        dtheta = list(dtheta)
        if len(dtheta) != len(params):
            raise ValueError(f"ResidualBlock expects {len(params)} parameter perturbations, got {len(dtheta)}.")
        tangents = dict(zip(params.keys(), dtheta))

        def fn(x, p):
            return functional_call(self, p, (x,))

        raw, draw = jvp(fn, (X.detach(), params), (dX.detach(), tangents))
        return draw, raw

    def __repr__(self):
        return (f"{self.__class__.__name__}(n_in={self.n_in}, n_hidden={self.n_hidden}, "
                f"n_out={self.n_out}, fan={self.fan}, ndims={self.ndims})")
