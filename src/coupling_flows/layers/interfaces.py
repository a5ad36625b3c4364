"""
Capabilities the coupling layers require from their collaborators.

Any object that provides these methods can be plugged into a coupling layer;
the concrete classes in this package are reference implementations.
"""
from typing import List, Optional, Protocol, Tuple, runtime_checkable

from torch import Tensor


@runtime_checkable
class MixingTransform(Protocol):
    """Invertible linear mixing of channels, e.g. a 1x1 convolution."""

    def forward(self, X: Tensor) -> Tensor: ...

    def inverse(self, X_: Tensor) -> Tensor: ...

    def forward_adjoint(self, dX: Tensor, X: Tensor, set_grad: bool = True) -> Tuple:
        """Backpropagates through `inverse`, whose output is X."""
        ...

    def inverse_adjoint(self, dX_: Tensor, X_: Tensor, set_grad: bool = True) -> Tuple:
        """Backpropagates through `forward`, whose output is X_."""
        ...

    def jacobian(self, dX: Tensor, dtheta: List[Tensor], X: Tensor) -> Tuple[Tensor, Tensor]: ...

    def jacobian_inverse(self, dX_: Tensor, dtheta: List[Tensor], X_: Tensor) -> Tuple[Tensor, Tensor]: ...

    def get_params(self) -> List[Tensor]: ...

    def clear_grad(self) -> None: ...


@runtime_checkable
class Predictor(Protocol):
    """Differentiable network mapping one channel group to shift (and log-scale) values."""

    n_in: int
    n_out: int
    fan: bool

    def forward(self, X: Tensor) -> Tensor: ...

    def backward(self, draw: Tensor, X: Tensor, set_grad: bool = True): ...

    def jacobian(self, dX: Tensor, dtheta: List[Tensor], X: Tensor) -> Tuple[Tensor, Tensor]: ...

    def adjoint_jacobian(self, draw: Tensor, X: Tensor) -> Tuple[Tensor, List[Tensor]]: ...

    def get_params(self) -> List[Tensor]: ...

    def clear_grad(self) -> None: ...


@runtime_checkable
class ActivationGate(Protocol):
    """Bounded elementwise nonlinearity turning raw predictions into scale factors."""

    def forward(self, x: Tensor) -> Tensor: ...

    def backward(self, dS: Tensor, S: Optional[Tensor], x: Optional[Tensor] = None) -> Tensor: ...
