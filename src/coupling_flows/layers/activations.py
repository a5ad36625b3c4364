import torch

from ..exceptions import ConfigurationError


class SigmoidLayer:
    """
    Sigmoid gate rescaled to the interval (low, high).

    Used by the affine coupling layers to turn the raw log-scale prediction
    into a strictly positive, bounded scale factor S.
    """

    def __init__(self, low=0.0, high=1.0):
        if not high > low:
            raise ConfigurationError(f"SigmoidLayer needs high > low, got low={low}, high={high}.")
        self.low = low
        self.high = high

    def forward(self, x):
        return self.low + (self.high - self.low) * torch.sigmoid(x)

    def backward(self, dS, S, x=None):
        """
        Vector-Jacobian product of the gate.

        Args:
            dS (torch.Tensor): Gradient with respect to the gate output.
            S (torch.Tensor or None): Gate output. May be None if `x` is given.
            x (torch.Tensor, optional): Gate input; if given, the derivative is
                evaluated at x instead of being recovered from S.

        Returns:
            torch.Tensor: Gradient with respect to the gate input.
        """
        if x is not None:
            S = self.forward(x)
        return dS * (S - self.low) * (self.high - S) / (self.high - self.low)

    def __call__(self, x):
        return self.forward(x)

    def __repr__(self):
        return f"{self.__class__.__name__}(low={self.low}, high={self.high})"
