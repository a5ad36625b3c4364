import torch.nn as nn


class NeuralNetLayer(nn.Module):
    """
    Base class for layers whose gradients are computed explicitly.

    Parameter gradients are either accumulated into the `.grad` field of each
    parameter (`set_grad=True`) or returned as a list of tensors ordered like
    `get_params()` (`set_grad=False`).
    """

    def get_params(self):
        """
        Returns:
            list: The trainable parameters of the layer.
        """
        return list(self.parameters())

    def clear_grad(self):
        """Resets the accumulated parameter gradients."""
        for p in self.get_params():
            p.grad = None

    def _accumulate_grad(self, grads):
        params = self.get_params()
        for p, g in zip(params, grads):
            g = g.detach()
            p.grad = g.clone() if p.grad is None else p.grad + g


class InvertibleLayer(NeuralNetLayer):
    """
    Base class for invertible layers that recompute their activations from the
    output instead of storing them.
    """

    def forward(self, X, **kwargs):
        """
        Computes the forward transformation Y = f(X).

        Args:
            X (torch.Tensor): The input tensor.

        Returns:
            torch.Tensor: The transformed tensor (and the log-determinant
            for layers that track it).
        """
        raise NotImplementedError

    def inverse(self, Y, **kwargs):
        """
        Computes the inverse transformation X = f^-1(Y).

        Args:
            Y (torch.Tensor): The output of `forward`.

        Returns:
            torch.Tensor: The reconstructed input.
        """
        raise NotImplementedError

    def backward(self, dY, Y, **kwargs):
        """
        Backpropagates the gradient dY of the output Y without stored activations.

        Args:
            dY (torch.Tensor): Gradient with respect to the output.
            Y (torch.Tensor): The output of `forward`.

        Returns:
            tuple: (dX, X), the gradient with respect to the input and the
            recomputed input.
        """
        raise NotImplementedError

    def jacobian(self, dX, dtheta, X, **kwargs):
        """
        Forward-mode linearization of the layer.

        Args:
            dX (torch.Tensor): Perturbation of the input.
            dtheta (list): Perturbation of the parameters, ordered like `get_params()`.
            X (torch.Tensor): The input tensor.

        Returns:
            tuple: (dY, Y)
        """
        raise NotImplementedError

    def adjoint_jacobian(self, dY, Y, **kwargs):
        """The vector-Jacobian product dual to `jacobian`."""
        return self.backward(dY, Y, set_grad=False, **kwargs)

