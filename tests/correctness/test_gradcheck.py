"""
Test the memory-free backward passes against torch.autograd.

`backward` and `backward_inv` recompute activations from the layer output
instead of storing them. Their input and parameter gradients must agree with
the gradients autograd computes through `forward` and `inverse`.
"""

import pytest
import torch
from coupling_flows import CouplingLayerGlow, CouplingLayerIRIM, channel_mask, glow_logdet_forward


def create_layer(name, n_channels=4, ndims=2, logdet=False):
    """Helper function to create a double precision layer."""
    if name == "glow_affine":
        layer = CouplingLayerGlow.build(n_channels, 8, logdet=logdet, ndims=ndims)
    elif name == "glow_additive":
        layer = CouplingLayerGlow.build(n_channels, 8, affine=False, logdet=logdet, ndims=ndims)
    elif name == "glow_frozen":
        layer = CouplingLayerGlow.build(n_channels, 8, freeze_conv=True, logdet=logdet, ndims=ndims)
    elif name == "irim":
        layer = CouplingLayerIRIM.build(n_channels, 8, ndims=ndims)
    else:
        raise ValueError(name)
    return layer.double()


def create_input(batch_size, n_channels, ndims=2):
    spatial = (8, 8) if ndims == 2 else (4, 4, 4)
    return torch.randn(batch_size, n_channels, *spatial, dtype=torch.float64)


def autograd_backward(layer, X, dY, mask=None, subtract_logdet=False):
    """Gradients of <forward(X), dY> (minus the logdet) computed by autograd."""
    X = X.clone().requires_grad_(True)
    params = layer.get_params()
    out = layer.forward(X, mask=mask)
    if isinstance(out, tuple):
        Y, logdet = out
    else:
        Y, logdet = out, None

    loss = torch.sum(Y * dY)
    if subtract_logdet:
        loss = loss - logdet
    grads = torch.autograd.grad(loss, [X, *params], allow_unused=True)
    dtheta = [torch.zeros_like(p) if g is None else g for p, g in zip(params, grads[1:])]
    return grads[0], dtheta, Y.detach()


def assert_close(actual, expected, what, tol=1e-6):
    error = torch.max(torch.abs(actual - expected)).item()
    if error > tol * max(1.0, torch.max(torch.abs(expected)).item()):
        pytest.fail(f"**critical-bug** {what} does not match autograd: max error = {error:.2e}")


LAYERS = ["glow_affine", "glow_additive", "glow_frozen", "irim"]


class TestBackward:
    """Test class for `backward` against autograd through `forward`."""

    @pytest.mark.parametrize("name", LAYERS)
    @pytest.mark.parametrize("use_mask", [False, True])
    def test_backward_returned_gradients(self, name, use_mask):
        torch.manual_seed(42)
        layer = create_layer(name)
        mask = channel_mask(4, [0, 3]) if use_mask else None
        X = create_input(2, 4)
        dY = torch.randn_like(X)

        dX_ref, dtheta_ref, Y = autograd_backward(layer, X, dY, mask=mask)
        dX, dtheta, X_rec = layer.backward(dY, Y, mask=mask, set_grad=False)

        assert_close(X_rec, X, "recomputed input")
        assert_close(dX, dX_ref, "input gradient")
        assert len(dtheta) == len(dtheta_ref)
        for i, (g, g_ref) in enumerate(zip(dtheta, dtheta_ref)):
            assert_close(g, g_ref, f"parameter gradient {i}")

    @pytest.mark.parametrize("name", LAYERS)
    def test_backward_accumulates_into_grad(self, name):
        torch.manual_seed(0)
        layer = create_layer(name)
        X = create_input(2, 4)
        dY = torch.randn_like(X)

        dX_ref, dtheta_ref, Y = autograd_backward(layer, X, dY)
        layer.clear_grad()
        dX, X_rec = layer.backward(dY, Y)

        assert_close(dX, dX_ref, "input gradient")
        for p, g_ref in zip(layer.get_params(), dtheta_ref):
            assert p.grad is not None
            assert_close(p.grad, g_ref, "accumulated parameter gradient")

        # A second call adds to the existing gradients
        layer.backward(dY, Y)
        for p, g_ref in zip(layer.get_params(), dtheta_ref):
            assert_close(p.grad, 2 * g_ref, "twice accumulated parameter gradient")

    @pytest.mark.parametrize("name", ["glow_affine", "glow_additive"])
    def test_backward_with_logdet(self, name):
        """With set_grad, the log-determinant is subtracted from the objective."""
        torch.manual_seed(1)
        layer = create_layer(name, logdet=True)
        X = create_input(4, 4)
        dY = torch.randn_like(X)

        dX_ref, dtheta_ref, Y = autograd_backward(layer, X, dY, subtract_logdet=True)
        layer.clear_grad()
        dX, _ = layer.backward(dY, Y)

        assert_close(dX, dX_ref, "input gradient with logdet")
        for p, g_ref in zip(layer.get_params(), dtheta_ref):
            assert_close(p.grad, g_ref, "parameter gradient with logdet")

    @pytest.mark.parametrize("name", ["glow_affine", "glow_additive"])
    def test_backward_returns_logdet_gradient_separately(self, name):
        torch.manual_seed(2)
        layer = create_layer(name, logdet=True)
        X = create_input(2, 4)
        dY = torch.randn_like(X)

        dX_ref, dtheta_ref, Y = autograd_backward(layer, X, dY)
        dX, dtheta, _, dtheta_logdet = layer.backward(dY, Y, set_grad=False)

        assert_close(dX, dX_ref, "input gradient")
        for g, g_ref in zip(dtheta, dtheta_ref):
            assert_close(g, g_ref, "parameter gradient")

        # dtheta_logdet is the gradient of the logdet through the predictor only
        n_mixing = len(layer.C.get_params())
        for g in dtheta_logdet[:n_mixing]:
            assert torch.count_nonzero(g) == 0

        params = layer.RB.get_params()
        logdet = layer.forward(X)[1]
        if logdet.requires_grad:
            logdet_grads = torch.autograd.grad(logdet, params, allow_unused=True)
        else:
            logdet_grads = [None] * len(params)
        for p, g, g_ref in zip(params, dtheta_logdet[n_mixing:], logdet_grads):
            assert_close(g, torch.zeros_like(p) if g_ref is None else g_ref, "logdet parameter gradient")

    def test_frozen_mixing_has_no_parameters(self):
        layer = create_layer("glow_frozen")
        assert len(layer.C.get_params()) == 0
        assert len(layer.get_params()) == len(layer.RB.get_params())

    def test_irim_sums_mixing_gradients(self):
        """The mixing transform is used twice by the i-RIM layer."""
        torch.manual_seed(3)
        layer = create_layer("irim", ndims=3)
        X = create_input(1, 4, ndims=3)
        dY = torch.randn_like(X)

        dX_ref, dtheta_ref, Y = autograd_backward(layer, X, dY)
        dX, dtheta, _ = layer.backward(dY, Y, set_grad=False)

        assert_close(dX, dX_ref, "input gradient")
        for g, g_ref in zip(dtheta[:3], dtheta_ref[:3]):
            assert_close(g, g_ref, "mixing gradient")


class TestBackwardInverse:
    """Test class for `backward_inv` against autograd through `inverse`."""

    @pytest.mark.parametrize("name", LAYERS)
    @pytest.mark.parametrize("use_mask", [False, True])
    def test_backward_inv_returned_gradients(self, name, use_mask):
        torch.manual_seed(42)
        layer = create_layer(name)
        mask = channel_mask(4, [1, 2]) if use_mask else None
        Y = create_input(2, 4).requires_grad_(True)
        params = layer.get_params()

        X = layer.inverse(Y, mask=mask)
        dX = torch.randn_like(X)
        grads = torch.autograd.grad(torch.sum(X * dX), [Y, *params], allow_unused=True)
        dY_ref = grads[0]
        dtheta_ref = [torch.zeros_like(p) if g is None else g for p, g in zip(params, grads[1:])]

        dY, dtheta, Y_rec = layer.backward_inv(dX, X.detach(), mask=mask, set_grad=False)

        assert_close(Y_rec, Y.detach(), "recomputed output")
        assert_close(dY, dY_ref, "output gradient")
        for g, g_ref in zip(dtheta, dtheta_ref):
            assert_close(g, g_ref, "parameter gradient")

    @pytest.mark.parametrize("name", ["glow_affine", "irim"])
    def test_backward_inv_accumulates_into_grad(self, name):
        torch.manual_seed(5)
        layer = create_layer(name)
        Y = create_input(2, 4)
        params = layer.get_params()

        X = layer.inverse(Y)
        dX = torch.randn_like(X)
        dtheta_ref = torch.autograd.grad(torch.sum(X * dX), params)

        layer.clear_grad()
        dY, Y_rec = layer.backward_inv(dX, X.detach())
        for p, g_ref in zip(params, dtheta_ref):
            assert_close(p.grad, g_ref, "accumulated parameter gradient")

    @pytest.mark.parametrize("use_mask", [False, True])
    def test_backward_inv_with_logdet(self, use_mask):
        """The inverse map has log-determinant -sum(log S)/batch, which is subtracted from the objective."""
        torch.manual_seed(6)
        layer = create_layer("glow_affine", logdet=True)
        mask = channel_mask(4, [0, 2]) if use_mask else None
        Y = create_input(3, 4).requires_grad_(True)
        params = layer.get_params()

        state = layer.inverse(Y, mask=mask, save=True)
        dX = torch.randn_like(state.X)
        loss = torch.sum(state.X * dX) + glow_logdet_forward(state.S)
        grads = torch.autograd.grad(loss, [Y, *params])

        layer.clear_grad()
        dY, Y_rec = layer.backward_inv(dX, state.X.detach(), mask=mask)

        assert_close(Y_rec, Y.detach(), "recomputed output")
        assert_close(dY, grads[0], "output gradient with logdet")
        for p, g_ref in zip(params, grads[1:]):
            assert_close(p.grad, g_ref, "parameter gradient with logdet")


class TestAutogradGradcheck:
    """Sanity check of the autograd reference itself with torch.autograd.gradcheck."""

    @pytest.mark.parametrize("name", ["glow_affine", "irim"])
    def test_forward_gradcheck(self, name):
        torch.manual_seed(42)
        layer = create_layer(name)
        X = create_input(1, 4).requires_grad_(True)

        def f(x):
            out = layer.forward(x)
            return out[0] if isinstance(out, tuple) else out

        try:
            assert torch.autograd.gradcheck(f, (X,), eps=1e-6, atol=1e-4)
        except Exception as e:
            pytest.fail(f"**critical-bug** Gradcheck failed for {name}: {e}")


if __name__ == "__main__":
    pytest.main([__file__])
