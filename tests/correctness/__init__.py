"""
Correctness Test Suite for the Coupling Layers

This package contains algorithmic correctness tests for the Glow and i-RIM
coupling layers. Tests are designed to catch critical bugs through rigorous
mathematical verification.

Test Modules:
- test_invertibility.py: Tests forward/inverse consistency for all layer variants
- test_logdet_autodiff.py: Validates log-determinant computation against autodiff
- test_gradcheck.py: Verifies the memory-free backward passes against torch.autograd
- test_adjoint.py: Verifies the duality of the Jacobian and its adjoint

All test failures include the **critical-bug** tag for automatic indexing.
"""

# Test suite metadata
TEST_MODULES = [
    "test_invertibility",
    "test_logdet_autodiff",
    "test_gradcheck",
    "test_adjoint",
]

LAYER_CLASSES_TESTED = [
    "CouplingLayerGlow",
    "CouplingLayerIRIM",
]
