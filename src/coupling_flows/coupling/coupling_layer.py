from ..exceptions import ConfigurationError, DimensionError
from ..layers.interfaces import MixingTransform, Predictor
from ..layers.layer import InvertibleLayer
from ..utils.tensor_ops import CHANNEL_DIM, tensor_split


class CouplingLayer(InvertibleLayer):
    """
    Shared plumbing of the coupling layers: a mixing transform `C` and a
    predictor `RB`, whose parameters make up the parameters of the layer.
    """

    def __init__(self, C, RB):
        super().__init__()
        if not isinstance(C, MixingTransform):
            raise ConfigurationError(f"{type(C).__name__} does not implement the mixing transform interface.")
        if not isinstance(RB, Predictor):
            raise ConfigurationError(f"{type(RB).__name__} does not implement the predictor interface.")

        n_mixing = getattr(C, "k", None)
        if n_mixing is not None and n_mixing != 2 * RB.n_in:
            raise ConfigurationError(
                f"Mixing transform acts on {n_mixing} channels, but the predictor expects "
                f"{RB.n_in} channels, i.e. half of {2 * RB.n_in}."
            )

        self.C = C
        self.RB = RB

    def get_params(self):
        """
        Returns:
            list: Parameters of the mixing transform followed by those of the predictor.
        """
        return self.C.get_params() + self.RB.get_params()

    def clear_grad(self):
        self.C.clear_grad()
        self.RB.clear_grad()

    def _split_dtheta(self, dtheta):
        dtheta = list(dtheta)
        n_mixing = len(self.C.get_params())
        n_total = n_mixing + len(self.RB.get_params())
        if len(dtheta) != n_total:
            raise ValueError(f"Expected {n_total} parameter perturbations, got {len(dtheta)}.")
        return dtheta[:n_mixing], dtheta[n_mixing:]

    @staticmethod
    def _split(X, mask):
        X1, X2 = tensor_split(X, mask)
        if X1.shape[CHANNEL_DIM] != X2.shape[CHANNEL_DIM]:
            raise DimensionError(
                f"Coupling layers split channels in half, but the mask selects "
                f"{X1.shape[CHANNEL_DIM]} of {X.shape[CHANNEL_DIM]}."
            )
        return X1, X2
