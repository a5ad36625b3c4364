class ConfigurationError(Exception):
    """Class for an error in layer construction, e.g. a predictor that does not
    produce the number of channels the coupling variant requires."""

    pass


class DimensionError(ValueError):
    """Class for error in expected shapes, e.g. an odd channel count on a
    contiguous split or a gradient that does not match its activation."""

    pass
