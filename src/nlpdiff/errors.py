"""Error kinds raised by the evaluator and its collaborators."""


class UnsupportedFeatureError(ValueError):
    """Raised when ``initialize`` is asked for a capability outside the supported set."""


class CapabilityNotRequestedError(RuntimeError):
    """Raised when a callback needs a capability that was not requested on ``initialize``."""


class StaleExternalDataError(RuntimeError):
    """Raised when a model without nonlinear parameters is solved a second time.

    Values baked into the tapes when they were built cannot change between
    solves, so a model that relied on mutating its own data arrays would
    silently solve the old problem.
    Use nonlinear parameters for data that changes between solves,
    or pass ``EvaluatorConfig(allow_resolve=True)`` if the model is known to be
    unchanged.
    """


class TapeInvariantError(AssertionError):
    """Raised when derived tape metadata violates an internal invariant.

    This signals a bug in tape analysis, not bad user input.
    """
