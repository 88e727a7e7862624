class ModelFitError(RuntimeError):
    """Raised when a model cannot be fitted on the data it was given."""
