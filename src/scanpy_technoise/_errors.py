class VarianceModelError(Exception):
    """Base class for failures of the technical noise model."""

    stage: str = "variance model"

    def __init__(self, msg: str, stage: str = None):
        if stage is not None:
            self.stage = stage
        super().__init__(f"{self.stage}: {msg}")


class DegenerateDesignError(VarianceModelError, ValueError):
    stage = "linear model fit"


class InsufficientControlGenesError(VarianceModelError, ValueError):
    stage = "trend fit"


class TrendFitError(VarianceModelError, RuntimeError):
    stage = "trend fit"


class PriorFitError(VarianceModelError, RuntimeError):
    stage = "dispersion fit"


__all__ = [
    "VarianceModelError",
    "DegenerateDesignError",
    "InsufficientControlGenesError",
    "TrendFitError",
    "PriorFitError",
]
