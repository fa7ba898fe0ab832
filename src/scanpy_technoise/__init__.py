import sys

from . import get
from . import preprocessing as pp
from ._errors import (
    DegenerateDesignError,
    InsufficientControlGenesError,
    PriorFitError,
    TrendFitError,
    VarianceModelError,
)
from ._utilities import set_env, tqdm_joblib

sys.modules.update({f"{__name__}.{m}": globals()[m] for m in ["pp", "get"]})

__all__ = [
    "DegenerateDesignError",
    "InsufficientControlGenesError",
    "PriorFitError",
    "TrendFitError",
    "VarianceModelError",
    "set_env",
    "tqdm_joblib",
    "pp",
    "get",
]
