from ._decompose import decompose_variance, variance_pvalues
from ._fdist import DispersionEstimate, estimate_dispersion, fit_scaled_f
from ._highly_variable_genes import (
    TechnicalNoiseModel,
    highly_variable_genes,
    model_gene_var_spikes,
)
from ._lm_fit import LinearModelFit, fit_linear_model
from ._loess_fit import (
    LoessSmoother,
    RobustSmoother,
    TechnicalTrendFitter,
    TrendFunction,
)

__all__ = [
    "decompose_variance",
    "variance_pvalues",
    "DispersionEstimate",
    "estimate_dispersion",
    "fit_scaled_f",
    "TechnicalNoiseModel",
    "highly_variable_genes",
    "model_gene_var_spikes",
    "LinearModelFit",
    "fit_linear_model",
    "LoessSmoother",
    "RobustSmoother",
    "TechnicalTrendFitter",
    "TrendFunction",
]
