"""Default parameters for technical noise modelling.

Every stage takes these as keyword arguments; the constants here
only provide the defaults.
"""

# Linear model
LM_CHUNK_SIZE = 1000
RANK_TOL_FACTOR = 1.0

# Trend fitting
DEFAULT_SPAN = 0.3
DEFAULT_MIN_CONTROLS = 10
MIN_CONTROLS_FLOOR = 4
MIN_VARIANCE = 1e-8
ABUNDANCE_FLOOR = 1e-8
TREND_FLOOR = 1e-300
LOESS_DEGREE = 1
LOESS_ITERATIONS = 4
LOESS_MIN_POINTS = 8
LOESS_SPAN_GROWTH = 1.5
DENSITY_BANDWIDTH = 1.0
MAD_SCALE = 1.4826

# Initial parameter search for the parametric curve
INIT_PARAMS = {
    "left_n": 100,
    "left_prop": 0.1,
    "grid_length": 10,
    "b_grid_range": 5.0,
    "n_grid_max": 7.0,
}

# Non-linear least squares
NLS_PARAMS = {
    "method": "trf",
    "ftol": 1e-8,
    "xtol": 1e-8,
    "gtol": 1e-8,
    "max_nfev": 1000,
    "x_scale": "jac",
}
NLS_LOWER_BOUND = 1e-10

# Dispersion fit
DEFAULT_ALPHA = 0.05
D0_MIN = 0.1
D0_MAX = 1e6
MIN_PRIOR_POINTS = 3

# Multiple testing
DEFAULT_FDR_THRESHOLD = 0.05
