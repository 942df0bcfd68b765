"""
Centralized configuration for the butterfly monitoring abundance pipeline.

All season definitions, site qualification thresholds, model settings and
output paths are defined here. Pipeline functions take ``None`` defaults
that resolve to these constants, so a run can override any of them.
"""

import os

# ─── CALENDAR PARAMETERS ─────────────────────────────────────────────────
# Week numbering for the week_day column: "monday" gives Monday=1..Sunday=7,
# anything else gives Sunday=1..Saturday=7.
WEEK_START = "monday"

# Non-leap year used to resolve the default last day of the season's end
# month, so February always ends on the 28th regardless of the data years.
REFERENCE_YEAR = 2017

# ─── MONITORING SEASON ───────────────────────────────────────────────────
# Standard transect season: 1 April to 30 September (Pollard walks).
SEASON_START_MONTH = 4
SEASON_END_MONTH = 9
SEASON_START_DAY = 1
SEASON_END_DAY = None  # None = last day of SEASON_END_MONTH in REFERENCE_YEAR

# Keep only season years whose calendar holds both the exact start and the
# exact end day of the season.
COMPLETE_SEASON = True

# Zero-count anchors placed either side of the season constrain the
# flight-curve smooth to return to zero outside the flight period.
USE_ANCHORS = True
ANCHOR_LENGTH = 7  # days of zeros on each side
ANCHOR_LAG = 7     # gap in days between the season edge and the anchor

# ─── FLIGHT CURVE (REGIONAL GAM) ─────────────────────────────────────────
# A site contributes to the flight curve only if it was walked often enough
# and the species was seen on enough of those walks.
MIN_VISITS = 3
MIN_OCCURRENCES = 2
# The year's curve is unavailable when the qualifying rows number this many
# or fewer.
MIN_SITES = 1

# Large schemes are subsampled to keep the GAM tractable; each retry draws
# a fresh sample.
SAMPLE_SIZE = 100
MAX_TRIALS = 3
SAMPLING_SEED = 42  # Random seed for reproducible site sampling

CURVE_FAMILY = "poisson"

# Cubic B-spline smooth over the day axis (rescaled to [0, 1] before fitting
# so the second-derivative penalty is independent of season length).
GAM_SPLINE_DF = 10
GAM_SPLINE_DEGREE = 3
GAM_PENALTY = 1.0
GAM_MAXITER = 200

# Relative emergence is reported to 5 decimals.
NM_PRECISION = 5

# ─── FALLBACK CURVE SEARCH ───────────────────────────────────────────────
# Nearest years first, earlier year before later year at equal distance.
FALLBACK_HORIZON = 5
FALLBACK_OFFSETS = tuple(
    sign * step
    for step in range(1, FALLBACK_HORIZON + 1)
    for sign in (-1, 1)
)

# ─── ABUNDANCE IMPUTATION (GLM) ──────────────────────────────────────────
# In-season days with a zero curve value get this floor so log(nm) stays
# finite in the offset.
NM_FLOOR = 0.000001

IMPUTE_FAMILY = "quasipoisson"
IMPUTE_BACKEND = "glm"  # "glm" or "speed"
GLM_MAXITER = 100

FAMILIES = ("poisson", "quasipoisson", "nb")
IMPUTE_BACKENDS = ("glm", "speed")

# ─── INPUT TABLES ────────────────────────────────────────────────────────
DATE_FORMAT = "%Y-%m-%d"
VISIT_COLUMNS = ["date", "site_id"]
COUNT_COLUMNS = ["date", "site_id", "species", "count"]

# ─── PARALLELISM ─────────────────────────────────────────────────────────
# Season years are independent; 1 keeps the loop in-process.
MAX_WORKERS = 1
FIT_TIMEOUT_SECONDS = None

# ─── OUTPUT ──────────────────────────────────────────────────────────────
OUTPUT_DIRS = {
    "csv": "csv",
    "diagnostics": "diagnostics",
}
PLOT_DPI = 150


def get_output_dirs(output_dir):
    """Return the csv/diagnostics directory paths under *output_dir*."""
    return {key: os.path.join(output_dir, sub) for key, sub in OUTPUT_DIRS.items()}
