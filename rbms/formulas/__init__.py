"""
Statistical model wrappers used by the abundance pipeline.

The flight curve and the abundance imputation hand a ``RegressionRequest``
to one of these backends and only ever look at the ``FitResult``.
"""

from rbms.formulas.regression import (
    FitResult,
    GamBackend,
    GlmBackend,
    NegativeBinomialBackend,
    PoissonRatioBackend,
    RegressionRequest,
    get_impute_backend,
)
