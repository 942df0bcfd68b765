"""
Regression backends for the flight curve and the abundance imputation.

Every backend takes a ``RegressionRequest`` and returns a ``FitResult``
carrying the predicted response (mean scale) for every row of the request,
including rows whose response is NaN (predict-only rows). Numerical
failures are reported through ``FitResult.success`` and never raised; a
fit that converges to non-finite predictions is returned as-is and left to
the caller to reject.

Site effects enter as one indicator column per site with no global
intercept, so a single-site design carries one constant column.

METHODOLOGY:
Flight curve: Poisson GAM of daily counts on a cubic regression smooth of
the day within the season plus a site factor (regional GAM).
Ref: Dennis, E.B. et al. (2013). Indexing butterfly abundance whilst
accounting for missing counts and variability in seasonal pattern.
Methods in Ecology and Evolution, 4, 637-645.

Abundance: GLM of counts on a site factor with the log of the normalised
flight curve as offset; the site coefficient exp(beta_s) is the site's
seasonal total. Ref: Schmucki, R. et al. (2016). A regionally informed
abundance index for supporting integrative analyses across butterfly
monitoring schemes. Journal of Applied Ecology, 53, 501-510.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.discrete.discrete_model import NegativeBinomial
from statsmodels.gam.api import BSplines, GLMGam
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from rbms import config
from rbms.errors import ConfigError
from rbms.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)

_FIT_ERRORS = (
    np.linalg.LinAlgError,
    ValueError,
    ZeroDivisionError,
    OverflowError,
    PerfectSeparationError,
)


@dataclass
class RegressionRequest:
    """Design handed to a regression backend.

    ``response`` is NaN on rows that are predicted but not fitted.
    ``smooth`` is the covariate of the smooth term (GAM only) and
    ``offset`` enters the linear predictor with a fixed coefficient of 1.
    """

    response: np.ndarray
    site: np.ndarray
    family: str
    smooth: Optional[np.ndarray] = None
    offset: Optional[np.ndarray] = None
    weights: Optional[np.ndarray] = None


@dataclass
class FitResult:
    """Outcome of one backend fit."""

    success: bool
    fitted: np.ndarray
    model: object = None
    message: str = ""


def _check_family(family, allowed):
    if family not in allowed:
        raise ConfigError(
            f"Unsupported family {family!r}, expected one of {', '.join(allowed)}"
        )


def _failed(n_rows, message):
    return FitResult(success=False, fitted=np.full(n_rows, np.nan), message=message)


def site_design(site, fit_rows):
    """One indicator column per site that has at least one fitted row.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        The (n_rows, n_sites) design and a boolean mask of the rows whose
        site is covered by a column.
    """
    codes, levels = pd.factorize(pd.Series(site), sort=True)
    design = np.zeros((len(codes), len(levels)))
    design[np.arange(len(codes)), codes] = 1.0
    keep = design[fit_rows].sum(axis=0) > 0
    design = design[:, keep]
    return design, design.sum(axis=1) > 0


def _not_converged(result):
    converged = getattr(result, "converged", None)
    if converged is None:
        converged = getattr(result, "mle_retvals", {}).get("converged", True)
    return not converged


class GamBackend:
    """Penalised B-spline GAM of the count on the day axis plus site effects."""

    families = ("poisson", "quasipoisson", "nb")

    def __init__(self, df=None, degree=None, penalty=None, maxiter=None):
        self.df = config.GAM_SPLINE_DF if df is None else df
        self.degree = config.GAM_SPLINE_DEGREE if degree is None else degree
        self.penalty = config.GAM_PENALTY if penalty is None else penalty
        self.maxiter = config.GAM_MAXITER if maxiter is None else maxiter

    def fit(self, request):
        _check_family(request.family, self.families)
        response = np.asarray(request.response, dtype=float)
        n_rows = len(response)
        if request.smooth is None:
            raise ConfigError("GamBackend needs a smooth covariate")

        fit_rows = ~np.isnan(response)
        if not fit_rows.any():
            return _failed(n_rows, "no observed rows")

        x = np.asarray(request.smooth, dtype=float)
        lo, hi = x[fit_rows].min(), x[fit_rows].max()
        if hi <= lo:
            return _failed(n_rows, "smooth covariate has a single value")
        # BSplines rejects values outside the knot range.
        scaled = ((np.clip(x, lo, hi) - lo) / (hi - lo))[:, None]

        design, covered = site_design(request.site, fit_rows)
        if request.family == "nb":
            family = sm.families.NegativeBinomial()
        else:
            family = sm.families.Poisson()
        scale = "X2" if request.family == "quasipoisson" else None
        extra = {}
        if request.weights is not None:
            extra["var_weights"] = np.asarray(request.weights, dtype=float)[fit_rows]

        try:
            smoother = BSplines(scaled[fit_rows], df=[self.df], degree=[self.degree])
            model = GLMGam(
                response[fit_rows],
                exog=design[fit_rows],
                smoother=smoother,
                alpha=[self.penalty],
                family=family,
                **extra,
            )
            result = model.fit(maxiter=self.maxiter, scale=scale)
            if _not_converged(result):
                return _failed(n_rows, "GAM did not converge")
            fitted = np.asarray(
                result.predict(exog=design, exog_smooth=scaled), dtype=float,
            )
        except _FIT_ERRORS as exc:
            return _failed(n_rows, f"GAM fit failed: {exc}")

        fitted = np.where(covered, fitted, np.nan)
        return FitResult(success=True, fitted=fitted, model=result)


class GlmBackend:
    """Poisson GLM with site effects and a fixed offset.

    ``quasipoisson`` keeps the Poisson mean model and estimates the
    dispersion from the Pearson chi-square.
    """

    families = ("poisson", "quasipoisson")

    def __init__(self, maxiter=None):
        self.maxiter = config.GLM_MAXITER if maxiter is None else maxiter

    def fit(self, request):
        _check_family(request.family, self.families)
        response = np.asarray(request.response, dtype=float)
        n_rows = len(response)
        fit_rows = ~np.isnan(response)
        if not fit_rows.any():
            return _failed(n_rows, "no observed rows")

        offset = _offset(request.offset, n_rows)
        design, covered = site_design(request.site, fit_rows)
        extra = {}
        if request.weights is not None:
            extra["var_weights"] = np.asarray(request.weights, dtype=float)[fit_rows]
        scale = "X2" if request.family == "quasipoisson" else None

        try:
            model = sm.GLM(
                response[fit_rows],
                design[fit_rows],
                family=sm.families.Poisson(),
                offset=offset[fit_rows],
                **extra,
            )
            result = model.fit(scale=scale, maxiter=self.maxiter)
            if _not_converged(result):
                return _failed(n_rows, "GLM did not converge")
            fitted = np.asarray(result.predict(design, offset=offset), dtype=float)
        except _FIT_ERRORS as exc:
            return _failed(n_rows, f"GLM fit failed: {exc}")

        fitted = np.where(covered, fitted, np.nan)
        return FitResult(success=True, fitted=fitted, model=result)


class NegativeBinomialBackend:
    """NB2 regression with site effects, a fixed offset and estimated dispersion."""

    families = ("nb",)

    def __init__(self, maxiter=None):
        self.maxiter = config.GLM_MAXITER if maxiter is None else maxiter

    def fit(self, request):
        _check_family(request.family, self.families)
        response = np.asarray(request.response, dtype=float)
        n_rows = len(response)
        fit_rows = ~np.isnan(response)
        if not fit_rows.any():
            return _failed(n_rows, "no observed rows")
        if request.weights is not None:
            log.debug("NegativeBinomialBackend ignores observation weights")

        offset = _offset(request.offset, n_rows)
        design, covered = site_design(request.site, fit_rows)

        try:
            model = NegativeBinomial(
                response[fit_rows],
                design[fit_rows],
                offset=offset[fit_rows],
                loglike_method="nb2",
            )
            result = model.fit(disp=0, maxiter=self.maxiter)
            if _not_converged(result):
                return _failed(n_rows, "negative binomial fit did not converge")
            # Last parameter is the dispersion alpha.
            beta = np.asarray(result.params, dtype=float)[: design.shape[1]]
            fitted = np.exp(design @ beta + offset)
        except _FIT_ERRORS as exc:
            return _failed(n_rows, f"negative binomial fit failed: {exc}")

        fitted = np.where(covered, fitted, np.nan)
        return FitResult(success=True, fitted=fitted, model=result)


class PoissonRatioBackend:
    """Closed-form Poisson fit of site effects with a fixed offset.

    With one indicator per site and the offset fixed, the maximum likelihood
    site effect is ``exp(beta_s) = sum(y_s) / sum(exp(offset_s))`` over the
    site's fitted rows, so no iterative solver is needed.
    """

    families = ("poisson", "quasipoisson")

    def fit(self, request):
        _check_family(request.family, self.families)
        response = np.asarray(request.response, dtype=float)
        n_rows = len(response)
        fit_rows = ~np.isnan(response)
        if not fit_rows.any():
            return _failed(n_rows, "no observed rows")

        exposure = np.exp(_offset(request.offset, n_rows))
        weights = (
            np.ones(n_rows) if request.weights is None
            else np.asarray(request.weights, dtype=float)
        )
        frame = pd.DataFrame({
            "site": np.asarray(request.site),
            "y": np.where(fit_rows, response * weights, 0.0),
            "exposure": np.where(fit_rows, exposure * weights, 0.0),
        })
        totals = frame.groupby("site").agg(y=("y", "sum"), exposure=("exposure", "sum"))
        totals = totals[totals["exposure"] > 0]
        if totals.empty:
            return _failed(n_rows, "offset sums to zero for every site")

        site_effect = totals["y"] / totals["exposure"]
        fitted = frame["site"].map(site_effect).to_numpy(dtype=float) * exposure
        return FitResult(success=True, fitted=fitted, model=site_effect)


def _offset(offset, n_rows):
    if offset is None:
        return np.zeros(n_rows)
    return np.asarray(offset, dtype=float)


def get_impute_backend(name=None, family=None):
    """Select the abundance backend for a backend name and family.

    The ``nb`` family always runs the negative binomial backend; the
    closed-form ``speed`` backend has no negative binomial form and falls
    back to it.
    """
    if name is None:
        name = config.IMPUTE_BACKEND
    if family is None:
        family = config.IMPUTE_FAMILY
    _check_family(family, config.FAMILIES)
    if name not in config.IMPUTE_BACKENDS:
        raise ConfigError(
            f"Unknown backend {name!r}, expected one of "
            f"{', '.join(config.IMPUTE_BACKENDS)}"
        )

    if family == "nb":
        if name == "speed":
            log.info("No closed-form negative binomial fit, using the NB2 regression")
        return NegativeBinomialBackend()
    if name == "speed":
        return PoissonRatioBackend()
    return GlmBackend()
