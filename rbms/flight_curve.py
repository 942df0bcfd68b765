"""
Regional flight curve estimation per season year.

For each season year the qualifying sites are pooled, a GAM of the daily
count on the day within the season is fitted (with a site effect), and the
predictions are normalised per site so that each site's curve sums to 1.
The mean over sites is the year's flight curve ``nm``: the expected share
of the season's total count falling on each day.

Years without a usable curve are recorded as unavailable rather than
raised; the abundance imputation then borrows the nearest usable year via
``resolve_year_curve``.
"""

import multiprocessing
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from rbms import config
from rbms.errors import CurveUnavailable
from rbms.formulas.regression import GamBackend, RegressionRequest
from rbms.logging_config import get_pipeline_logger, season_context

log = get_pipeline_logger(__name__)

CURVE_COLUMNS = [
    "species", "date", "day_since", "season_year", "season_flag",
    "trimmed_day", "nm",
]

FITTED = "fitted"
UNAVAILABLE = "unavailable"


@dataclass
class FlightCurveResult:
    """Flight curves of every processed season year.

    ``models`` maps season_year to the accepted FitResult (or the last
    failed one, or None when no fit was attempted); ``status`` maps it to
    "fitted" or "unavailable".
    """

    curve: pd.DataFrame
    models: dict = field(default_factory=dict)
    status: dict = field(default_factory=dict)

    @property
    def years_fitted(self):
        return sorted(y for y, s in self.status.items() if s == FITTED)

    @property
    def years_unavailable(self):
        return sorted(y for y, s in self.status.items() if s == UNAVAILABLE)

    def require(self, season_year):
        """Return the year's curve, raising CurveUnavailable if it has none."""
        status = self.status.get(season_year)
        if status != FITTED:
            reason = "not processed" if status is None else status
            raise CurveUnavailable(season_year, reason)
        return self.curve[self.curve["season_year"] == season_year]


def add_trimmed_day(data):
    """Day within the season year, 1 on the year's first calendar day."""
    out = data.copy()
    out["trimmed_day"] = (out["day_since"] - out["day_since"].min() + 1).astype(np.int64)
    return out


def qualify_sites(year_data, min_visits=None, min_occurrences=None):
    """Keep the sites with enough visits and enough positive counts.

    Anchor days are not counted as visits or occurrences.
    """
    if min_visits is None:
        min_visits = config.MIN_VISITS
    if min_occurrences is None:
        min_occurrences = config.MIN_OCCURRENCES

    data = add_trimmed_day(year_data)
    observed = data[~data["anchor"]]
    per_site = observed.groupby("site_id").agg(
        n_visits=("count", "count"),
        n_occurrences=("count", lambda s: int((s > 0).sum())),
    )
    keep = per_site.index[
        (per_site["n_visits"] >= min_visits)
        & (per_site["n_occurrences"] >= min_occurrences)
    ]
    return data[data["site_id"].isin(keep)]


def species_of(data):
    return data["species"].iloc[0] if "species" in data.columns else None


def _empty_curve(year_data):
    days = add_trimmed_day(year_data).drop_duplicates("day_since").sort_values("day_since")
    curve = days[["date", "day_since", "season_year", "season_flag", "trimmed_day"]].copy()
    curve["nm"] = np.nan
    return curve.reset_index(drop=True)


def attempt_fit(data, trial, family=None, sample_size=None, backend=None, seed=None):
    """Run one fitting attempt on a (possibly sampled) set of sites.

    The site sample depends only on *seed*, the season year and *trial*, so
    an attempt can be repeated exactly.

    Returns
    -------
    tuple[pd.DataFrame, FitResult]
        The rows used and the backend's result.
    """
    if family is None:
        family = config.CURVE_FAMILY
    if sample_size is None:
        sample_size = config.SAMPLE_SIZE
    if backend is None:
        backend = GamBackend()
    if seed is None:
        seed = config.SAMPLING_SEED

    sites = np.sort(data["site_id"].unique())
    if len(sites) > sample_size:
        season_year = int(data["season_year"].iloc[0])
        rng = np.random.default_rng((seed, season_year, trial))
        sites = rng.choice(sites, size=sample_size, replace=False)
        data = data[data["site_id"].isin(sites)]

    request = RegressionRequest(
        response=data["count"].to_numpy(dtype=float),
        site=data["site_id"].to_numpy(),
        family=family,
        smooth=data["trimmed_day"].to_numpy(dtype=float),
    )
    return data, backend.fit(request)


def normalize_curve(sample, fitted, precision=None):
    """Turn per-site predictions into the year's relative flight curve.

    Returns None when a prediction (or a site total) is not finite.
    """
    if precision is None:
        precision = config.NM_PRECISION

    rows = sample[["date", "day_since", "season_year", "season_flag",
                   "trimmed_day", "site_id"]].copy()
    rows["fitted"] = np.where(rows["season_flag"] == 0, 0.0, fitted)
    if not np.isfinite(rows["fitted"]).all():
        return None

    site_total = rows.groupby("site_id")["fitted"].transform("sum")
    rows["nm"] = (rows["fitted"] / site_total).round(precision)

    curve = rows.groupby("day_since", as_index=False).agg(
        date=("date", "first"),
        season_year=("season_year", "first"),
        season_flag=("season_flag", "first"),
        trimmed_day=("trimmed_day", "first"),
        nm=("nm", "mean"),
    )
    curve["nm"] = curve["nm"].round(precision)
    if not np.isfinite(curve["nm"]).all():
        return None
    return curve[["date", "day_since", "season_year", "season_flag", "trimmed_day", "nm"]]


def fit_year_curve(
    year_data,
    min_visits=None,
    min_occurrences=None,
    min_sites=None,
    max_trials=None,
    sample_size=None,
    family=None,
    backend=None,
    seed=None,
):
    """Estimate one season year's flight curve.

    Returns
    -------
    tuple[pd.DataFrame, FitResult | None, str]
        The curve (NaN nm when unavailable), the fit and the status.
    """
    if min_sites is None:
        min_sites = config.MIN_SITES
    if max_trials is None:
        max_trials = config.MAX_TRIALS

    season_year = int(year_data["season_year"].iloc[0])
    context = season_context(species_of(year_data), season_year)
    data = qualify_sites(year_data, min_visits, min_occurrences)
    if len(data) <= min_sites:
        log.warning(
            "Season year %d: %d qualifying row(s) (min_sites=%d), no flight curve",
            season_year, len(data), min_sites, extra=context,
        )
        return _empty_curve(year_data), None, UNAVAILABLE

    result = None
    for trial in range(1, max_trials + 1):
        sample, result = attempt_fit(data, trial, family, sample_size, backend, seed)
        if result.success:
            break
        log.info("Season year %d: trial %d failed (%s)",
                 season_year, trial, result.message, extra=context)
    else:
        log.warning(
            "Season year %d: no flight curve after %d trial(s)",
            season_year, max_trials, extra=context,
        )
        return _empty_curve(year_data), result, UNAVAILABLE

    curve = normalize_curve(sample, result.fitted)
    if curve is None:
        log.warning("Season year %d: non-finite flight curve predictions",
                    season_year, extra=context)
        return _empty_curve(year_data), result, UNAVAILABLE

    log.info(
        "Season year %d: flight curve fitted on %d site(s), trial %d",
        season_year, sample["site_id"].nunique(), trial, extra=context,
    )
    return curve, result, FITTED


def _fit_years_in_pool(groups, params, max_workers, timeout):
    """Fit each season year in a worker process.

    Each year's result is awaited for at most *timeout* seconds. Leaving the
    pool terminates its workers, so a year that timed out stops running.
    """
    log.info("Fitting %d season years on %d workers", len(groups), max_workers)
    outcomes = {}
    with multiprocessing.Pool(processes=max_workers) as pool:
        pending = {
            season_year: pool.apply_async(fit_year_curve, (year_data,), params)
            for season_year, year_data in groups.items()
        }
        for season_year, async_result in pending.items():
            try:
                outcomes[season_year] = async_result.get(timeout=timeout)
            except multiprocessing.TimeoutError:
                log.error(
                    "Season year %d: flight curve timed out after %ss",
                    season_year, timeout,
                    extra=season_context(species_of(groups[season_year]), season_year),
                )
                outcomes[season_year] = (
                    _empty_curve(groups[season_year]), None, UNAVAILABLE,
                )
    return outcomes


def flight_curve(
    site_counts,
    min_visits=None,
    min_occurrences=None,
    min_sites=None,
    max_trials=None,
    sample_size=None,
    family=None,
    complete_season=None,
    years=None,
    backend=None,
    seed=None,
    max_workers=None,
    timeout=None,
):
    """Estimate the flight curve of every season year in *site_counts*.

    Parameters
    ----------
    site_counts : pd.DataFrame
        Output of ``attach_species_count``.
    min_visits, min_occurrences, min_sites : int, optional
        Site qualification thresholds. Default: config.
    max_trials, sample_size : int, optional
        Retry cap and per-trial site sample size. Default: config.
    family : str, optional
        GAM family. Default: config.CURVE_FAMILY.
    complete_season : bool, optional
        Only use complete season years. Default: config.COMPLETE_SEASON.
    years : iterable of int, optional
        Restrict to these season years.
    backend : object, optional
        Regression backend with a ``fit(request)`` method. Default: GamBackend.
    seed : int, optional
        Base seed of the site sampling. Default: config.SAMPLING_SEED.
    max_workers : int, optional
        Season years run in a process pool when > 1. Default: config.MAX_WORKERS.
    timeout : float, optional
        Seconds to wait for each year in the pool; a year that times out is
        unavailable. Default: config.FIT_TIMEOUT_SECONDS.

    Returns
    -------
    FlightCurveResult
    """
    if complete_season is None:
        complete_season = config.COMPLETE_SEASON
    if max_workers is None:
        max_workers = config.MAX_WORKERS
    if timeout is None:
        timeout = config.FIT_TIMEOUT_SECONDS

    data = site_counts
    if complete_season:
        data = data[data["season_complete"]]
    if years is not None:
        data = data[data["season_year"].isin(list(years))]
    if data.empty:
        log.warning("No season years to fit a flight curve on")
        return FlightCurveResult(curve=pd.DataFrame(columns=CURVE_COLUMNS))

    species = species_of(data)
    groups = {int(y): g for y, g in data.groupby("season_year")}
    params = dict(
        min_visits=min_visits, min_occurrences=min_occurrences,
        min_sites=min_sites, max_trials=max_trials, sample_size=sample_size,
        family=family, backend=backend, seed=seed,
    )

    if max_workers == 1 or len(groups) == 1:
        outcomes = {
            season_year: fit_year_curve(year_data, **params)
            for season_year, year_data in groups.items()
        }
    else:
        outcomes = _fit_years_in_pool(groups, params, max_workers, timeout)

    curves, models, status = [], {}, {}
    for season_year in sorted(outcomes):
        curve, fit, year_status = outcomes[season_year]
        curves.append(curve)
        models[season_year] = fit
        status[season_year] = year_status

    curve = pd.concat(curves, ignore_index=True)
    curve.insert(0, "species", species)
    log.info(
        "Flight curves: %d fitted, %d unavailable",
        sum(s == FITTED for s in status.values()),
        sum(s == UNAVAILABLE for s in status.values()),
    )
    return FlightCurveResult(curve=curve[CURVE_COLUMNS], models=models, status=status)


def fallback_candidates(season_year, available_years, offsets=None):
    """Season years to borrow a curve from, nearest first.

    A candidate must lie strictly inside the range of *available_years*.
    """
    if offsets is None:
        offsets = config.FALLBACK_OFFSETS
    years = sorted(set(int(y) for y in available_years))
    if not years:
        return []
    lo, hi = years[0], years[-1]
    return [season_year + z for z in offsets if lo < season_year + z < hi]


def _usable(year_curve):
    return len(year_curve) > 0 and not year_curve["nm"].isna().any()


def resolve_year_curve(curve, season_year):
    """Find the flight curve to use for *season_year*.

    Returns
    -------
    tuple[int, pd.DataFrame] | None
        The source season year and its (trimmed_day, nm) table, or None
        when neither the year nor any candidate has a complete curve.
    """
    context = season_context(species_of(curve), season_year)
    own = curve[curve["season_year"] == season_year]
    if _usable(own):
        return season_year, own[["trimmed_day", "nm"]].reset_index(drop=True)

    for candidate in fallback_candidates(season_year, curve["season_year"].unique()):
        borrowed = curve[curve["season_year"] == candidate]
        if _usable(borrowed):
            log.warning(
                "Season year %d: no flight curve, using the curve of %d",
                season_year, candidate, extra=context,
            )
            return candidate, borrowed[["trimmed_day", "nm"]].reset_index(drop=True)

    log.warning(
        "Season year %d: no flight curve within %d years",
        season_year, config.FALLBACK_HORIZON, extra=context,
    )
    return None
