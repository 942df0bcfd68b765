"""
Imputation of missing daily counts from the flight curve.

Within each season year, a GLM of the observed counts on a site effect
with ``log(nm)`` as offset scales the flight curve to each site's seasonal
total. Days not walked in the season get the fitted value; walked days keep
the observed count; days outside the season contribute zero.

Sites where the species was never seen in the season are not fitted: their
expected count is 0 on every day.
"""

from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from rbms import config
from rbms.errors import RegressionFailure
from rbms.flight_curve import species_of, add_trimmed_day, resolve_year_curve
from rbms.formulas.regression import FitResult, RegressionRequest, get_impute_backend
from rbms.logging_config import get_pipeline_logger, season_context

log = get_pipeline_logger(__name__)


@dataclass
class ImputationResult:
    """Imputed site x day records plus per-year provenance.

    ``fallbacks`` maps season_year to the year whose curve was borrowed,
    ``skipped`` lists years without any usable curve and ``failures`` years
    whose regression failed.
    """

    records: pd.DataFrame
    models: dict = field(default_factory=dict)
    fallbacks: dict = field(default_factory=dict)
    skipped: list = field(default_factory=list)
    failures: list = field(default_factory=list)

    def require(self, season_year):
        """Return the year's records, raising RegressionFailure if unusable."""
        if season_year in self.skipped:
            raise RegressionFailure(season_year, "no flight curve available")
        if season_year in self.failures:
            raise RegressionFailure(season_year, self.models[season_year].message)
        year_records = self.records[self.records["season_year"] == season_year]
        if year_records.empty:
            raise RegressionFailure(season_year, "not processed")
        return year_records


def _attach_curve(year_data, curve, season_year):
    """Merge the year's nm values, borrowing a neighbour's curve when needed.

    Returns the merged rows and the source year (None when unresolved).
    """
    merged = year_data.merge(curve[["date", "nm"]], on="date", how="left")
    if not merged["nm"].isna().any():
        return merged, season_year

    resolved = resolve_year_curve(curve, season_year)
    if resolved is None:
        return merged, None
    source_year, borrowed = resolved
    merged = year_data.merge(borrowed, on="trimmed_day", how="left")
    return merged, source_year


def _impute_year(year_data, curve, season_year, family, backend):
    year_data = add_trimmed_day(year_data)
    context = season_context(species_of(year_data), season_year)
    merged, source_year = _attach_curve(year_data, curve, season_year)

    in_season = (merged["season_flag"] > 0).to_numpy()
    count = merged["count"].to_numpy(dtype=float)
    fitted = np.where(in_season, np.nan, 0.0)

    if source_year is None:
        merged["fitted"] = fitted
        merged["imputed_count"] = fitted
        return merged, source_year, None

    nm = merged["nm"].to_numpy(dtype=float)
    nm = np.where(in_season & (nm == 0), config.NM_FLOOR, nm)
    merged["nm"] = nm

    working = np.where(in_season, count, np.nan)
    site_total = (
        pd.Series(working).groupby(merged["site_id"].to_numpy()).transform("sum").to_numpy()
    )
    zero_site = site_total == 0
    fitted[in_season & zero_site] = 0.0

    fit_rows = in_season & ~zero_site
    fit = None
    if fit_rows.any():
        offset = np.log(nm[fit_rows])
        response = np.where(np.isfinite(offset), working[fit_rows], np.nan)
        fit = backend.fit(RegressionRequest(
            response=response,
            site=merged.loc[fit_rows, "site_id"].to_numpy(),
            family=family,
            offset=offset,
        ))
        if fit.success and not np.isfinite(fit.fitted[np.isfinite(offset)]).all():
            fit = FitResult(
                success=False, fitted=fit.fitted, model=fit.model,
                message="non-finite fitted values",
            )
        if fit.success:
            fitted[fit_rows] = fit.fitted
        else:
            log.error(
                "Season year %d: abundance regression failed (%s)",
                season_year, fit.message, extra=context,
            )

    imputed = np.where(in_season, np.where(np.isnan(count), fitted, count), 0.0)
    if fit is not None and not fit.success:
        imputed[fit_rows] = np.nan
    merged["fitted"] = fitted
    merged["imputed_count"] = imputed
    log.info(
        "Season year %d: %d site(s) fitted, %d site(s) with zero counts",
        season_year,
        merged.loc[fit_rows, "site_id"].nunique(),
        merged.loc[in_season & zero_site, "site_id"].nunique(),
        extra=context,
    )
    return merged, source_year, fit


def impute_counts(
    site_counts,
    curve,
    family=None,
    backend=None,
    complete_season=None,
    years=None,
):
    """Impute the daily counts of every site and season year.

    Parameters
    ----------
    site_counts : pd.DataFrame
        Output of ``attach_species_count``.
    curve : pd.DataFrame
        ``FlightCurveResult.curve``.
    family : str, optional
        Default: config.IMPUTE_FAMILY.
    backend : str or object, optional
        Backend name ("glm", "speed") or an object with ``fit(request)``.
        Default: config.IMPUTE_BACKEND.
    complete_season : bool, optional
        Only impute complete season years. Default: config.COMPLETE_SEASON.
    years : iterable of int, optional
        Restrict to these season years.

    Returns
    -------
    ImputationResult
    """
    if family is None:
        family = config.IMPUTE_FAMILY
    if complete_season is None:
        complete_season = config.COMPLETE_SEASON
    if backend is None or isinstance(backend, str):
        backend = get_impute_backend(backend, family)

    data = site_counts
    if complete_season:
        data = data[data["season_complete"]]
    if years is not None:
        data = data[data["season_year"].isin(list(years))]

    result = ImputationResult(records=pd.DataFrame())
    frames = []
    for season_year, year_data in data.groupby("season_year"):
        season_year = int(season_year)
        merged, source_year, fit = _impute_year(
            year_data, curve, season_year, family, backend,
        )
        frames.append(merged)
        if source_year is None:
            log.warning("Season year %d skipped: no flight curve to impute from",
                        season_year,
                        extra=season_context(species_of(year_data), season_year))
            result.skipped.append(season_year)
            continue
        if source_year != season_year:
            result.fallbacks[season_year] = source_year
        result.models[season_year] = fit
        if fit is not None and not fit.success:
            result.failures.append(season_year)

    if frames:
        result.records = pd.concat(frames, ignore_index=True)
    log.info(
        "Imputed %d season year(s): %d borrowed curve(s), %d skipped, %d failed",
        len(frames), len(result.fallbacks), len(result.skipped), len(result.failures),
    )
    return result
