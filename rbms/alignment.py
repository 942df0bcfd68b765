"""
Visit and count alignment onto the season calendar.

Builds the site x day table: every (season year, site) pair with at least
one in-season visit gets a row for every day of that season year. In-season
visited days carry a zero count until the species counts are overlaid;
anchor days keep their zero; every other day stays null.
"""

import numpy as np
import pandas as pd

from rbms import config
from rbms.errors import UnknownSpeciesError
from rbms.logging_config import get_pipeline_logger
from rbms.schemas import normalize_columns

log = get_pipeline_logger(__name__)


def _parse_dates(values, date_format=None):
    if pd.api.types.is_datetime64_any_dtype(values):
        return pd.to_datetime(values).dt.normalize()
    if date_format is None:
        date_format = config.DATE_FORMAT
    return pd.to_datetime(values, format=date_format)


def _prepare(df, required, table_name, date_format):
    # Tables from validate_visits/validate_counts are already case-folded.
    if set(required).issubset(df.columns):
        out = df.copy()
    else:
        out = normalize_columns(df, required, table_name)
    out["date"] = _parse_dates(out["date"], date_format)
    return out


def align_visits(visits, season_days, date_format=None):
    """Attach the season year to each visit.

    Visits on dates outside the calendar are dropped (inner join).
    """
    visits = _prepare(visits, config.VISIT_COLUMNS, "visits", date_format)
    aligned = visits.merge(
        season_days[["date", "season_year"]], on="date", how="inner",
    )
    dropped = len(visits) - len(aligned)
    if dropped:
        log.info("Dropped %d visit(s) outside the calendar range", dropped)
    return aligned


def expand_sites(visits, season_days, date_format=None):
    """Build the site x day table for every season year a site was visited.

    Parameters
    ----------
    visits : pd.DataFrame
        Columns date, site_id (case-insensitive).
    season_days : pd.DataFrame
        Output of ``label_season``.
    date_format : str, optional
        strptime format of string dates. Default: config.DATE_FORMAT.

    Returns
    -------
    pd.DataFrame
        SeasonDay columns plus site_id, sorted by season_year, site_id and
        day_since. count is 0.0 on in-season visited days and on anchor
        days, NaN otherwise.
    """
    visits = _prepare(visits, config.VISIT_COLUMNS, "visits", date_format)
    visits = visits[["date", "site_id"]].drop_duplicates()

    first_year = season_days["date"].dt.year.min()
    last_year = season_days["date"].dt.year.max()

    joined = visits.merge(
        season_days[["date", "season_year", "season_flag"]], on="date", how="inner",
    )
    in_season = joined[
        (joined["season_flag"] > 0)
        & joined["date"].dt.year.between(first_year, last_year)
    ]
    site_years = in_season[["season_year", "site_id"]].drop_duplicates()

    expanded = season_days.merge(site_years, on="season_year", how="inner")
    # Only in-season walks are encoded; other days stay null unless anchored.
    expanded = expanded.merge(
        in_season[["date", "site_id"]].assign(_visited=True),
        on=["date", "site_id"], how="left",
    )
    visited = expanded["_visited"].eq(True).to_numpy()
    expanded["count"] = np.where(
        visited | expanded["anchor"].to_numpy(), 0.0, np.nan,
    )
    expanded = (
        expanded.drop(columns="_visited")
        .sort_values(["season_year", "site_id", "day_since"])
        .reset_index(drop=True)
    )

    log.info(
        "Expanded %d site-season pairs over %d season years (%d rows)",
        len(site_years), site_years["season_year"].nunique(), len(expanded),
    )
    return expanded


def attach_species_count(site_days, counts, species, date_format=None):
    """Overlay one species' counts on the site x day table.

    The species is matched on its string form, so ``2`` and ``"2"`` select
    the same rows. Duplicate (date, site_id) records keep the last one.
    Records on days outside the season are ignored.

    Raises
    ------
    UnknownSpeciesError
        If the species has no rows in *counts*.
    """
    counts = _prepare(counts, config.COUNT_COLUMNS, "counts", date_format)
    species_rows = counts[counts["species"].astype(str) == str(species)]
    if species_rows.empty:
        raise UnknownSpeciesError(species)

    n_rows = len(species_rows)
    species_rows = species_rows.drop_duplicates(["date", "site_id"], keep="last")
    if len(species_rows) < n_rows:
        log.warning(
            "Species %s: %d duplicate (date, site_id) count record(s), keeping the last",
            species, n_rows - len(species_rows),
        )

    observed = species_rows[["date", "site_id", "count"]].rename(
        columns={"count": "_observed"}
    )
    out = site_days.merge(observed, on=["date", "site_id"], how="left")
    matched = out["_observed"].notna()
    has_count = matched & (out["season_flag"] > 0)
    if (matched & ~has_count).any():
        log.info(
            "Species %s: ignored %d count record(s) outside the season",
            species, int((matched & ~has_count).sum()),
        )
    out.loc[has_count, "count"] = out.loc[has_count, "_observed"].astype(float)
    out = out.drop(columns="_observed")
    out["species"] = species_rows["species"].iloc[0]

    log.info(
        "Species %s: %d count record(s) matched onto %d site-day rows",
        species, int(has_count.sum()), len(out),
    )
    return out
