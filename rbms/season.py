"""
Monitoring-season labelling of the daily calendar.

Marks which days belong to the monitoring season, assigns each day to a
season year, flags incomplete season years and places zero-count anchor
days either side of each season.

A season that runs across the new year (e.g. November to February) is
labelled with the year in which it starts. The label switches at a month
chosen to centre the season within its labelled year, so that the anchors
on both sides still fall under the same label.
"""

import calendar as _calendar

import numpy as np
import pandas as pd

from rbms import config
from rbms.errors import ConfigError
from rbms.logging_config import get_pipeline_logger
from rbms.schemas import normalize_columns

log = get_pipeline_logger(__name__)


def default_end_day(end_month, reference_year=None):
    """Last day of *end_month* in a non-leap reference year."""
    if reference_year is None:
        reference_year = config.REFERENCE_YEAR
    return _calendar.monthrange(reference_year, end_month)[1]


def season_months(start_month, end_month):
    """Calendar months covered by the season, in season order."""
    if start_month <= end_month:
        return list(range(start_month, end_month + 1))
    return list(range(start_month, 13)) + list(range(1, end_month + 1))


def anchor_days(first_obs, last_obs, anchor_length=None, anchor_lag=None):
    """Day-since values of the anchors around one season.

    Anchors cover ``[first_obs - (length + lag), first_obs - lag - 1]`` before
    the season and ``[last_obs + lag + 1, last_obs + length + lag]`` after it.
    """
    if anchor_length is None:
        anchor_length = config.ANCHOR_LENGTH
    if anchor_lag is None:
        anchor_lag = config.ANCHOR_LAG

    before = np.arange(first_obs - (anchor_length + anchor_lag), first_obs - anchor_lag)
    after = np.arange(last_obs + anchor_lag + 1, last_obs + anchor_length + anchor_lag + 1)
    return np.concatenate([before, after]).astype(np.int64)


def _check_season_bounds(start_month, end_month, start_day, end_day):
    for name, month in (("start_month", start_month), ("end_month", end_month)):
        if not 1 <= month <= 12:
            raise ConfigError(f"{name} must be between 1 and 12, got {month}")
    for name, day in (("start_day", start_day), ("end_day", end_day)):
        if not 1 <= day <= 31:
            raise ConfigError(f"{name} must be between 1 and 31, got {day}")
    if start_month == end_month and start_day > end_day:
        raise ConfigError(
            f"Season start day {start_day} falls after end day {end_day} "
            f"within month {start_month}"
        )


def label_season(
    calendar,
    start_month=None,
    end_month=None,
    start_day=None,
    end_day=None,
    complete_season=None,
    anchor=None,
    anchor_length=None,
    anchor_lag=None,
):
    """Label the calendar with season years, season flags and anchors.

    Parameters
    ----------
    calendar : pd.DataFrame
        Output of ``build_calendar`` (needs ``date`` and ``day_since``).
    start_month, end_month : int, optional
        First and last month of the season. Default: config (April, September).
    start_day : int, optional
        Day of the start month the season opens. Default: 1.
    end_day : int, optional
        Day of the end month the season closes. Default: last day of the
        end month in config.REFERENCE_YEAR.
    complete_season : bool, optional
        Zero the season flag of season years missing their exact start or
        end day. Default: config.COMPLETE_SEASON.
    anchor : bool, optional
        Add zero-count anchors around each season. Default: config.USE_ANCHORS.
    anchor_length, anchor_lag : int, optional
        Anchor width and distance from the season edge, in days.

    Returns
    -------
    pd.DataFrame
        The calendar plus season_year, season_flag, season_complete, anchor
        and count (0.0 on anchor days, NaN elsewhere).
    """
    if start_month is None:
        start_month = config.SEASON_START_MONTH
    if end_month is None:
        end_month = config.SEASON_END_MONTH
    if start_day is None:
        start_day = config.SEASON_START_DAY
    if end_day is None:
        end_day = config.SEASON_END_DAY
    if end_day is None:
        end_day = default_end_day(end_month)
    if complete_season is None:
        complete_season = config.COMPLETE_SEASON
    if anchor is None:
        anchor = config.USE_ANCHORS
    if anchor_length is None:
        anchor_length = config.ANCHOR_LENGTH
    if anchor_lag is None:
        anchor_lag = config.ANCHOR_LAG

    _check_season_bounds(start_month, end_month, start_day, end_day)

    days = normalize_columns(calendar, ["date", "day_since"], "calendar")
    days = days.sort_values("day_since").reset_index(drop=True)
    dates = pd.to_datetime(days["date"])
    year = dates.dt.year.to_numpy(dtype=np.int64)
    month = dates.dt.month.to_numpy(dtype=np.int64)
    mday = dates.dt.day.to_numpy(dtype=np.int64)

    months = season_months(start_month, end_month)
    if start_month > end_month:
        switch_month = start_month - (12 - len(months)) // 2
        season_year = np.where(month >= switch_month, year, year - 1)
    else:
        season_year = year
    days["season_year"] = season_year.astype(np.int64)

    in_season = (
        np.isin(month, months)
        & ~((month == start_month) & (mday < start_day))
        & ~((month == end_month) & (mday > end_day))
    )

    boundary = (
        ((month == start_month) & (mday == start_day)).astype(np.int64)
        + ((month == end_month) & (mday == end_day)).astype(np.int64)
    )
    boundary_total = (
        pd.Series(boundary).groupby(days["season_year"]).transform("sum").to_numpy()
    )
    complete = boundary_total == 2
    if complete_season:
        in_season = in_season & complete

    # Dense 1..K index over contiguous in-season runs within each season year.
    flag = pd.Series(in_season.astype(np.int64))
    previous = flag.groupby(days["season_year"]).shift(1, fill_value=0)
    run_start = ((flag == 1) & (previous == 0)).astype(np.int64)
    run_index = run_start.groupby(days["season_year"]).cumsum()
    days["season_flag"] = np.where(flag == 1, run_index, 0).astype(np.int64)
    days["season_complete"] = complete.astype(bool)

    days["anchor"] = False
    days["count"] = np.nan

    if anchor:
        bounds = (
            days.loc[days["season_flag"] > 0]
            .groupby("season_year")["day_since"]
            .agg(first_obs="min", last_obs="max")
        )
        if len(bounds):
            anchored = np.concatenate([
                anchor_days(row.first_obs, row.last_obs, anchor_length, anchor_lag)
                for row in bounds.itertuples()
            ])
            is_anchor = days["day_since"].isin(anchored)
            days.loc[is_anchor, "anchor"] = True
            days.loc[is_anchor, "count"] = 0.0

    n_years = days["season_year"].nunique()
    n_complete = days.loc[days["season_complete"], "season_year"].nunique()
    log.info(
        "Season %02d-%02d to %02d-%02d: %d season years (%d complete), %d anchor days",
        start_month, start_day, end_month, end_day,
        n_years, n_complete, int(days["anchor"].sum()),
    )
    return days
