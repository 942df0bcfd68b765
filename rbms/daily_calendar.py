"""
Daily calendar for the monitoring time series.

The calendar is the spine every later table is joined to: one row per day,
with ``day_since`` as the continuous integer time axis used by the
flight-curve smooth and by anchor placement.
"""

from datetime import date

import numpy as np
import pandas as pd

from rbms import config
from rbms.errors import ConfigError
from rbms.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def date_sequence(first_year, last_year=None):
    """Daily dates from 1 January of *first_year* to 31 December of *last_year*.

    The sequence is generated with one buffer year on each side and the
    buffer years are then dropped, so the result always starts on 1 January
    and ends on 31 December.

    Raises
    ------
    ConfigError
        If ``last_year < first_year``.
    """
    if last_year is None:
        last_year = date.today().year
    first_year = int(first_year)
    last_year = int(last_year)
    if last_year < first_year:
        raise ConfigError(
            f"last_year ({last_year}) must not be earlier than first_year ({first_year})"
        )

    padded = pd.date_range(
        start=f"{first_year - 1}-01-01",
        end=f"{last_year + 1}-12-31",
        freq="D",
    )
    keep = ~padded.year.isin([first_year - 1, last_year + 1])
    return padded[keep]


def build_calendar(first_year, last_year=None, week_start=None):
    """Build the day/week/month/year calendar table.

    Parameters
    ----------
    first_year : int
        First calendar year of the series.
    last_year : int, optional
        Last calendar year. Default: current year.
    week_start : str, optional
        "monday" numbers week days Monday=1..Sunday=7; any other value
        numbers them Sunday=1..Saturday=7. Default: config.WEEK_START.

    Returns
    -------
    pd.DataFrame
        Columns: date, day_since, year, month, day, iso_week, week_day.
    """
    if week_start is None:
        week_start = config.WEEK_START

    dates = date_sequence(first_year, last_year)

    # pandas dayofweek: Monday=0 .. Sunday=6
    dow = np.asarray(dates.dayofweek, dtype=np.int64)
    if str(week_start).lower() == "monday":
        week_day = dow + 1
    else:
        week_day = (dow + 1) % 7 + 1

    calendar = pd.DataFrame({
        "date": dates,
        "day_since": np.arange(1, len(dates) + 1, dtype=np.int64),
        "year": np.asarray(dates.year, dtype=np.int64),
        "month": np.asarray(dates.month, dtype=np.int64),
        "day": np.asarray(dates.day, dtype=np.int64),
        "iso_week": np.asarray(dates.isocalendar().week, dtype=np.int64),
        "week_day": week_day,
    })

    log.debug(
        "Calendar built: %d days (%s to %s)",
        len(calendar), calendar["date"].iloc[0].date(), calendar["date"].iloc[-1].date(),
    )
    return calendar
