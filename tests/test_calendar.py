"""
Tests for rbms/daily_calendar.py.

The calendar is the time axis of every later table: a gap or a shifted
day_since silently misplaces anchors and flight-curve days.
"""

import numpy as np
import pandas as pd
import pytest

from rbms.daily_calendar import build_calendar, date_sequence
from rbms.errors import ConfigError


class TestDateSequence:

    def test_covers_whole_years(self):
        dates = date_sequence(2015, 2016)
        assert dates[0] == pd.Timestamp("2015-01-01")
        assert dates[-1] == pd.Timestamp("2016-12-31")
        assert len(dates) == 365 + 366

    def test_padding_years_dropped(self):
        dates = date_sequence(2015, 2015)
        assert set(dates.year) == {2015}

    def test_last_before_first_raises(self):
        with pytest.raises(ConfigError):
            date_sequence(2016, 2015)

    def test_last_year_defaults_to_current_year(self):
        dates = date_sequence(2020)
        assert dates[-1].year == pd.Timestamp.today().year


class TestBuildCalendar:

    def test_columns(self, calendar):
        assert list(calendar.columns) == [
            "date", "day_since", "year", "month", "day", "iso_week", "week_day",
        ]

    def test_day_since_continuous_from_one(self, calendar):
        assert calendar["day_since"].iloc[0] == 1
        assert (np.diff(calendar["day_since"]) == 1).all()
        assert calendar["day_since"].iloc[-1] == len(calendar)

    def test_dates_consecutive(self, calendar):
        steps = calendar["date"].diff().dropna()
        assert (steps == pd.Timedelta(days=1)).all()

    def test_integer_columns(self, calendar):
        for col in ("day_since", "year", "month", "day", "iso_week", "week_day"):
            assert calendar[col].dtype == np.int64, col

    def test_week_day_monday_start(self, calendar):
        # 2015-01-01 was a Thursday; 2015-01-05 a Monday
        row = calendar.set_index("date")
        assert row.loc["2015-01-01", "week_day"] == 4
        assert row.loc["2015-01-05", "week_day"] == 1
        assert row.loc["2015-01-04", "week_day"] == 7

    def test_week_day_sunday_start(self):
        cal = build_calendar(2015, 2015, week_start="sunday").set_index("date")
        assert cal.loc["2015-01-04", "week_day"] == 1
        assert cal.loc["2015-01-01", "week_day"] == 5
        assert cal.loc["2015-01-03", "week_day"] == 7

    def test_iso_week(self, calendar):
        row = calendar.set_index("date")
        assert row.loc["2015-01-01", "iso_week"] == 1
        # 2016-01-01 (Friday) belongs to ISO week 53 of 2015
        assert row.loc["2016-01-01", "iso_week"] == 53

    def test_leap_day_present(self, calendar):
        assert (calendar["date"] == pd.Timestamp("2016-02-29")).any()

    def test_invalid_range_raises(self):
        with pytest.raises(ConfigError):
            build_calendar(2020, 2019)
