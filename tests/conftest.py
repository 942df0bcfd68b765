"""
Shared fixtures for the abundance pipeline tests.

Provides a labelled season calendar, synthetic visit and count tables drawn
from a known Gaussian flight curve, and deterministic fake regression
backends so each test module can focus on pipeline logic against known
inputs.
"""

import os
import tempfile
import time

# Keep the rotating pipeline.log out of the working tree.
os.environ.setdefault("RBMS_LOG_DIR", tempfile.mkdtemp(prefix="rbms_logs_"))

import numpy as np
import pandas as pd
import pytest

from rbms.formulas.regression import FitResult


# ---------------------------------------------------------------------------
# Synthetic monitoring scheme
# ---------------------------------------------------------------------------
# Flight period peaks mid-June (day 170 of the year), sd 20 days.
PEAK_DAY = 170
PEAK_SD = 20.0
SITE_SCALE = {"A": 40.0, "B": 20.0, "C": 10.0}


def gaussian_curve(day, peak=PEAK_DAY, sd=PEAK_SD):
    return np.exp(-0.5 * ((np.asarray(day, dtype=float) - peak) / sd) ** 2)


def make_monitoring_data(years=(2015, 2016), site_scale=None, species=1,
                         zero_sites=()):
    """Weekly in-season walks at each site and the counts they produced.

    Each site is walked every 7 days from 1 April to 30 September, site i
    starting i days later. Counts follow ``scale * gaussian_curve(doy)``
    rounded; zero counts are not written to the count table. Sites in
    *zero_sites* are walked but never record the species.
    """
    if site_scale is None:
        site_scale = SITE_SCALE
    sites = list(site_scale) + list(zero_sites)

    visit_rows, count_rows = [], []
    for year in years:
        for i, site in enumerate(sites):
            dates = pd.date_range(f"{year}-04-01", f"{year}-09-30", freq="D")[i::7]
            for d in dates:
                visit_rows.append({"date": d.strftime("%Y-%m-%d"), "site_id": site})
                if site in zero_sites:
                    continue
                n = int(round(site_scale[site] * gaussian_curve(d.dayofyear)))
                if n > 0:
                    count_rows.append({
                        "date": d.strftime("%Y-%m-%d"),
                        "site_id": site,
                        "species": species,
                        "count": n,
                    })
    return pd.DataFrame(visit_rows), pd.DataFrame(count_rows)


@pytest.fixture
def calendar():
    from rbms.daily_calendar import build_calendar
    return build_calendar(2015, 2016)


@pytest.fixture
def season_days(calendar):
    from rbms.season import label_season
    return label_season(calendar)


@pytest.fixture
def monitoring_data():
    return make_monitoring_data()


@pytest.fixture
def site_counts(season_days, monitoring_data):
    """Site x day table of species 1 over 2015-2016."""
    from rbms.alignment import attach_species_count, expand_sites

    visits, counts = monitoring_data
    site_days = expand_sites(visits, season_days)
    return attach_species_count(site_days, counts, 1)


@pytest.fixture
def four_year_counts():
    """Site x day table of species 1 over 2015-2018."""
    from rbms.alignment import attach_species_count, expand_sites
    from rbms.daily_calendar import build_calendar
    from rbms.season import label_season

    season = label_season(build_calendar(2015, 2018))
    visits, counts = make_monitoring_data(years=(2015, 2016, 2017, 2018))
    return attach_species_count(expand_sites(visits, season), counts, 1)


# ---------------------------------------------------------------------------
# Fake regression backends
# ---------------------------------------------------------------------------

class FakeCurveBackend:
    """Returns the true Gaussian curve over the smooth covariate.

    The first *fail_trials* calls report failure. Every call records the
    sites it was given.
    """

    def __init__(self, fail_trials=0, fitted_value=None):
        self.fail_trials = fail_trials
        self.fitted_value = fitted_value
        self.calls = 0
        self.sites_seen = []

    def fit(self, request):
        self.calls += 1
        self.sites_seen.append(sorted(set(request.site)))
        n = len(request.response)
        if self.calls <= self.fail_trials:
            return FitResult(success=False, fitted=np.full(n, np.nan),
                             message="forced failure")
        if self.fitted_value is not None:
            return FitResult(success=True, fitted=np.full(n, self.fitted_value))
        return FitResult(success=True, fitted=gaussian_curve(request.smooth) + 1e-4)


class FailingBackend:
    """Always reports a failed fit."""

    def fit(self, request):
        return FitResult(success=False, fitted=np.full(len(request.response), np.nan),
                         message="singular design")


class SlowBackend:
    """Sleeps before answering like FakeCurveBackend; for pool timeouts."""

    def __init__(self, seconds):
        self.seconds = seconds

    def fit(self, request):
        time.sleep(self.seconds)
        return FakeCurveBackend().fit(request)


@pytest.fixture
def fake_curve_backend():
    return FakeCurveBackend()


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after test."""
    with tempfile.TemporaryDirectory(prefix="rbms_test_") as d:
        yield d
