"""
Tests for rbms/imputation.py: offset regression per season year, zero
sites, borrowed curves, skipped years and regression failures.
"""

import numpy as np
import pandas as pd
import pytest

from conftest import FailingBackend, FakeCurveBackend, make_monitoring_data
from rbms.alignment import attach_species_count, expand_sites
from rbms.errors import RegressionFailure
from rbms.flight_curve import flight_curve
from rbms.imputation import impute_counts


@pytest.fixture
def curve(site_counts, fake_curve_backend):
    return flight_curve(site_counts, backend=fake_curve_backend).curve


@pytest.fixture
def imputed(site_counts, curve):
    return impute_counts(site_counts, curve, family="poisson", backend="glm")


class TestImputeCounts:

    def test_columns_added(self, imputed, site_counts):
        for col in list(site_counts.columns) + ["trimmed_day", "nm", "fitted", "imputed_count"]:
            assert col in imputed.records.columns

    def test_row_count_preserved(self, imputed, site_counts):
        assert len(imputed.records) == len(site_counts)

    def test_observed_counts_kept(self, imputed):
        rec = imputed.records
        observed = rec[(rec["season_flag"] > 0) & rec["count"].notna()]
        np.testing.assert_array_equal(observed["imputed_count"], observed["count"])

    def test_missing_days_filled(self, imputed):
        rec = imputed.records
        missing = rec[(rec["season_flag"] > 0) & rec["count"].isna()]
        assert len(missing) > 0
        np.testing.assert_array_equal(missing["imputed_count"], missing["fitted"])
        assert missing["imputed_count"].notna().all()

    def test_zero_outside_season(self, imputed):
        rec = imputed.records
        assert (rec.loc[rec["season_flag"] == 0, "imputed_count"] == 0).all()

    def test_original_count_preserved(self, imputed, site_counts):
        merged = site_counts.merge(
            imputed.records[["date", "site_id", "count"]],
            on=["date", "site_id"], suffixes=("", "_after"),
        )
        pd.testing.assert_series_equal(
            merged["count"], merged["count_after"], check_names=False,
        )

    def test_site_totals_follow_abundance(self, imputed):
        rec = imputed.records[imputed.records["season_year"] == 2015]
        totals = rec.groupby("site_id")["imputed_count"].sum()
        assert totals["A"] > totals["B"] > totals["C"]

    def test_no_fallbacks_needed(self, imputed):
        assert imputed.fallbacks == {}
        assert imputed.skipped == []
        assert imputed.failures == []
        assert set(imputed.models) == {2015, 2016}

    def test_speed_backend_agrees(self, site_counts, curve, imputed):
        speed = impute_counts(site_counts, curve, family="poisson", backend="speed")
        np.testing.assert_allclose(
            speed.records["imputed_count"], imputed.records["imputed_count"], rtol=1e-4,
        )

    def test_quasipoisson_same_mean(self, site_counts, curve, imputed):
        quasi = impute_counts(site_counts, curve, family="quasipoisson", backend="glm")
        np.testing.assert_allclose(
            quasi.records["fitted"], imputed.records["fitted"], rtol=1e-4,
        )


class TestZeroSites:

    def test_never_seen_site_is_zero(self, season_days, curve):
        visits, counts = make_monitoring_data(zero_sites=("D",))
        data = attach_species_count(expand_sites(visits, season_days), counts, 1)
        result = impute_counts(data, curve, family="poisson")
        site_d = result.records[result.records["site_id"] == "D"]
        assert (site_d["fitted"] == 0).all()
        assert (site_d["imputed_count"] == 0).all()


class TestNmFloor:

    def test_zero_nm_in_season_floored(self, site_counts, curve):
        zeroed = curve.copy()
        in_season = zeroed.index[zeroed["season_flag"] > 0]
        zeroed.loc[in_season[:5], "nm"] = 0.0
        result = impute_counts(site_counts, zeroed, family="poisson")
        rec = result.records
        first_days = rec[rec["date"].isin(zeroed.loc[in_season[:5], "date"])]
        assert (first_days["nm"] == 1e-6).all()


class TestBorrowedCurves:

    def test_neighbour_year_used(self, four_year_counts, fake_curve_backend):
        curve = flight_curve(four_year_counts, backend=fake_curve_backend).curve
        curve.loc[curve["season_year"] == 2016, "nm"] = np.nan
        result = impute_counts(four_year_counts, curve, family="poisson")
        assert result.fallbacks == {2016: 2017}
        rec = result.records[result.records["season_year"] == 2016]
        assert rec.loc[rec["season_flag"] > 0, "imputed_count"].notna().all()

    def test_unresolved_year_skipped(self, site_counts, curve):
        empty = curve.copy()
        empty["nm"] = np.nan
        result = impute_counts(site_counts, empty, family="poisson")
        assert result.skipped == [2015, 2016]
        rec = result.records
        assert rec.loc[rec["season_flag"] > 0, "imputed_count"].isna().all()
        assert (rec.loc[rec["season_flag"] == 0, "imputed_count"] == 0).all()
        with pytest.raises(RegressionFailure):
            result.require(2015)


class TestRegressionFailure:

    def test_failure_recorded_and_run_continues(self, site_counts, curve):
        result = impute_counts(site_counts, curve, backend=FailingBackend())
        assert result.failures == [2015, 2016]
        rec = result.records
        in_season = rec[rec["season_flag"] > 0]
        assert in_season["fitted"].isna().all()
        assert in_season["imputed_count"].isna().all()
        assert (rec.loc[rec["season_flag"] == 0, "imputed_count"] == 0).all()

    def test_require_raises(self, site_counts, curve):
        result = impute_counts(site_counts, curve, backend=FailingBackend())
        with pytest.raises(RegressionFailure) as exc:
            result.require(2016)
        assert "singular design" in str(exc.value)

    def test_non_finite_fit_is_a_failure(self, site_counts, curve):
        result = impute_counts(site_counts, curve, backend=FakeCurveBackend(fitted_value=np.inf))
        assert result.failures == [2015, 2016]
        assert not result.models[2015].success
        rec = result.records
        in_season = rec[rec["season_flag"] > 0]
        assert in_season["imputed_count"].isna().all()
        assert not np.isinf(rec["fitted"]).any()
        assert (rec.loc[rec["season_flag"] == 0, "imputed_count"] == 0).all()

    def test_require_returns_records(self, imputed):
        assert len(imputed.require(2015)) == 3 * 365
