"""
Tests for Pandera schema validation gates and pipeline error handling.

Verifies that:
- Schemas accept the tables the pipeline stages actually produce
- Schemas reject invalid data (missing columns, wrong types, out-of-range)
- Input tables are case-folded and missing columns reported together
- validate_schema() returns warnings in lenient mode and raises in strict mode
"""

import logging

import numpy as np
import pandas as pd
import pytest

from rbms.errors import ConfigError
from rbms.schemas import (
    FlightCurveSchema,
    SeasonalIndexSchema,
    SeasonDaySchema,
    SiteSeasonSchema,
    normalize_columns,
    validate_counts,
    validate_schema,
    validate_visits,
)


# ── Stage outputs ───────────────────────────────────────────────────────


class TestStageOutputsConform:

    def test_season_days(self, season_days):
        SeasonDaySchema.validate(season_days)

    def test_site_days(self, site_counts):
        SiteSeasonSchema.validate(site_counts)

    def test_flight_curve(self, site_counts, fake_curve_backend):
        from rbms.flight_curve import flight_curve

        FlightCurveSchema.validate(flight_curve(site_counts, backend=fake_curve_backend).curve)

    def test_unavailable_curve(self, site_counts, fake_curve_backend):
        from rbms.flight_curve import flight_curve

        curve = flight_curve(site_counts, min_visits=1000, backend=fake_curve_backend).curve
        FlightCurveSchema.validate(curve)


# ── Schema checks ───────────────────────────────────────────────────────


class TestSeasonDaySchema:

    def test_negative_flag_fails(self, season_days):
        df = season_days.copy()
        df.loc[0, "season_flag"] = -1
        with pytest.raises(Exception):
            SeasonDaySchema.validate(df)

    def test_missing_column_fails(self, season_days):
        with pytest.raises(Exception):
            SeasonDaySchema.validate(season_days.drop(columns="anchor"))

    def test_float_day_since_fails(self, season_days):
        df = season_days.copy()
        df["day_since"] = df["day_since"].astype(float)
        with pytest.raises(Exception):
            SeasonDaySchema.validate(df)


class TestFlightCurveSchema:

    def _valid_df(self):
        return pd.DataFrame({
            "season_year": [2015, 2015],
            "trimmed_day": [1, 2],
            "nm": [0.25, np.nan],
        })

    def test_valid_data_passes(self):
        FlightCurveSchema.validate(self._valid_df())

    def test_nm_above_one_fails(self):
        df = self._valid_df()
        df.loc[0, "nm"] = 1.5
        with pytest.raises(Exception):
            FlightCurveSchema.validate(df)


class TestSeasonalIndexSchema:

    def test_negative_index_fails(self):
        df = pd.DataFrame({
            "species": [1], "season_year": [2015], "site_id": ["A"],
            "abundance_index": [-1.0],
        })
        with pytest.raises(Exception):
            SeasonalIndexSchema.validate(df)

    def test_missing_index_allowed(self):
        df = pd.DataFrame({
            "species": [1], "season_year": [2015], "site_id": ["A"],
            "abundance_index": [np.nan],
        })
        SeasonalIndexSchema.validate(df)


# ── Input tables ────────────────────────────────────────────────────────


class TestInputTables:

    def test_columns_case_folded(self):
        df = pd.DataFrame({" Date": ["2015-05-01"], "SITE_ID": ["A"]})
        out = validate_visits(df)
        assert list(out.columns) == ["date", "site_id"]

    def test_all_missing_columns_listed(self):
        df = pd.DataFrame({"date": ["2015-05-01"], "site": ["A"]})
        with pytest.raises(ConfigError) as exc:
            validate_counts(df)
        assert exc.value.missing == ["site_id", "species", "count"]

    def test_negative_count_rejected(self):
        df = pd.DataFrame({
            "date": ["2015-05-01"], "site_id": ["A"], "species": [1], "count": [-2],
        })
        with pytest.raises(ConfigError):
            validate_counts(df)

    def test_null_site_rejected(self):
        df = pd.DataFrame({"date": ["2015-05-01"], "site_id": [None]})
        with pytest.raises(ConfigError):
            validate_visits(df)

    def test_normalize_does_not_mutate(self):
        df = pd.DataFrame({"DATE": [1]})
        normalize_columns(df, ["date"])
        assert list(df.columns) == ["DATE"]


# ── validate_schema gate ────────────────────────────────────────────────


class TestValidateSchemaFunction:
    """Tests for the validate_schema() convenience function."""

    def _bad_index(self):
        return pd.DataFrame({
            "species": [1], "season_year": [2015], "site_id": ["A"],
            "abundance_index": [-3.0],
        })

    def test_none_df_returns_warning(self):
        warnings = validate_schema(None, SeasonalIndexSchema, "test", strict=False)
        assert len(warnings) == 1
        assert "None" in warnings[0]

    def test_none_df_raises_in_strict_mode(self):
        with pytest.raises(ValueError, match="None"):
            validate_schema(None, SeasonalIndexSchema, "test", strict=True)

    def test_empty_df_returns_warning(self):
        df = pd.DataFrame(columns=["species", "season_year", "site_id", "abundance_index"])
        warnings = validate_schema(df, SeasonalIndexSchema, "test", strict=False)
        assert len(warnings) == 1
        assert "empty" in warnings[0].lower()

    def test_invalid_data_returns_warnings_lenient(self):
        warnings = validate_schema(self._bad_index(), SeasonalIndexSchema, "test")
        assert len(warnings) > 0
        assert "abundance_index" in warnings[0]

    def test_invalid_data_raises_in_strict_mode(self):
        with pytest.raises(ValueError):
            validate_schema(self._bad_index(), SeasonalIndexSchema, "test", strict=True)

    def test_valid_data_returns_no_warnings(self, season_days):
        assert validate_schema(season_days, SeasonDaySchema, "label_season") == []


# ── Pipeline types integration ──────────────────────────────────────────


class TestPipelineTypesDeserialization:
    """Test from_dict() deserialization on StepResult and PipelineRunResult."""

    def test_step_result_roundtrip(self):
        from rbms.pipeline_types import StepResult

        original = StepResult(
            step_name="flight_curve",
            status="success",
            input_summary={"species": "1"},
            output_summary={"years_fitted": [2015]},
            timing_seconds=1.5,
            warnings=["borrowed curve"],
            nan_summary={"nm": 365},
        )
        restored = StepResult.from_dict(original.to_dict())

        assert restored.step_name == original.step_name
        assert restored.status == original.status
        assert restored.input_summary == original.input_summary
        assert restored.timing_seconds == original.timing_seconds
        assert restored.nan_summary == original.nan_summary

    def test_pipeline_run_result_roundtrip(self):
        from rbms.pipeline_types import PipelineRunResult, StepResult

        original = PipelineRunResult(
            run_dir="/tmp/test",
            species=["1", "2"],
            years_processed=[2015, 2016],
            total_time_seconds=10.0,
        )
        original.step_results.append(
            StepResult(step_name="s1", status="success", timing_seconds=5.0)
        )
        original.step_results.append(
            StepResult(step_name="s2", status="error", error="boom")
        )

        restored = PipelineRunResult.from_dict(original.to_dict())

        assert restored.species == ["1", "2"]
        assert len(restored.step_results) == 2
        assert restored.step_results[0].step_name == "s1"
        assert restored.step_results[1].error == "boom"
        assert not restored.all_ok
        assert [s.step_name for s in restored.failed_steps] == ["s2"]

    def test_species_result_serialises_fallbacks(self):
        from rbms.pipeline_types import SpeciesRunResult

        result = SpeciesRunResult(species="1", fallbacks={2016: 2017})
        assert result.to_dict()["fallbacks"] == {"2016": 2017}

    def test_species_results_survive_roundtrip(self):
        from rbms.pipeline_types import PipelineRunResult, SpeciesRunResult

        original = PipelineRunResult(species=["1"])
        original.species_results.append(
            SpeciesRunResult(species="1", years_fitted=[2015], fallbacks={2016: 2015})
        )
        restored = PipelineRunResult.from_dict(original.to_dict())

        assert restored.species_results[0].fallbacks == {2016: 2015}
        assert restored.species_results[0].years_fitted == [2015]


# ── NaN tracking ────────────────────────────────────────────────────────


class TestNanTracking:
    """Tests for the NaN propagation tracker in pipeline_runner."""

    def test_track_nan_counts_no_nans(self):
        from rbms.pipeline_runner import track_nan_counts

        df = pd.DataFrame({"a": [1, 2, 3], "b": [4, 5, 6]})
        assert track_nan_counts(df, "test") == {}

    def test_track_nan_counts_with_nans(self):
        from rbms.pipeline_runner import track_nan_counts

        df = pd.DataFrame({"a": [1, np.nan, 3], "b": [np.nan, np.nan, 6]})
        result = track_nan_counts(df, "test")
        assert result["a"] == 1
        assert result["b"] == 2

    def test_track_nan_counts_none_df(self):
        from rbms.pipeline_runner import track_nan_counts

        assert track_nan_counts(None, "test") == {}

    def test_nan_propagation_warning(self, caplog):
        """NaN count increase from prev step should produce a warning."""
        from rbms.pipeline_runner import track_nan_counts

        prev = {"a": 1}
        df = pd.DataFrame({"a": [np.nan, np.nan, 3.0]})

        with caplog.at_level(logging.WARNING):
            track_nan_counts(df, "test_step", prev_nan_counts=prev)

        assert any("NaN count increased" in msg for msg in caplog.messages)

    def test_validation_gate_strict_failure(self):
        from rbms.pipeline_runner import validation_gate

        bad = pd.DataFrame({
            "species": [1], "season_year": [2015], "site_id": ["A"],
            "abundance_index": [-3.0],
        })
        assert validation_gate(bad, SeasonalIndexSchema, "seasonal_index", strict=False)
        assert not validation_gate(bad, SeasonalIndexSchema, "seasonal_index", strict=True)
