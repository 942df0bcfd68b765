"""
Abundance pipeline step functions.

Each function is a discrete, testable pipeline step with explicit
inputs/outputs and StepResult tracking.  Boilerplate (timing, error
handling, logging) is handled by ``run_step()``.
"""

import os

import pandas as pd

from rbms.logging_config import get_pipeline_logger
from rbms.step_runner import run_step

log = get_pipeline_logger(__name__)


def step_build_calendar(first_year: int, last_year: int | None = None,
                        week_start: str | None = None) -> tuple:
    """Build the daily calendar over the requested years."""
    from rbms.daily_calendar import build_calendar

    return run_step(
        "build_calendar", build_calendar, first_year, last_year, week_start,
        input_summary={"first_year": first_year, "last_year": last_year},
        output_summary_fn=lambda df: {
            "days": len(df),
            "first_date": str(df["date"].min().date()),
            "last_date": str(df["date"].max().date()),
        },
    )


def step_label_season(calendar: pd.DataFrame, season_kwargs: dict) -> tuple:
    """Label season years, season flags and anchors."""
    from rbms.season import label_season

    return run_step(
        "label_season", label_season, calendar,
        input_summary={k: v for k, v in season_kwargs.items() if v is not None},
        output_summary_fn=lambda df: {
            "season_years": int(df["season_year"].nunique()),
            "in_season_days": int((df["season_flag"] > 0).sum()),
            "anchor_days": int(df["anchor"].sum()),
        },
        **season_kwargs,
    )


def step_load_visits(visits_path: str) -> tuple:
    """Read and validate the visit table."""
    from rbms.schemas import validate_visits

    def _work():
        visits = validate_visits(pd.read_csv(visits_path))
        log.info("Loaded %d visits at %d sites", len(visits), visits["site_id"].nunique())
        return visits

    return run_step(
        "load_visits", _work,
        input_summary={"visits_path": visits_path},
        output_summary_fn=lambda df: {
            "visits": len(df), "sites": int(df["site_id"].nunique()),
        },
    )


def step_load_counts(counts_path: str) -> tuple:
    """Read and validate the count table."""
    from rbms.schemas import validate_counts

    def _work():
        counts = validate_counts(pd.read_csv(counts_path))
        log.info("Loaded %d count records for %d species",
                 len(counts), counts["species"].nunique())
        return counts

    return run_step(
        "load_counts", _work,
        input_summary={"counts_path": counts_path},
        output_summary_fn=lambda df: {
            "records": len(df), "species": int(df["species"].nunique()),
        },
    )


def step_expand_sites(visits: pd.DataFrame, season_days: pd.DataFrame,
                      date_format: str | None = None) -> tuple:
    """Expand visited sites over every day of their season years."""
    from rbms.alignment import expand_sites

    return run_step(
        "expand_sites", expand_sites, visits, season_days, date_format,
        input_summary={"visits": len(visits)},
        output_summary_fn=lambda df: {
            "rows": len(df), "sites": int(df["site_id"].nunique()),
        },
    )


def step_attach_counts(site_days: pd.DataFrame, counts: pd.DataFrame, species,
                       date_format: str | None = None) -> tuple:
    """Overlay one species' counts on the site x day table."""
    from rbms.alignment import attach_species_count

    return run_step(
        "attach_counts", attach_species_count, site_days, counts, species, date_format,
        input_summary={"species": str(species)},
        output_summary_fn=lambda df: {
            "observed_days": int(df["count"].notna().sum()),
            "positive_days": int((df["count"] > 0).sum()),
        },
    )


def step_flight_curve(site_counts: pd.DataFrame, species, curve_kwargs: dict) -> tuple:
    """Estimate the flight curve of every season year."""
    from rbms.flight_curve import flight_curve

    return run_step(
        "flight_curve", flight_curve, site_counts,
        input_summary={"species": str(species)},
        output_summary_fn=lambda res: {
            "years_fitted": res.years_fitted,
            "years_unavailable": res.years_unavailable,
        },
        **curve_kwargs,
    )


def step_impute_counts(site_counts: pd.DataFrame, curve: pd.DataFrame, species,
                       impute_kwargs: dict) -> tuple:
    """Impute missing daily counts from the flight curve."""
    from rbms.imputation import impute_counts

    return run_step(
        "impute_counts", impute_counts, site_counts, curve,
        input_summary={"species": str(species)},
        output_summary_fn=lambda res: {
            "rows": len(res.records),
            "fallbacks": {str(k): v for k, v in res.fallbacks.items()},
            "skipped": res.skipped,
            "failures": res.failures,
        },
        **impute_kwargs,
    )


def step_seasonal_index(records: pd.DataFrame, species) -> tuple:
    """Sum the imputed counts per site and season year."""
    from rbms.aggregation import seasonal_index

    return run_step(
        "seasonal_index", seasonal_index, records,
        input_summary={"species": str(species), "rows": len(records)},
        output_summary_fn=lambda df: {
            "site_seasons": len(df),
            "missing": int(df["abundance_index"].isna().sum()),
        },
    )


def step_save_species_outputs(curve: pd.DataFrame, records: pd.DataFrame,
                              species, csv_dir: str) -> tuple:
    """Save the species' flight curve and imputed counts to CSV."""

    def _work():
        os.makedirs(csv_dir, exist_ok=True)
        curve_path = os.path.join(csv_dir, f"flight_curve_{species}.csv")
        abundance_path = os.path.join(csv_dir, f"abundance_{species}.csv")
        curve.to_csv(curve_path, index=False)
        records.to_csv(abundance_path, index=False)
        log.info("Saved species %s outputs: %s, %s", species, curve_path, abundance_path)
        return [curve_path, abundance_path]

    return run_step(
        "save_outputs", _work,
        input_summary={"species": str(species)},
        output_summary_fn=lambda paths: {"csv_paths": paths},
    )


def step_save_seasonal_index(index_df: pd.DataFrame, csv_dir: str) -> tuple:
    """Save the combined seasonal index of all species."""

    def _work():
        os.makedirs(csv_dir, exist_ok=True)
        result_path = os.path.join(csv_dir, "seasonal_index.csv")
        index_df.to_csv(result_path, index=False)
        log.info("Saved seasonal index: %s", result_path)
        return result_path

    return run_step(
        "save_seasonal_index", _work,
        input_summary={"rows": len(index_df)},
        output_summary_fn=lambda p: {"csv_path": p},
    )


def step_plot_flight_curves(curve: pd.DataFrame, species, diagnostics_dir: str) -> tuple:
    """Plot the species' flight curves (non-critical)."""
    from rbms.outputs.visualizations import plot_flight_curves

    def _work():
        os.makedirs(diagnostics_dir, exist_ok=True)
        output_path = os.path.join(diagnostics_dir, f"flight_curve_{species}.png")
        return plot_flight_curves(curve, output_path, title=f"Flight curves, species {species}")

    return run_step(
        "plot_flight_curves", _work,
        input_summary={"species": str(species)},
        output_summary_fn=lambda p: {"plot_path": p},
    )
