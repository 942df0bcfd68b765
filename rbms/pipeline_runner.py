#!/usr/bin/env python3
"""
Pipeline runner with validation gates.

Runs the abundance index pipeline end to end:
- calendar, season labelling and site expansion once per run
- per species: counts, flight curves, imputation, seasonal index, outputs
- Pandera schema validation between steps (warn, or abort with
  ``--strict-validation``)
- NaN propagation tracking between steps
- Full PipelineRunResult provenance saved as JSON

Usage:
    python3 -m rbms.pipeline_runner --visits visits.csv --counts counts.csv \
        --species 2 --first-year 2015 --last-year 2020

    # Every species in the count table, strict validation
    python3 -m rbms.pipeline_runner --visits visits.csv --counts counts.csv \
        --species all --first-year 2015 --strict-validation
"""

import argparse
import json
import os
import sys
import time

import pandas as pd

from rbms import config
from rbms.config import get_output_dirs
from rbms.errors import ConfigError
from rbms.logging_config import get_pipeline_logger, setup_logging, set_run_id
from rbms.pipeline_types import PipelineRunResult, SpeciesRunResult
from rbms.schemas import (
    AbundanceSchema,
    FlightCurveSchema,
    SeasonalIndexSchema,
    SeasonDaySchema,
    SiteSeasonSchema,
    validate_schema,
)

log = get_pipeline_logger(__name__)


# ── NaN tracking helper ──────────────────────────────────────────────────


def track_nan_counts(df, step_name, prev_nan_counts=None):
    """Track NaN counts per column and warn on propagation.

    Parameters
    ----------
    df : pd.DataFrame or None
        DataFrame to inspect.
    step_name : str
        Pipeline step name for logging.
    prev_nan_counts : dict or None
        NaN counts from the previous step for delta comparison.

    Returns
    -------
    dict
        Column → NaN count mapping for this step.
    """
    if df is None:
        return {}

    nan_counts = df.isna().sum().to_dict()
    nan_counts = {k: int(v) for k, v in nan_counts.items() if v > 0}

    if nan_counts:
        log.debug(
            "[%s] NaN counts: %s",
            step_name,
            nan_counts,
            extra={"step_name": step_name, "nan_summary": nan_counts},
        )

    if prev_nan_counts:
        for col, count in nan_counts.items():
            prev = prev_nan_counts.get(col, 0)
            if count > prev:
                log.warning(
                    "[%s] NaN count increased for '%s': %d → %d (+%d)",
                    step_name, col, prev, count, count - prev,
                )

    return nan_counts


def validation_gate(df, schema, step_name, strict=False):
    """Log schema warnings; return False when strict validation fails."""
    try:
        warnings_list = validate_schema(df, schema, step_name, strict=strict)
    except ValueError as e:
        log.error("Validation failed after %s: %s", step_name, e)
        return False
    for w in warnings_list:
        log.warning(w)
    return True


# ── Pipeline ─────────────────────────────────────────────────────────────


def resolve_species(requested, counts):
    """Expand ``all`` (or a comma-separated list) into species values."""
    if requested.strip().lower() == "all":
        return sorted(counts["species"].unique(), key=str)
    return [s.strip() for s in requested.split(",") if s.strip()]


def _finish(pipeline_result, start_time):
    pipeline_result.total_time_seconds = time.time() - start_time
    return pipeline_result


def _season_kwargs(args):
    return dict(
        start_month=args.start_month,
        end_month=args.end_month,
        start_day=args.start_day,
        end_day=args.end_day,
        complete_season=args.complete_season,
        anchor=args.anchor,
        anchor_length=args.anchor_length,
        anchor_lag=args.anchor_lag,
    )


def _curve_kwargs(args):
    return dict(
        min_visits=args.min_visits,
        min_occurrences=args.min_occurrences,
        min_sites=args.min_sites,
        max_trials=args.max_trials,
        sample_size=args.sample_size,
        family=args.curve_family,
        complete_season=args.complete_season,
        seed=args.seed,
        max_workers=args.max_workers,
        timeout=args.timeout,
    )


def _impute_kwargs(args):
    return dict(
        family=args.impute_family,
        backend=args.backend,
        complete_season=args.complete_season,
    )


def run_species(species, site_days, counts, args, dirs, pipeline_result):
    """Run the per-species steps; return the species' seasonal index or None."""
    from rbms.pipeline_steps import (
        step_attach_counts,
        step_flight_curve,
        step_impute_counts,
        step_plot_flight_curves,
        step_save_species_outputs,
        step_seasonal_index,
    )

    strict = args.strict_validation
    species_result = SpeciesRunResult(species=str(species))
    pipeline_result.species_results.append(species_result)

    result, site_counts = step_attach_counts(site_days, counts, species, args.date_format)
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.warning("Species %s skipped at attach_counts: %s", species, result.error)
        return None
    prev_nan_counts = track_nan_counts(site_counts, "attach_counts")

    result, curves = step_flight_curve(site_counts, species, _curve_kwargs(args))
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.warning("Species %s skipped at flight_curve: %s", species, result.error)
        return None
    species_result.years_fitted = curves.years_fitted
    species_result.years_unavailable = curves.years_unavailable
    if not validation_gate(curves.curve, FlightCurveSchema, "flight_curve", strict):
        return None

    result, imputation = step_impute_counts(
        site_counts, curves.curve, species, _impute_kwargs(args),
    )
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.warning("Species %s skipped at impute_counts: %s", species, result.error)
        return None
    species_result.fallbacks = dict(imputation.fallbacks)
    species_result.years_skipped = list(imputation.skipped)
    species_result.regression_failures = list(imputation.failures)
    if not validation_gate(imputation.records, AbundanceSchema, "impute_counts", strict):
        return None
    track_nan_counts(imputation.records, "impute_counts", prev_nan_counts)

    result, index_df = step_seasonal_index(imputation.records, species)
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.warning("Species %s skipped at seasonal_index: %s", species, result.error)
        return None
    species_result.sites_indexed = int(index_df["site_id"].nunique())

    result, paths = step_save_species_outputs(
        curves.curve, imputation.records, species, dirs["csv"],
    )
    pipeline_result.step_results.append(result)
    if result.ok:
        pipeline_result.output_files.extend(paths)

    # Non-critical
    result, plot_path = step_plot_flight_curves(curves.curve, species, dirs["diagnostics"])
    pipeline_result.step_results.append(result)
    if result.ok:
        pipeline_result.output_files.append(plot_path)
    else:
        log.warning("Flight curve plot failed: %s", result.error)

    return index_df


def run_pipeline(args):
    """Run the abundance pipeline with validation gates.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command-line arguments.

    Returns
    -------
    PipelineRunResult

    Raises
    ------
    ConfigError
        On an invalid year range, season definition, input layout or
        species; the run stops at the step that detects it.
    """
    from rbms.pipeline_steps import (
        step_build_calendar,
        step_expand_sites,
        step_label_season,
        step_load_counts,
        step_load_visits,
        step_save_seasonal_index,
    )

    strict = args.strict_validation
    pipeline_result = PipelineRunResult(run_dir=args.output_dir)
    start_time = time.time()

    dirs = get_output_dirs(args.output_dir)
    for path in dirs.values():
        os.makedirs(path, exist_ok=True)

    result, calendar = step_build_calendar(args.first_year, args.last_year, args.week_start)
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.error("Pipeline aborted at build_calendar: %s", result.error)
        return _finish(pipeline_result, start_time)

    result, season_days = step_label_season(calendar, _season_kwargs(args))
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.error("Pipeline aborted at label_season: %s", result.error)
        return _finish(pipeline_result, start_time)
    if not validation_gate(season_days, SeasonDaySchema, "label_season", strict):
        return _finish(pipeline_result, start_time)
    pipeline_result.years_processed = sorted(
        int(y) for y in season_days["season_year"].unique()
    )

    result, visits = step_load_visits(args.visits)
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.error("Pipeline aborted at load_visits: %s", result.error)
        return _finish(pipeline_result, start_time)

    result, counts = step_load_counts(args.counts)
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.error("Pipeline aborted at load_counts: %s", result.error)
        return _finish(pipeline_result, start_time)

    result, site_days = step_expand_sites(visits, season_days, args.date_format)
    pipeline_result.step_results.append(result)
    if not result.ok:
        log.error("Pipeline aborted at expand_sites: %s", result.error)
        return _finish(pipeline_result, start_time)
    if not validation_gate(site_days, SiteSeasonSchema, "expand_sites", strict):
        return _finish(pipeline_result, start_time)

    species_list = resolve_species(args.species, counts)
    pipeline_result.species = [str(s) for s in species_list]
    log.info("Processing %d species", len(species_list))

    index_frames = []
    for species in species_list:
        log.info("=" * 60)
        log.info("Species %s", species)
        log.info("=" * 60)
        index_df = run_species(species, site_days, counts, args, dirs, pipeline_result)
        if index_df is not None:
            index_frames.append(index_df)

    if index_frames:
        combined = pd.concat(index_frames, ignore_index=True)
        if not validation_gate(combined, SeasonalIndexSchema, "seasonal_index", strict):
            return _finish(pipeline_result, start_time)
        result, index_path = step_save_seasonal_index(combined, dirs["csv"])
        pipeline_result.step_results.append(result)
        if result.ok:
            pipeline_result.output_files.append(index_path)

    return _finish(pipeline_result, start_time)


# ── Main entry point ─────────────────────────────────────────────────────


def save_pipeline_result(pipeline_result, output_dir):
    """Save PipelineRunResult as JSON for provenance."""
    result_path = os.path.join(output_dir, "pipeline_run.json")
    with open(result_path, "w") as f:
        json.dump(pipeline_result.to_dict(), f, indent=2, default=str)
    log.info("Pipeline result saved: %s", result_path)
    return result_path


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Butterfly monitoring abundance index pipeline"
    )
    parser.add_argument("--visits", required=True,
                        help="CSV of site visits (date, site_id)")
    parser.add_argument("--counts", required=True,
                        help="CSV of counts (date, site_id, species, count)")
    parser.add_argument(
        "--species",
        required=True,
        help="Species to process: one value, a comma-separated list or 'all'",
    )
    parser.add_argument("--first-year", type=int, required=True, dest="first_year")
    parser.add_argument(
        "--last-year", type=int, default=None, dest="last_year",
        help="Last calendar year (default: current year)",
    )
    parser.add_argument("--output-dir", default="outputs", dest="output_dir")
    parser.add_argument("--date-format", default=config.DATE_FORMAT, dest="date_format")
    parser.add_argument("--week-start", default=config.WEEK_START, dest="week_start")

    season = parser.add_argument_group("season")
    season.add_argument("--start-month", type=int, default=config.SEASON_START_MONTH,
                        dest="start_month")
    season.add_argument("--end-month", type=int, default=config.SEASON_END_MONTH,
                        dest="end_month")
    season.add_argument("--start-day", type=int, default=config.SEASON_START_DAY,
                        dest="start_day")
    season.add_argument("--end-day", type=int, default=config.SEASON_END_DAY,
                        dest="end_day",
                        help="Default: last day of the end month")
    season.add_argument("--include-incomplete", action="store_false",
                        dest="complete_season",
                        help="Keep season years missing their start or end day")
    season.add_argument("--no-anchor", action="store_false", dest="anchor",
                        help="Do not add zero-count anchors around the season")
    season.add_argument("--anchor-length", type=int, default=config.ANCHOR_LENGTH,
                        dest="anchor_length")
    season.add_argument("--anchor-lag", type=int, default=config.ANCHOR_LAG,
                        dest="anchor_lag")

    curve = parser.add_argument_group("flight curve")
    curve.add_argument("--min-visits", type=int, default=config.MIN_VISITS,
                       dest="min_visits")
    curve.add_argument("--min-occurrences", type=int, default=config.MIN_OCCURRENCES,
                       dest="min_occurrences")
    curve.add_argument("--min-sites", type=int, default=config.MIN_SITES,
                       dest="min_sites")
    curve.add_argument("--max-trials", type=int, default=config.MAX_TRIALS,
                       dest="max_trials")
    curve.add_argument("--sample-size", type=int, default=config.SAMPLE_SIZE,
                       dest="sample_size")
    curve.add_argument("--curve-family", choices=config.FAMILIES,
                       default=config.CURVE_FAMILY, dest="curve_family")
    curve.add_argument("--seed", type=int, default=config.SAMPLING_SEED)
    curve.add_argument("--max-workers", type=int, default=config.MAX_WORKERS,
                       dest="max_workers",
                       help="Fit season years in parallel processes")
    curve.add_argument("--timeout", type=float, default=config.FIT_TIMEOUT_SECONDS,
                       help="Seconds to wait for each season year in parallel mode")

    impute = parser.add_argument_group("imputation")
    impute.add_argument("--impute-family", choices=config.FAMILIES,
                        default=config.IMPUTE_FAMILY, dest="impute_family")
    impute.add_argument("--backend", choices=config.IMPUTE_BACKENDS,
                        default=config.IMPUTE_BACKEND)

    parser.add_argument(
        "--strict-validation",
        action="store_true",
        default=False,
        dest="strict_validation",
        help="Abort pipeline on schema validation failures (default: warn only)",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    run_id = set_run_id()
    os.makedirs(args.output_dir, exist_ok=True)
    setup_logging(run_dir=args.output_dir)

    log.info("Abundance pipeline (run_id=%s)", run_id)

    try:
        result = run_pipeline(args)
    except ConfigError as e:
        log.error("Pipeline aborted: %s", e)
        return 2

    save_pipeline_result(result, args.output_dir)

    log.info("Pipeline complete in %.1fs", result.total_time_seconds)
    if result.failed_steps:
        log.warning(
            "Failed steps: %s",
            [s.step_name for s in result.failed_steps],
        )
        return 1
    log.info("All steps succeeded.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
