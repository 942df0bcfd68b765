"""
Pandera DataFrame schemas for ingestion checks and pipeline validation gates.

Input tables are validated once, at ingestion: column names are case-folded,
the required columns must all be present (a ConfigError lists every missing
one), then the declarative schema checks values. Intermediate tables are
checked between steps by ``validate_schema``.

Usage:
    from rbms.schemas import SeasonalIndexSchema
    SeasonalIndexSchema.validate(df)  # raises pa.errors.SchemaError on failure
"""

import pandera as pa
from pandera import Column, Check, DataFrameSchema

from rbms import config
from rbms.errors import ConfigError


# ── Input tables ────────────────────────────────────────────────────────

VisitSchema = DataFrameSchema(
    columns={
        "date": Column(nullable=False),
        "site_id": Column(nullable=False),
    },
    strict=False,
    coerce=False,
    name="VisitSchema",
)

CountSchema = DataFrameSchema(
    columns={
        "date": Column(nullable=False),
        "site_id": Column(nullable=False),
        "species": Column(nullable=False),
        "count": Column(checks=Check.greater_than_or_equal_to(0), nullable=False),
    },
    strict=False,
    coerce=False,
    name="CountSchema",
)


# ── Season calendar ─────────────────────────────────────────────────────

SeasonDaySchema = DataFrameSchema(
    columns={
        "date": Column(nullable=False),
        "day_since": Column(int, Check.greater_than_or_equal_to(1), nullable=False),
        "season_year": Column(int, nullable=False),
        "season_flag": Column(int, Check.greater_than_or_equal_to(0), nullable=False),
        "season_complete": Column(bool, nullable=False),
        "anchor": Column(bool, nullable=False),
        "count": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
    },
    strict=False,
    coerce=False,
    name="SeasonDaySchema",
)


# ── Site x day table ────────────────────────────────────────────────────

SiteSeasonSchema = DataFrameSchema(
    columns={
        "site_id": Column(nullable=False),
        "season_year": Column(int, nullable=False),
        "season_flag": Column(int, Check.greater_than_or_equal_to(0), nullable=False),
        "anchor": Column(bool, nullable=False),
        "count": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
    },
    strict=False,
    coerce=False,
    name="SiteSeasonSchema",
)


# ── Flight curve ────────────────────────────────────────────────────────

FlightCurveSchema = DataFrameSchema(
    columns={
        "season_year": Column(int, nullable=False),
        "trimmed_day": Column(int, Check.greater_than_or_equal_to(1), nullable=False),
        "nm": Column(float, Check.in_range(0.0, 1.0), nullable=True),
    },
    strict=False,
    coerce=False,
    name="FlightCurveSchema",
)


# ── Imputed daily counts ────────────────────────────────────────────────

AbundanceSchema = DataFrameSchema(
    columns={
        "site_id": Column(nullable=False),
        "season_year": Column(int, nullable=False),
        "fitted": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        "imputed_count": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
    },
    strict=False,
    coerce=False,
    name="AbundanceSchema",
)


# ── Seasonal abundance index ────────────────────────────────────────────

SeasonalIndexSchema = DataFrameSchema(
    columns={
        "species": Column(nullable=False),
        "season_year": Column(int, nullable=False),
        "site_id": Column(nullable=False),
        "abundance_index": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
    },
    strict=False,
    coerce=False,
    name="SeasonalIndexSchema",
)


# ── Column presence ─────────────────────────────────────────────────────

def normalize_columns(df, required, table_name="table"):
    """Case-fold column names and check that *required* columns are present.

    Matching is case-insensitive and exact otherwise: ``SITE_ID`` matches
    ``site_id`` but ``site`` does not.

    Parameters
    ----------
    df : pd.DataFrame
    required : list[str]
        Lower-case names that must be present.
    table_name : str
        Used in the error message.

    Returns
    -------
    pd.DataFrame
        A copy with lower-cased, stripped column names.

    Raises
    ------
    ConfigError
        Listing every missing column.
    """
    out = df.copy()
    out.columns = [str(c).strip().lower() for c in out.columns]
    missing = [c for c in required if c not in out.columns]
    if missing:
        raise ConfigError(
            f"Table '{table_name}' is missing required column(s): "
            f"{', '.join(missing)}",
            missing=missing,
        )
    return out


def _validate_input(df, required, schema, table_name):
    df = normalize_columns(df, required, table_name)
    try:
        schema.validate(df)
    except pa.errors.SchemaError as exc:
        raise ConfigError(f"Table '{table_name}' failed validation: {exc}") from exc
    return df


def validate_visits(df):
    """Normalise and validate a raw visit table."""
    return _validate_input(df, config.VISIT_COLUMNS, VisitSchema, "visits")


def validate_counts(df):
    """Normalise and validate a raw count table."""
    return _validate_input(df, config.COUNT_COLUMNS, CountSchema, "counts")


# ── Convenience validation function ─────────────────────────────────────

def validate_schema(df, schema, step_name, strict=False):
    """Validate a DataFrame against a Pandera schema.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to validate.
    schema : pa.DataFrameSchema
        Schema to validate against.
    step_name : str
        Pipeline step name for error messages.
    strict : bool
        If True, raise on failure. If False, return warnings list.

    Returns
    -------
    list[str]
        Validation warning messages (empty if all pass).

    Raises
    ------
    ValueError
        Only if strict=True and validation fails.
    """
    warnings_list = []

    if df is None:
        msg = f"[{step_name}] DataFrame is None"
        if strict:
            raise ValueError(msg)
        return [msg]

    if len(df) == 0:
        msg = f"[{step_name}] DataFrame is empty (0 rows)"
        if strict:
            raise ValueError(msg)
        return [msg]

    try:
        schema.validate(df, lazy=True)
    except pa.errors.SchemaErrors as exc:
        for failure in exc.failure_cases.itertuples():
            msg = (
                f"[{step_name}] Schema violation: "
                f"column='{failure.column}' check='{failure.check}' "
                f"failure_case={failure.failure_case}"
            )
            warnings_list.append(msg)

        if strict:
            raise ValueError(
                f"[{step_name}] Schema validation failed with "
                f"{len(warnings_list)} errors"
            ) from exc

    return warnings_list
