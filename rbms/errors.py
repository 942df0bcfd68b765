"""
Exception types for the abundance index pipeline.

ConfigError and its subclasses are fatal: they abort the run as soon as
they are raised. CurveUnavailable and RegressionFailure describe per-year
outcomes that the pipeline records and recovers from; they are only raised
by the strict ``require()`` accessors on the result objects.
"""


class ConfigError(ValueError):
    """Invalid configuration or input layout (year range, columns, species)."""

    def __init__(self, message, missing=None):
        super().__init__(message)
        self.missing = list(missing) if missing else []


class UnknownSpeciesError(ConfigError):
    """The requested species has no rows in the count table."""

    def __init__(self, species):
        super().__init__(
            f"Species {species!r} is not found in the count data, "
            f"check the species argument."
        )
        self.species = species


class CurveUnavailable(RuntimeError):
    """No flight curve could be estimated (or borrowed) for a season year."""

    def __init__(self, season_year, reason=""):
        msg = f"No flight curve available for season year {season_year}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.season_year = season_year


class RegressionFailure(RuntimeError):
    """The abundance regression failed for a season year."""

    def __init__(self, season_year, reason=""):
        msg = f"Abundance regression failed for season year {season_year}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.season_year = season_year
