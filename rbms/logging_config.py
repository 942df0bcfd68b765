"""
Logging for the abundance index pipeline.

Every record is tagged with the run_id; records about one species or one
season year also carry ``species`` and ``season_year`` (pass
``extra=season_context(...)``). The console shows the tags as a short
prefix, the JSON Lines files keep them as fields so a run's log can be
filtered per species and year.

Handlers:
- console, human readable, level from the LOG_LEVEL env var (INFO)
- ``<RBMS_LOG_DIR or ./logs>/pipeline.log``, rotating JSON Lines across runs
- ``<run_dir>/pipeline.jsonl``, JSON Lines for one run

Usage:
    from rbms.logging_config import get_pipeline_logger, season_context
    log = get_pipeline_logger(__name__)
    log.warning("no flight curve", extra=season_context(species, 2016))
"""

import json
import logging
import os
import time
import uuid
from logging.handlers import RotatingFileHandler


_run_id = None

# Fields copied from ``extra=`` into the JSON entry.
CONTEXT_FIELDS = ("species", "season_year")
STEP_FIELDS = (
    "step_name", "input_summary", "output_summary",
    "timing_seconds", "nan_summary", "warnings",
)


def get_run_id():
    """Return the current run_id, generating one if needed."""
    global _run_id
    if _run_id is None:
        _run_id = str(uuid.uuid4())[:8]
    return _run_id


def set_run_id(run_id=None):
    """Set (or regenerate) the run_id."""
    global _run_id
    _run_id = run_id or str(uuid.uuid4())[:8]
    return _run_id


def season_context(species=None, season_year=None):
    """``extra=`` mapping tagging a record with its species and season year.

    Unknown values are left out, so the helper can be called with whatever
    the caller has at hand.
    """
    extra = {}
    if species is not None:
        extra["species"] = str(species)
    if season_year is not None:
        extra["season_year"] = int(season_year)
    return extra


def _context_prefix(record):
    species = getattr(record, "species", None)
    season_year = getattr(record, "season_year", None)
    if species is None and season_year is None:
        return ""
    parts = []
    if species is not None:
        parts.append(f"sp {species}")
    if season_year is not None:
        parts.append(str(season_year))
    return "[" + " ".join(parts) + "] "


class RunIdFilter(logging.Filter):
    """Inject run_id into every log record."""

    def filter(self, record):
        record.run_id = get_run_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line with the run, season and step fields."""

    def format(self, record):
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S.") +
                         f"{int(record.msecs):03d}",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "run_id": getattr(record, "run_id", None),
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS + STEP_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``time [LEVEL] [sp 2 2016] message``; the bracketed tags only when set."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(context)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record):
        record.context = _context_prefix(record)
        return super().format(record)


_configured = False
_run_dir_handler = None


def setup_logging(run_dir=None, console_level=None, file_level=logging.DEBUG,
                  log_dir=None):
    """Attach the console and file handlers to the root logger.

    The console and rotating handlers are added once; the per-run handler
    is added the first time a *run_dir* is given.

    Parameters
    ----------
    run_dir : str, optional
        Output directory of the run; gets ``pipeline.jsonl``.
    console_level : int, optional
        Default: LOG_LEVEL env var, else INFO.
    file_level : int
        Level of both file handlers.
    log_dir : str, optional
        Directory of the rotating ``pipeline.log``. Default: RBMS_LOG_DIR
        env var, else ``./logs``.
    """
    global _configured, _run_dir_handler

    if console_level is None:
        env_level = os.environ.get("LOG_LEVEL", "INFO").upper()
        console_level = getattr(logging, env_level, logging.INFO)

    root = logging.getLogger()

    if not _configured:
        root.setLevel(logging.DEBUG)
        root.addFilter(RunIdFilter())

        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(ConsoleFormatter())
        root.addHandler(console)

        if log_dir is None:
            log_dir = os.environ.get("RBMS_LOG_DIR", os.path.join(os.getcwd(), "logs"))
        os.makedirs(log_dir, exist_ok=True)
        rotating = RotatingFileHandler(
            os.path.join(log_dir, "pipeline.log"),
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=3,
        )
        rotating.setLevel(file_level)
        rotating.setFormatter(JsonFormatter())
        root.addHandler(rotating)

        _configured = True

    if run_dir and _run_dir_handler is None:
        os.makedirs(run_dir, exist_ok=True)
        fh = logging.FileHandler(os.path.join(run_dir, "pipeline.jsonl"))
        fh.setLevel(file_level)
        fh.setFormatter(JsonFormatter())
        root.addHandler(fh)
        _run_dir_handler = fh


def reset_logging():
    """Close and remove every root handler and filter (test isolation)."""
    global _configured, _run_dir_handler, _run_id

    root = logging.getLogger()
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)
    for f in root.filters[:]:
        root.removeFilter(f)

    _configured = False
    _run_dir_handler = None
    _run_id = None


def get_pipeline_logger(name, run_dir=None):
    """Logger for a pipeline module, configuring logging on first use."""
    if not _configured:
        setup_logging(run_dir=run_dir)
    return logging.getLogger(name)


def log_step_summary(
    logger,
    step_name,
    status="success",
    input_summary=None,
    output_summary=None,
    timing_seconds=None,
    warnings_list=None,
):
    """Log one step outcome at INFO (ERROR for a failed step).

    A ``species`` entry in *input_summary* tags the record like
    ``season_context`` does, so per-species steps can be filtered.
    """
    parts = [f"[{step_name}] {status}"]
    if timing_seconds is not None:
        parts.append(f"({timing_seconds:.1f}s)")
    if output_summary:
        parts.append(f"output={output_summary}")

    extra = {"step_name": step_name}
    if input_summary:
        extra["input_summary"] = input_summary
        extra.update(season_context(species=input_summary.get("species")))
    if output_summary:
        extra["output_summary"] = output_summary
    if timing_seconds is not None:
        extra["timing_seconds"] = timing_seconds
    if warnings_list:
        extra["warnings"] = warnings_list

    level = logging.ERROR if status == "error" else logging.INFO
    logger.log(level, " ".join(parts), extra=extra)


class StepTimer:
    """Wall-clock timer for one step: ``with StepTimer() as t: ...; t.elapsed``."""

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed = time.perf_counter() - self.start
