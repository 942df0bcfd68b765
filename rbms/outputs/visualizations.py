"""
Diagnostic plots of the estimated flight curves.
"""

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from rbms import config
from rbms.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def plot_flight_curves(curve, output_path, title=None, dpi=None):
    """Plot nm against trimmed_day, one line per season year.

    Season years with no curve (all nm missing) are left out of the plot.

    Parameters
    ----------
    curve : pd.DataFrame
        ``FlightCurveResult.curve``.
    output_path : str
        PNG file to write.
    title : str, optional
    dpi : int, optional
        Default: config.PLOT_DPI.

    Returns
    -------
    str
        *output_path*.
    """
    if dpi is None:
        dpi = config.PLOT_DPI

    fig, ax = plt.subplots(figsize=(10, 5))
    n_lines = 0
    for season_year, year_curve in curve.groupby("season_year"):
        if year_curve["nm"].isna().all():
            continue
        year_curve = year_curve.sort_values("trimmed_day")
        ax.plot(year_curve["trimmed_day"], year_curve["nm"],
                linewidth=1.2, label=str(season_year))
        n_lines += 1

    ax.set_xlabel("Day of season year")
    ax.set_ylabel("Relative daily abundance (nm)")
    if title:
        ax.set_title(title)
    if n_lines:
        ax.legend(title="Season year", fontsize=8, ncol=2)
    else:
        ax.text(0.5, 0.5, "No flight curve available", transform=ax.transAxes,
                ha="center", va="center")
    ax.grid(alpha=0.3)

    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    log.info("Saved flight curve plot (%d season years): %s", n_lines, output_path)
    return output_path
