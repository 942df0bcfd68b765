"""
Seasonal abundance index: the imputed counts summed per site and season.
"""

import numpy as np
import pandas as pd

from rbms.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)

INDEX_KEYS = ["species", "season_year", "site_id"]


def seasonal_index(records):
    """Sum ``imputed_count`` per (species, season_year, site_id).

    A missing imputed value anywhere in a site's season makes its index
    missing.
    """
    if records.empty:
        return pd.DataFrame(columns=INDEX_KEYS + ["abundance_index"])

    index = (
        records.groupby(INDEX_KEYS, sort=True)["imputed_count"]
        .agg(lambda s: np.sum(s.to_numpy(dtype=float)))
        .rename("abundance_index")
        .reset_index()
    )
    n_missing = int(index["abundance_index"].isna().sum())
    if n_missing:
        log.warning("%d site-season index value(s) are missing", n_missing)
    log.info(
        "Seasonal index: %d site-season value(s) over %d season year(s)",
        len(index), index["season_year"].nunique(),
    )
    return index
