"""
Per-Variable Extraction of the First Plausible Reading

For one physiological variable this module pulls every chart or lab event
of the cohort subjects, keeps the values inside the variable's plausibility
range, and selects the chronologically earliest remaining reading per
subject.

Populating the cache and consuming it are separate operations:
- fetch_live: query the database and store the raw result in the cache
- fetch_cached: load a raw result stored by an earlier live run
extract_variable picks one of them and then applies the filters.
"""
from typing import Dict, List, Sequence, Tuple

import duckdb
import pandas as pd

from .cache_store import CacheStore, dumps_table, loads_table
from .config import EVENT_TABLES, RAW_EVENT_COLUMNS, SUBJECT_COLUMN
from .data_source import run_query
from .errors import UnknownEventTableError
from .logging_utils import logger

# Raw events of the requested item ids for the cohort subjects. The table
# name is checked against EVENT_TABLES before formatting.
EVENT_SQL = """
    SELECT e.subject_id::INTEGER AS subject_id,
           e.hadm_id::INTEGER AS hadm_id,
           e.charttime::TIMESTAMP AS charttime,
           e.valuenum::DOUBLE AS valuenum,
           e.valueuom AS valueuom
    FROM {table} e
    WHERE e.subject_id::INTEGER IN (SELECT subject_id FROM tmp_subject_ids)
      AND e.itemid::INTEGER IN (SELECT itemid FROM tmp_itemids)
    """


def build_event_query(table: str) -> str:
    """Return the raw event query for ``table``."""
    if table not in EVENT_TABLES:
        raise UnknownEventTableError(f"Unknown event table '{table}', expected one of {EVENT_TABLES}")
    return EVENT_SQL.format(table=table)


def fetch_live(con: duckdb.DuckDBPyConnection, table: str, itemids: Sequence[int], subject_ids: Sequence[int],
               cache: CacheStore, key: str) -> pd.DataFrame:
    """
    Query raw events from the database and store them in the cache.

    Args:
        con: Open DuckDB connection to MIMIC-III
        table (str): ``chartevents`` or ``labevents``
        itemids (Sequence[int]): Equivalent item IDs of the variable
        subject_ids (Sequence[int]): Cohort subject IDs
        cache (CacheStore): Cache that receives the raw result
        key (str): Cache key, normally the variable name

    Returns:
        pd.DataFrame: Raw events with columns subject_id, hadm_id, charttime,
        valuenum, valueuom
    """
    sql = build_event_query(table)
    df = run_query(
        con,
        sql,
        tmp_subject_ids=pd.DataFrame({SUBJECT_COLUMN: list(subject_ids)}, dtype="int64"),
        tmp_itemids=pd.DataFrame({"itemid": list(itemids)}, dtype="int64"),
    )
    df = df[RAW_EVENT_COLUMNS]
    cache.put(key, dumps_table(df))
    logger.log_info(f"Queried {len(df)} raw '{key}' events from {table} and cached them")
    return df


def fetch_cached(cache: CacheStore, key: str) -> pd.DataFrame:
    """
    Load raw events stored by an earlier live run.

    Raises:
        CacheMissingError: If nothing is cached under ``key``
        CacheCorruptError: If the cached blob is unreadable
    """
    df = loads_table(cache.get(key))
    logger.log_info(f"Loaded {len(df)} raw '{key}' events from cache")
    return df[RAW_EVENT_COLUMNS]


def raw_plausibility_filter(df: pd.DataFrame, valid_range: Tuple[float, float]) -> pd.DataFrame:
    """
    Drop missing values and values outside ``(low, high)``.

    Both bounds are exclusive.
    """
    low, high = valid_range
    df = df.dropna(subset=["valuenum"])
    mask = (df["valuenum"] > low) & (df["valuenum"] < high)
    return df.loc[mask].reset_index(drop=True)


def first_per_subject(df: pd.DataFrame) -> pd.DataFrame:
    """
    Keep the earliest reading of each subject.

    Rows are stably sorted by charttime, so readings with the same timestamp
    keep their original order and the first of them wins.
    """
    df = df.sort_values("charttime", kind="stable")
    df = df.groupby(SUBJECT_COLUMN, as_index=False, sort=False).head(1)
    return df.sort_values(SUBJECT_COLUMN, kind="stable").reset_index(drop=True)


def extract_variable(con: duckdb.DuckDBPyConnection, table: str, itemids: Sequence[int],
                     subject_ids: Sequence[int], cache: CacheStore, use_cache: bool,
                     valid_range: Tuple[float, float], key: str) -> pd.DataFrame:
    """
    Extract the first plausible reading of one variable per subject.

    Args:
        con: Open DuckDB connection (unused when ``use_cache`` is True)
        table (str): ``chartevents`` or ``labevents``
        itemids (Sequence[int]): Equivalent item IDs of the variable
        subject_ids (Sequence[int]): Cohort subject IDs
        cache (CacheStore): Raw result cache
        use_cache (bool): Read the raw result from the cache instead of the database
        valid_range (Tuple[float, float]): Exclusive plausibility range
        key (str): Cache key

    Returns:
        pd.DataFrame: One row per subject with a valid reading. Subjects
        without one are absent.
    """
    logger.log_start(f"extract_variable[{key}]")
    try:
        if use_cache:
            # The cache may hold a different cohort than the one requested
            raw = fetch_cached(cache, key)
            raw = raw.loc[raw[SUBJECT_COLUMN].isin(list(subject_ids))].reset_index(drop=True)
        else:
            raw = fetch_live(con, table, itemids, subject_ids, cache, key)

        valid = raw_plausibility_filter(raw, valid_range)
        first = first_per_subject(valid)
        logger.log_info(f"{len(valid)} of {len(raw)} '{key}' events in range {valid_range}, "
                        f"{len(first)} subjects with a reading")
    finally:
        logger.log_end(f"extract_variable[{key}]")
    return first


def extract_from_metadata(con: duckdb.DuckDBPyConnection, meta: Dict, subject_ids: List[int],
                          cache: CacheStore, use_cache: bool) -> pd.DataFrame:
    """Run ``extract_variable`` for one entry of ``VARIABLE_METADATA``."""
    return extract_variable(
        con,
        meta['table'],
        meta['itemids'],
        subject_ids,
        cache,
        use_cache,
        (meta['min'], meta['max']),
        meta['name'],
    )
