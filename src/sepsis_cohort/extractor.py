"""
Cohort Extraction Stage

Builds the wide sepsis cohort table from MIMIC-III and writes it to CSV:

1. Sample the cohort from subjects with diagnosis records
2. Aggregate each subject's distinct ICD-9 codes
3. Extract the first plausible reading of every physiological variable
   (temperature additionally converted to Celsius and re-checked)
4. Outer-merge each variable onto the cohort by subject_id
5. Persist the table with the diagnosis codes serialized as strings
"""
from pathlib import Path
from typing import Dict, List

import duckdb
import pandas as pd

from .cache_store import CacheStore, FileCacheStore
from .cohort import aggregate_diagnoses, merge_variable, sample_subjects, serialize_codes
from .config import (
    CACHE_DIR,
    COHORT_CSV,
    COHORT_SIZE,
    DIAGNOSIS_COLUMN,
    RANDOM_SEED,
    SUBJECT_COLUMN,
    TEMPERATURE_VARIABLE,
    VARIABLE_METADATA,
)
from .data_source import connect_mimic
from .extraction import extract_from_metadata
from .logging_utils import logger
from .units import normalize_temperature


def extract_cohort(con: duckdb.DuckDBPyConnection, cache: CacheStore, use_cache: bool = False,
                   size: int = COHORT_SIZE, seed: int = RANDOM_SEED,
                   variables: List[Dict] = VARIABLE_METADATA) -> pd.DataFrame:
    """
    Build the cohort table with one column per physiological variable.

    Args:
        con: Open DuckDB connection to MIMIC-III
        cache (CacheStore): Raw per-variable query cache
        use_cache (bool): Read raw variable tables from the cache instead of the database
        size (int): Cohort size
        seed (int): Sampling seed
        variables (List[Dict]): Variable metadata, in merge order

    Returns:
        pd.DataFrame: ``subject_id``, ``icd9_codes`` (sorted code tuples) and
        one float column per variable, NaN where a subject has no reading
    """
    logger.log_start("extract_cohort")
    try:
        subject_ids = sample_subjects(con, size, seed)
        cohort = aggregate_diagnoses(con, subject_ids)

        for meta in variables:
            extracted = extract_from_metadata(con, meta, subject_ids, cache, use_cache)
            if meta['name'] == TEMPERATURE_VARIABLE:
                extracted = normalize_temperature(extracted)
            cohort = merge_variable(cohort, extracted, meta['name'])

        logger.log_info(f"Cohort table has {len(cohort)} subjects and {len(variables)} variables")
    finally:
        logger.log_end("extract_cohort")
    return cohort


def write_cohort(cohort: pd.DataFrame, path) -> Path:
    """
    Write the cohort table to CSV.

    Diagnosis code tuples are joined into strings; no index column is written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    out = cohort.copy()
    out[DIAGNOSIS_COLUMN] = out[DIAGNOSIS_COLUMN].map(
        lambda codes: serialize_codes(codes) if isinstance(codes, tuple) else codes
    )
    columns = [SUBJECT_COLUMN, DIAGNOSIS_COLUMN] + [c for c in out.columns if c not in (SUBJECT_COLUMN, DIAGNOSIS_COLUMN)]
    out[columns].to_csv(path, index=False)

    logger.log_info(f"Wrote {len(out)} cohort rows to {path}")
    return path


def run_extraction(db_path: str = None, cache_dir: str = CACHE_DIR, use_cache: bool = False,
                   size: int = COHORT_SIZE, seed: int = RANDOM_SEED, output: str = COHORT_CSV) -> pd.DataFrame:
    """
    Open the database, build the cohort, write it, and close the connection.
    """
    logger.log_start("run_extraction")
    try:
        cache = FileCacheStore(cache_dir)
        con = connect_mimic(db_path)
        try:
            cohort = extract_cohort(con, cache, use_cache=use_cache, size=size, seed=seed)
        finally:
            con.close()
        write_cohort(cohort, output)
    finally:
        logger.log_end("run_extraction")
    return cohort
