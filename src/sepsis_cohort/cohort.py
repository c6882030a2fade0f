"""
Cohort Sampling, Diagnosis Aggregation and Variable Merging

The cohort is a seeded random sample of the subjects that have diagnosis
records in MIMIC-III. Each sampled subject gets one row holding the sorted
set of distinct ICD-9 codes recorded across all of their admissions; the
per-variable extractions are then merged onto that table one column at a
time, keyed by subject_id.
"""
from typing import Iterable, List, Sequence, Tuple

import duckdb
import pandas as pd

from .config import (
    COHORT_SIZE,
    DIAGNOSIS_CODE_SEPARATOR,
    DIAGNOSIS_COLUMN,
    RANDOM_SEED,
    SUBJECT_COLUMN,
)
from .data_source import run_query
from .errors import SampleSizeExceedsPopulationError
from .logging_utils import logger

# Every subject that has at least one diagnosis record
POPULATION_SQL = """
    SELECT DISTINCT d.subject_id::INTEGER AS subject_id
    FROM diagnoses_icd d
    ORDER BY subject_id
    """

# All diagnosis records of the sampled subjects
DIAGNOSES_SQL = """
    SELECT d.subject_id::INTEGER AS subject_id,
           d.icd9_code AS icd9_code
    FROM diagnoses_icd d
    WHERE d.subject_id::INTEGER IN (SELECT subject_id FROM tmp_subject_ids)
      AND d.icd9_code IS NOT NULL
    """


def select_subjects(population: Iterable[int], size: int = COHORT_SIZE, seed: int = RANDOM_SEED) -> List[int]:
    """
    Draw a uniform sample without replacement from a subject population.

    The population is de-duplicated and sorted first, so the same set of
    subjects and seed always give the same sample regardless of input order.

    Args:
        population (Iterable[int]): Candidate subject IDs
        size (int): Number of subjects to draw
        seed (int): Random state for the sample

    Returns:
        List[int]: Sampled subject IDs

    Raises:
        SampleSizeExceedsPopulationError: If size is larger than the population
    """
    candidates = pd.Series(sorted(set(int(s) for s in population)), dtype="int64")
    if size > len(candidates):
        raise SampleSizeExceedsPopulationError(size, len(candidates))
    return candidates.sample(n=size, random_state=seed).tolist()


def sample_subjects(con: duckdb.DuckDBPyConnection, size: int = COHORT_SIZE, seed: int = RANDOM_SEED) -> List[int]:
    """
    Sample the cohort from all subjects with diagnosis records.

    Args:
        con: Open DuckDB connection to MIMIC-III
        size (int): Cohort size
        seed (int): Random state for the sample

    Returns:
        List[int]: Sampled subject IDs
    """
    logger.log_start("sample_subjects")
    try:
        population = run_query(con, POPULATION_SQL)[SUBJECT_COLUMN].tolist()
        logger.log_info(f"Population of {len(population)} subjects with diagnoses")
        subject_ids = select_subjects(population, size, seed)
        logger.log_info(f"Sampled {len(subject_ids)} subjects (seed={seed})")
    finally:
        logger.log_end("sample_subjects")
    return subject_ids


def serialize_codes(codes: Sequence[str]) -> str:
    """Join a diagnosis code set into its persisted string form."""
    return DIAGNOSIS_CODE_SEPARATOR.join(codes)


def parse_codes(text: str) -> Tuple[str, ...]:
    """Split a persisted diagnosis string back into a sorted code tuple."""
    if not isinstance(text, str) or not text.strip():
        return ()
    return tuple(sorted({code.strip() for code in text.split(",") if code.strip()}))


def aggregate_diagnoses(con: duckdb.DuckDBPyConnection, subject_ids: List[int]) -> pd.DataFrame:
    """
    Build one row per subject holding its distinct diagnosis codes.

    Args:
        con: Open DuckDB connection to MIMIC-III
        subject_ids (List[int]): Sampled subject IDs

    Returns:
        pd.DataFrame: Columns ``subject_id`` and ``icd9_codes``, where
        ``icd9_codes`` is a sorted tuple of distinct codes. Subjects without
        diagnosis records are not included.
    """
    logger.log_start("aggregate_diagnoses")
    try:
        df = run_query(
            con,
            DIAGNOSES_SQL,
            tmp_subject_ids=pd.DataFrame({SUBJECT_COLUMN: subject_ids}, dtype="int64"),
        )
        df["icd9_code"] = df["icd9_code"].astype(str).str.strip()

        codes = df.groupby(SUBJECT_COLUMN)["icd9_code"].agg(lambda c: tuple(sorted(set(c))))
        cohort = codes.rename(DIAGNOSIS_COLUMN).reset_index()
        cohort[SUBJECT_COLUMN] = cohort[SUBJECT_COLUMN].astype("int64")

        logger.log_info(f"{len(cohort)} of {len(subject_ids)} subjects have diagnosis records")
    finally:
        logger.log_end("aggregate_diagnoses")
    return cohort


def merge_variable(cohort: pd.DataFrame, extracted: pd.DataFrame, name: str) -> pd.DataFrame:
    """
    Outer-merge one extracted variable onto the cohort table.

    Args:
        cohort (pd.DataFrame): Cohort table keyed by ``subject_id``
        extracted (pd.DataFrame): One row per subject with a ``valuenum`` column
        name (str): Column name for the variable in the cohort table

    Returns:
        pd.DataFrame: Cohort with a ``name`` column; subjects without a
        reading get NaN. An existing ``name`` column is replaced, so merging
        the same table twice gives the same result.
    """
    values = extracted[[SUBJECT_COLUMN, "valuenum"]].rename(columns={"valuenum": name})
    values = values.astype({SUBJECT_COLUMN: "int64", name: "float64"})

    if name in cohort.columns:
        cohort = cohort.drop(columns=name)
    return cohort.merge(values, on=SUBJECT_COLUMN, how="outer")
