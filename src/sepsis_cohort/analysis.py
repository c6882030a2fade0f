"""
Septic vs Non-Septic Cohort Analysis

Reads the cohort CSV written by the extraction stage, labels each subject as
septic when its diagnosis string mentions any sepsis ICD-9 code, drops
incomplete rows, and summarizes every physiological variable overall and
per label group.

The label is a substring match against the serialized code list, not an
exact set lookup: a longer code containing a sepsis code as a substring is
also labelled septic.
"""
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from .cohort import serialize_codes
from .config import (
    COHORT_CSV,
    DIAGNOSIS_COLUMN,
    LABEL_COLUMN,
    PLOTS_DIR,
    SEPSIS_ICD9_CODES,
    SUBJECT_COLUMN,
    VARIABLE_METADATA,
)
from .logging_utils import logger

# Order of the descriptive statistics in every summary table
STAT_NAMES = ['count', 'mean', 'sd', 'skew', 'kurtosis', 'median', 'q25', 'q75',
              'iqr', 'min', 'max', 'range', 'se']


def load_cohort(path=COHORT_CSV) -> pd.DataFrame:
    """Read the cohort CSV, keeping diagnosis strings as text."""
    return pd.read_csv(path, dtype={DIAGNOSIS_COLUMN: str})


def derive_septic_label(df: pd.DataFrame, codes: Sequence[str] = SEPSIS_ICD9_CODES,
                        column: str = DIAGNOSIS_COLUMN, label: str = LABEL_COLUMN) -> pd.DataFrame:
    """
    Add a boolean label column from a diagnosis-code substring match.

    Args:
        df (pd.DataFrame): Cohort table
        codes (Sequence[str]): Target codes, matched as an alternation
        column (str): Column with the serialized diagnosis codes
        label (str): Name of the new label column

    Returns:
        pd.DataFrame: Copy of ``df`` with a nullable boolean ``label`` column;
        the label is missing where the diagnosis string is missing
    """
    df = df.copy()
    text = df[column].map(lambda v: serialize_codes(v) if isinstance(v, tuple) else v).astype("string")
    pattern = "|".join(re.escape(code) for code in codes)
    df[label] = text.str.contains(pattern, regex=True)
    return df


def drop_incomplete_rows(df: pd.DataFrame, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Drop rows with any missing value in ``columns`` (default: all columns).

    The number of dropped rows is logged.
    """
    kept = df.dropna(subset=list(columns) if columns is not None else None).reset_index(drop=True)
    logger.log_info(f"Dropped {len(df) - len(kept)} of {len(df)} rows with missing values")
    return kept


def prepare_analysis_table(df: pd.DataFrame, codes: Sequence[str] = SEPSIS_ICD9_CODES) -> pd.DataFrame:
    """Label the cohort and keep only complete rows."""
    logger.log_start("prepare_analysis_table")
    try:
        df = derive_septic_label(df, codes)
        df = drop_incomplete_rows(df)
        df[LABEL_COLUMN] = df[LABEL_COLUMN].astype(bool)
        logger.log_info(f"{int(df[LABEL_COLUMN].sum())} septic and {int((~df[LABEL_COLUMN]).sum())} non-septic subjects")
    finally:
        logger.log_end("prepare_analysis_table")
    return df


def describe_variable(df: pd.DataFrame, variable: str) -> pd.Series:
    """
    Descriptive statistics of one numeric column.

    Returns:
        pd.Series: count, mean, sd, skew, kurtosis (excess), median, q25,
        q75, iqr, min, max, range and standard error of the mean
    """
    values = df[variable].dropna().astype(float)
    q25, q75 = values.quantile(0.25), values.quantile(0.75)
    stats = {
        'count': values.count(),
        'mean': values.mean(),
        'sd': values.std(),
        'skew': values.skew(),
        'kurtosis': values.kurt(),
        'median': values.median(),
        'q25': q25,
        'q75': q75,
        'iqr': q75 - q25,
        'min': values.min(),
        'max': values.max(),
        'range': values.max() - values.min(),
        'se': values.sem(),
    }
    return pd.Series(stats, name=variable)[STAT_NAMES]


def describe_by_group(df: pd.DataFrame, variable: str, label: str = LABEL_COLUMN) -> pd.DataFrame:
    """Descriptive statistics of ``variable`` with one column per label value."""
    return pd.DataFrame({value: describe_variable(group, variable) for value, group in df.groupby(label)})


def summary_table(df: pd.DataFrame, variables: Sequence[str]) -> pd.DataFrame:
    """One row of descriptive statistics per variable."""
    return pd.DataFrame([describe_variable(df, variable) for variable in variables])


def plot_histogram(df: pd.DataFrame, variable: str, title: str, path=None) -> plt.Figure:
    """Histogram of one variable over the whole analysis table."""
    fig, ax = plt.subplots(figsize=(8, 5))
    sns.histplot(data=df, x=variable, ax=ax)
    ax.set_title(title)
    ax.set_xlabel(title)
    if path is not None:
        fig.savefig(path, bbox_inches='tight')
        plt.close(fig)
    return fig


def plot_group_kde(df: pd.DataFrame, variable: str, title: str, label: str = LABEL_COLUMN, path=None) -> plt.Figure:
    """Kernel density of one variable per label group, each normalized on its own."""
    fig, ax = plt.subplots(figsize=(8, 5))
    sns.kdeplot(data=df, x=variable, hue=label, common_norm=False, fill=True, warn_singular=False, ax=ax)
    ax.set_title(f"{title} by {label}")
    ax.set_xlabel(title)
    if path is not None:
        fig.savefig(path, bbox_inches='tight')
        plt.close(fig)
    return fig


def run_analysis(input_path=COHORT_CSV, plots_dir=PLOTS_DIR,
                 variables: List[Dict] = VARIABLE_METADATA) -> Dict[str, pd.DataFrame]:
    """
    Load the cohort CSV, prepare the analysis table, and report every variable.

    Prints the overall summary and the per-group tables, and writes a
    histogram and a grouped density plot per variable into ``plots_dir``.

    Returns:
        Dict[str, pd.DataFrame]: ``analysis`` table, ``summary`` table, and a
        per-group table under each variable name
    """
    logger.log_start("run_analysis")
    try:
        cohort = load_cohort(input_path)
        logger.log_info(f"Loaded {len(cohort)} subjects from {input_path}")
        present = [meta for meta in variables if meta['name'] in cohort.columns]
        names = [meta['name'] for meta in present]
        analysis = prepare_analysis_table(cohort[[SUBJECT_COLUMN, DIAGNOSIS_COLUMN] + names])

        results = {'analysis': analysis, 'summary': summary_table(analysis, names)}
        print("\n--- Summary ---")
        print(results['summary'])

        plots_path = Path(plots_dir)
        plots_path.mkdir(parents=True, exist_ok=True)
        for meta in present:
            name, title = meta['name'], meta['title']
            results[name] = describe_by_group(analysis, name)
            print(f"\n--- {title} by {LABEL_COLUMN} ---")
            print(results[name])
            plot_histogram(analysis, name, title, plots_path / f"{name}_hist.png")
            plot_group_kde(analysis, name, title, path=plots_path / f"{name}_kde.png")
    finally:
        logger.log_end("run_analysis")
    return results
