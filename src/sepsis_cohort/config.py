"""
Configuration constants for the sepsis cohort pipeline.

Paths, sampler defaults, the sepsis ICD-9 codes used for labelling, and the
metadata of every physiological variable pulled from MIMIC-III.
"""
import os

# Database and file locations
DUCKDB_PATH = os.environ.get("MIMIC_DUCKDB_PATH", "data/mimiciii.duckdb")
CACHE_DIR = "cache"
COHORT_CSV = "data/sepsis_cohort.csv"
PLOTS_DIR = "plots"

# Cohort sampling
COHORT_SIZE = 5000
RANDOM_SEED = 0

# ICD-9 codes: sepsis, severe sepsis, septic shock
SEPSIS_ICD9_CODES = ["99591", "99592", "78552"]
DIAGNOSIS_CODE_SEPARATOR = ", "

# Column names shared by the extractor and the analyzer
SUBJECT_COLUMN = "subject_id"
DIAGNOSIS_COLUMN = "icd9_codes"
LABEL_COLUMN = "septic"

# Raw event schema returned by a live query and stored in the cache
RAW_EVENT_COLUMNS = ["subject_id", "hadm_id", "charttime", "valuenum", "valueuom"]

# Tables the extractor may query; the name is interpolated into SQL
EVENT_TABLES = ("chartevents", "labevents")

# Physiological variables in merge order (= persisted column order).
# Item ids cover both CareVue and MetaVision generations of the same concept.
# min/max bound the plausible raw values, exclusive on both ends.
VARIABLE_METADATA = [
    # Temperature is recorded in both Fahrenheit and Celsius, so the raw
    # range has to admit both scales
    {'name': 'temperature', 'title': 'Temperature (C)', 'table': 'chartevents',
     'itemids': [223761, 678, 223762, 676], 'min': 10, 'max': 130},
    {'name': 'heart_rate', 'title': 'Heart rate (bpm)', 'table': 'chartevents',
     'itemids': [211, 220045], 'min': 0, 'max': 300},
    {'name': 'respiratory_rate', 'title': 'Respiratory rate (breaths/min)', 'table': 'chartevents',
     'itemids': [618, 615, 220210, 224690], 'min': 0, 'max': 80},
    {'name': 'paco2', 'title': 'Arterial PaCO2 (mmHg)', 'table': 'labevents',
     'itemids': [50818], 'min': 0, 'max': 200},
    {'name': 'wbc', 'title': 'White blood cell count (K/uL)', 'table': 'labevents',
     'itemids': [51300, 51301], 'min': 0, 'max': 500},
]

TEMPERATURE_VARIABLE = "temperature"
TEMPERATURE_CELSIUS_RANGE = (20, 50)


def variable_names(variables=VARIABLE_METADATA):
    """Names of the configured variables in merge order."""
    return [meta['name'] for meta in variables]
