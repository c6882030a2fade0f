"""
Test suite for the per-variable extraction, cache store and unit handling

Covers:
- Live queries and cache population
- Cached reads, missing and corrupt cache entries
- Exclusive plausibility range filtering
- Earliest reading per subject
- Fahrenheit to Celsius conversion and the post-conversion range
"""
import pickle
from typing import Any, Dict, List

import duckdb  # type: ignore
import numpy as np
import pandas as pd
import pytest

from sepsis_cohort.cache_store import FileCacheStore, MemoryCacheStore, dumps_table, loads_table
from sepsis_cohort.config import RAW_EVENT_COLUMNS
from sepsis_cohort.data_source import connect_mimic, run_query
from sepsis_cohort.errors import (
    CacheCorruptError,
    CacheMissingError,
    SourceUnavailableError,
    UnknownEventTableError,
)
from sepsis_cohort.extraction import (
    build_event_query,
    extract_variable,
    fetch_cached,
    fetch_live,
    first_per_subject,
    raw_plausibility_filter,
)
from sepsis_cohort.logging_utils import logger
from sepsis_cohort.units import (
    convert_temperature_units,
    fahrenheit_to_celsius,
    is_fahrenheit,
    normalize_temperature,
    post_conversion_plausibility_filter,
)

HEART_RATE_ITEMIDS = [211, 220045]
TEMPERATURE_ITEMIDS = [223761, 678, 223762, 676]


def _ts(s: str) -> pd.Timestamp:
    """Helper to create timestamps."""
    return pd.Timestamp(s)


def _events(rows: List[Dict[str, Any]]) -> pd.DataFrame:
    """Raw event frame in the cached schema."""
    return pd.DataFrame(rows, columns=RAW_EVENT_COLUMNS)


class TestVariableExtraction:
    """Extraction against an in-memory chartevents table."""

    def setup_method(self):
        self.con = duckdb.connect(database=":memory:")
        self.con.execute("""
            CREATE TABLE chartevents (
                subject_id INTEGER,
                hadm_id INTEGER,
                itemid INTEGER,
                charttime TIMESTAMP,
                valuenum DOUBLE,
                valueuom VARCHAR
            );
        """)
        base_time = _ts("2100-01-01 00:00:00")
        rows = [
            # Subject 1: two readings, the later one listed first
            (1, 101, 220045, base_time + pd.Timedelta(hours=5), 95.0, "bpm"),
            (1, 101, 211, base_time + pd.Timedelta(hours=1), 88.0, "BPM"),
            # Subject 2: earliest reading out of range, next one valid
            (2, 102, 211, base_time, 0.0, "BPM"),
            (2, 102, 211, base_time + pd.Timedelta(hours=2), 110.0, "BPM"),
            # Subject 3: only a missing value and an implausible one
            (3, 103, 220045, base_time, None, "bpm"),
            (3, 103, 220045, base_time + pd.Timedelta(hours=1), 300.0, "bpm"),
            # Subject 4: not in the cohort
            (4, 104, 211, base_time, 70.0, "BPM"),
            # Subject 1: different item (temperature), must not be picked up
            (1, 101, 223762, base_time, 37.0, "?C"),
        ]
        df = pd.DataFrame(rows, columns=["subject_id", "hadm_id", "itemid", "charttime", "valuenum", "valueuom"])
        self.con.register("chartevents_df", df)
        self.con.execute("INSERT INTO chartevents SELECT * FROM chartevents_df")
        self.subject_ids = [1, 2, 3]

    def teardown_method(self):
        self.con.close()

    def test_fetch_live_returns_raw_events_and_populates_cache(self):
        cache = MemoryCacheStore()
        raw = fetch_live(self.con, "chartevents", HEART_RATE_ITEMIDS, self.subject_ids, cache, "heart_rate")

        assert list(raw.columns) == RAW_EVENT_COLUMNS
        assert sorted(raw["subject_id"].unique().tolist()) == [1, 2, 3]
        assert len(raw) == 6
        assert "heart_rate" in cache
        pd.testing.assert_frame_equal(loads_table(cache.get("heart_rate")), raw)

    def test_extract_variable_keeps_earliest_valid_reading(self):
        cache = MemoryCacheStore()
        result = extract_variable(self.con, "chartevents", HEART_RATE_ITEMIDS, self.subject_ids,
                                  cache, False, (0, 300), "heart_rate")

        assert result["subject_id"].tolist() == [1, 2]
        assert result["valuenum"].tolist() == [88.0, 110.0]
        assert (result["valuenum"] > 0).all() and (result["valuenum"] < 300).all()

    def test_subject_without_valid_reading_is_absent(self):
        result = extract_variable(self.con, "chartevents", HEART_RATE_ITEMIDS, self.subject_ids,
                                  MemoryCacheStore(), False, (0, 300), "heart_rate")
        assert 3 not in result["subject_id"].tolist()
        assert 4 not in result["subject_id"].tolist()

    def test_cached_run_matches_live_run_without_database(self):
        cache = MemoryCacheStore()
        live = extract_variable(self.con, "chartevents", HEART_RATE_ITEMIDS, self.subject_ids,
                                cache, False, (0, 300), "heart_rate")
        cached = extract_variable(None, "chartevents", HEART_RATE_ITEMIDS, self.subject_ids,
                                  cache, True, (0, 300), "heart_rate")
        pd.testing.assert_frame_equal(live, cached)

    def test_cached_run_only_returns_requested_subjects(self):
        cache = MemoryCacheStore()
        extract_variable(self.con, "chartevents", HEART_RATE_ITEMIDS, [1, 2],
                         cache, False, (0, 300), "heart_rate")
        cached = extract_variable(None, "chartevents", HEART_RATE_ITEMIDS, [2],
                                  cache, True, (0, 300), "heart_rate")

        assert cached["subject_id"].tolist() == [2]
        assert cached["valuenum"].tolist() == [110.0]

    def test_failed_extraction_restores_log_nesting(self):
        level = logger._nesting_level
        with pytest.raises(CacheMissingError):
            extract_variable(None, "chartevents", HEART_RATE_ITEMIDS, self.subject_ids,
                             MemoryCacheStore(), True, (0, 300), "heart_rate")
        assert logger._nesting_level == level

    def test_empty_extraction_is_not_an_error(self):
        result = extract_variable(self.con, "chartevents", [999999], self.subject_ids,
                                  MemoryCacheStore(), False, (0, 300), "missing")
        assert result.empty
        assert list(result.columns) == RAW_EVENT_COLUMNS

    def test_file_cache_round_trip(self, tmp_path):
        cache = FileCacheStore(tmp_path / "cache")
        fetch_live(self.con, "chartevents", TEMPERATURE_ITEMIDS, self.subject_ids, cache, "temperature")

        assert (tmp_path / "cache" / "temperature.pkl").is_file()
        cached = fetch_cached(cache, "temperature")
        assert cached["valuenum"].tolist() == [37.0]

    def test_rejected_query_raises_source_unavailable(self):
        with pytest.raises(SourceUnavailableError):
            fetch_live(self.con, "labevents", [50818], self.subject_ids, MemoryCacheStore(), "paco2")

    def test_unknown_table_is_rejected(self):
        with pytest.raises(UnknownEventTableError):
            build_event_query("chartevents; DROP TABLE chartevents")


class TestCacheStore:
    """Cache error handling."""

    def test_missing_key_in_memory_cache(self):
        with pytest.raises(CacheMissingError):
            fetch_cached(MemoryCacheStore(), "temperature")

    def test_missing_file_cache_location(self, tmp_path):
        cache = FileCacheStore(tmp_path / "does_not_exist")
        assert "temperature" not in cache
        with pytest.raises(CacheMissingError):
            fetch_cached(cache, "temperature")

    def test_unreadable_blob_is_corrupt(self):
        cache = MemoryCacheStore()
        cache.put("temperature", b"not a pickle")
        with pytest.raises(CacheCorruptError):
            fetch_cached(cache, "temperature")

    def test_overflowing_length_is_corrupt(self):
        # BINBYTES8 opcode whose length field exceeds the maximum object size
        cache = MemoryCacheStore()
        cache.put("temperature", b"\x80\x04\x8e" + b"\xff" * 8 + b".")
        with pytest.raises(CacheCorruptError):
            fetch_cached(cache, "temperature")

    def test_truncated_table_is_corrupt(self):
        blob = dumps_table(pd.DataFrame({"subject_id": [1], "valuenum": [37.0]}))
        cache = MemoryCacheStore()
        cache.put("temperature", blob[: len(blob) // 2])
        with pytest.raises(CacheCorruptError):
            fetch_cached(cache, "temperature")

    def test_non_table_blob_is_corrupt(self):
        cache = MemoryCacheStore()
        cache.put("temperature", pickle.dumps({"subject_id": [1]}))
        with pytest.raises(CacheCorruptError):
            fetch_cached(cache, "temperature")

    def test_table_with_wrong_schema_is_corrupt(self):
        cache = MemoryCacheStore()
        cache.put("temperature", dumps_table(pd.DataFrame({"subject_id": [1], "valuenum": [37.0]})))
        with pytest.raises(CacheCorruptError):
            fetch_cached(cache, "temperature")


class TestDataSource:

    def test_missing_database_file_raises_source_unavailable(self, tmp_path):
        with pytest.raises(SourceUnavailableError):
            connect_mimic(str(tmp_path / "missing.duckdb"))

    def test_run_query_registers_tables(self):
        con = connect_mimic(":memory:")
        try:
            df = run_query(con, "SELECT SUM(x) AS total FROM tmp_values",
                           tmp_values=pd.DataFrame({"x": [1, 2, 3]}))
        finally:
            con.close()
        assert df["total"].iloc[0] == 6


class TestFilters:
    """Range filtering and earliest-reading selection on plain frames."""

    def test_raw_range_is_exclusive_and_drops_missing(self):
        t = _ts("2100-01-01")
        df = _events([
            {"subject_id": 1, "hadm_id": 1, "charttime": t, "valuenum": v, "valueuom": "?F"}
            for v in [10.0, 10.5, 98.6, 129.9, 130.0, np.nan]
        ])
        result = raw_plausibility_filter(df, (10, 130))
        assert result["valuenum"].tolist() == [10.5, 98.6, 129.9]

    def test_first_per_subject_is_earliest(self):
        t = _ts("2100-01-01")
        df = _events([
            {"subject_id": 2, "hadm_id": 2, "charttime": t + pd.Timedelta(hours=3), "valuenum": 3.0, "valueuom": ""},
            {"subject_id": 1, "hadm_id": 1, "charttime": t + pd.Timedelta(hours=2), "valuenum": 2.0, "valueuom": ""},
            {"subject_id": 2, "hadm_id": 2, "charttime": t + pd.Timedelta(hours=1), "valuenum": 1.0, "valueuom": ""},
            {"subject_id": 1, "hadm_id": 1, "charttime": t + pd.Timedelta(hours=4), "valuenum": 4.0, "valueuom": ""},
        ])
        result = first_per_subject(df)

        assert result["subject_id"].tolist() == [1, 2]
        assert result["valuenum"].tolist() == [2.0, 1.0]
        for _, row in result.iterrows():
            others = df.loc[df["subject_id"] == row["subject_id"], "charttime"]
            assert row["charttime"] <= others.min()

    def test_first_per_subject_ties_keep_original_order(self):
        t = _ts("2100-01-01")
        df = _events([
            {"subject_id": 1, "hadm_id": 1, "charttime": t, "valuenum": 7.0, "valueuom": ""},
            {"subject_id": 1, "hadm_id": 1, "charttime": t, "valuenum": 8.0, "valueuom": ""},
        ])
        assert first_per_subject(df)["valuenum"].tolist() == [7.0]


class TestTemperatureUnits:

    def setup_method(self):
        t = _ts("2100-01-01")
        self.df = _events([
            {"subject_id": 1, "hadm_id": 1, "charttime": t, "valuenum": 98.6, "valueuom": "?F"},
            {"subject_id": 2, "hadm_id": 2, "charttime": t, "valuenum": 37.0, "valueuom": "?C"},
            {"subject_id": 3, "hadm_id": 3, "charttime": t, "valuenum": 212.0, "valueuom": "Deg. F"},
            {"subject_id": 4, "hadm_id": 4, "charttime": t, "valuenum": 15.0, "valueuom": "Deg. C"},
            {"subject_id": 5, "hadm_id": 5, "charttime": t, "valuenum": 36.5, "valueuom": None},
        ])

    def test_fahrenheit_detection(self):
        assert is_fahrenheit(self.df["valueuom"]).tolist() == [True, False, True, False, False]

    def test_conversion_formula(self):
        assert fahrenheit_to_celsius(98.6) == pytest.approx(37.0)
        assert fahrenheit_to_celsius(32.0) == pytest.approx(0.0)

    def test_convert_units_changes_only_fahrenheit_rows(self):
        result = convert_temperature_units(self.df)

        assert result["valuenum"].tolist() == pytest.approx([37.0, 37.0, 100.0, 15.0, 36.5])
        assert result.loc[0, "valueuom"] == "C"
        assert result.loc[1, "valueuom"] == "?C"
        # input left untouched
        assert self.df.loc[0, "valuenum"] == 98.6

    def test_post_conversion_range(self):
        result = post_conversion_plausibility_filter(convert_temperature_units(self.df), (20, 50))
        assert result["subject_id"].tolist() == [1, 2, 5]

    def test_normalize_temperature(self):
        result = normalize_temperature(self.df)
        assert result["subject_id"].tolist() == [1, 2, 5]
        assert result["valuenum"].tolist() == pytest.approx([37.0, 37.0, 36.5])
