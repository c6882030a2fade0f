"""
End-to-end test: extraction from a small MIMIC-like database through the
cohort CSV to the analysis-ready table.

Three subjects:
- A (1): septic shock code, temperature 37.0 Celsius -> kept, septic
- B (2): no temperature reading -> dropped by the completeness filter
- C (3): hypertension code, temperature 98.6 Fahrenheit -> 37.0 C, kept, not septic
"""
from typing import Any

import matplotlib

matplotlib.use("Agg")

import duckdb  # type: ignore  # noqa: E402
import pandas as pd  # noqa: E402
import pytest  # noqa: E402

from sepsis_cohort.analysis import load_cohort, prepare_analysis_table  # noqa: E402
from sepsis_cohort.cache_store import MemoryCacheStore  # noqa: E402
from sepsis_cohort.cli import main  # noqa: E402
from sepsis_cohort.errors import CacheMissingError  # noqa: E402
from sepsis_cohort.extractor import extract_cohort, write_cohort  # noqa: E402
from sepsis_cohort.logging_utils import logger  # noqa: E402

SUBJECT_A, SUBJECT_B, SUBJECT_C = 1, 2, 3


def _ts(s: str) -> pd.Timestamp:
    return pd.Timestamp(s)


def create_mimic(database: str = ":memory:") -> Any:

    con = duckdb.connect(database=database)

    # Minimal schemas with only the columns referenced in queries
    con.execute(
        """
        CREATE TABLE diagnoses_icd (
            subject_id INTEGER,
            hadm_id INTEGER,
            seq_num INTEGER,
            icd9_code VARCHAR
        );
        """
    )
    for table in ("chartevents", "labevents"):
        con.execute(
            f"""
            CREATE TABLE {table} (
                subject_id INTEGER,
                hadm_id INTEGER,
                itemid INTEGER,
                charttime TIMESTAMP,
                valuenum DOUBLE,
                valueuom VARCHAR
            );
            """
        )

    diagnoses = pd.DataFrame(
        [
            (SUBJECT_A, 101, 1, "78552"),
            (SUBJECT_B, 102, 1, "4019"),
            (SUBJECT_C, 103, 1, "4019"),
        ],
        columns=["subject_id", "hadm_id", "seq_num", "icd9_code"],
    )
    con.register("diagnoses_df", diagnoses)
    con.execute("INSERT INTO diagnoses_icd SELECT * FROM diagnoses_df")

    base_time = _ts("2100-01-01 00:00:00")
    chart_rows = [
        # temperature
        (SUBJECT_A, 101, 223762, base_time + pd.Timedelta(hours=1), 37.0, "?C"),
        (SUBJECT_A, 101, 223762, base_time + pd.Timedelta(hours=6), 39.0, "?C"),
        (SUBJECT_C, 103, 223761, base_time + pd.Timedelta(hours=1), 98.6, "?F"),
    ]
    lab_rows = []
    for subject_id in (SUBJECT_A, SUBJECT_B, SUBJECT_C):
        hadm_id = 100 + subject_id
        chart_rows.append((subject_id, hadm_id, 220045, base_time + pd.Timedelta(hours=2), 80.0 + subject_id, "bpm"))
        chart_rows.append((subject_id, hadm_id, 220210, base_time + pd.Timedelta(hours=2), 16.0 + subject_id, "insp/min"))
        lab_rows.append((subject_id, hadm_id, 50818, base_time + pd.Timedelta(hours=3), 40.0, "mm Hg"))
        lab_rows.append((subject_id, hadm_id, 51300, base_time + pd.Timedelta(hours=3), 9.5, "K/uL"))

    columns = ["subject_id", "hadm_id", "itemid", "charttime", "valuenum", "valueuom"]
    con.register("chartevents_df", pd.DataFrame(chart_rows, columns=columns))
    con.execute("INSERT INTO chartevents SELECT * FROM chartevents_df")
    con.register("labevents_df", pd.DataFrame(lab_rows, columns=columns))
    con.execute("INSERT INTO labevents SELECT * FROM labevents_df")

    return con


class TestEndToEnd:

    def setup_method(self):
        self.con = create_mimic()
        self.cache = MemoryCacheStore()

    def teardown_method(self):
        self.con.close()

    def test_cohort_table(self):
        cohort = extract_cohort(self.con, self.cache, size=3, seed=0)

        assert list(cohort.columns) == ["subject_id", "icd9_codes", "temperature", "heart_rate",
                                        "respiratory_rate", "paco2", "wbc"]
        assert cohort["subject_id"].tolist() == [SUBJECT_A, SUBJECT_B, SUBJECT_C]
        assert cohort["subject_id"].is_unique
        by_subject = cohort.set_index("subject_id")
        assert by_subject.loc[SUBJECT_A, "temperature"] == pytest.approx(37.0)
        assert pd.isna(by_subject.loc[SUBJECT_B, "temperature"])
        assert by_subject.loc[SUBJECT_C, "temperature"] == pytest.approx(37.0)

    def test_analysis_ready_table(self, tmp_path):
        cohort = extract_cohort(self.con, self.cache, size=3, seed=0)
        path = write_cohort(cohort, tmp_path / "out" / "cohort.csv")

        analysis = prepare_analysis_table(load_cohort(path))

        assert analysis["subject_id"].tolist() == [SUBJECT_A, SUBJECT_C]
        assert analysis["septic"].tolist() == [True, False]
        assert analysis["temperature"].tolist() == pytest.approx([37.0, 37.0])

    def test_persisted_file_layout(self, tmp_path):
        cohort = extract_cohort(self.con, self.cache, size=3, seed=0)
        path = write_cohort(cohort, tmp_path / "cohort.csv")

        header = path.read_text().splitlines()[0]
        assert header == "subject_id,icd9_codes,temperature,heart_rate,respiratory_rate,paco2,wbc"

    def test_cached_rerun_gives_same_cohort(self):
        live = extract_cohort(self.con, self.cache, use_cache=False, size=3, seed=0)
        cached = extract_cohort(self.con, self.cache, use_cache=True, size=3, seed=0)
        pd.testing.assert_frame_equal(live, cached)

    def test_cached_run_with_smaller_cohort_adds_no_foreign_subjects(self):
        extract_cohort(self.con, self.cache, use_cache=False, size=3, seed=0)
        cached = extract_cohort(self.con, self.cache, use_cache=True, size=2, seed=0)

        assert len(cached) == 2
        assert cached["subject_id"].is_unique
        assert cached["icd9_codes"].notna().all()

    def test_cached_run_without_cache_fails(self):
        with pytest.raises(CacheMissingError):
            extract_cohort(self.con, MemoryCacheStore(), use_cache=True, size=3, seed=0)

    def test_failed_extraction_restores_log_nesting(self):
        level = logger._nesting_level
        with pytest.raises(CacheMissingError):
            extract_cohort(self.con, MemoryCacheStore(), use_cache=True, size=3, seed=0)
        assert logger._nesting_level == level


class TestCommandLine:

    def test_extract_then_analyze(self, tmp_path):
        db_path = tmp_path / "mimic.duckdb"
        create_mimic(str(db_path)).close()
        cohort_csv = tmp_path / "cohort.csv"
        plots_dir = tmp_path / "plots"

        main(["extract", "--db", str(db_path), "--cache-dir", str(tmp_path / "cache"),
              "--size", "3", "--seed", "0", "--output", str(cohort_csv)])
        assert cohort_csv.is_file()
        assert (tmp_path / "cache" / "temperature.pkl").is_file()

        main(["extract", "--db", str(db_path), "--cache-dir", str(tmp_path / "cache"), "--use-cache",
              "--size", "3", "--seed", "0", "--output", str(cohort_csv)])

        main(["analyze", "--input", str(cohort_csv), "--plots-dir", str(plots_dir)])
        assert (plots_dir / "temperature_hist.png").is_file()
        assert (plots_dir / "wbc_kde.png").is_file()
