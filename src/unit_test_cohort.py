"""
Test suite for cohort sampling, diagnosis aggregation and variable merging
"""
import duckdb  # type: ignore
import numpy as np
import pandas as pd
import pytest

from sepsis_cohort.cohort import (
    aggregate_diagnoses,
    merge_variable,
    parse_codes,
    sample_subjects,
    select_subjects,
    serialize_codes,
)
from sepsis_cohort.errors import SampleSizeExceedsPopulationError


class TestCohortSampling:
    """Sampling and diagnosis aggregation against an in-memory diagnoses_icd table."""

    def setup_method(self):
        self.con = duckdb.connect(database=":memory:")
        self.con.execute("""
            CREATE TABLE diagnoses_icd (
                subject_id INTEGER,
                hadm_id INTEGER,
                seq_num INTEGER,
                icd9_code VARCHAR
            );
        """)
        rows = []
        for subject_id in range(1, 21):
            rows.append((subject_id, subject_id * 10, 1, "4019"))
        # Subject 1: repeated and unordered codes across two admissions
        rows += [
            (1, 11, 2, "99591"),
            (1, 12, 1, "4019"),
            (1, 12, 2, "2724"),
            (1, 12, 3, None),
        ]
        df = pd.DataFrame(rows, columns=["subject_id", "hadm_id", "seq_num", "icd9_code"])
        self.con.register("diagnoses_df", df)
        self.con.execute("INSERT INTO diagnoses_icd SELECT * FROM diagnoses_df")

    def teardown_method(self):
        self.con.close()

    def test_sampling_is_deterministic(self):
        first = sample_subjects(self.con, size=5, seed=42)
        second = sample_subjects(self.con, size=5, seed=42)

        assert first == second
        assert len(set(first)) == 5
        assert set(first) <= set(range(1, 21))

    def test_different_seeds_give_different_samples(self):
        samples = {tuple(sample_subjects(self.con, size=10, seed=seed)) for seed in range(5)}
        assert len(samples) > 1

    def test_sample_size_exceeding_population_fails(self):
        with pytest.raises(SampleSizeExceedsPopulationError) as excinfo:
            sample_subjects(self.con, size=21, seed=0)
        assert excinfo.value.population == 20

    def test_full_population_sample(self):
        assert sorted(sample_subjects(self.con, size=20, seed=0)) == list(range(1, 21))

    def test_aggregate_diagnoses_sorted_distinct_codes(self):
        cohort = aggregate_diagnoses(self.con, [1, 2, 99])

        assert cohort["subject_id"].tolist() == [1, 2]
        assert cohort.loc[0, "icd9_codes"] == ("2724", "4019", "99591")
        assert cohort.loc[1, "icd9_codes"] == ("4019",)


class TestSelectSubjects:

    def test_input_order_does_not_matter(self):
        population = list(range(100, 200))
        shuffled = list(reversed(population))
        assert select_subjects(population, 10, 7) == select_subjects(shuffled, 10, 7)

    def test_duplicates_are_ignored(self):
        with pytest.raises(SampleSizeExceedsPopulationError):
            select_subjects([1, 1, 2, 2], 3, 0)


class TestDiagnosisCodes:

    def test_serialize_and_parse(self):
        assert serialize_codes(("2724", "4019")) == "2724, 4019"
        assert parse_codes("4019, 2724, 4019") == ("2724", "4019")

    def test_parse_missing(self):
        assert parse_codes(np.nan) == ()
        assert parse_codes("") == ()


class TestMergeVariable:

    def setup_method(self):
        self.cohort = pd.DataFrame({
            "subject_id": [1, 2, 3],
            "icd9_codes": [("78552",), ("4019",), ("4019",)],
        })
        self.temperature = pd.DataFrame({"subject_id": [1, 3], "valuenum": [37.0, 36.5]})

    def test_missing_reading_becomes_nan(self):
        merged = merge_variable(self.cohort, self.temperature, "temperature")

        assert merged["subject_id"].tolist() == [1, 2, 3]
        assert merged.loc[merged["subject_id"] == 1, "temperature"].iloc[0] == 37.0
        assert np.isnan(merged.loc[merged["subject_id"] == 2, "temperature"].iloc[0])

    def test_merge_is_idempotent(self):
        once = merge_variable(self.cohort, self.temperature, "temperature")
        twice = merge_variable(once, self.temperature, "temperature")
        pd.testing.assert_frame_equal(once, twice)

    def test_columns_follow_merge_order(self):
        merged = merge_variable(self.cohort, self.temperature, "temperature")
        merged = merge_variable(merged, pd.DataFrame({"subject_id": [2], "valuenum": [80.0]}), "heart_rate")
        assert list(merged.columns) == ["subject_id", "icd9_codes", "temperature", "heart_rate"]

    def test_empty_extraction_gives_all_missing_column(self):
        empty = pd.DataFrame({"subject_id": pd.Series([], dtype="int64"), "valuenum": pd.Series([], dtype=float)})
        merged = merge_variable(self.cohort, empty, "wbc")

        assert len(merged) == 3
        assert merged["wbc"].isna().all()

    def test_outer_merge_keeps_extra_subjects(self):
        extra = pd.DataFrame({"subject_id": [1, 4], "valuenum": [37.0, 38.0]})
        merged = merge_variable(self.cohort, extra, "temperature")

        assert merged["subject_id"].tolist() == [1, 2, 3, 4]
        assert merged.loc[merged["subject_id"] == 4, "icd9_codes"].isna().all()
