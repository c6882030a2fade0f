"""
Test suite for the analysis stage: labelling, completeness filtering,
descriptive statistics and plots
"""
import math

import matplotlib

matplotlib.use("Agg")

import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
import pytest  # noqa: E402

from sepsis_cohort.analysis import (  # noqa: E402
    STAT_NAMES,
    derive_septic_label,
    describe_by_group,
    describe_variable,
    drop_incomplete_rows,
    load_cohort,
    plot_group_kde,
    plot_histogram,
    prepare_analysis_table,
    summary_table,
)

SEPSIS_CODES = ["99591", "99592", "78552"]


class TestSepticLabel:

    def test_label_examples(self):
        df = pd.DataFrame({"icd9_codes": ["99591, 4019", "4019, 2724"]})
        result = derive_septic_label(df, SEPSIS_CODES)
        assert result["septic"].tolist() == [True, False]

    def test_substring_match_is_preserved(self):
        # "785520" is not a sepsis code but contains one
        df = pd.DataFrame({"icd9_codes": ["785520"]})
        assert derive_septic_label(df, SEPSIS_CODES)["septic"].tolist() == [True]

    def test_missing_diagnoses_give_missing_label(self):
        df = pd.DataFrame({"icd9_codes": ["78552", np.nan]})
        result = derive_septic_label(df, SEPSIS_CODES)
        assert result["septic"].iloc[0]
        assert pd.isna(result["septic"].iloc[1])

    def test_code_tuples_are_accepted(self):
        df = pd.DataFrame({"icd9_codes": [("4019", "99592"), ("2724",)]})
        assert derive_septic_label(df, SEPSIS_CODES)["septic"].tolist() == [True, False]

    def test_input_is_not_modified(self):
        df = pd.DataFrame({"icd9_codes": ["78552"]})
        derive_septic_label(df, SEPSIS_CODES)
        assert "septic" not in df.columns


class TestCompletenessFilter:

    def setup_method(self):
        self.df = pd.DataFrame({
            "subject_id": [1, 2, 3, 4],
            "icd9_codes": ["78552", "4019", np.nan, "4019"],
            "temperature": [37.0, np.nan, 36.0, 38.0],
            "heart_rate": [80.0, 90.0, 100.0, 110.0],
        })

    def test_rows_with_any_missing_value_are_dropped(self):
        result = drop_incomplete_rows(self.df)
        assert result["subject_id"].tolist() == [1, 4]

    def test_filter_is_deterministic(self):
        pd.testing.assert_frame_equal(drop_incomplete_rows(self.df), drop_incomplete_rows(self.df))

    def test_only_selected_columns_are_checked(self):
        result = drop_incomplete_rows(self.df, ["temperature"])
        assert result["subject_id"].tolist() == [1, 3, 4]

    def test_dropped_rows_are_logged(self, caplog):
        with caplog.at_level("INFO", logger="sepsis_cohort"):
            drop_incomplete_rows(self.df)
        assert "Dropped 2 of 4 rows" in caplog.text

    def test_prepare_analysis_table(self):
        result = prepare_analysis_table(self.df, SEPSIS_CODES)

        assert result["subject_id"].tolist() == [1, 4]
        assert result["septic"].dtype == bool
        assert result["septic"].tolist() == [True, False]


class TestDescriptiveStatistics:

    def setup_method(self):
        self.df = pd.DataFrame({
            "heart_rate": [1.0, 2.0, 3.0, 4.0, 5.0, 10.0, 20.0, 30.0],
            "septic": [False] * 5 + [True] * 3,
        })

    def test_describe_variable(self):
        stats = describe_variable(self.df.iloc[:5], "heart_rate")

        assert list(stats.index) == STAT_NAMES
        assert stats["count"] == 5
        assert stats["mean"] == pytest.approx(3.0)
        assert stats["sd"] == pytest.approx(math.sqrt(2.5))
        assert stats["skew"] == pytest.approx(0.0)
        assert stats["kurtosis"] == pytest.approx(-1.2)
        assert stats["median"] == pytest.approx(3.0)
        assert stats["iqr"] == pytest.approx(2.0)
        assert stats["range"] == pytest.approx(4.0)
        assert stats["se"] == pytest.approx(math.sqrt(2.5) / math.sqrt(5))

    def test_describe_by_group(self):
        table = describe_by_group(self.df, "heart_rate")

        assert list(table.columns) == [False, True]
        assert table.loc["count", True] == 3
        assert table.loc["mean", True] == pytest.approx(20.0)
        assert table.loc["mean", False] == pytest.approx(3.0)

    def test_summary_table(self):
        self.df["temperature"] = [36.0, 36.5, 37.0, 37.5, 38.0, 38.5, 39.0, 39.5]
        table = summary_table(self.df, ["heart_rate", "temperature"])

        assert list(table.index) == ["heart_rate", "temperature"]
        assert table.loc["temperature", "min"] == pytest.approx(36.0)


class TestPlots:

    def setup_method(self):
        rng = np.random.default_rng(0)
        self.df = pd.DataFrame({
            "temperature": np.concatenate([rng.normal(37.0, 0.5, 50), rng.normal(38.5, 0.7, 50)]),
            "septic": [False] * 50 + [True] * 50,
        })

    def test_plot_histogram_writes_file(self, tmp_path):
        path = tmp_path / "temperature_hist.png"
        plot_histogram(self.df, "temperature", "Temperature (C)", path)
        assert path.is_file()

    def test_plot_group_kde_writes_file(self, tmp_path):
        path = tmp_path / "temperature_kde.png"
        fig = plot_group_kde(self.df, "temperature", "Temperature (C)", path=path)
        assert path.is_file()
        assert fig.axes[0].get_title() == "Temperature (C) by septic"


class TestLoadCohort:

    def test_diagnosis_codes_stay_text(self, tmp_path):
        path = tmp_path / "cohort.csv"
        pd.DataFrame({"subject_id": [1], "icd9_codes": ["4019"], "temperature": [37.0]}).to_csv(path, index=False)

        df = load_cohort(path)
        assert df.loc[0, "icd9_codes"] == "4019"
