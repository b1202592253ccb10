"""Unit tests for covariate balance diagnostics."""

import pytest

from cem_survival.analysis.balance import (
    BALANCE_COLUMNS,
    assess_balance,
    expand_covariates,
    format_balance_summary,
    summarize_balance,
)
from cem_survival.analysis.matching import perform_matching

FORMULA = "FUS ~ Age + IDH + MGMT"
CUTPOINTS = {"Age": [0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100]}


@pytest.fixture
def cem_result(matching_cohort):
    return perform_matching(matching_cohort, FORMULA, cutpoints=CUTPOINTS)


class TestBalanceTables:
    """Test balance statistics before and after CEM."""

    def test_categorical_levels_expanded(self, cem_result):
        # Arrange & Act
        design = expand_covariates(cem_result)

        # Assert
        assert design.columns.tolist() == [
            "distance", "Age", "IDHMutant", "IDHWildtype", "MGMTMethylated", "MGMTUnmethylated",
        ]

    def test_exact_covariates_balanced_after_matching(self, cem_result):
        # Arrange & Act
        summary = summarize_balance(cem_result)

        # Assert
        for row in ("IDHMutant", "IDHWildtype", "MGMTMethylated", "MGMTUnmethylated"):
            assert abs(summary.matched_data.loc[row, "Std. Mean Diff."]) < 1e-9

    def test_all_data_means_are_unweighted(self, cem_result, matching_cohort):
        # Arrange
        treated = matching_cohort[matching_cohort["FUS"] == 1]

        # Act
        summary = summarize_balance(cem_result)

        # Assert
        assert summary.all_data.loc["Age", "Means Treated"] == pytest.approx(treated["Age"].mean())
        assert summary.all_data.columns.tolist() == BALANCE_COLUMNS

    def test_binary_rows_have_no_variance_ratio(self, cem_result):
        # Arrange & Act
        summary = summarize_balance(cem_result)

        # Assert
        assert summary.all_data.loc[["IDHMutant", "MGMTMethylated"], "Var. Ratio"].isna().all()
        assert summary.all_data.loc["Age", "Var. Ratio"] > 0

    def test_method_none_has_no_matched_table(self, matching_cohort):
        # Arrange
        result = perform_matching(matching_cohort, FORMULA, method=None)

        # Act
        summary = summarize_balance(result)

        # Assert
        assert summary.matched_data is None
        assert summary.max_abs_smd() == summary.max_abs_smd(matched=False)


class TestFormatBalanceSummary:
    """Test text rendering."""

    def test_matched_only(self, cem_result):
        # Arrange & Act
        text = format_balance_summary(summarize_balance(cem_result), un=False)

        # Assert
        assert "Summary of Balance for Matched Data" in text
        assert "Summary of Balance for All Data" not in text
        assert "Sample Sizes" in text
        assert FORMULA in text

    def test_unmatched_only_shows_all_data(self, matching_cohort):
        # Arrange
        result = perform_matching(matching_cohort, FORMULA, method=None)

        # Act
        text = format_balance_summary(summarize_balance(result), un=False)

        # Assert
        assert "Summary of Balance for All Data" in text
        assert "Matched Data" not in text


class TestAssessBalance:
    """Test pre/post SMD assessment."""

    def test_reports_every_row(self, cem_result):
        # Arrange
        summary = summarize_balance(cem_result)

        # Act
        assessment = assess_balance(summary)

        # Assert
        assert len(assessment) == len(summary.all_data)
        assert set(assessment.columns) == {"variable", "pre_smd", "post_smd", "balanced", "improved"}
        assert assessment.set_index("variable").loc["IDHMutant", "balanced"]
