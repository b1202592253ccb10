"""Unit tests for coarsened exact matching."""

import numpy as np
import pandas as pd
import pytest
from scipy.optimize import minimize
from scipy.special import expit

from cem_survival.analysis.matching import (
    CoarsenedExactMatcher,
    coarsen,
    parse_formula,
    perform_matching,
)
from cem_survival.errors import MatchingError

AGE_CUTPOINTS = {"Age": [0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100]}


def _maximum_likelihood_logit(X: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Fitted probabilities of an unpenalized logistic regression."""
    def nll(beta):
        eta = X @ beta
        return np.sum(np.logaddexp(0, eta) - y * eta)

    def grad(beta):
        return X.T @ (expit(X @ beta) - y)

    fit = minimize(nll, np.zeros(X.shape[1]), jac=grad, method="BFGS", options={"gtol": 1e-8})
    return expit(X @ fit.x)


class TestParseFormula:
    """Test formula parsing."""

    def test_splits_treatment_and_covariates(self):
        # Arrange & Act
        treatment, covariates = parse_formula("FUS ~ Age + IDH + MGMT")

        # Assert
        assert treatment == "FUS"
        assert covariates == ["Age", "IDH", "MGMT"]

    @pytest.mark.parametrize("formula", [
        "FUS Age + IDH",
        "FUS ~ Age ~ IDH",
        "FUS ~ Age + ",
        " ~ Age",
        "FUS ~ Age + Age",
        "FUS ~ FUS + Age",
    ])
    def test_malformed_formula_raises(self, formula):
        # Act & Assert
        with pytest.raises(MatchingError):
            parse_formula(formula)


class TestCoarsen:
    """Test covariate coarsening."""

    def test_cutpoints_are_right_closed_with_lowest_included(self):
        # Arrange
        ages = pd.Series([0.0, 35.0, 40.0, 41.0])

        # Act
        bins = coarsen(ages, AGE_CUTPOINTS["Age"])

        # Assert
        assert bins.tolist() == ["000", "003", "003", "004"]

    def test_values_beyond_cutpoints_get_edge_bins(self):
        # Arrange
        ages = pd.Series([50.0, 105.0])

        # Act
        bins = coarsen(ages, AGE_CUTPOINTS["Age"])

        # Assert
        assert bins.iloc[0] != bins.iloc[1]

    def test_categorical_kept_exact(self):
        # Arrange
        idh = pd.Series(pd.Categorical(["Mutant", "Wildtype", "Mutant"]))

        # Act
        bins = coarsen(idh)

        # Assert
        assert bins.tolist() == ["Mutant", "Wildtype", "Mutant"]

    def test_sturges_bins_without_cutpoints(self):
        # Arrange
        values = pd.Series(np.linspace(0, 100, 64))

        # Act
        bins = coarsen(values)

        # Assert
        # Sturges: ceil(log2(64)) + 1 = 7 bins
        assert bins.nunique() == 7

    def test_constant_covariate_single_bin(self):
        # Arrange & Act
        bins = coarsen(pd.Series([3.0, 3.0, 3.0]))

        # Assert
        assert bins.nunique() == 1


class TestPerformMatchingCEM:
    """Test CEM subclass and weight invariants."""

    @pytest.fixture
    def result(self, matching_cohort):
        return perform_matching(matching_cohort, "FUS ~ Age + IDH + MGMT", cutpoints=AGE_CUTPOINTS)

    def test_every_matched_row_has_subclass(self, result):
        # Arrange & Act
        matched = result.matched_data()

        # Assert
        assert matched["subclass"].notna().all()
        assert (matched["weights"] > 0).all()

    def test_unmatched_rows_have_zero_weight(self, result):
        # Arrange & Act
        unmatched = result.data[~result.matched_mask]

        # Assert
        assert (unmatched["weights"] == 0).all()
        assert unmatched["subclass"].isna().all()

    def test_every_subclass_has_both_groups(self, result):
        # Arrange & Act
        groups = result.matched_data().groupby("subclass")["FUS"].nunique()

        # Assert
        assert (groups == 2).all()

    def test_subclasses_numbered_from_one(self, result):
        # Arrange & Act
        subclasses = sorted(result.matched_data()["subclass"].unique())

        # Assert
        assert subclasses == list(range(1, result.n_subclasses + 1))

    def test_subclass_is_exact_on_covariates(self, result):
        # Arrange
        matched = result.matched_data()
        matched["age_bin"] = coarsen(matched["Age"], AGE_CUTPOINTS["Age"])

        # Act
        per_subclass = matched.groupby("subclass")[["age_bin", "IDH", "MGMT"]].nunique()

        # Assert
        assert (per_subclass == 1).all().all()

    def test_att_weights(self, result):
        # Arrange
        matched = result.matched_data()
        treated = matched[matched["FUS"] == 1]
        control = matched[matched["FUS"] == 0]
        ratio = len(control) / len(treated)

        # Act
        control_sums = control.groupby("subclass")["weights"].sum()
        treated_counts = treated.groupby("subclass").size()

        # Assert
        assert (treated["weights"] == 1.0).all()
        assert control["weights"].sum() == pytest.approx(len(control))
        np.testing.assert_allclose(control_sums.values, (treated_counts * ratio).loc[control_sums.index].values)

    def test_deterministic_output(self, matching_cohort):
        # Arrange & Act
        first = perform_matching(matching_cohort, "FUS ~ Age + IDH + MGMT", cutpoints=AGE_CUTPOINTS)
        second = perform_matching(matching_cohort, "FUS ~ Age + IDH + MGMT", cutpoints=AGE_CUTPOINTS)

        # Assert
        assert first.matched_data().to_csv(index=False) == second.matched_data().to_csv(index=False)

    def test_distance_weights_subclass_are_last_columns(self, result):
        # Arrange & Act
        matched = result.matched_data()

        # Assert
        assert matched.columns[-3:].tolist() == ["distance", "weights", "subclass"]
        assert matched["distance"].between(0, 1).all()

    def test_input_not_modified(self, matching_cohort):
        # Arrange
        before = matching_cohort.copy()

        # Act
        perform_matching(matching_cohort, "FUS ~ Age + IDH + MGMT", cutpoints=AGE_CUTPOINTS)

        # Assert
        pd.testing.assert_frame_equal(matching_cohort, before)

    def test_sample_sizes(self, result, matching_cohort):
        # Arrange & Act
        sizes = result.sample_sizes()

        # Assert
        assert sizes.loc["All", "Treated"] == int(matching_cohort["FUS"].sum())
        assert sizes.loc["All", "Control"] == int((matching_cohort["FUS"] == 0).sum())
        assert (sizes.loc["Matched"] + sizes.loc["Unmatched"] == sizes.loc["All"]).all()


class TestPerformMatchingOptions:
    """Test method/distance options and error handling."""

    def test_method_none_keeps_everyone(self, matching_cohort):
        # Arrange & Act
        result = perform_matching(matching_cohort, "FUS ~ Age + Gender + TumorSize", method=None)

        # Assert
        assert len(result.matched_data()) == len(matching_cohort)
        assert (result.data["weights"] == 1.0).all()
        assert "subclass" not in result.data.columns
        assert result.n_subclasses == 0

    def test_distance_none_skips_propensity(self, matching_cohort):
        # Arrange & Act
        result = perform_matching(matching_cohort, "FUS ~ IDH", distance=None)

        # Assert
        assert "distance" not in result.data.columns

    def test_glm_distance_is_maximum_likelihood_fit(self, matching_cohort):
        # Arrange
        age = matching_cohort["Age"].to_numpy()
        X = np.column_stack([
            np.ones(len(matching_cohort)),
            (age - age.mean()) / age.std(),
            (matching_cohort["IDH"] == "Wildtype").to_numpy(dtype=float),
            (matching_cohort["MGMT"] == "Unmethylated").to_numpy(dtype=float),
        ])
        expected = _maximum_likelihood_logit(X, matching_cohort["FUS"].to_numpy(dtype=float))

        # Act
        result = perform_matching(matching_cohort, "FUS ~ Age + IDH + MGMT", method=None)

        # Assert
        np.testing.assert_allclose(result.data["distance"].to_numpy(), expected, atol=1e-3)

    def test_unsupported_method_raises(self, matching_cohort):
        # Act & Assert
        with pytest.raises(MatchingError, match="method"):
            perform_matching(matching_cohort, "FUS ~ Age", method="nearest")

    def test_missing_covariate_values_raise(self, matching_cohort):
        # Arrange
        matching_cohort.loc[3, "Age"] = np.nan

        # Act & Assert
        with pytest.raises(MatchingError, match="Missing values"):
            perform_matching(matching_cohort, "FUS ~ Age + IDH")

    def test_non_binary_treatment_raises(self, matching_cohort):
        # Arrange
        matching_cohort.loc[0, "FUS"] = 2

        # Act & Assert
        with pytest.raises(MatchingError, match="binary"):
            CoarsenedExactMatcher(matching_cohort, "FUS ~ Age")

    def test_unknown_column_raises(self, matching_cohort):
        # Act & Assert
        with pytest.raises(MatchingError, match="KPS"):
            perform_matching(matching_cohort, "FUS ~ Age + KPS")

    def test_no_overlapping_strata_raises(self):
        # Arrange
        df = pd.DataFrame({
            "FUS": [1, 1, 1, 0, 0, 0],
            "Age": [31.0, 33.0, 35.0, 71.0, 73.0, 75.0],
        })

        # Act & Assert
        with pytest.raises(MatchingError, match="No strata"):
            perform_matching(df, "FUS ~ Age", cutpoints=AGE_CUTPOINTS)
