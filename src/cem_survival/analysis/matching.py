"""
Coarsened Exact Matching Module

Matches treated and control patients by coarsening continuous covariates into
bins and requiring exact agreement on every coarsened covariate:

1. Continuous covariates are binned (user cutpoints, otherwise Sturges' rule)
2. Categorical covariates are kept as-is
3. Strata holding at least one treated and one control unit are kept
4. Weights follow the ATT convention: treated units get 1, controls in
   stratum s get (n_treated_s / n_control_s) * (N_control / N_treated)

A logistic-regression propensity score ("glm" distance) is estimated on the
same covariates and reported alongside the match, as MatchIt does.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from cem_survival.errors import MatchingError

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = (None, "cem")
SUPPORTED_DISTANCES = (None, "glm")


def parse_formula(formula: str) -> Tuple[str, List[str]]:
    """
    Split ``"treat ~ x1 + x2"`` into the treatment column and covariates.

    Raises:
        MatchingError: If the formula is malformed
    """
    if formula.count("~") != 1:
        raise MatchingError(f"Formula must contain exactly one '~': {formula!r}")

    lhs, rhs = (part.strip() for part in formula.split("~"))
    terms = [t.strip() for t in rhs.split("+")]

    if not lhs or not rhs or any(not t for t in terms):
        raise MatchingError(f"Malformed formula: {formula!r}")
    if len(set(terms)) != len(terms):
        raise MatchingError(f"Duplicate covariates in formula: {formula!r}")
    if lhs in terms:
        raise MatchingError(f"Treatment '{lhs}' cannot also be a covariate")

    return lhs, terms


def is_categorical(series: pd.Series) -> bool:
    return not pd.api.types.is_numeric_dtype(series) or isinstance(series.dtype, pd.CategoricalDtype)


def coarsen(series: pd.Series, cutpoints: Optional[Sequence[float]] = None) -> pd.Series:
    """
    Coarsen one covariate into string bin labels.

    Categorical covariates are returned unchanged (as strings). Numeric
    covariates are cut at ``cutpoints`` (right-closed, lowest edge included);
    values outside the cutpoints fall into open-ended edge bins. Without
    cutpoints, Sturges' rule picks equal-width bins.
    """
    if is_categorical(series):
        return series.astype(str)

    values = series.astype(float)
    if cutpoints is None:
        edges = list(np.histogram_bin_edges(values.to_numpy(), bins="sturges"))
    else:
        edges = sorted(set(float(c) for c in cutpoints))
        if values.min() < edges[0]:
            edges.insert(0, -np.inf)
        if values.max() > edges[-1]:
            edges.append(np.inf)

    if len(edges) < 2 or edges[0] == edges[-1]:
        # Constant covariate: a single bin
        return pd.Series("000", index=series.index)

    bins = pd.cut(values, bins=edges, include_lowest=True, labels=False)
    # Zero-padded so lexical order of stratum keys follows bin order
    return bins.astype(int).map(lambda b: f"{b:03d}")


@dataclass
class MatchResult:
    """
    Matching assignment for a cohort.

    Attributes:
        data: Full input cohort plus ``distance``, ``weights`` and ``subclass``
              (weight 0 and missing subclass for unmatched units)
        treatment: Treatment column name
        covariates: Covariates from the formula
        formula: Matching formula
        method: Matching method (None = no matching)
        distance: Distance method (None = no propensity score)
        cutpoints: Cutpoints used for coarsening
    """

    data: pd.DataFrame
    treatment: str
    covariates: List[str]
    formula: str
    method: Optional[str]
    distance: Optional[str]
    cutpoints: Dict[str, List[float]] = field(default_factory=dict)

    @property
    def matched_mask(self) -> pd.Series:
        return self.data["weights"] > 0

    @property
    def n_subclasses(self) -> int:
        if "subclass" not in self.data.columns:
            return 0
        return int(self.data["subclass"].nunique())

    def matched_data(self) -> pd.DataFrame:
        """Matched units only, with ``distance``, ``weights`` and ``subclass`` columns."""
        matched = self.data[self.matched_mask].copy()
        if "subclass" in matched.columns:
            matched["subclass"] = matched["subclass"].astype(int)
        return matched.reset_index(drop=True)

    def sample_sizes(self) -> pd.DataFrame:
        """All / Matched (ESS) / Matched / Unmatched counts per group."""
        rows = {}
        treat = self.data[self.treatment]
        w = self.data["weights"]
        for label, level in (("Control", 0), ("Treated", 1)):
            in_group = treat == level
            gw = w[in_group & self.matched_mask]
            ess = (gw.sum() ** 2 / (gw ** 2).sum()) if len(gw) else 0.0
            rows[label] = {
                "All": int(in_group.sum()),
                "Matched (ESS)": round(float(ess), 2),
                "Matched": int(len(gw)),
                "Unmatched": int(in_group.sum() - len(gw)),
            }
        return pd.DataFrame(rows)


class CoarsenedExactMatcher:
    """
    Coarsened exact matching of treated and control units.

    Attributes:
        df: Cohort with a binary treatment column and the formula covariates
        treatment: Treatment column name
        covariates: Covariate column names
    """

    def __init__(self, df: pd.DataFrame, formula: str, cutpoints: Optional[Dict[str, List[float]]] = None):
        """
        Initialize matcher.

        Args:
            df: Cohort DataFrame
            formula: ``"treat ~ x1 + x2"`` design formula
            cutpoints: Optional per-covariate coarsening breakpoints

        Raises:
            MatchingError: If columns are missing, treatment is not binary,
                           or covariates contain missing values
        """
        self.formula = formula
        self.treatment, self.covariates = parse_formula(formula)
        self.cutpoints = dict(cutpoints or {})

        missing_cols = [c for c in [self.treatment] + self.covariates if c not in df.columns]
        if missing_cols:
            raise MatchingError(f"Columns not found in data: {missing_cols}")

        treat_values = set(pd.unique(df[self.treatment].dropna()))
        if df[self.treatment].isna().any() or not treat_values <= {0, 1} or len(treat_values) != 2:
            raise MatchingError(
                f"Treatment column '{self.treatment}' must be binary 0/1 with both groups present, "
                f"found {sorted(treat_values)}"
            )

        with_missing = [c for c in self.covariates if df[c].isna().any()]
        if with_missing:
            raise MatchingError(f"Missing values in matching covariates: {with_missing}")

        unknown_cutpoints = set(self.cutpoints) - set(self.covariates)
        if unknown_cutpoints:
            logger.warning(f"  Cutpoints given for covariates not in formula: {sorted(unknown_cutpoints)}")

        self.df = df.copy()
        self.df[self.treatment] = self.df[self.treatment].astype(int)
        self.cat_vars = [c for c in self.covariates if is_categorical(self.df[c])]
        self.cont_vars = [c for c in self.covariates if c not in self.cat_vars]

    def _calculate_propensity_scores(self) -> np.ndarray:
        """
        Maximum-likelihood (unpenalized) logistic-regression propensity scores.

        Continuous covariates are standardized; categorical covariates are
        one-hot encoded with the first level dropped.
        """
        X = self.df[self.covariates]
        y = self.df[self.treatment].values

        transformers = []
        if self.cont_vars:
            transformers.append(("continuous", StandardScaler(), self.cont_vars))
        if self.cat_vars:
            transformers.append(("categorical", OneHotEncoder(drop="first"), self.cat_vars))

        model_pipeline = Pipeline(steps=[
            ("preprocessor", ColumnTransformer(transformers=transformers, remainder="drop")),
            ("classifier", LogisticRegression(penalty=None, max_iter=1000, solver="lbfgs", random_state=42)),
        ])

        X = X.astype({c: str for c in self.cat_vars})
        model_pipeline.fit(X, y)
        return model_pipeline.predict_proba(X)[:, 1]

    def strata(self) -> pd.Series:
        """Stratum key per unit (coarsened covariate values joined by '|')."""
        coarsened = pd.DataFrame(
            {c: coarsen(self.df[c], self.cutpoints.get(c)) for c in self.covariates},
            index=self.df.index,
        )
        return coarsened.agg("|".join, axis=1)

    def match(self) -> pd.DataFrame:
        """
        Run CEM.

        Returns:
            Copy of the cohort with ``weights`` and ``subclass`` columns

        Raises:
            MatchingError: If no stratum contains both groups
        """
        treat = self.df[self.treatment]
        stratum = self.strata()

        counts = pd.crosstab(stratum, treat)
        valid = counts.index[(counts[0] > 0) & (counts[1] > 0)]
        if len(valid) == 0:
            raise MatchingError("No strata contain both treated and control units")

        subclass_ids = {key: i + 1 for i, key in enumerate(sorted(valid))}
        subclass = stratum.map(subclass_ids)
        matched = subclass.notna()

        n_t = treat[matched].groupby(subclass[matched]).sum()
        n_c = (1 - treat[matched]).groupby(subclass[matched]).sum()
        total_t = n_t.sum()
        total_c = n_c.sum()

        weights = pd.Series(0.0, index=self.df.index)
        weights[matched & (treat == 1)] = 1.0
        controls = matched & (treat == 0)
        weights[controls] = (
            subclass[controls].map(n_t) / subclass[controls].map(n_c) * (total_c / total_t)
        )

        out = self.df.copy()
        out["weights"] = weights
        out["subclass"] = subclass.astype("Int64")

        logger.info(f"  CEM strata: {stratum.nunique()} total, {len(valid)} with both groups")
        logger.info(f"  Matched: {int(total_t)} treated, {int(total_c)} control "
                    f"({int((~matched).sum())} unmatched)")
        return out


def perform_matching(
    df: pd.DataFrame,
    formula: str,
    method: Optional[str] = "cem",
    distance: Optional[str] = "glm",
    cutpoints: Optional[Dict[str, List[float]]] = None,
) -> MatchResult:
    """
    Match treated and control units.

    Args:
        df: Cleaned cohort
        formula: ``"treat ~ covariates"`` design formula
        method: "cem", or None to keep every unit (pre-matching balance check)
        distance: "glm" for a logistic propensity score, or None
        cutpoints: Coarsening breakpoints per continuous covariate

    Returns:
        MatchResult

    Raises:
        MatchingError: Unsupported method/distance or unmatched cohort
    """
    if method not in SUPPORTED_METHODS:
        raise MatchingError(f"Unsupported matching method: {method}")
    if distance not in SUPPORTED_DISTANCES:
        raise MatchingError(f"Unsupported distance: {distance}")

    logger.info(f"  Matching: {formula} (method={method}, distance={distance})")
    matcher = CoarsenedExactMatcher(df, formula, cutpoints)

    if method == "cem":
        data = matcher.match()
    else:
        data = matcher.df.copy()
        data["weights"] = 1.0

    if distance == "glm":
        scores = pd.Series(matcher._calculate_propensity_scores(), index=matcher.df.index)
        # match.data() column order: distance, weights, subclass
        data.insert(len(matcher.df.columns), "distance", scores)

    return MatchResult(
        data=data,
        treatment=matcher.treatment,
        covariates=matcher.covariates,
        formula=formula,
        method=method,
        distance=distance,
        cutpoints=matcher.cutpoints,
    )
