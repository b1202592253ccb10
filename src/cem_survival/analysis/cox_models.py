"""
Cox Proportional Hazards Module

Fits Cox models on the matched cohort with ``lifelines.CoxPHFitter``:

- crude (treatment only) and covariate-adjusted specifications
- a frailty variant keyed on the matching subclass, fitted as a marginal
  model with cluster-robust (sandwich) variance
- a weighted variant using the matching weights with robust variance

Each fit yields a ``CoxModelResult`` with the coefficient table, a
Schoenfeld-residual proportional-hazards test, AIC and BIC.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError
from lifelines.statistics import proportional_hazard_test
from scipy.stats import norm

from cem_survival.config import CoxModelSpec
from cem_survival.errors import SurvivalDataError

logger = logging.getLogger(__name__)

__all__ = [
    "AdjustedCurves",
    "CoxModelResult",
    "CoxModelSpec",
    "adjusted_survival_curves",
    "build_design_matrix",
    "format_cox_report",
    "run_cox_analysis",
    "treatment_statistics",
    "write_cox_report",
]


def build_design_matrix(
    df: pd.DataFrame,
    spec: CoxModelSpec,
    time_col: str,
    event_col: str,
    treatment_col: str = "FUS",
    cluster_col: str = "subclass",
    weights_col: str = "weights",
) -> pd.DataFrame:
    """
    Model frame for one specification.

    Categorical covariates are dummy-coded against their first level
    (columns named ``<covariate><level>``). Rows with missing values in any
    model column are dropped, as ``na.omit`` would.

    Raises:
        SurvivalDataError: Missing columns or a treatment without two levels
    """
    needed = [time_col, event_col, treatment_col] + list(spec.covariates)
    if spec.frailty:
        needed.append(cluster_col)
    if spec.weighted:
        needed.append(weights_col)

    missing_cols = [c for c in needed if c not in df.columns]
    if missing_cols:
        raise SurvivalDataError(f"Columns not found for model '{spec.name}': {missing_cols}")

    frame = df[needed].copy()
    n_before = len(frame)
    frame = frame.dropna()
    if len(frame) < n_before:
        logger.warning(f"⚠ Model '{spec.name}': dropped {n_before - len(frame)} rows with missing values")

    categorical = [
        c for c in spec.covariates
        if not pd.api.types.is_numeric_dtype(frame[c]) or isinstance(frame[c].dtype, pd.CategoricalDtype)
    ]
    if categorical:
        frame = pd.get_dummies(frame, columns=categorical, prefix=categorical, prefix_sep="",
                               drop_first=True, dtype=float)

    covariate_cols = [c for c in frame.columns if c not in (time_col, event_col, treatment_col, cluster_col, weights_col)]
    constant = [c for c in covariate_cols if frame[c].nunique() < 2]
    if constant:
        logger.warning(f"⚠ Model '{spec.name}': dropping constant covariates {constant}")
        frame = frame.drop(columns=constant)

    if frame[treatment_col].nunique() < 2:
        raise SurvivalDataError(f"Treatment '{treatment_col}' has fewer than two levels in model '{spec.name}'")

    frame[treatment_col] = frame[treatment_col].astype(int)
    frame[event_col] = frame[event_col].astype(int)
    return frame


@dataclass(frozen=True)
class CoxModelResult:
    """
    Fitted Cox model.

    Attributes:
        spec: Model specification
        formula: Formula text
        summary: lifelines coefficient table (coef, exp(coef), se(coef), z, p, CIs)
        ph_test: Schoenfeld test per covariate (test_statistic, p)
        aic: Partial AIC
        bic: ``-2 loglik + k log(n_events)``
        n_obs / n_events: Sample size and number of events
        concordance: Harrell's C-index
        log_likelihood: Partial log-likelihood
        lr_statistic / lr_df / lr_p: Likelihood ratio test against the null model
        model: Fitted CoxPHFitter
        design: Model frame used for fitting
        fit_kwargs: Keyword arguments passed to ``CoxPHFitter.fit``
    """

    spec: CoxModelSpec
    formula: str
    summary: pd.DataFrame
    ph_test: pd.DataFrame
    aic: float
    bic: float
    n_obs: int
    n_events: int
    concordance: float
    log_likelihood: float
    lr_statistic: float
    lr_df: int
    lr_p: float
    treatment_col: str
    model: CoxPHFitter = field(repr=False, compare=False)
    design: pd.DataFrame = field(repr=False, compare=False)
    fit_kwargs: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.spec.name


def run_cox_analysis(
    df: pd.DataFrame,
    spec: CoxModelSpec,
    time_col: str,
    event_col: str,
    treatment_col: str = "FUS",
    cluster_col: str = "subclass",
    weights_col: str = "weights",
    alpha: float = 0.05,
) -> CoxModelResult:
    """
    Fit one Cox proportional hazards specification.

    Args:
        df: Survival DataFrame (not modified)
        spec: Model specification
        time_col: Duration column
        event_col: Event indicator column
        treatment_col: Treatment indicator column
        cluster_col: Matching subclass column used by frailty specs
        weights_col: Matching weight column used by weighted specs
        alpha: Confidence interval level

    Returns:
        CoxModelResult

    Raises:
        SurvivalDataError: Invalid design or no events
    """
    formula = spec.formula(time_col, event_col, treatment_col, cluster_col)
    logger.info(f"  Cox model '{spec.name}': {formula}")

    design = build_design_matrix(df, spec, time_col, event_col, treatment_col, cluster_col, weights_col)
    n_events = int(design[event_col].sum())
    if n_events == 0:
        raise SurvivalDataError(f"No events in '{event_col}' for model '{spec.name}'")

    fit_kwargs: Dict[str, Any] = {"duration_col": time_col, "event_col": event_col}
    if spec.frailty:
        fit_kwargs["cluster_col"] = cluster_col
    if spec.weighted:
        fit_kwargs["weights_col"] = weights_col
        fit_kwargs["robust"] = True

    cph = CoxPHFitter(alpha=alpha)
    cph.fit(design, **fit_kwargs)

    ph = proportional_hazard_test(cph, design, time_transform="km")
    lr = cph.log_likelihood_ratio_test()

    k = len(cph.params_)
    log_likelihood = float(cph.log_likelihood_)
    result = CoxModelResult(
        spec=spec,
        formula=formula,
        summary=cph.summary.copy(),
        ph_test=ph.summary[["test_statistic", "p"]].copy(),
        aic=float(cph.AIC_partial_),
        bic=float(-2 * log_likelihood + k * np.log(n_events)),
        n_obs=len(design),
        n_events=n_events,
        concordance=float(cph.concordance_index_),
        log_likelihood=log_likelihood,
        lr_statistic=float(lr.test_statistic),
        lr_df=int(lr.degrees_freedom),
        lr_p=float(lr.p_value),
        treatment_col=treatment_col,
        model=cph,
        design=design,
        fit_kwargs=fit_kwargs,
    )

    stats = treatment_statistics(result.summary, treatment_col, alpha)
    logger.info(f"    HR={stats['hr']:.3f} (95% CI {stats['ci_lower']:.3f}-{stats['ci_upper']:.3f}), "
                f"p={stats['p']:.4f}, n={result.n_obs}, events={result.n_events}")
    return result


def treatment_statistics(summary: pd.DataFrame, treatment_col: str = "FUS", alpha: float = 0.05) -> Dict[str, float]:
    """
    Treatment effect statistics from a coefficient table.

    Each statistic is read from its column when present and derived
    otherwise: z from coef / se(coef), p from the normal distribution,
    hazard ratio and CI by exponentiating coef and its Wald interval.
    """
    if treatment_col not in summary.index:
        raise KeyError(f"'{treatment_col}' not in coefficient table")

    row = summary.loc[treatment_col]
    coef = float(row["coef"])
    se = float(row["se(coef)"])

    if "z" in summary.columns:
        z = float(row["z"])
    else:
        z = coef / se

    if "p" in summary.columns:
        p = float(row["p"])
    else:
        p = float(2 * norm.sf(abs(z)))

    hr = float(row["exp(coef)"]) if "exp(coef)" in summary.columns else float(np.exp(coef))

    level = f"{100 * (1 - alpha):g}%"
    lower_col, upper_col = f"exp(coef) lower {level}", f"exp(coef) upper {level}"
    if lower_col in summary.columns and upper_col in summary.columns:
        ci_lower, ci_upper = float(row[lower_col]), float(row[upper_col])
    else:
        crit = norm.ppf(1 - alpha / 2)
        ci_lower, ci_upper = float(np.exp(coef - crit * se)), float(np.exp(coef + crit * se))

    return {"coef": coef, "hr": hr, "se": se, "z": z, "p": p, "ci_lower": ci_lower, "ci_upper": ci_upper}


def format_cox_report(result: CoxModelResult, digits: int = 4) -> str:
    """Plain-text report: coefficients, fit statistics and the PH test."""
    columns = [c for c in result.summary.columns
               if c in ("coef", "exp(coef)", "se(coef)", "z", "p") or "lower" in c or "upper" in c]
    lines = [
        f"Cox proportional hazards model: {result.name}",
        f"Call: {result.formula}",
    ]
    if result.spec.frailty:
        lines.append("Frailty: marginal model with cluster-robust variance on the matching subclass")
    if result.spec.weighted:
        lines.append("Weights: matching weights, robust variance")
    lines += [
        "",
        f"  n = {result.n_obs}, number of events = {result.n_events}",
        "",
        result.summary[columns].round(digits).to_string(),
        "",
        f"Concordance = {result.concordance:.3f}",
        f"Likelihood ratio test = {result.lr_statistic:.2f} on {result.lr_df} df, p = {result.lr_p:.4g}",
        f"AIC = {result.aic:.2f}, BIC = {result.bic:.2f}",
        "",
        "Test of the proportional hazards assumption (scaled Schoenfeld residuals, KM time transform):",
        result.ph_test.round(digits).to_string(),
        "",
    ]
    return "\n".join(lines)


def write_cox_report(result: CoxModelResult, path: Path | str) -> Path:
    """Write ``format_cox_report`` output to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(format_cox_report(result))
    logger.info(f"✓ Cox report saved: {path}")
    return path


@dataclass
class AdjustedCurves:
    """
    Covariate-adjusted survival curves per treatment level.

    Attributes:
        survival: Mean predicted survival, indexed by time, one column per level
        lower / upper: Bootstrap percentile bands (None without bootstrap)
        p_value: Treatment p-value of the underlying Cox model
    """

    survival: pd.DataFrame
    lower: Optional[pd.DataFrame]
    upper: Optional[pd.DataFrame]
    p_value: float


def _baseline_cumulative_hazard_at(cph: CoxPHFitter, times: np.ndarray) -> np.ndarray:
    """Breslow baseline cumulative hazard as a right-continuous step function."""
    baseline = cph.baseline_cumulative_hazard_.iloc[:, 0]
    idx = np.searchsorted(baseline.index.to_numpy(), times, side="right") - 1
    return np.where(idx >= 0, baseline.to_numpy()[np.maximum(idx, 0)], 0.0)


def _direct_adjustment(cph: CoxPHFitter, X: pd.DataFrame, treatment_col: str,
                       levels: List[int], times: np.ndarray) -> pd.DataFrame:
    H0 = _baseline_cumulative_hazard_at(cph, times)
    curves = {}
    for level in levels:
        X_level = X.copy()
        X_level[treatment_col] = level
        risk = cph.predict_partial_hazard(X_level).to_numpy()
        curves[level] = np.exp(-np.outer(H0, risk)).mean(axis=1)
    return pd.DataFrame(curves, index=pd.Index(times, name="time"))


def adjusted_survival_curves(
    result: CoxModelResult,
    times: Optional[np.ndarray] = None,
    n_bootstrap: int = 0,
    alpha: float = 0.05,
    random_state: int = 42,
) -> AdjustedCurves:
    """
    Direct-adjustment survival curves.

    Every subject's survival is predicted with treatment set to each level in
    turn, and the predictions are averaged over subjects. With
    ``n_bootstrap > 0`` subjects are resampled with replacement, the model is
    refitted and percentile bands are taken at the same time points.

    Args:
        result: Fitted Cox model
        times: Evaluation times (default: 0 and every observed duration)
        n_bootstrap: Number of bootstrap refits (0 = no bands)
        alpha: Band level
        random_state: Seed for resampling
    """
    design = result.design
    time_col = result.fit_kwargs["duration_col"]
    event_col = result.fit_kwargs["event_col"]
    treatment_col = result.treatment_col
    covariates = list(result.model.params_.index)
    levels = sorted(int(v) for v in design[treatment_col].unique())

    if times is None:
        times = np.unique(np.concatenate([[0.0], design[time_col].to_numpy(dtype=float)]))

    survival = _direct_adjustment(result.model, design[covariates], treatment_col, levels, times)
    p_value = treatment_statistics(result.summary, treatment_col, alpha)["p"]

    if n_bootstrap <= 0:
        return AdjustedCurves(survival=survival, lower=None, upper=None, p_value=p_value)

    logger.info(f"  Bootstrapping adjusted curves ({n_bootstrap} resamples)...")
    rng = np.random.default_rng(random_state)
    draws = {level: [] for level in levels}
    n = len(design)
    for _ in range(n_bootstrap):
        sample = design.iloc[rng.integers(0, n, size=n)].reset_index(drop=True)
        # Treatment is among the covariates, so a single-group resample is skipped here too
        if sample[event_col].sum() == 0 or (sample[covariates].nunique() < 2).any():
            continue
        cph = CoxPHFitter(alpha=alpha)
        try:
            cph.fit(sample, **result.fit_kwargs)
        except ConvergenceError as exc:
            logger.debug(f"  Bootstrap refit did not converge: {exc}")
            continue
        boot = _direct_adjustment(cph, sample[covariates], treatment_col, levels, times)
        for level in levels:
            draws[level].append(boot[level].to_numpy())

    n_used = len(draws[levels[0]])
    if n_used < n_bootstrap:
        logger.warning(f"⚠ {n_bootstrap - n_used} bootstrap resamples skipped "
                       f"(constant covariate, no events or no convergence)")
    if n_used == 0:
        return AdjustedCurves(survival=survival, lower=None, upper=None, p_value=p_value)

    lower = pd.DataFrame(
        {level: np.percentile(np.vstack(draws[level]), 100 * alpha / 2, axis=0) for level in levels},
        index=survival.index,
    )
    upper = pd.DataFrame(
        {level: np.percentile(np.vstack(draws[level]), 100 * (1 - alpha / 2), axis=0) for level in levels},
        index=survival.index,
    )
    return AdjustedCurves(survival=survival, lower=lower, upper=upper, p_value=p_value)
