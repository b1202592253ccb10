"""
Covariate Balance Module

Compares covariate distributions of treated and control units before and
after matching: means, standardized mean differences (SMD), variance ratios
and eCDF statistics, in the layout of MatchIt's ``summary()``.

SMD follows the ATT convention: the mean difference is divided by the
standard deviation of the treated group in the full sample. Binary indicator
rows (levels of categorical covariates) report the raw difference in
proportions.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from .matching import MatchResult, is_categorical

BALANCE_COLUMNS = [
    "Means Treated",
    "Means Control",
    "Std. Mean Diff.",
    "Var. Ratio",
    "eCDF Mean",
    "eCDF Max",
]


def _weighted_mean(x: np.ndarray, w: np.ndarray) -> float:
    return float(np.average(x, weights=w))


def _weighted_var(x: np.ndarray, w: np.ndarray) -> float:
    """Reliability-weighted sample variance (equals ``np.var(ddof=1)`` for unit weights)."""
    mean = _weighted_mean(x, w)
    v1 = w.sum()
    v2 = (w ** 2).sum()
    denom = v1 - v2 / v1
    if denom <= 0:
        return 0.0
    return float((w * (x - mean) ** 2).sum() / denom)


def _weighted_ecdf(points: np.ndarray, x: np.ndarray, w: np.ndarray) -> np.ndarray:
    order = np.argsort(x, kind="mergesort")
    xs = x[order]
    cumw = np.cumsum(w[order]) / w.sum()
    idx = np.searchsorted(xs, points, side="right")
    return np.where(idx > 0, cumw[np.maximum(idx - 1, 0)], 0.0)


def expand_covariates(result: MatchResult) -> pd.DataFrame:
    """
    Balance design: numeric covariates as-is, categorical covariates as one
    0/1 column per level (named ``<covariate><level>``), distance first.
    """
    data = result.data
    columns = {}
    if "distance" in data.columns:
        columns["distance"] = data["distance"].astype(float)

    for cov in result.covariates:
        series = data[cov]
        if is_categorical(series):
            levels = sorted(series.astype(str).unique())
            for level in levels:
                columns[f"{cov}{level}"] = (series.astype(str) == level).astype(float)
        else:
            columns[cov] = series.astype(float)

    return pd.DataFrame(columns, index=data.index)


def balance_table(result: MatchResult, matched: bool) -> pd.DataFrame:
    """
    Balance statistics for all data (``matched=False``) or matched data.

    Matched statistics use the matching weights.
    """
    design = expand_covariates(result)
    treat = result.data[result.treatment].to_numpy()

    if matched:
        w = result.data["weights"].to_numpy(dtype=float)
    else:
        w = np.ones(len(design))

    keep = w > 0
    rows = {}
    for name in design.columns:
        x_all = design[name].to_numpy(dtype=float)
        binary = set(np.unique(x_all)) <= {0.0, 1.0}

        xt, wt = x_all[keep & (treat == 1)], w[keep & (treat == 1)]
        xc, wc = x_all[keep & (treat == 0)], w[keep & (treat == 0)]

        mean_t = _weighted_mean(xt, wt)
        mean_c = _weighted_mean(xc, wc)

        if binary:
            smd = mean_t - mean_c
            var_ratio = np.nan
        else:
            # Standardize by the treated SD of the full sample
            sd_t = np.sqrt(_weighted_var(x_all[treat == 1], np.ones(int((treat == 1).sum()))))
            smd = (mean_t - mean_c) / sd_t if sd_t > 0 else 0.0
            var_c = _weighted_var(xc, wc)
            var_ratio = _weighted_var(xt, wt) / var_c if var_c > 0 else np.nan

        points = np.unique(x_all[keep])
        ecdf_diff = np.abs(_weighted_ecdf(points, xt, wt) - _weighted_ecdf(points, xc, wc))

        rows[name] = {
            "Means Treated": mean_t,
            "Means Control": mean_c,
            "Std. Mean Diff.": smd,
            "Var. Ratio": var_ratio,
            "eCDF Mean": float(ecdf_diff.mean()),
            "eCDF Max": float(ecdf_diff.max()),
        }

    return pd.DataFrame.from_dict(rows, orient="index", columns=BALANCE_COLUMNS)


@dataclass
class BalanceSummary:
    """Balance diagnostics of one matching run."""

    formula: str
    method: Optional[str]
    distance: Optional[str]
    all_data: pd.DataFrame
    matched_data: Optional[pd.DataFrame]
    sample_sizes: pd.DataFrame

    def max_abs_smd(self, matched: bool = True) -> float:
        table = self.matched_data if matched and self.matched_data is not None else self.all_data
        return float(table["Std. Mean Diff."].abs().max())


def summarize_balance(result: MatchResult) -> BalanceSummary:
    """Balance before matching and, when a matching method ran, after it."""
    return BalanceSummary(
        formula=result.formula,
        method=result.method,
        distance=result.distance,
        all_data=balance_table(result, matched=False),
        matched_data=balance_table(result, matched=True) if result.method else None,
        sample_sizes=result.sample_sizes(),
    )


def format_balance_summary(summary: BalanceSummary, un: bool = True, digits: int = 4) -> str:
    """
    Render balance diagnostics as plain text.

    Args:
        summary: BalanceSummary
        un: Include the all-data (unmatched) table
        digits: Rounding for the statistics
    """
    lines = [
        f"Call: {summary.formula} (method={summary.method}, distance={summary.distance})",
        "",
    ]
    if un or summary.matched_data is None:
        lines += ["Summary of Balance for All Data:", summary.all_data.round(digits).to_string(), ""]
    if summary.matched_data is not None:
        lines += ["Summary of Balance for Matched Data:", summary.matched_data.round(digits).to_string(), ""]
    lines += ["Sample Sizes:", summary.sample_sizes.to_string(), ""]
    return "\n".join(lines)


def assess_balance(summary: BalanceSummary, smd_threshold: float = 0.1) -> pd.DataFrame:
    """
    Pre/post |SMD| per balance row.

    Returns DataFrame with pre_smd, post_smd, balanced and improved columns.
    """
    pre = summary.all_data["Std. Mean Diff."].abs()
    post = summary.matched_data["Std. Mean Diff."].abs() if summary.matched_data is not None else pre
    return pd.DataFrame({
        "variable": pre.index,
        "pre_smd": pre.values,
        "post_smd": post.reindex(pre.index).values,
        "balanced": (post.reindex(pre.index) < smd_threshold).values,
        "improved": (post.reindex(pre.index) < pre).values,
    })
