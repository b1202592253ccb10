"""
Sensitivity Analysis Module

Fits a family of Cox specifications (crude, adjusted, frailty, weighted) and
tabulates the treatment effect of each side by side.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import pandas as pd

from cem_survival.config import CoxModelSpec
from .cox_models import run_cox_analysis, treatment_statistics

logger = logging.getLogger(__name__)

SENSITIVITY_COLUMNS = ["HR", "SE", "z", "p", "CI", "zph", "AIC", "BIC"]


def default_model_specs(
    include_weighted: bool = False,
    adjust: Sequence[str] = ("TumorSize",),
    all_covariates: Sequence[str] = ("TumorSize", "Gender", "Race"),
) -> List[CoxModelSpec]:
    """
    Standard specification family.

    ``native`` (treatment only), the ``adjust`` model, frailty variants of
    both, the ``all`` covariates model and its frailty variant. Weighted
    variants are added when ``include_weighted`` is set.
    """
    adjust = list(adjust)
    all_covariates = list(all_covariates)
    adjust_name = "_".join(adjust)

    specs = [CoxModelSpec(name="native")]
    if adjust:
        specs.append(CoxModelSpec(name=adjust_name, covariates=adjust))
    specs.append(CoxModelSpec(name="frailty", frailty=True))
    if adjust:
        specs.append(CoxModelSpec(name=f"{adjust_name}_frailty", covariates=adjust, frailty=True))
    if include_weighted:
        specs.append(CoxModelSpec(name="weighted", weighted=True))
        if adjust:
            specs.append(CoxModelSpec(name=f"weighted_{adjust_name}", covariates=adjust, weighted=True))
    specs.append(CoxModelSpec(name="all", covariates=all_covariates))
    if include_weighted:
        specs.append(CoxModelSpec(name="all_weighted", covariates=all_covariates, weighted=True))
    specs.append(CoxModelSpec(name="all_frailty", covariates=all_covariates, frailty=True))
    return specs


def compare_models(
    df: pd.DataFrame,
    specs: Sequence[CoxModelSpec],
    time_col: str,
    event_col: str,
    treatment_col: str = "FUS",
    cluster_col: str = "subclass",
    weights_col: str = "weights",
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Treatment effect of every specification, one row per model.

    HR, SE, z and the CI bounds are rounded to 2 decimals, the Schoenfeld p
    for treatment (``zph``) to 2 decimals, AIC/BIC to whole numbers; the Wald
    p-value is kept unrounded.

    Raises:
        ValueError: Duplicate model names
        SurvivalDataError: A model cannot be fitted
    """
    names = [spec.name for spec in specs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate model names: {duplicates}")

    logger.info("=" * 70)
    logger.info(f"Sensitivity Analysis: {time_col} / {event_col} ({len(specs)} models)")
    logger.info("=" * 70)

    rows = {}
    for spec in specs:
        result = run_cox_analysis(df, spec, time_col, event_col, treatment_col, cluster_col, weights_col, alpha)
        stats = treatment_statistics(result.summary, treatment_col, alpha)
        rows[spec.name] = {
            "HR": round(stats["hr"], 2),
            "SE": round(stats["se"], 2),
            "z": round(stats["z"], 2),
            "p": stats["p"],
            "CI": f"{round(stats['ci_lower'], 2)} - {round(stats['ci_upper'], 2)}",
            "zph": round(float(result.ph_test.loc[treatment_col, "p"]), 2),
            "AIC": int(round(result.aic)),
            "BIC": int(round(result.bic)),
        }

    table = pd.DataFrame.from_dict(rows, orient="index", columns=SENSITIVITY_COLUMNS)
    table.index.name = "model"
    return table


def format_sensitivity_report(table: pd.DataFrame, title: Optional[str] = None) -> str:
    lines = [title, ""] if title else []
    lines.append(f"model: {', '.join(SENSITIVITY_COLUMNS)}")
    for name, row in table.iterrows():
        values = [f"{row['p']:.7g}" if col == "p" else str(row[col]) for col in SENSITIVITY_COLUMNS]
        lines.append(f"{name}: {', '.join(values)}")
    return "\n".join(lines) + "\n"


def write_sensitivity_report(table: pd.DataFrame, path: Path | str, title: Optional[str] = None) -> Path:
    """Write one line per model (``name: HR, SE, z, p, CI, zph, AIC, BIC``)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(format_sensitivity_report(table, title))
    logger.info(f"✓ Sensitivity report saved: {path}")
    return path
