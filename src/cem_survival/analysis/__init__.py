"""
Analysis Module

Coarsened exact matching, balance diagnostics, Kaplan-Meier and Cox survival
analysis, sensitivity comparison and plotting.
"""

from .balance import BalanceSummary, assess_balance, format_balance_summary, summarize_balance
from .cox_models import (
    AdjustedCurves,
    CoxModelResult,
    CoxModelSpec,
    adjusted_survival_curves,
    format_cox_report,
    run_cox_analysis,
    treatment_statistics,
    write_cox_report,
)
from .matching import CoarsenedExactMatcher, MatchResult, parse_formula, perform_matching
from .sensitivity import compare_models, default_model_specs, write_sensitivity_report
from .survival_analysis import KMResult, kaplan_meier_analysis, prepare_survival_data
from .visualization import save_adjusted_curve_plot, save_density_plot, save_survival_curve_plot

__all__ = [
    "AdjustedCurves",
    "BalanceSummary",
    "CoarsenedExactMatcher",
    "CoxModelResult",
    "CoxModelSpec",
    "KMResult",
    "MatchResult",
    "adjusted_survival_curves",
    "assess_balance",
    "compare_models",
    "default_model_specs",
    "format_balance_summary",
    "format_cox_report",
    "kaplan_meier_analysis",
    "parse_formula",
    "perform_matching",
    "prepare_survival_data",
    "run_cox_analysis",
    "save_adjusted_curve_plot",
    "save_density_plot",
    "save_survival_curve_plot",
    "summarize_balance",
    "treatment_statistics",
    "write_cox_report",
    "write_sensitivity_report",
]
