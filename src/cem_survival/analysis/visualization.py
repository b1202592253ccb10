"""
Visualization Module for CEM + Survival Analysis

Generates publication-ready plots:
- Density overlays of covariates before/after matching
- Kaplan-Meier curves with risk table and log-rank p-value
- Covariate-adjusted Cox survival curves
"""

import logging

import matplotlib
# Non-interactive backend, figures are only written to disk
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns
from pathlib import Path
from typing import List, Optional, Sequence
from lifelines.plotting import add_at_risk_counts

from .cox_models import AdjustedCurves
from .matching import MatchResult, is_categorical
from .survival_analysis import KMResult

logger = logging.getLogger(__name__)

CM_PER_INCH = 2.54
DEFAULT_PALETTE = ("orange", "darkblue")


def _weighted_proportions(data: pd.DataFrame, covariate: str, treatment: str) -> pd.DataFrame:
    """Weighted share of each level within each treatment group."""
    totals = data.groupby(treatment, observed=True)["weights"].transform("sum")
    shares = data.assign(share=data["weights"] / totals, level=data[covariate].astype(str))
    return shares.groupby([treatment, "level"], observed=True)["share"].sum().reset_index()


def save_density_plot(
    result: MatchResult,
    covariates: Sequence[str],
    output_path: Path,
    labels: Sequence[str] = ("Control", "Treated"),
    palette: Sequence[str] = DEFAULT_PALETTE,
) -> Path:
    """
    Covariate distributions of treated vs control, all data vs matched data.

    One row per covariate; left column unweighted all data, right column
    matched data weighted by the matching weights. Continuous covariates are
    drawn as kernel densities, categorical covariates as level proportions.

    Args:
        result: Matching result (method "cem")
        covariates: Covariates to plot
        output_path: PNG path
        labels: Legend labels for treatment 0 and 1
        palette: Colors for treatment 0 and 1

    Returns:
        Path to saved plot
    """
    treatment = result.treatment
    panels = {
        "All": result.data.assign(weights=1.0),
        "Matched": result.matched_data(),
    }
    label_map = {0: labels[0], 1: labels[1]}
    colors = {labels[0]: palette[0], labels[1]: palette[1]}

    fig, axes = plt.subplots(len(covariates), 2, figsize=(5, 5), squeeze=False)

    for i, cov in enumerate(covariates):
        for j, (title, data) in enumerate(panels.items()):
            ax = axes[i, j]
            data = data.assign(group=data[treatment].map(label_map))

            if is_categorical(data[cov]):
                props = _weighted_proportions(data, cov, treatment)
                props["group"] = props[treatment].map(label_map)
                sns.barplot(data=props, x="level", y="share", hue="group", palette=colors,
                            hue_order=list(labels), errorbar=None, ax=ax)
                ax.set_ylabel("Proportion", fontsize=6)
            else:
                sns.kdeplot(data=data, x=cov, hue="group", weights="weights", palette=colors,
                            hue_order=list(labels), common_norm=False, fill=True, alpha=0.3,
                            warn_singular=False, ax=ax)
                ax.set_ylabel("Density", fontsize=6)

            ax.set_xlabel(cov, fontsize=6)
            ax.tick_params(labelsize=5)
            if i == 0:
                ax.set_title(title, fontsize=8, weight='bold')
            legend = ax.get_legend()
            if legend is not None and not (i == 0 and j == 1):
                legend.remove()
            elif legend is not None:
                legend.set_title(None)
                plt.setp(legend.get_texts(), fontsize=5)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"✓ Density plot saved: {output_path}")
    return output_path


def save_survival_curve_plot(
    km_result: KMResult,
    output_path: Path,
    labels: Optional[List[str]] = None,
    palette: Sequence[str] = DEFAULT_PALETTE,
    xlabel: str = "Time (Months)",
    ylabel: str = "Survival Probability",
) -> Path:
    """
    Kaplan-Meier curves with confidence bands, at-risk table and log-rank p.

    Args:
        km_result: KMResult from kaplan_meier_analysis
        output_path: PNG path
        labels: Legend labels per group (defaults to the fitter labels)
        palette: One color per group
        xlabel / ylabel: Axis labels

    Returns:
        Path to saved plot
    """
    fig, ax = plt.subplots(figsize=(18 / CM_PER_INCH, 15 / CM_PER_INCH))

    fitters = [km_result.fitters[g] for g in km_result.groups]
    for i, kmf in enumerate(fitters):
        plot_kwargs = {"label": labels[i]} if labels is not None else {}
        kmf.plot_survival_function(ax=ax, ci_show=True, color=palette[i % len(palette)],
                                   show_censors=True, **plot_kwargs,
                                   censor_styles={'marker': '|', 'ms': 6})

    ax.set_ylim(0, 1.05)
    ax.set_xlim(left=0)
    ax.set_xlabel(xlabel, fontsize=11)
    ax.set_ylabel(ylabel, fontsize=11)
    ax.legend(loc='upper right', fontsize=10, frameon=False)
    ax.grid(True, alpha=0.3, linestyle='--')
    ax.spines['top'].set_visible(False)
    ax.spines['right'].set_visible(False)

    if km_result.logrank is not None:
        p = km_result.p_value
        p_text = f"Log-rank p = {p:.4f}" if p >= 0.0001 else "Log-rank p < 0.0001"
        ax.text(0.03, 0.05, p_text, transform=ax.transAxes, fontsize=10,
                verticalalignment='bottom', horizontalalignment='left')

    add_at_risk_counts(*fitters, ax=ax, rows_to_show=["At risk"],
                       labels=labels)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.tight_layout()
    fig.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"✓ Kaplan-Meier plot saved: {output_path}")
    return output_path


def save_adjusted_curve_plot(
    curves: AdjustedCurves,
    output_path: Path,
    ylabel: str,
    labels: Sequence[str] = ("Control", "Treated"),
    palette: Sequence[str] = DEFAULT_PALETTE,
    xlabel: str = "Time (Months)",
) -> Path:
    """
    Covariate-adjusted survival curves from a Cox model.

    The treatment p-value of the model is annotated as ``p = <rounded to 4>``.

    Returns:
        Path to saved plot
    """
    fig, ax = plt.subplots(figsize=(18 / CM_PER_INCH, 9.75 / CM_PER_INCH))

    times = curves.survival.index.to_numpy()
    for i, level in enumerate(curves.survival.columns):
        color = palette[i % len(palette)]
        ax.step(times, curves.survival[level], where='post', linewidth=2.0,
                color=color, label=labels[i])
        if curves.lower is not None and curves.upper is not None:
            ax.fill_between(times, curves.lower[level], curves.upper[level], step='post',
                            color=color, alpha=0.2, linewidth=0)

    ax.set_ylim(0, 1.05)
    ax.set_xlim(left=0)
    ax.set_xlabel(xlabel, fontsize=11)
    ax.set_ylabel(ylabel, fontsize=11)
    ax.legend(loc='upper right', fontsize=10, frameon=False)
    ax.grid(True, alpha=0.3, linestyle='--')
    ax.spines['top'].set_visible(False)
    ax.spines['right'].set_visible(False)

    ax.text(0.03, 0.05, f"p = {round(curves.p_value, 4)}", transform=ax.transAxes,
            fontsize=10, verticalalignment='bottom', horizontalalignment='left')

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.tight_layout()
    fig.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"✓ Adjusted survival plot saved: {output_path}")
    return output_path
