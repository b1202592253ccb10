"""
Survival Analysis Module

Derives time-to-event durations from the matched cohort and performs
Kaplan-Meier estimation with a log-rank comparison between treatment groups.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter
from lifelines.statistics import StatisticalResult, logrank_test

from cem_survival.cohort.cleaning import is_unknown, parse_dates, to_indicator
from cem_survival.errors import SurvivalDataError

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 365.25 / 12


def prepare_survival_data(
    df: pd.DataFrame,
    diagnosis_col: str = "DiagnosisDate",
    death_censor_col: str = "DeathCensorDate",
    progression_date_col: str = "ProgressionDate",
    dead_col: str = "Dead",
    progression_col: str = "Progression",
    id_col: str = "PatientID",
    survival_col: str = "Survival",
    pfs_col: str = "PFS",
    date_format: Optional[str] = None,
    unknown_token: str = "Unknown",
    days_per_month: float = DAYS_PER_MONTH,
) -> pd.DataFrame:
    """
    Derive overall survival and progression-free survival in months.

    Overall survival runs from diagnosis to death/censoring. Progression-free
    survival runs from diagnosis to progression; patients without a
    progression date and without progression are censored at the
    death/censoring date.

    Args:
        df: Matched cohort
        diagnosis_col: Origin date column
        death_censor_col: Death or last follow-up date column
        progression_date_col: Progression date column
        dead_col: Death indicator (1 = died)
        progression_col: Progression indicator (1 = progressed)
        id_col: Patient id column (for error messages)
        survival_col: Output column for overall survival months
        pfs_col: Output column for progression-free survival months
        date_format: strftime format; None tries the day-first layouts of ``parse_dates``
        unknown_token: Sentinel for unknown dates
        days_per_month: Days per month used for the conversion

    Returns:
        Copy of ``df`` with parsed date columns and the two duration columns

    Raises:
        SurvivalDataError: Unparseable dates, progression events without a
                           date, or any negative duration
    """
    df = df[~is_unknown(df[death_censor_col], unknown_token)].copy()

    date_kwargs = dict(date_format=date_format, unknown_token=unknown_token,
                       id_col=id_col, error_cls=SurvivalDataError)
    diagnosis = parse_dates(df, diagnosis_col, **date_kwargs)
    death_censor = parse_dates(df, death_censor_col, **date_kwargs)

    df[dead_col] = to_indicator(df, dead_col, id_col)
    df[progression_col] = to_indicator(df, progression_col, id_col)

    if progression_date_col in df.columns:
        progression = parse_dates(df, progression_date_col, allow_missing=True, **date_kwargs)
    else:
        progression = pd.Series(pd.NaT, index=df.index, dtype="datetime64[ns]")

    def ids(mask: pd.Series) -> list:
        return df.loc[mask, id_col].tolist() if id_col in df.columns else list(df.index[mask])

    no_date = progression.isna()
    progressed_without_date = no_date & (df[progression_col] == 1)
    if progressed_without_date.any():
        raise SurvivalDataError(f"Progression recorded without a progression date for {ids(progressed_without_date)}")
    n_censored = int(no_date.sum())
    progression = progression.where(~no_date, death_censor)

    df[survival_col] = (death_censor - diagnosis).dt.days / days_per_month
    df[pfs_col] = (progression - diagnosis).dt.days / days_per_month

    # Flag and fail: a negative duration means inconsistent dates
    for col in (survival_col, pfs_col):
        negative = df[col] < 0
        if negative.any():
            raise SurvivalDataError(f"Negative '{col}' durations (event before diagnosis) for {ids(negative)}")

    logger.info(f"✓ Survival data prepared")
    logger.info(f"  - Total patients: {len(df):,}")
    logger.info(f"  - Deaths: {int(df[dead_col].sum()):,}, progressions: {int(df[progression_col].sum()):,}")
    logger.info(f"  - PFS censored at last follow-up (no progression date): {n_censored:,}")
    logger.info(f"  - Median follow-up: {df[survival_col].median():.2f} months")

    return df


@dataclass
class KMResult:
    """
    Kaplan-Meier estimates per group plus the log-rank comparison.

    Attributes:
        fitters: Fitted KaplanMeierFitter per group level
        logrank: Log-rank test result (None unless exactly two groups)
        medians: Median survival time per group level
        groups: Group levels in sorted order
        time_col / event_col / group_col: Source columns
    """

    fitters: Dict[object, KaplanMeierFitter]
    logrank: Optional[StatisticalResult]
    medians: Dict[object, float]
    groups: List[object]
    time_col: str
    event_col: str
    group_col: str

    @property
    def p_value(self) -> float:
        return float(self.logrank.p_value) if self.logrank is not None else np.nan


def kaplan_meier_analysis(
    df: pd.DataFrame,
    time_col: str,
    event_col: str,
    group_col: str = "FUS",
    labels: Optional[List[str]] = None,
    alpha: float = 0.05,
) -> KMResult:
    """
    Kaplan-Meier survival analysis with a log-rank test.

    Args:
        df: Survival DataFrame
        time_col: Duration column
        event_col: Event indicator column
        group_col: Grouping column
        labels: Display labels for the sorted group levels
        alpha: Confidence interval level

    Returns:
        KMResult
    """
    logger.info("=" * 70)
    logger.info(f"Kaplan-Meier Survival Analysis: {time_col} / {event_col}")
    logger.info("=" * 70)

    for col in (time_col, event_col, group_col):
        if col not in df.columns:
            raise SurvivalDataError(f"Column '{col}' not found in data")

    groups = sorted(df[group_col].dropna().unique())
    if labels is not None and len(labels) != len(groups):
        raise ValueError(f"{len(labels)} labels given for {len(groups)} groups")

    fitters = {}
    medians = {}
    for i, group in enumerate(groups):
        group_data = df[df[group_col] == group]
        label = labels[i] if labels is not None else str(group)

        kmf = KaplanMeierFitter(alpha=alpha)
        kmf.fit(
            durations=group_data[time_col],
            event_observed=group_data[event_col],
            label=label,
        )
        fitters[group] = kmf
        medians[group] = float(kmf.median_survival_time_)

        logger.info(f"{label} ({group_col}={group}):")
        logger.info(f"  - N patients: {len(group_data):,}")
        logger.info(f"  - N events: {int(group_data[event_col].sum()):,}")
        logger.info(f"  - Median survival time: {medians[group]:.2f} months")

    if len(groups) == 2:
        group1_data = df[df[group_col] == groups[0]]
        group2_data = df[df[group_col] == groups[1]]

        results = logrank_test(
            durations_A=group1_data[time_col],
            durations_B=group2_data[time_col],
            event_observed_A=group1_data[event_col],
            event_observed_B=group2_data[event_col],
            alpha=alpha,
        )
        logger.info(f"Log-rank test: chisq={results.test_statistic:.4f}, p={results.p_value:.4f}")
    else:
        results = None
        logger.warning("⚠ Log-rank test requires exactly 2 groups")

    return KMResult(
        fitters=fitters,
        logrank=results,
        medians=medians,
        groups=groups,
        time_col=time_col,
        event_col=event_col,
        group_col=group_col,
    )
