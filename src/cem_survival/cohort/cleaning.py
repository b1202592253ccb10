"""
Cohort Loading & Cleaning Module

Turns the raw patient-record CSV into the eligible analysis cohort:
censoring-date check, protocol eligibility filters, tumor-location allow-list,
MGMT placeholder recode, race dichotomization and type coercion.

Every step either filters rows or fails loudly. Values that cannot be parsed
raise ``CohortDataError``; nothing is silently coerced to NaN.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

from cem_survival.config import AnalysisConfig
from cem_survival.errors import CohortDataError

logger = logging.getLogger(__name__)

# Number of offending row ids quoted in error messages
_MAX_REPORTED_IDS = 10

# Accepted day-month-year layouts, four-digit years first
DAY_FIRST_FORMATS = [
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%d.%m.%y",
]


def _row_ids(df: pd.DataFrame, index: Iterable, id_col: str) -> list:
    """Patient ids for ``index`` (falls back to the row index)."""
    index = list(index)[:_MAX_REPORTED_IDS]
    if id_col in df.columns:
        return df.loc[index, id_col].tolist()
    return index


def is_unknown(series: pd.Series, unknown_token: str = "Unknown") -> pd.Series:
    """Missing values and the literal sentinel both count as unknown."""
    return series.isna() | (series.astype(str).str.strip() == unknown_token)


def parse_dates(
    df: pd.DataFrame,
    column: str,
    date_format: Optional[str] = None,
    allow_missing: bool = False,
    unknown_token: str = "Unknown",
    id_col: str = "PatientID",
    error_cls: type = CohortDataError,
) -> pd.Series:
    """
    Parse a day-month-year date column.

    Args:
        df: Cohort DataFrame
        column: Date column name
        date_format: Explicit strftime format; None tries ``DAY_FIRST_FORMATS``
        allow_missing: Keep missing/unknown values as NaT instead of failing
        unknown_token: Sentinel treated as missing
        id_col: Column used to identify rows in error messages
        error_cls: Exception raised for unparseable values

    Returns:
        Series of datetime64 values

    Raises:
        error_cls: On any missing (unless allowed) or unparseable value,
                   including dates that are valid only month-first
    """
    if column not in df.columns:
        raise error_cls(f"Date column '{column}' not found in data")

    raw = df[column]
    missing = is_unknown(raw, unknown_token)
    if missing.any() and not allow_missing:
        raise error_cls(
            f"Column '{column}' has missing dates for rows {_row_ids(df, raw.index[missing], id_col)}"
        )

    parsed = pd.Series(pd.NaT, index=df.index, dtype="datetime64[ns]")
    present = raw[~missing].astype(str).str.strip()
    if present.empty:
        return parsed

    formats = [date_format] if date_format else DAY_FIRST_FORMATS
    values = pd.Series(pd.NaT, index=present.index, dtype="datetime64[ns]")
    for fmt in formats:
        pending = values.isna()
        if not pending.any():
            break
        values.loc[pending] = pd.to_datetime(present[pending], format=fmt, errors="coerce")

    bad = present.index[values.isna()]
    if len(bad):
        raise error_cls(
            f"Column '{column}' has unparseable dates for rows {_row_ids(df, bad, id_col)} "
            f"(expected {' or '.join(formats)})"
        )

    parsed.loc[present.index] = values
    return parsed


def to_numeric(df: pd.DataFrame, column: str, id_col: str = "PatientID") -> pd.Series:
    """Numeric coercion that raises on non-numeric text (NaN stays NaN)."""
    if column not in df.columns:
        raise CohortDataError(f"Column '{column}' not found in data")

    series = df[column]
    try:
        return pd.to_numeric(series, errors="raise")
    except (ValueError, TypeError) as exc:
        coerced = pd.to_numeric(series, errors="coerce")
        bad = series.index[coerced.isna() & series.notna()]
        raise CohortDataError(
            f"Column '{column}' has non-numeric values for rows {_row_ids(df, bad, id_col)}"
        ) from exc


def to_indicator(df: pd.DataFrame, column: str, id_col: str = "PatientID") -> pd.Series:
    """Coerce a 0/1 indicator; missing or other values raise."""
    values = to_numeric(df, column, id_col)
    invalid = values.isna() | ~values.isin([0, 1])
    if invalid.any():
        raise CohortDataError(
            f"Column '{column}' must be a 0/1 indicator; invalid rows {_row_ids(df, values.index[invalid], id_col)}"
        )
    return values.astype(int)


def clean_cohort(df: pd.DataFrame, config: Optional[AnalysisConfig] = None) -> pd.DataFrame:
    """
    Apply the inclusion/exclusion rules to raw patient records.

    The steps run in a fixed order. The MGMT placeholder for treated patients
    with unknown status is introduced before the "Unknown" drop and resolved
    only at the very end, so treated patients with unknown MGMT survive the
    drop while controls with unknown MGMT do not.

    Args:
        df: Raw patient records
        config: Analysis configuration (defaults if None)

    Returns:
        Cleaned cohort with a fresh RangeIndex

    Raises:
        CohortDataError: On missing columns or values that cannot be coerced
    """
    config = config or AnalysisConfig()
    cols = config.columns
    rules = config.cleaning

    required = [
        cols.death_censor_date, cols.chemotherapy, cols.radiotherapy,
        cols.performance_status, cols.age, cols.mgmt, cols.treatment,
        cols.location, cols.race,
    ]
    missing_cols = [c for c in required if c not in df.columns]
    if missing_cols:
        raise CohortDataError(f"Missing required columns: {missing_cols}")

    df = df.copy()
    logger.info(f"  Raw cohort: {len(df):,} patients")

    def log_step(label: str) -> None:
        logger.info(f"  After {label}: {len(df):,} patients")

    # 1. Censoring date must be known and parseable
    df = df[~is_unknown(df[cols.death_censor_date], rules.unknown_token)]
    parse_dates(df, cols.death_censor_date, rules.date_format, id_col=cols.patient_id)
    log_step("censoring-date check")

    # 2-5. Protocol eligibility
    df = df[to_numeric(df, cols.chemotherapy, cols.patient_id) == 1]
    log_step("chemotherapy filter")
    df = df[to_numeric(df, cols.radiotherapy, cols.patient_id) == 1]
    log_step("radiotherapy filter")
    df = df[to_numeric(df, cols.performance_status, cols.patient_id) == 1]
    log_step("performance-status filter")
    df = df[to_numeric(df, cols.age, cols.patient_id) <= rules.max_age].copy()
    log_step(f"age <= {rules.max_age:g} filter")

    # 6. Provisional placeholder for treated patients with unknown MGMT
    treated = to_numeric(df, cols.treatment, cols.patient_id) == 1
    mgmt_unknown = df[cols.mgmt].astype(str).str.strip() == rules.unknown_token
    df.loc[mgmt_unknown & treated, cols.mgmt] = rules.placeholder
    logger.info(f"  MGMT placeholder assigned: {int((mgmt_unknown & treated).sum())} treated patients")

    # 7. Tumor location allow-list
    df = df[df[cols.location].isin(rules.allowed_locations)]
    log_step("location filter")

    # 8. Remaining unknown MGMT
    df = df[~is_unknown(df[cols.mgmt], rules.unknown_token)].copy()
    log_step("MGMT filter")

    # 9. Dichotomize race
    race = df[cols.race]
    df[cols.race] = race.where((race == rules.majority_race) | race.isna(), rules.other_race)

    # 10. Type coercion
    df[cols.age] = to_numeric(df, cols.age, cols.patient_id).astype(float)
    if cols.tumor_size in df.columns:
        df[cols.tumor_size] = to_numeric(df, cols.tumor_size, cols.patient_id).astype(float)
    for col in (cols.dead, cols.progression, cols.treatment):
        if col in df.columns:
            df[col] = to_indicator(df, col, cols.patient_id)
    for col in (cols.gender, cols.race, cols.idh, cols.location):
        if col in df.columns:
            df[col] = df[col].astype("category")

    # 11. Resolve the placeholder to a fixed category
    mgmt = df[cols.mgmt].astype(str).str.strip()
    n_resolved = int((mgmt == rules.placeholder).sum())
    df[cols.mgmt] = mgmt.where(mgmt != rules.placeholder, rules.placeholder_resolution).astype("category")
    logger.info(f"  MGMT placeholder resolved to '{rules.placeholder_resolution}': {n_resolved} patients")

    df = df.reset_index(drop=True)
    logger.info(f"✓ Cleaned cohort: {len(df):,} patients "
                f"({int((df[cols.treatment] == 1).sum())} treated, {int((df[cols.treatment] == 0).sum())} control)")
    return df


def load_and_clean_cohort(path: Path | str, config: Optional[AnalysisConfig] = None) -> pd.DataFrame:
    """
    Read the raw cohort CSV and clean it.

    Raises:
        FileNotFoundError: If ``path`` does not exist
        CohortDataError: If cleaning fails
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Cohort data not found: {path}")

    df = pd.read_csv(path)
    logger.info(f"  Loaded {len(df):,} rows from {path}")
    return clean_cohort(df, config)
