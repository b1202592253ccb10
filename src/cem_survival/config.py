"""Centralized configuration for the CEM + survival pipeline.

Two layers, loaded once and passed explicitly:

1. ``Settings``: environment-level settings (log level, default data and
   results directories, path to the analysis YAML). Values come from ``CEM_*``
   environment variables, after a ``.env`` file in the working directory has
   been loaded.
2. ``AnalysisConfig``: the analysis definition (column names, eligibility
   rules, matching formula and cutpoints, Cox model specifications, output
   file names). Loaded from ``config/analysis.yaml``; every field has a
   default so the pipeline also runs without a YAML file.

Usage:
    from cem_survival.config import settings, load_analysis_config

    config = load_analysis_config(settings.ANALYSIS_CONFIG)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _find_and_load_dotenv() -> Path | None:
    """Load ``.env`` from the working directory if one exists.

    Returns:
        Path to loaded .env file, or None if not found
    """
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
        return env_path
    return None


_DOTENV_PATH = _find_and_load_dotenv()


class Settings(BaseSettings):
    """Environment settings.

    Attributes:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
        DATA_DIR: Directory holding raw and matched cohort CSVs
        RESULTS_DIR: Directory receiving plots and text reports
        ANALYSIS_CONFIG: Path to the analysis YAML (defaults are used if unset)
    """

    model_config = SettingsConfigDict(
        env_prefix="CEM_",
        env_file=None,  # Already loaded by _find_and_load_dotenv()
        case_sensitive=False,
        extra="ignore",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    DATA_DIR: Path = Field(default=Path("data"), description="Cohort data directory")
    RESULTS_DIR: Path = Field(default=Path("results"), description="Report output directory")
    ANALYSIS_CONFIG: Optional[Path] = Field(
        default=None, description="Path to analysis YAML"
    )

    def get_env_file_path(self) -> Path | None:
        return _DOTENV_PATH


settings = Settings()


# =============================================================================
# Analysis definition
# =============================================================================


class ColumnConfig(BaseModel):
    """Column names of the patient record CSV."""

    patient_id: str = "PatientID"
    age: str = "Age"
    gender: str = "Gender"
    race: str = "Race"
    tumor_size: str = "TumorSize"
    location: str = "Location"
    idh: str = "IDH"
    mgmt: str = "MGMT"
    treatment: str = "FUS"
    chemotherapy: str = "Chemotherapy"
    radiotherapy: str = "Radiotherapy"
    performance_status: str = "KPSgeq70"
    diagnosis_date: str = "DiagnosisDate"
    surgery_date: str = "SurgeryDate"
    progression_date: str = "ProgressionDate"
    death_censor_date: str = "DeathCensorDate"
    dead: str = "Dead"
    progression: str = "Progression"
    # Derived duration columns (months)
    survival_time: str = "Survival"
    pfs_time: str = "PFS"


class CleaningConfig(BaseModel):
    """Eligibility filters and recoding rules."""

    unknown_token: str = "Unknown"
    max_age: float = 80
    allowed_locations: List[str] = Field(
        default_factory=lambda: ["Frontal", "Temporal", "Parietal", "Occipital"]
    )
    placeholder: str = "plchldr"
    placeholder_resolution: str = "Methylated"
    majority_race: str = "White"
    other_race: str = "Non-white"
    date_format: Optional[str] = Field(
        default=None,
        description="strftime format of date columns; None accepts day-month-year dates (/ - . or space separated)",
    )


class MatchingConfig(BaseModel):
    """Coarsened exact matching setup."""

    formula: str = "FUS ~ Age + IDH + MGMT"
    method: Optional[str] = "cem"
    distance: Optional[str] = "glm"
    cutpoints: Dict[str, List[float]] = Field(
        default_factory=lambda: {"Age": [0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100]}
    )
    balance_formula: str = "FUS ~ Age + Gender + Race + IDH + MGMT + TumorSize"
    density_covariates: List[str] = Field(default_factory=lambda: ["Age", "MGMT", "IDH"])

    @field_validator("cutpoints")
    @classmethod
    def validate_cutpoints(cls, v: Dict[str, List[float]]) -> Dict[str, List[float]]:
        for name, points in v.items():
            if len(points) < 2:
                raise ValueError(f"Cutpoints for '{name}' need at least two values")
            if list(points) != sorted(set(points)):
                raise ValueError(f"Cutpoints for '{name}' must be strictly increasing")
        return v


class SurvivalConfig(BaseModel):
    """Kaplan-Meier, Cox and plotting options."""

    days_per_month: float = 365.25 / 12
    alpha: float = Field(default=0.05, gt=0, lt=1)
    cox_covariates: List[str] = Field(default_factory=lambda: ["TumorSize"])
    group_labels: List[str] = Field(default_factory=lambda: ["BWH", "BT008"])
    palette: List[str] = Field(default_factory=lambda: ["orange", "darkblue"])
    adjusted_bootstrap: int = Field(default=0, ge=0)
    random_state: int = 42

    @field_validator("group_labels", "palette")
    @classmethod
    def validate_two_groups(cls, v: List[str]) -> List[str]:
        if len(v) != 2:
            raise ValueError("Exactly two entries are required (control, treated)")
        return v


class CoxModelSpec(BaseModel):
    """One Cox proportional-hazards specification.

    Attributes:
        name: Label used in reports
        covariates: Adjustment covariates besides treatment
        frailty: Cluster on the matching subclass (shared frailty term)
        weighted: Use the matching weights
    """

    model_config = ConfigDict(frozen=True)

    name: str
    covariates: List[str] = Field(default_factory=list)
    frailty: bool = False
    weighted: bool = False

    def formula(self, time_col: str, event_col: str, treatment_col: str = "FUS",
                cluster_col: str = "subclass") -> str:
        """R-style formula text for reports."""
        terms = [treatment_col] + list(self.covariates)
        if self.frailty:
            terms.append(f"frailty({cluster_col})")
        return f"Surv({time_col}, {event_col}) ~ {' + '.join(terms)}"


class SensitivityConfig(BaseModel):
    """Alternative Cox specifications compared in the sensitivity report."""

    include_weighted: bool = False
    models: Optional[List[CoxModelSpec]] = None


class OutputConfig(BaseModel):
    """Output file names (relative to data / results directories)."""

    matched_csv: str = "MatchedData.csv"
    balance_summary: str = "CEM_summary.txt"
    density_plot: str = "matching_check.png"
    os_curves: str = "OS_curves.png"
    pfs_curves: str = "PFS_curves.png"
    cox_os_report: str = "cox_results.txt"
    cox_pfs_report: str = "cox_pfs_results.txt"
    adjusted_curve_template: str = "{endpoint} COX survival curve.png"
    sensitivity_template: str = "sensitivity_analysis_{endpoint}.txt"


class AnalysisConfig(BaseModel):
    columns: ColumnConfig = Field(default_factory=ColumnConfig)
    cleaning: CleaningConfig = Field(default_factory=CleaningConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    survival: SurvivalConfig = Field(default_factory=SurvivalConfig)
    sensitivity: SensitivityConfig = Field(default_factory=SensitivityConfig)
    outputs: OutputConfig = Field(default_factory=OutputConfig)


def load_analysis_config(path: Optional[Path | str] = None) -> AnalysisConfig:
    """Load the analysis YAML, falling back to defaults when no path is given.

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist
        pydantic.ValidationError: If the YAML does not match the schema
    """
    if path is None:
        logger.info("No analysis config given, using defaults")
        return AnalysisConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    logger.info(f"Loaded analysis config: {config_path}")
    return AnalysisConfig.model_validate(data)


def setup_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a single stream handler to the package logger."""
    package_logger = logging.getLogger("cem_survival")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
    package_logger.setLevel(level.upper() if isinstance(level, str) else level)
    return package_logger
