"""Unit tests for configuration loading."""

import logging
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from cem_survival.config import (
    AnalysisConfig,
    CoxModelSpec,
    Settings,
    load_analysis_config,
    setup_logging,
)

REPO_CONFIG = Path(__file__).parents[1] / "config" / "analysis.yaml"


class TestLoadAnalysisConfig:
    """Test YAML loading and validation."""

    def test_defaults_without_path(self):
        # Arrange & Act
        config = load_analysis_config(None)

        # Assert
        assert config.matching.formula == "FUS ~ Age + IDH + MGMT"
        assert config.cleaning.max_age == 80
        assert config.survival.days_per_month == pytest.approx(30.4375)
        assert config.outputs.sensitivity_template.format(endpoint="OS") == "sensitivity_analysis_OS.txt"

    def test_repository_config_matches_defaults(self):
        # Arrange & Act
        config = load_analysis_config(REPO_CONFIG)

        # Assert
        defaults = AnalysisConfig()
        assert config.columns == defaults.columns
        assert config.cleaning == defaults.cleaning
        assert config.matching == defaults.matching
        assert config.outputs == defaults.outputs

    def test_partial_yaml_overrides(self, tmp_path):
        # Arrange
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({"cleaning": {"max_age": 75}, "survival": {"cox_covariates": []}}))

        # Act
        config = load_analysis_config(path)

        # Assert
        assert config.cleaning.max_age == 75
        assert config.survival.cox_covariates == []
        assert config.cleaning.placeholder == "plchldr"

    def test_sensitivity_models_parsed(self, tmp_path):
        # Arrange
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({"sensitivity": {"models": [
            {"name": "native"},
            {"name": "frailty", "frailty": True},
        ]}}))

        # Act
        config = load_analysis_config(path)

        # Assert
        assert config.sensitivity.models == [CoxModelSpec(name="native"), CoxModelSpec(name="frailty", frailty=True)]

    def test_missing_file_raises(self, tmp_path):
        # Act & Assert
        with pytest.raises(FileNotFoundError):
            load_analysis_config(tmp_path / "nope.yaml")

    def test_decreasing_cutpoints_rejected(self, tmp_path):
        # Arrange
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({"matching": {"cutpoints": {"Age": [50, 40, 30]}}}))

        # Act & Assert
        with pytest.raises(ValidationError):
            load_analysis_config(path)

    def test_group_labels_need_two_entries(self):
        # Act & Assert
        with pytest.raises(ValidationError):
            AnalysisConfig.model_validate({"survival": {"group_labels": ["a", "b", "c"]}})


class TestSettings:
    """Test environment settings."""

    def test_reads_prefixed_environment(self, monkeypatch, tmp_path):
        # Arrange
        monkeypatch.setenv("CEM_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("CEM_RESULTS_DIR", str(tmp_path))

        # Act
        settings = Settings()

        # Assert
        assert settings.LOG_LEVEL == "DEBUG"
        assert settings.RESULTS_DIR == tmp_path

    def test_defaults(self, monkeypatch):
        # Arrange
        for var in ("CEM_LOG_LEVEL", "CEM_DATA_DIR", "CEM_RESULTS_DIR", "CEM_ANALYSIS_CONFIG"):
            monkeypatch.delenv(var, raising=False)

        # Act
        settings = Settings()

        # Assert
        assert settings.DATA_DIR == Path("data")
        assert settings.ANALYSIS_CONFIG is None


class TestSetupLogging:
    """Test logger configuration."""

    def test_single_handler(self):
        # Arrange & Act
        logger = setup_logging("DEBUG")
        setup_logging("INFO")

        # Assert
        assert logger.name == "cem_survival"
        assert len(logger.handlers) == 1
        assert logger.level == logging.INFO
