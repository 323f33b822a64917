"""
Tests for calibration loading and validation.

A malformed calibration must be rejected before any computation runs.
"""

import json
from pathlib import Path

import pytest

from projection_engine.calibration import (
    DEFAULT_CALIBRATION,
    CalibrationConfig,
    load_calibration,
)
from projection_engine.errors import ConfigurationError


# Fixtures

@pytest.fixture
def calibration_path():
    """Path to the shipped calibration preset."""
    return Path("models/calibration_v1.json")


# Test Cases


def test_preset_matches_defaults(calibration_path):
    """The shipped preset is the default calibration."""
    config = CalibrationConfig.from_file(calibration_path)

    assert config == DEFAULT_CALIBRATION
    assert config.version == "2025.1"


def test_composite_weights_sum_to_one():
    """Default readiness weights sum to 1.0."""
    weights = DEFAULT_CALIBRATION.composite_weights
    total = weights.fitness + weights.form + weights.fatigue_balance + weights.durability + weights.confidence
    assert total == pytest.approx(1.0)


def test_composite_weights_not_summing_to_one_rejected():
    """Weights that do not sum to 1.0 are a configuration error."""
    with pytest.raises(ConfigurationError, match="sum"):
        load_calibration({"composite_weights": {"fitness": 0.5}})


def test_unknown_field_rejected():
    """Unknown fields are never silently ignored."""
    with pytest.raises(ConfigurationError):
        load_calibration({"transition": {"ctl_tau": 40}})


def test_non_finite_value_rejected():
    """NaN and infinity are rejected."""
    with pytest.raises(ConfigurationError):
        load_calibration({"timeline": {"build_tsb": float("nan")}})
    with pytest.raises(ConfigurationError):
        load_calibration({"utility": {"ctl_sd_scale": float("inf")}})


def test_out_of_range_value_rejected():
    """Range constraints are enforced per field."""
    with pytest.raises(ConfigurationError):
        load_calibration({"transition": {"ctl_time_constant_days": 0.5}})


def test_cross_section_band_order_rejected():
    """band_min above band_max is contradictory."""
    with pytest.raises(ConfigurationError, match="band_min"):
        load_calibration({"feasibility": {"band_min": 0.3, "band_max": 0.2}})


def test_calibration_is_immutable():
    """Calibration sections cannot be mutated after construction."""
    with pytest.raises(Exception):
        DEFAULT_CALIBRATION.transition.ctl_time_constant_days = 30.0


def test_ewma_coefficients():
    """Daily coefficients derive from the time constants."""
    assert 0.0 < DEFAULT_CALIBRATION.ctl_alpha < DEFAULT_CALIBRATION.atl_alpha < 1.0
    assert DEFAULT_CALIBRATION.ctl_alpha == pytest.approx(0.02353, abs=1e-4)


def test_from_file_missing(tmp_path):
    """Missing file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        CalibrationConfig.from_file(tmp_path / "missing.json")


def test_from_file_invalid_json(tmp_path):
    """Broken JSON is a configuration error."""
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        CalibrationConfig.from_file(path)


def test_partial_file_fills_defaults(tmp_path):
    """Sections not present in the file keep their defaults."""
    path = tmp_path / "partial.json"
    path.write_text(json.dumps({"version": "test", "optimizer": {"readiness_weight": 0.5}}))

    config = CalibrationConfig.from_file(path)

    assert config.version == "test"
    assert config.optimizer.readiness_weight == 0.5
    assert config.transition == DEFAULT_CALIBRATION.transition
