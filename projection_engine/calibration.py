"""
Versioned calibration configuration for the projection engine.

Every coefficient used by the estimator, the projection engine, the utility
aggregator and the optimizer lives here as an explicit field:
- Composite weights: readiness blend (must sum to 1.0)
- Timeline tolerances: form targets and taper timing
- Transition constants: CTL/ATL time constants, durability and load biases
- Envelope and durability penalty weights: continuous risk terms
- No-history floors: conservative bootstrap values
- Estimator, utility, optimizer, feasibility and readiness constants

The configuration is immutable and rejects unknown fields. A malformed
configuration never reaches a computation.
"""

import json
import math
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from projection_engine.errors import ConfigurationError


COMPOSITE_WEIGHT_EPSILON = 1e-6


class CalibrationSection(BaseModel):
    """Base for immutable calibration sections."""

    model_config = ConfigDict(extra="forbid", frozen=True, allow_inf_nan=False)


# ============================================================================
# Sections
# ============================================================================

class CompositeWeights(CalibrationSection):
    """Readiness composite blend. The five weights must sum to 1.0."""

    fitness: float = Field(0.30, ge=0.0, le=1.0, description="Weight of fitness position (CTL vs reference)")
    form: float = Field(0.30, ge=0.0, le=1.0, description="Weight of form (TSB vs timeline target)")
    fatigue_balance: float = Field(0.15, ge=0.0, le=1.0, description="Weight of fatigue overflow signal")
    durability: float = Field(0.15, ge=0.0, le=1.0, description="Weight of durability")
    confidence: float = Field(0.10, ge=0.0, le=1.0, description="Weight of evidence confidence")

    @model_validator(mode="after")
    def validate_weights_sum(self):
        """Ensure composite weights sum to 1.0."""
        total = self.fitness + self.form + self.fatigue_balance + self.durability + self.confidence
        if abs(total - 1.0) > COMPOSITE_WEIGHT_EPSILON:
            raise ValueError(
                f"Composite weights must sum to 1.0, got {total:.6f}. "
                f"fitness={self.fitness}, form={self.form}, fatigue_balance={self.fatigue_balance}, "
                f"durability={self.durability}, confidence={self.confidence}"
            )
        return self


class TimelineTolerances(CalibrationSection):
    """Form targets and how they move as a goal approaches."""

    build_tsb: float = Field(-10.0, ge=-60.0, le=30.0, description="Form target far from any goal")
    peak_tsb: float = Field(8.0, ge=-30.0, le=40.0, description="Form target on goal day")
    form_tolerance: float = Field(20.0, gt=0.0, le=100.0, description="TSB distance at which form signal reaches 0")
    taper_tsb_tau_days: float = Field(10.0, gt=0.0, le=60.0, description="Decay of the peak-form bias with days to goal")
    fatigue_overflow_scale: float = Field(0.4, gt=0.0, le=2.0, description="ATL excess over CTL (as CTL fraction) that zeroes the fatigue signal")
    fitness_reference_ctl: float = Field(100.0, gt=0.0, le=250.0, description="CTL reference when goals state no fitness target")


class TransitionConstants(CalibrationSection):
    """Coefficients of the daily state transition."""

    ctl_time_constant_days: float = Field(42.0, gt=1.0, le=120.0)
    atl_time_constant_days: float = Field(7.0, gt=1.0, le=42.0)
    readiness_response: float = Field(0.35, gt=0.0, le=1.0, description="Daily pull of readiness_latent toward the composite")
    durability_recovery_rate: float = Field(0.04, ge=0.0, le=1.0)
    durability_overload_rate: float = Field(0.06, ge=0.0, le=1.0)
    recovery_tsb_center: float = Field(0.0, ge=-50.0, le=50.0, description="TSB at which the recovery signal is 0.5")
    recovery_tsb_width: float = Field(10.0, gt=0.0, le=50.0)
    taper_load_depth: float = Field(0.30, ge=0.0, le=0.9, description="Load reduction on goal day at priority 10")
    taper_load_tau_days: float = Field(7.0, gt=0.0, le=42.0)
    recovery_load_depth: float = Field(0.45, ge=0.0, le=0.9, description="Load reduction the day after a priority-10 goal")
    load_bias_floor: float = Field(0.30, ge=0.05, le=1.0, description="Lowest multiplier the taper/recovery bias may apply")
    uncertainty_growth_per_day: float = Field(0.005, ge=0.0, le=0.2, description="Forecast uncertainty growth toward 1.0")


class EnvelopePenaltyWeights(CalibrationSection):
    """Continuous strain and ramp-proximity penalties."""

    strain_weight: float = Field(1.0, ge=0.0, le=10.0)
    slb_ceiling: float = Field(1.5, gt=0.0, le=5.0, description="Strain/load balance above which strain is penalized")
    slb_width: float = Field(0.1, gt=0.0, le=2.0, description="Softness of the strain penalty")
    ramp_pressure_weight: float = Field(0.5, ge=0.0, le=10.0)
    ramp_pressure_onset: float = Field(0.8, ge=0.0, lt=1.0, description="Cap usage fraction where ramp pressure starts")
    availability_intensity_factor: float = Field(
        0.85, gt=0.0, le=1.2, description="Mean IF assumed when converting available hours to weekly TSS"
    )


class DurabilityPenaltyWeights(CalibrationSection):
    """Overload signal for the durability transition and its risk penalty."""

    overload_slb_center: float = Field(1.3, gt=0.0, le=5.0)
    overload_slb_width: float = Field(0.1, gt=0.0, le=2.0)
    durability_floor: float = Field(0.45, ge=0.0, le=1.0)
    floor_width: float = Field(0.05, gt=0.0, le=1.0)
    weight: float = Field(1.0, ge=0.0, le=10.0)


class NoHistoryFloors(CalibrationSection):
    """Conservative bootstrap values when there is no evidence at all."""

    default_ctl: float = Field(20.0, ge=0.0, le=150.0)
    default_atl: float = Field(20.0, ge=0.0, le=150.0)
    default_ctl_std: float = Field(15.0, gt=0.0, le=100.0)
    default_atl_std: float = Field(15.0, gt=0.0, le=100.0)
    default_durability: float = Field(0.5, ge=0.0, le=1.0)
    default_readiness_latent: float = Field(0.5, ge=0.0, le=1.0)
    evidence_quality_floor: float = Field(0.15, ge=0.0, le=1.0)
    weekly_ramp_base_floor: float = Field(140.0, ge=0.0, le=1000.0, description="Lowest weekly TSS used as ramp base")
    default_intensity_factor: float = Field(0.65, gt=0.0, le=1.2, description="IF assumed for duration-only records")


class EstimatorConstants(CalibrationSection):
    """Noise model and quality scoring for the state estimator."""

    habitual_load_std: float = Field(30.0, gt=0.0, le=300.0, description="Std dev of an unobserved day's load")
    observation_noise_std: float = Field(10.0, gt=0.0, le=300.0, description="Std dev of a quality-1.0 load observation")
    rest_day_quality: float = Field(0.5, gt=0.0, le=1.0)
    idle_day_quality: float = Field(
        0.4, gt=0.0, le=1.0, description="Quality of a covered day without activity after the last record"
    )
    ctl_process_noise: float = Field(0.05, ge=0.0, le=10.0)
    atl_process_noise: float = Field(0.5, ge=0.0, le=50.0)
    durability_process_noise: float = Field(1e-4, ge=0.0, le=0.1)
    readiness_process_noise: float = Field(2e-3, ge=0.0, le=0.1)
    effort_observation_std: float = Field(0.15, gt=0.0, le=1.0, description="Std dev of perceived readiness (0-1 scale)")
    ctl_std_floor: float = Field(0.5, gt=0.0, le=10.0)
    atl_std_floor: float = Field(0.5, gt=0.0, le=10.0)
    durability_std_floor: float = Field(0.01, gt=0.0, le=0.5)
    readiness_std_floor: float = Field(0.01, gt=0.0, le=0.5)
    ctl_std_ceiling: float = Field(40.0, gt=0.0, le=200.0)
    atl_std_ceiling: float = Field(60.0, gt=0.0, le=200.0)
    durability_std_ceiling: float = Field(0.5, gt=0.0, le=1.0)
    readiness_std_ceiling: float = Field(0.5, gt=0.0, le=1.0)
    ctl_std_reference: float = Field(20.0, gt=0.0, le=200.0, description="CTL std dev mapped to uncertainty 1.0")
    stale_after_days: int = Field(14, ge=1, le=365)
    sparse_min_days: int = Field(14, ge=1, le=365)
    quality_window_days: int = Field(28, ge=7, le=365)
    tss_quality: float = Field(1.0, gt=0.0, le=1.0)
    power_quality: float = Field(0.9, gt=0.0, le=1.0)
    pace_quality: float = Field(0.8, gt=0.0, le=1.0)
    heart_rate_quality: float = Field(0.7, gt=0.0, le=1.0)
    duration_quality: float = Field(0.4, gt=0.0, le=1.0)


class UtilityConstants(CalibrationSection):
    """Target utility spreads and priority weighting."""

    priority_epsilon: float = Field(0.1, gt=0.0, le=1.0)
    priority_gamma: float = Field(2.0, gt=0.0, le=5.0)
    ctl_sd_scale: float = Field(25.0, gt=0.0, le=200.0)
    tsb_sd_scale: float = Field(15.0, gt=0.0, le=100.0)
    readiness_sd_scale: float = Field(30.0, gt=0.0, le=100.0)
    durability_sd_scale: float = Field(0.3, gt=0.0, le=1.0)
    min_sd_fraction: float = Field(0.02, gt=0.0, le=1.0, description="Lowest uncertainty used when spreading a projection")
    default_form_tolerance: float = Field(10.0, gt=0.0, le=60.0)
    alignment_penalty_weight: float = Field(0.2, ge=0.0, le=1.0)
    alignment_window_days: float = Field(14.0, gt=0.0, le=60.0)


class OptimizerWeights(CalibrationSection):
    """Objective weights for the MPC optimizer."""

    preparedness_weight: float = Field(1.0, ge=0.0, le=10.0)
    readiness_weight: float = Field(0.25, ge=0.0, le=10.0)
    risk_penalty_weight: float = Field(0.5, ge=0.0, le=10.0)
    volatility_penalty_weight: float = Field(0.1, ge=0.0, le=10.0)
    churn_penalty_weight: float = Field(0.1, ge=0.0, le=10.0)
    volatility_scale_tss: float = Field(150.0, gt=0.0, le=2500.0)
    lattice_precision: int = Field(1, ge=0, le=3, description="Decimal places candidates are rounded to")


class FeasibilityThresholds(CalibrationSection):
    """Classification thresholds and uncertainty band for feasibility."""

    aggressive_pressure: float = Field(0.75, gt=0.0, lt=1.0)
    low_confidence: float = Field(0.4, ge=0.0, le=1.0)
    band_base: float = Field(0.06, ge=0.0, le=1.0)
    band_confidence_span: float = Field(0.18, ge=0.0, le=1.0)
    band_pressure_span: float = Field(0.05, ge=0.0, le=1.0)
    band_min: float = Field(0.08, ge=0.0, le=1.0)
    band_max: float = Field(0.28, ge=0.0, le=1.0)
    growth_weight: float = Field(0.4, ge=0.0, le=1.0, description="Score weight of required growth vs cap")
    tss_pressure_weight: float = Field(0.2, ge=0.0, le=1.0)
    ctl_pressure_weight: float = Field(0.2, ge=0.0, le=1.0)
    confidence_weight: float = Field(0.2, ge=0.0, le=1.0)
    high_band_score: float = Field(75.0, ge=0.0, le=100.0)
    medium_band_score: float = Field(55.0, ge=0.0, le=100.0)


class ReadinessScoreConstants(CalibrationSection):
    """Mapping from readiness_latent to the 0-100 readiness score."""

    uncertainty_discount: float = Field(0.3, ge=0.0, le=1.0)
    cap_pressure_penalty: float = Field(0.1, ge=0.0, le=1.0)


# ============================================================================
# Root configuration
# ============================================================================

class CalibrationConfig(CalibrationSection):
    """
    Complete, versioned calibration for one engine run.

    Owned by the caller and passed explicitly into every computation.
    """

    version: str = Field("2025.1", min_length=1, description="Calibration version tag")
    composite_weights: CompositeWeights = Field(default_factory=CompositeWeights)
    timeline: TimelineTolerances = Field(default_factory=TimelineTolerances)
    transition: TransitionConstants = Field(default_factory=TransitionConstants)
    envelope_penalty: EnvelopePenaltyWeights = Field(default_factory=EnvelopePenaltyWeights)
    durability_penalty: DurabilityPenaltyWeights = Field(default_factory=DurabilityPenaltyWeights)
    no_history: NoHistoryFloors = Field(default_factory=NoHistoryFloors)
    estimator: EstimatorConstants = Field(default_factory=EstimatorConstants)
    utility: UtilityConstants = Field(default_factory=UtilityConstants)
    optimizer: OptimizerWeights = Field(default_factory=OptimizerWeights)
    feasibility: FeasibilityThresholds = Field(default_factory=FeasibilityThresholds)
    readiness: ReadinessScoreConstants = Field(default_factory=ReadinessScoreConstants)

    @model_validator(mode="after")
    def validate_cross_section(self):
        """Reject combinations that are individually valid but contradictory."""
        if self.feasibility.band_min > self.feasibility.band_max:
            raise ValueError(
                f"feasibility.band_min ({self.feasibility.band_min}) exceeds "
                f"feasibility.band_max ({self.feasibility.band_max})"
            )
        if self.estimator.ctl_std_floor > self.estimator.ctl_std_ceiling:
            raise ValueError("estimator.ctl_std_floor exceeds estimator.ctl_std_ceiling")
        if self.estimator.atl_std_floor > self.estimator.atl_std_ceiling:
            raise ValueError("estimator.atl_std_floor exceeds estimator.atl_std_ceiling")
        return self

    @property
    def ctl_alpha(self) -> float:
        """Daily EWMA coefficient for CTL."""
        return 1.0 - math.exp(-1.0 / self.transition.ctl_time_constant_days)

    @property
    def atl_alpha(self) -> float:
        """Daily EWMA coefficient for ATL."""
        return 1.0 - math.exp(-1.0 / self.transition.atl_time_constant_days)

    @classmethod
    def from_file(cls, calibration_path: Path) -> "CalibrationConfig":
        """
        Load calibration from a JSON file.

        Args:
            calibration_path: Path to calibration JSON file

        Returns:
            CalibrationConfig instance

        Raises:
            FileNotFoundError: If calibration file doesn't exist
            ConfigurationError: If calibration JSON is invalid
        """
        if not calibration_path.exists():
            raise FileNotFoundError(f"Calibration file not found: {calibration_path}")

        with open(calibration_path, "r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Invalid calibration file {calibration_path}: {e}") from e

        return load_calibration(data)


def load_calibration(data: Union[Dict[str, Any], CalibrationConfig]) -> CalibrationConfig:
    """
    Validate raw calibration input.

    Args:
        data: Mapping of calibration fields, or an already validated config

    Returns:
        CalibrationConfig

    Raises:
        ConfigurationError: If any field is unknown, out of range or non-finite
    """
    if isinstance(data, CalibrationConfig):
        return data
    try:
        return CalibrationConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid calibration: {e}") from e


DEFAULT_CALIBRATION = CalibrationConfig()
