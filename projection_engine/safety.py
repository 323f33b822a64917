"""
Safety and invariant layer.

Two tiers of bounds protect every projection:
- Absolute rails: fixed engine limits (non-negativity, finiteness, hard ramp
  ceilings, availability-domain session bounds). Never configurable.
- Default caps: conservative, profile-dependent soft limits. A caller may
  raise them with an explicit override, but never beyond the rails.

A rail breach is fatal to the candidate that produced it. Soft-cap
proximity only changes the feasibility classification.
"""

import math
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from projection_engine.calibration import CalibrationConfig
from projection_engine.errors import ConfigurationError, ProjectionInputError
from projection_engine.schemas import (
    AvailabilityWindow,
    FeasibilityClass,
    OptimizationProfile,
    SafetyCapOverrides,
)


class SafetyModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, allow_inf_nan=False)


# ============================================================================
# Absolute Rails
# ============================================================================

class AbsoluteRails(SafetyModel):
    """Fixed engine limits. The engine only ever reads ABSOLUTE_RAILS."""

    max_weekly_tss_ramp_pct: float = 20.0
    max_ctl_ramp_per_week: float = 8.0
    max_post_goal_recovery_days: int = 28
    max_weekly_tss: float = 2500.0
    max_weekly_tss_decrease_pct: float = 100.0
    max_ctl: float = 250.0
    max_plan_weeks: int = 104
    max_history_days: int = 730
    max_session_hours: float = 8.0
    max_sessions_per_day: int = 3
    min_horizon_weeks: int = 1
    max_horizon_weeks: int = 8
    min_candidate_count: int = 3
    max_candidate_count: int = 15
    tolerance: float = 1e-6


ABSOLUTE_RAILS = AbsoluteRails()


# ============================================================================
# Profile Table
# ============================================================================

class ProfileBounds(SafetyModel):
    """Default soft caps and solve bounds for one optimization profile."""

    max_weekly_tss_ramp_pct: float
    max_ctl_ramp_per_week: float
    post_goal_recovery_days: int
    max_weekly_tss_decrease_pct: float
    horizon_weeks: int
    candidate_count: int


PROFILE_BOUNDS: Dict[OptimizationProfile, ProfileBounds] = {
    OptimizationProfile.OUTCOME_FIRST: ProfileBounds(
        max_weekly_tss_ramp_pct=10.0,
        max_ctl_ramp_per_week=5.0,
        post_goal_recovery_days=3,
        max_weekly_tss_decrease_pct=40.0,
        horizon_weeks=8,
        candidate_count=15,
    ),
    OptimizationProfile.BALANCED: ProfileBounds(
        max_weekly_tss_ramp_pct=7.0,
        max_ctl_ramp_per_week=3.0,
        post_goal_recovery_days=5,
        max_weekly_tss_decrease_pct=40.0,
        horizon_weeks=6,
        candidate_count=11,
    ),
    OptimizationProfile.SUSTAINABLE: ProfileBounds(
        max_weekly_tss_ramp_pct=5.0,
        max_ctl_ramp_per_week=2.0,
        post_goal_recovery_days=7,
        max_weekly_tss_decrease_pct=40.0,
        horizon_weeks=4,
        candidate_count=9,
    ),
}


class SafetyCaps(SafetyModel):
    """Effective soft caps for one run, after overrides."""

    optimization_profile: OptimizationProfile
    max_weekly_tss_ramp_pct: float = Field(..., ge=0.0)
    max_ctl_ramp_per_week: float = Field(..., ge=0.0)
    post_goal_recovery_days: int = Field(..., ge=0)
    max_weekly_tss: float = Field(..., ge=0.0)
    max_weekly_tss_decrease_pct: float = Field(..., ge=0.0)
    overrides_applied: List[str] = Field(default_factory=list)
    override_reason: Optional[str] = None


class ActionBounds(SafetyModel):
    """Admissible planned weekly load for one decision step."""

    min_value: float = Field(..., ge=0.0)
    max_value: float = Field(..., ge=0.0)
    ramp_base: float = Field(..., ge=0.0, description="Weekly TSS the ramp caps are measured from")
    limits: Dict[str, float] = Field(default_factory=dict, description="Upper limit contributed by each constraint")
    active_constraints: List[str] = Field(default_factory=list)


class InvariantViolation(SafetyModel):
    """One absolute-rail breach found in a trajectory."""

    code: str
    index: int = Field(..., description="Day index for daily checks, week index for weekly checks")
    field: str
    value: Optional[float] = None
    limit: Optional[float] = None
    message: str


_OVERRIDE_RAILS = {
    "max_weekly_tss_ramp_pct": "max_weekly_tss_ramp_pct",
    "max_ctl_ramp_per_week": "max_ctl_ramp_per_week",
    "post_goal_recovery_days": "max_post_goal_recovery_days",
    "max_weekly_tss": "max_weekly_tss",
    "max_weekly_tss_decrease_pct": "max_weekly_tss_decrease_pct",
}


# ============================================================================
# Cap Resolution
# ============================================================================

def resolve_safety_caps(
    profile: OptimizationProfile,
    overrides: Optional[SafetyCapOverrides] = None,
) -> SafetyCaps:
    """
    Resolve effective soft caps for a profile.

    Defaults come from PROFILE_BOUNDS and never depend on goals. An override
    replaces a default; an override beyond its absolute rail is a
    configuration error, not a silent clamp.

    Args:
        profile: Active optimization profile
        overrides: Optional caller overrides (audit-recorded)

    Returns:
        SafetyCaps

    Raises:
        ConfigurationError: If an override exceeds an absolute rail
    """
    bounds = PROFILE_BOUNDS[profile]
    values = {
        "max_weekly_tss_ramp_pct": bounds.max_weekly_tss_ramp_pct,
        "max_ctl_ramp_per_week": bounds.max_ctl_ramp_per_week,
        "post_goal_recovery_days": bounds.post_goal_recovery_days,
        "max_weekly_tss": ABSOLUTE_RAILS.max_weekly_tss,
        "max_weekly_tss_decrease_pct": bounds.max_weekly_tss_decrease_pct,
    }
    applied = []
    reason = None

    if overrides is not None:
        errors = []
        for field, rail_field in _OVERRIDE_RAILS.items():
            value = getattr(overrides, field)
            if value is None:
                continue
            rail = getattr(ABSOLUTE_RAILS, rail_field)
            if value > rail:
                errors.append(f"{field}={value} exceeds absolute rail {rail}")
                continue
            values[field] = value
            applied.append(field)
        if errors:
            raise ConfigurationError("Safety cap override rejected: " + "; ".join(errors))
        reason = overrides.reason
        if applied:
            logger.info(f"[SAFETY] Cap overrides applied: {applied} (reason: {reason})")

    return SafetyCaps(
        optimization_profile=profile,
        overrides_applied=applied,
        override_reason=reason,
        **values,
    )


def validate_availability(availability: Optional[AvailabilityWindow]) -> None:
    """
    Check availability against the session rails.

    Raises:
        ConfigurationError: If sessions per day or session hours exceed the rails
    """
    if availability is None:
        return
    errors = []
    if availability.sessions_per_day > ABSOLUTE_RAILS.max_sessions_per_day:
        errors.append(
            f"sessions_per_day={availability.sessions_per_day} exceeds rail "
            f"{ABSOLUTE_RAILS.max_sessions_per_day}"
        )
    if availability.max_session_hours > ABSOLUTE_RAILS.max_session_hours:
        errors.append(
            f"max_session_hours={availability.max_session_hours} exceeds rail "
            f"{ABSOLUTE_RAILS.max_session_hours}"
        )
    if errors:
        raise ConfigurationError("Availability rejected: " + "; ".join(errors))


def availability_weekly_tss(
    availability: AvailabilityWindow, calibration: CalibrationConfig
) -> float:
    """Weekly TSS the available hours can hold at the assumed intensity."""
    intensity = calibration.envelope_penalty.availability_intensity_factor
    weekly_hours = (
        availability.available_days_per_week
        * availability.sessions_per_day
        * availability.max_session_hours
    )
    return weekly_hours * 100.0 * intensity * intensity


# ============================================================================
# Action Bounds
# ============================================================================

def ctl_ramp_weekly_limit(ctl: float, max_ramp: float, calibration: CalibrationConfig) -> float:
    """
    Largest weekly TSS, spread evenly over 7 days, whose CTL rise stays within max_ramp.

    With a constant daily load L the CTL after a week is
    L + (ctl - L) * (1 - alpha)^7, so the ramp is (L - ctl) * k.
    """
    k = 1.0 - (1.0 - calibration.ctl_alpha) ** 7
    return 7.0 * (ctl + max_ramp / k)


def _floor_to(value: float, precision: int) -> float:
    scale = 10 ** precision
    return math.floor(value * scale + 1e-9) / scale


def _ceil_to(value: float, precision: int) -> float:
    scale = 10 ** precision
    return math.ceil(value * scale - 1e-9) / scale


def compute_action_bounds(
    previous_action: float,
    ctl: float,
    caps: SafetyCaps,
    calibration: CalibrationConfig,
    availability: Optional[AvailabilityWindow] = None,
) -> ActionBounds:
    """
    Derive the admissible weekly load range for the next week.

    Args:
        previous_action: Planned (or observed) load of the previous week
        ctl: CTL at the start of the week
        caps: Effective soft caps
        calibration: Active calibration
        availability: Optional availability window

    Returns:
        ActionBounds with the tightest upper limit and its constraint names

    Raises:
        ProjectionInputError: If previous_action or ctl is non-finite or negative
    """
    for name, value in (("previous_action", previous_action), ("ctl", ctl)):
        if not math.isfinite(value) or value < 0:
            raise ProjectionInputError(f"{name} must be finite and >= 0, got {value}")

    ramp_base = max(previous_action, ctl * 7.0, calibration.no_history.weekly_ramp_base_floor)
    limits = {
        "max_weekly_tss_ramp_pct": ramp_base * (1.0 + caps.max_weekly_tss_ramp_pct / 100.0),
        "max_ctl_ramp_per_week": ctl_ramp_weekly_limit(ctl, caps.max_ctl_ramp_per_week, calibration),
        "max_weekly_tss": caps.max_weekly_tss,
        "rail_max_weekly_tss": ABSOLUTE_RAILS.max_weekly_tss,
    }
    if availability is not None:
        limits["availability_weekly_tss"] = availability_weekly_tss(availability, calibration)

    upper = min(limits.values())
    active = [name for name, value in limits.items() if value <= upper + 1e-9]

    lower = max(0.0, previous_action * (1.0 - caps.max_weekly_tss_decrease_pct / 100.0))
    if lower > 0.0:
        active.append("max_weekly_tss_decrease_pct")
    if lower > upper:
        lower = upper

    precision = calibration.optimizer.lattice_precision
    max_value = _floor_to(upper, precision)
    min_value = min(_ceil_to(lower, precision), max_value)

    return ActionBounds(
        min_value=min_value,
        max_value=max_value,
        ramp_base=ramp_base,
        limits=limits,
        active_constraints=active,
    )


def clamp(value: float, bounds: Union[ActionBounds, Tuple[float, float]]) -> float:
    """
    Clamp a value into bounds.

    Non-finite values are rejected rather than substituted.

    Raises:
        ProjectionInputError: If value is NaN or infinite
    """
    if isinstance(bounds, ActionBounds):
        lower, upper = bounds.min_value, bounds.max_value
    else:
        lower, upper = bounds
    if not math.isfinite(value):
        raise ProjectionInputError(f"Cannot clamp non-finite value {value}")
    return max(lower, min(upper, value))


def cap_usage(applied_tss: float, ramp_base: float, ctl_ramp: float, caps: SafetyCaps) -> float:
    """
    Fraction (0-1) of the tighter soft ramp cap a week consumes.

    A zero cap is fully used by any positive growth.
    """
    growth = applied_tss - ramp_base
    tss_room = ramp_base * caps.max_weekly_tss_ramp_pct / 100.0
    if tss_room > 0:
        tss_usage = max(0.0, min(1.0, growth / tss_room))
    else:
        tss_usage = 1.0 if growth > 0 else 0.0

    if caps.max_ctl_ramp_per_week > 0:
        ctl_usage = max(0.0, min(1.0, ctl_ramp / caps.max_ctl_ramp_per_week))
    else:
        ctl_usage = 1.0 if ctl_ramp > 0 else 0.0

    return max(tss_usage, ctl_usage)


# ============================================================================
# Invariants
# ============================================================================

def validate_invariants(trajectory) -> List[InvariantViolation]:
    """
    Check a trajectory against every absolute rail.

    All checks run even after the first failure so the caller sees the
    complete picture.

    Args:
        trajectory: Trajectory produced by the projection engine

    Returns:
        List of violations (empty when the trajectory is safe)
    """
    tol = ABSOLUTE_RAILS.tolerance
    violations: List[InvariantViolation] = []

    for point in trajectory.points:
        numeric = {
            "ctl": point.ctl,
            "atl": point.atl,
            "load": point.load,
            "durability": point.durability,
            "readiness_latent": point.readiness_latent,
            "uncertainty": point.uncertainty,
            "readiness_score": point.readiness_score,
        }
        non_finite = [name for name, value in numeric.items() if not math.isfinite(value)]
        for name in non_finite:
            violations.append(InvariantViolation(
                code="NON_FINITE_STATE",
                index=point.day_index,
                field=name,
                message=f"Day {point.day_index}: {name} is not finite",
            ))
        if non_finite:
            continue

        for name in ("ctl", "atl", "load"):
            if numeric[name] < -tol:
                violations.append(InvariantViolation(
                    code=f"NEGATIVE_{name.upper()}",
                    index=point.day_index,
                    field=name,
                    value=numeric[name],
                    limit=0.0,
                    message=f"Day {point.day_index}: {name} {numeric[name]:.3f} < 0",
                ))
        if point.ctl > ABSOLUTE_RAILS.max_ctl + tol:
            violations.append(InvariantViolation(
                code="CTL_RAIL",
                index=point.day_index,
                field="ctl",
                value=point.ctl,
                limit=ABSOLUTE_RAILS.max_ctl,
                message=f"Day {point.day_index}: CTL {point.ctl:.1f} above rail",
            ))
        for name in ("durability", "readiness_latent", "uncertainty"):
            if numeric[name] < -tol or numeric[name] > 1.0 + tol:
                violations.append(InvariantViolation(
                    code="UNIT_RANGE",
                    index=point.day_index,
                    field=name,
                    value=numeric[name],
                    message=f"Day {point.day_index}: {name} {numeric[name]:.4f} outside [0, 1]",
                ))
        if point.readiness_score < -tol or point.readiness_score > 100.0 + tol:
            violations.append(InvariantViolation(
                code="READINESS_RANGE",
                index=point.day_index,
                field="readiness_score",
                value=point.readiness_score,
                message=f"Day {point.day_index}: readiness {point.readiness_score:.2f} outside [0, 100]",
            ))

    for week in trajectory.weeks:
        if not all(math.isfinite(v) for v in (week.applied_tss, week.ramp_base, week.ctl_ramp)):
            violations.append(InvariantViolation(
                code="NON_FINITE_STATE",
                index=week.week_index,
                field="week",
                message=f"Week {week.week_index}: non-finite load summary",
            ))
            continue
        if week.applied_tss > ABSOLUTE_RAILS.max_weekly_tss + tol:
            violations.append(InvariantViolation(
                code="WEEKLY_TSS_RAIL",
                index=week.week_index,
                field="applied_tss",
                value=week.applied_tss,
                limit=ABSOLUTE_RAILS.max_weekly_tss,
                message=f"Week {week.week_index}: weekly TSS {week.applied_tss:.1f} above rail",
            ))
        ramp_limit = week.ramp_base * (1.0 + ABSOLUTE_RAILS.max_weekly_tss_ramp_pct / 100.0)
        if week.applied_tss > ramp_limit + tol:
            violations.append(InvariantViolation(
                code="TSS_RAMP_RAIL",
                index=week.week_index,
                field="applied_tss",
                value=week.applied_tss,
                limit=ramp_limit,
                message=f"Week {week.week_index}: weekly TSS ramp beyond {ABSOLUTE_RAILS.max_weekly_tss_ramp_pct}%",
            ))
        if week.ctl_ramp > ABSOLUTE_RAILS.max_ctl_ramp_per_week + tol:
            violations.append(InvariantViolation(
                code="CTL_RAMP_RAIL",
                index=week.week_index,
                field="ctl_ramp",
                value=week.ctl_ramp,
                limit=ABSOLUTE_RAILS.max_ctl_ramp_per_week,
                message=f"Week {week.week_index}: CTL ramp {week.ctl_ramp:.2f}/week above rail",
            ))

    return violations


# ============================================================================
# Feasibility
# ============================================================================

def classify_feasibility(
    required_ratio: float,
    cap_pressure: float,
    calibration: CalibrationConfig,
) -> FeasibilityClass:
    """
    Three-state feasibility from cap proximity.

    Args:
        required_ratio: Goal demand as a fraction of what the configured caps deliver
            (above 1.0 means the goal needs more than the caps allow)
        cap_pressure: Mean fraction of the caps the constrained trajectory uses
        calibration: Active calibration

    Returns:
        FEASIBLE, AGGRESSIVE or UNSAFE
    """
    if required_ratio > 1.0 + ABSOLUTE_RAILS.tolerance:
        return FeasibilityClass.UNSAFE
    if max(required_ratio, cap_pressure) >= calibration.feasibility.aggressive_pressure:
        return FeasibilityClass.AGGRESSIVE
    return FeasibilityClass.FEASIBLE
