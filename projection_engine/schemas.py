"""
Pydantic models for projection engine inputs and state.

This module defines the core data structures for:
- Evidence: activity history, effort/threshold signals and profile metrics
- Latent State: the daily state the projection engine advances
- State Snapshots: the minimal persisted shape used to re-hydrate between runs
- Goals and Targets: priority-weighted attainment conditions
- Safety overrides, availability and solve overrides supplied by the caller
- Projection Requests: one complete, immutable engine invocation
"""

from datetime import date
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from projection_engine.calibration import DEFAULT_CALIBRATION, CalibrationConfig


class EngineModel(BaseModel):
    """Base for immutable engine value objects."""

    model_config = ConfigDict(extra="forbid", frozen=True, allow_inf_nan=False)


# ============================================================================
# Enumerations
# ============================================================================

class OptimizationProfile(str, Enum):
    """How aggressively the optimizer trades risk for goal attainment."""
    OUTCOME_FIRST = "outcome_first"
    BALANCED = "balanced"
    SUSTAINABLE = "sustainable"


class FeasibilityClass(str, Enum):
    """How close a constrained trajectory sits to the configured caps."""
    FEASIBLE = "feasible"
    AGGRESSIVE = "aggressive"
    UNSAFE = "unsafe"


class EvidenceState(str, Enum):
    """Coverage of the evidence behind a state estimate."""
    NONE = "none"
    SPARSE = "sparse"
    STALE = "stale"
    RICH = "rich"


class TargetKind(str, Enum):
    """Projected metric a target is evaluated against."""
    FITNESS_CTL = "fitness_ctl"  # CTL at least value
    FORM_TSB = "form_tsb"  # TSB within value ± tolerance
    READINESS = "readiness"  # readiness score at least value
    DURABILITY = "durability"  # durability at least value


class LoadSource(str, Enum):
    """Where a daily load observation came from, best first."""
    TSS = "tss"
    POWER = "power"
    PACE = "pace"
    HEART_RATE = "heart_rate"
    DURATION = "duration"
    REST = "rest"


LATENT_VARIABLES = ("ctl", "atl", "durability", "readiness_latent")


# ============================================================================
# Evidence
# ============================================================================

class ActivityRecord(EngineModel):
    """One normalized activity from the evidence provider."""

    activity_date: date = Field(..., alias="date", description="Local date of the activity")
    duration_s: float = Field(..., ge=0.0, le=86400.0, description="Moving duration in seconds")
    tss: Optional[float] = Field(None, ge=0.0, le=1000.0, description="Training stress score if known")
    normalized_power: Optional[float] = Field(None, gt=0.0, le=2500.0, description="Normalized power (W)")
    avg_hr: Optional[float] = Field(None, gt=0.0, le=250.0, description="Average heart rate (bpm)")
    avg_pace_s_per_km: Optional[float] = Field(None, gt=0.0, le=3600.0, description="Average pace (s/km)")
    sport: Optional[str] = Field(None, description="Sport label, informational only")

    model_config = ConfigDict(extra="forbid", frozen=True, allow_inf_nan=False, populate_by_name=True)


class EffortSignal(EngineModel):
    """Threshold test results or subjective readiness reported on a date."""

    signal_date: date = Field(..., alias="date")
    ftp_watts: Optional[float] = Field(None, gt=0.0, le=2500.0)
    threshold_hr: Optional[float] = Field(None, gt=0.0, le=250.0)
    threshold_pace_s_per_km: Optional[float] = Field(None, gt=0.0, le=3600.0)
    perceived_readiness: Optional[float] = Field(
        None, ge=0.0, le=100.0, description="Self-reported readiness (0-100)"
    )

    model_config = ConfigDict(extra="forbid", frozen=True, allow_inf_nan=False, populate_by_name=True)


class ProfileMetrics(EngineModel):
    """Standing athlete thresholds used to derive load from raw records."""

    ftp_watts: Optional[float] = Field(None, gt=0.0, le=2500.0)
    threshold_hr: Optional[float] = Field(None, gt=0.0, le=250.0)
    threshold_pace_s_per_km: Optional[float] = Field(None, gt=0.0, le=3600.0)


class EvidenceBundle(EngineModel):
    """Everything the evidence provider knows about one athlete."""

    athlete_id: str = Field(..., min_length=1)
    as_of: date = Field(..., description="Last day covered by this evidence")
    activities: List[ActivityRecord] = Field(default_factory=list)
    effort_signals: List[EffortSignal] = Field(default_factory=list)
    profile: ProfileMetrics = Field(default_factory=ProfileMetrics)

    @model_validator(mode="after")
    def validate_no_future_records(self):
        """Evidence may not be dated after its own as_of date."""
        late = [a.activity_date for a in self.activities if a.activity_date > self.as_of]
        late += [s.signal_date for s in self.effort_signals if s.signal_date > self.as_of]
        if late:
            raise ValueError(f"Evidence dated after as_of {self.as_of}: {sorted(late)[0]}")
        return self


# ============================================================================
# Latent State & Snapshots
# ============================================================================

class LatentState(EngineModel):
    """Athlete state on one day. Never mutated; transitions build a new one."""

    ctl: float = Field(..., ge=0.0, description="Chronic training load")
    atl: float = Field(..., ge=0.0, description="Acute training load")
    durability: float = Field(..., ge=0.0, le=1.0)
    readiness_latent: float = Field(..., ge=0.0, le=1.0)
    uncertainty: float = Field(..., ge=0.0, le=1.0, description="Normalized state uncertainty")

    @property
    def tsb(self) -> float:
        """Training stress balance (form)."""
        return self.ctl - self.atl

    @property
    def strain_load_balance(self) -> float:
        """ATL relative to CTL, floored at a CTL of 1."""
        return self.atl / max(self.ctl, 1.0)


class VariableEstimate(EngineModel):
    """Posterior of one latent variable."""

    mean: float
    uncertainty: float = Field(..., ge=0.0, description="Standard deviation in the variable's units")
    evidence_quality: float = Field(..., ge=0.0, le=1.0)
    as_of: date


class StateSnapshot(EngineModel):
    """
    Minimal persisted state. Produced at the end of every run and handed back
    on the next run as the prior.
    """

    athlete_id: str = Field(..., min_length=1)
    as_of: date
    calibration_version: str
    variables: Dict[str, VariableEstimate]
    evidence_quality: float = Field(..., ge=0.0, le=1.0)
    evidence_state: EvidenceState
    evidence_days: int = Field(0, ge=0, description="Days with at least one load observation")
    last_week_load: float = Field(0.0, ge=0.0, description="Load over the 7 days ending at as_of")

    @model_validator(mode="after")
    def validate_variables(self):
        """Every latent variable must be present."""
        missing = [name for name in LATENT_VARIABLES if name not in self.variables]
        if missing:
            raise ValueError(f"Snapshot missing latent variables: {missing}")
        return self


# ============================================================================
# Goals & Targets
# ============================================================================

class Target(EngineModel):
    """A desired attainment condition on a projected metric."""

    id: str = Field(..., min_length=1)
    kind: TargetKind
    value: float = Field(..., description="Threshold (or window center for form targets)")
    tolerance: Optional[float] = Field(None, gt=0.0, description="Window half-width for form targets")
    weight: float = Field(1.0, ge=0.0, description="Relative weight within the goal")


class Goal(EngineModel):
    """A dated goal with one or more targets."""

    id: str = Field(..., min_length=1)
    name: str = Field("", description="Display name")
    target_date: date
    priority: float = Field(..., ge=0.0, le=10.0, description="0-10, 10 = highest")
    targets: List[Target] = Field(..., min_length=1)


# ============================================================================
# Caller Configuration
# ============================================================================

class SafetyCapOverrides(EngineModel):
    """
    Explicit, audit-recorded relaxation (or tightening) of default soft caps.

    Values beyond the absolute rails are rejected, never clamped.
    """

    max_weekly_tss_ramp_pct: Optional[float] = Field(None, ge=0.0)
    max_ctl_ramp_per_week: Optional[float] = Field(None, ge=0.0)
    post_goal_recovery_days: Optional[int] = Field(None, ge=0)
    max_weekly_tss: Optional[float] = Field(None, ge=0.0)
    max_weekly_tss_decrease_pct: Optional[float] = Field(None, ge=0.0)
    reason: str = Field(..., min_length=1, description="Why the caller overrides the defaults")


class AvailabilityWindow(EngineModel):
    """Training time the athlete can offer per week."""

    available_days_per_week: int = Field(7, ge=1, le=7)
    sessions_per_day: int = Field(1, ge=1)
    max_session_hours: float = Field(..., gt=0.0)


class SolveOverride(EngineModel):
    """Caller request to shrink the optimizer's work per step."""

    horizon_weeks: Optional[int] = Field(None, ge=1)
    candidate_count: Optional[int] = Field(None, ge=1)


class ProjectionControl(EngineModel):
    """
    Semantic planning knobs.

    Resolved once per run into effective objective weights, solve bounds and
    a curvature preference. They never loosen a safety cap.
    """

    ambition: float = Field(0.5, ge=0.0, le=1.0, description="Goal pull and search effort")
    risk_tolerance: float = Field(0.4, ge=0.0, le=1.0, description="Acceptance of risk and load swings")
    curvature: float = Field(
        0.0, ge=-1.0, le=1.0, description="Preferred bend of the load curve: -1 front-loaded, +1 back-loaded"
    )
    curvature_strength: float = Field(0.35, ge=0.0, le=1.0)


class ProjectionRequest(EngineModel):
    """One complete engine invocation."""

    evidence: EvidenceBundle
    prior_snapshot: Optional[StateSnapshot] = None
    goals: List[Goal] = Field(default_factory=list)
    calibration: CalibrationConfig = Field(default=DEFAULT_CALIBRATION)
    optimization_profile: OptimizationProfile = OptimizationProfile.BALANCED
    cap_overrides: Optional[SafetyCapOverrides] = None
    availability: Optional[AvailabilityWindow] = None
    solve_override: Optional[SolveOverride] = None
    projection_control: Optional[ProjectionControl] = None
    plan_weeks: Optional[int] = Field(None, ge=1, description="Defaults to the weeks up to the last goal")
    previous_plan_weekly_tss: List[float] = Field(
        default_factory=list, description="Previously committed weekly loads, for churn"
    )

    @model_validator(mode="after")
    def validate_unique_goal_ids(self):
        """Goal identifiers take part in tie-breaking and must be unique."""
        ids = [g.id for g in self.goals]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate goal ids: {ids}")
        if any(v < 0 for v in self.previous_plan_weekly_tss):
            raise ValueError("previous_plan_weekly_tss values must be >= 0")
        return self
