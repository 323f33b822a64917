"""
Data schemas for projection output.

This module contains Pydantic models for:
- Trajectories: daily projection points and weekly load summaries
- Scores: target, goal and plan level utility
- Feasibility: per-goal classification with limiters and an uncertainty band
- Optimizer steps: candidate scores and the selected action per week
- Diagnostics: effective configuration, binding constraints and objective terms
- Projection results: everything handed to the presentation/persistence layer
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from projection_engine.safety import AbsoluteRails, ActionBounds, SafetyCaps
from projection_engine.schemas import (
    EvidenceState,
    FeasibilityClass,
    OptimizationProfile,
    ProjectionControl,
    StateSnapshot,
    TargetKind,
)


# ============================================================================
# Trajectory
# ============================================================================

class ProjectionPoint(BaseModel):
    """
    Projected state at the end of one day.

    Day 0 is the seed state on the last evidence day, before any planned load.
    """

    day_index: int = Field(..., ge=0)
    day: date = Field(..., description="Calendar day this point closes")
    planned_load: float = Field(..., description="Daily share of the planned weekly load")
    load: float = Field(..., description="Load applied after the taper/recovery bias")
    load_bias: float = Field(..., description="Multiplier applied to the planned load")
    ctl: float
    atl: float
    tsb: float
    strain_load_balance: float
    durability: float
    readiness_latent: float
    uncertainty: float
    readiness_score: float


class WeeklyProjection(BaseModel):
    """Load summary of one projected week (the last week may be partial)."""

    week_index: int = Field(..., ge=0)
    start_date: date
    end_date: date
    days: int = Field(..., ge=1, le=7)
    planned_tss: float
    applied_tss: float
    ramp_base: float
    ctl_start: float
    ctl_end: float
    ctl_ramp: float
    cap_usage: float = Field(..., ge=0.0, le=1.0, description="Fraction of the tighter ramp cap used")


class Trajectory(BaseModel):
    """Full daily trajectory plus weekly summaries and goal attainment."""

    start_date: date = Field(..., description="First day that receives planned load")
    points: List[ProjectionPoint] = Field(..., min_length=1)
    weeks: List[WeeklyProjection] = Field(default_factory=list)
    goal_attainment: Dict[str, float] = Field(
        default_factory=dict, description="Per-goal attainment likelihood (0-1)"
    )

    @property
    def horizon_days(self) -> int:
        return len(self.points) - 1

    @property
    def is_degenerate(self) -> bool:
        """True when the horizon holds at most one projected day."""
        return self.horizon_days <= 1

    def point_on(self, day: date) -> ProjectionPoint:
        """
        Point for a calendar day, clamped to the trajectory span.

        Args:
            day: Calendar date

        Returns:
            The point on that date, the seed point before the span, or the
            last point after it
        """
        index = (day - self.start_date).days + 1
        index = max(0, min(len(self.points) - 1, index))
        return self.points[index]

    def end_date(self) -> date:
        return self.start_date + timedelta(days=self.horizon_days - 1)

    def max_weekly_load(self) -> float:
        """Largest applied weekly TSS in the trajectory."""
        if not self.weeks:
            return 0.0
        return max(week.applied_tss for week in self.weeks)


# ============================================================================
# Scores & Feasibility
# ============================================================================

class TargetScore(BaseModel):
    """Utility of one target at its goal's target date."""

    target_id: str
    kind: TargetKind
    value: float
    weight: float = Field(..., ge=0.0)
    projected_mean: float
    projected_sd: float = Field(..., ge=0.0)
    utility: float = Field(..., ge=0.0, le=1.0)
    alignment_penalty: float = Field(0.0, ge=0.0, le=1.0)


class GoalFeasibility(BaseModel):
    """Feasibility of one goal against the configured caps."""

    goal_id: str
    classification: FeasibilityClass
    required_ctl_ramp: float = Field(..., description="CTL/week the goal demands from the starting state")
    ctl_ramp_cap: float
    required_ratio: float = Field(..., ge=0.0)
    reachable_ctl: Optional[float] = Field(
        None, description="Goal-date CTL when every week rides its admissible upper bound"
    )
    cap_pressure: float = Field(..., ge=0.0, le=1.0)
    score: float = Field(..., ge=0.0, le=100.0)
    band: str = Field(..., description="high / medium / low")
    breakdown: Dict[str, float] = Field(default_factory=dict)
    limiters: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    uncertainty_pct: float = Field(..., ge=0.0, le=1.0)


class GoalScore(BaseModel):
    """Goal level utility."""

    goal_id: str
    name: str = ""
    target_date: date
    priority: float
    priority_weight: float
    score: float = Field(..., ge=0.0, le=1.0)
    target_scores: List[TargetScore] = Field(default_factory=list)
    feasibility: Optional[GoalFeasibility] = None


# ============================================================================
# Optimizer Steps
# ============================================================================

class ObjectiveBreakdown(BaseModel):
    """Signed contribution of each objective term."""

    goal: float = 0.0
    readiness: float = 0.0
    risk: float = 0.0
    volatility: float = 0.0
    churn: float = 0.0
    curvature: float = 0.0

    @property
    def total(self) -> float:
        return self.goal + self.readiness + self.risk + self.volatility + self.churn + self.curvature

    def __add__(self, other: "ObjectiveBreakdown") -> "ObjectiveBreakdown":
        return ObjectiveBreakdown(
            goal=self.goal + other.goal,
            readiness=self.readiness + other.readiness,
            risk=self.risk + other.risk,
            volatility=self.volatility + other.volatility,
            churn=self.churn + other.churn,
            curvature=self.curvature + other.curvature,
        )


class CandidateScore(BaseModel):
    """One evaluated (or pruned) candidate action."""

    value: float
    status: str = Field(..., description="scored / non_finite / pruned")
    score: Optional[float] = Field(None, description="Objective score; None when non-finite or pruned")
    delta_from_previous: float
    goal_id: Optional[str] = None
    goal_date: Optional[date] = None
    rank: Optional[int] = None
    breakdown: Optional[ObjectiveBreakdown] = None
    reason: Optional[str] = None


class SolveBounds(BaseModel):
    """Resolved MPC work bounds."""

    horizon_weeks: int = Field(..., ge=1)
    candidate_count: int = Field(..., ge=1)


class ObjectiveWeights(BaseModel):
    """Objective weights in force for a run, after projection controls."""

    preparedness_weight: float = Field(..., ge=0.0)
    readiness_weight: float = Field(..., ge=0.0)
    risk_penalty_weight: float = Field(..., ge=0.0)
    volatility_penalty_weight: float = Field(..., ge=0.0)
    churn_penalty_weight: float = Field(..., ge=0.0)
    curvature_weight: float = Field(0.0, ge=0.0)
    curvature: float = Field(0.0, ge=-1.0, le=1.0, description="Preferred bend of the load curve")


class StepDecision(BaseModel):
    """Outcome of one MPC step."""

    week_index: int = Field(..., ge=0)
    previous_action: float
    bounds: ActionBounds
    solve_bounds: SolveBounds
    generated_candidates: List[float]
    duplicates_removed: int = Field(0, ge=0)
    candidates: List[CandidateScore]
    evaluated_count: int = Field(..., ge=0)
    pruned_count: int = Field(..., ge=0)
    selected_value: float
    selected_breakdown: ObjectiveBreakdown
    active_constraints: List[str] = Field(default_factory=list)
    tie_break_order: List[str]


# ============================================================================
# Diagnostics
# ============================================================================

class EffectiveConfiguration(BaseModel):
    """Configuration actually used by a run, after overrides and clamping."""

    calibration_version: str
    calibration: Dict[str, Any]
    optimization_profile: OptimizationProfile
    caps: SafetyCaps
    rails: AbsoluteRails
    solve_bounds: SolveBounds
    objective_weights: ObjectiveWeights
    projection_control: Optional[ProjectionControl] = None
    availability_weekly_tss: Optional[float] = None
    plan_start: date
    plan_weeks: int = Field(..., ge=0)


class ConfidenceIndicators(BaseModel):
    """Plain-structured evidence and uncertainty indicators."""

    evidence_state: EvidenceState
    evidence_quality: float = Field(..., ge=0.0, le=1.0)
    evidence_days: int = Field(..., ge=0)
    ctl_std: float = Field(..., ge=0.0)
    start_uncertainty: float = Field(..., ge=0.0, le=1.0)
    end_uncertainty: float = Field(..., ge=0.0, le=1.0)
    low_confidence: bool


class DecisionNote(BaseModel):
    """A narrated decision for the diagnostics report."""

    decision_point: str = Field(..., min_length=3)
    input_factors: List[str] = Field(default_factory=list)
    reasoning: str
    outcome: str


class RunDiagnostics(BaseModel):
    """Read-only observation of how a run reached its result."""

    athlete_id: str
    effective_configuration: EffectiveConfiguration
    binding_constraints: List[str] = Field(default_factory=list)
    objective_breakdown: ObjectiveBreakdown = Field(default_factory=ObjectiveBreakdown)
    steps: List[StepDecision] = Field(default_factory=list)
    confidence: ConfidenceIndicators
    notes: List[DecisionNote] = Field(default_factory=list)


# ============================================================================
# Result
# ============================================================================

class ProjectionResult(BaseModel):
    """Complete engine output for one run."""

    athlete_id: str
    plan_start: date
    trajectory: Trajectory
    selected_actions: List[float] = Field(default_factory=list, description="Planned weekly TSS per week")
    goal_scores: List[GoalScore] = Field(default_factory=list)
    plan_score: float = Field(..., ge=0.0, le=1.0)
    plan_feasibility: FeasibilityClass
    snapshot: StateSnapshot
    diagnostics: RunDiagnostics

    def get_goal_score(self, goal_id: str) -> GoalScore:
        for goal_score in self.goal_scores:
            if goal_score.goal_id == goal_id:
                return goal_score
        raise KeyError(f"Unknown goal id: {goal_id}")
