"""
Deterministic bounded optimizer.

One model-predictive step at a time:
1. Resolve horizon_weeks and candidate_count for the profile (override may only shrink)
2. Build an evenly spaced candidate lattice over the admissible load range,
   plus the point nearest the previous action, rounded and deduplicated
3. Evaluate every candidate; non-finite scores rank as -inf, rail breaches are pruned
4. Rank by a total tie-break chain and commit the first candidate

The same inputs always produce the same ranking.
"""

import math
from datetime import date
from typing import Callable, List, NamedTuple, Optional, Tuple

from loguru import logger

from projection_engine.calibration import CalibrationConfig
from projection_engine.errors import (
    EmptyCandidateSetError,
    InvariantViolationError,
    NumericalDegeneracyError,
    ProjectionInputError,
)
from projection_engine.projection_schemas import (
    CandidateScore,
    ObjectiveBreakdown,
    ObjectiveWeights,
    SolveBounds,
    StepDecision,
)
from projection_engine.safety import ABSOLUTE_RAILS, PROFILE_BOUNDS, ActionBounds, clamp
from projection_engine.schemas import OptimizationProfile, ProjectionControl, SolveOverride


TIE_BREAK_ORDER = [
    "objective_score_desc",
    "delta_from_previous_asc",
    "goal_date_asc",
    "goal_id_asc",
    "candidate_value_asc",
]


class CandidateEvaluation(NamedTuple):
    """What an evaluator reports for one candidate."""

    score: float
    breakdown: ObjectiveBreakdown
    goal_id: Optional[str] = None
    goal_date: Optional[date] = None


Evaluator = Callable[[float], CandidateEvaluation]


class EffectiveControls(NamedTuple):
    """Objective weights and solve bounds in force for one run."""

    weights: ObjectiveWeights
    solve_bounds: SolveBounds


CURVATURE_WEIGHT_MAX = 18.0
CURVATURE_TARGET_SCALE = 0.18
CURVATURE_ENVELOPE_FLOOR = 0.08


def resolve_solve_bounds(
    profile: OptimizationProfile,
    override: Optional[SolveOverride] = None,
) -> SolveBounds:
    """
    Effective MPC work bounds.

    The profile value is the ceiling; an override can lower it, never below
    the rail minimum.
    """
    bounds = PROFILE_BOUNDS[profile]
    horizon = bounds.horizon_weeks
    count = bounds.candidate_count
    if override is not None:
        if override.horizon_weeks is not None:
            horizon = override.horizon_weeks
        if override.candidate_count is not None:
            count = override.candidate_count
    horizon = max(ABSOLUTE_RAILS.min_horizon_weeks, min(bounds.horizon_weeks, horizon))
    count = max(ABSOLUTE_RAILS.min_candidate_count, min(bounds.candidate_count, count))
    return SolveBounds(horizon_weeks=horizon, candidate_count=count)


def _lerp(start: float, end: float, t: float) -> float:
    return start + (end - start) * t


def resolve_effective_controls(
    profile: OptimizationProfile,
    calibration: CalibrationConfig,
    control: Optional[ProjectionControl] = None,
    override: Optional[SolveOverride] = None,
) -> EffectiveControls:
    """
    Map semantic projection controls onto objective weights and solve bounds.

    Without a control the calibration weights and the profile's solve bounds
    apply unchanged and there is no curvature term. With one:
    - ambition scales the goal weight by 0.75-1.65 and moves the horizon and
      candidate count from half the profile value up to the full value
    - risk tolerance scales the risk (1.8-0.35), volatility (1.45-0.5) and
      churn (1.3-0.55) penalties down
    - curvature_strength sets the curvature weight (0-CURVATURE_WEIGHT_MAX)

    An explicit solve override still only shrinks the result.

    Args:
        profile: Active optimization profile
        calibration: Active calibration
        control: Optional semantic controls
        override: Optional solve override

    Returns:
        EffectiveControls
    """
    base = calibration.optimizer
    if control is None:
        weights = ObjectiveWeights(
            preparedness_weight=base.preparedness_weight,
            readiness_weight=base.readiness_weight,
            risk_penalty_weight=base.risk_penalty_weight,
            volatility_penalty_weight=base.volatility_penalty_weight,
            churn_penalty_weight=base.churn_penalty_weight,
        )
        return EffectiveControls(weights, resolve_solve_bounds(profile, override))

    ambition = control.ambition
    tolerance = control.risk_tolerance
    weights = ObjectiveWeights(
        preparedness_weight=round(base.preparedness_weight * _lerp(0.75, 1.65, ambition), 3),
        readiness_weight=base.readiness_weight,
        risk_penalty_weight=round(base.risk_penalty_weight * _lerp(1.8, 0.35, tolerance), 3),
        volatility_penalty_weight=round(base.volatility_penalty_weight * _lerp(1.45, 0.5, tolerance), 3),
        churn_penalty_weight=round(base.churn_penalty_weight * _lerp(1.3, 0.55, tolerance), 3),
        curvature_weight=round(_lerp(0.0, CURVATURE_WEIGHT_MAX, control.curvature_strength), 3),
        curvature=control.curvature,
    )

    ceiling = PROFILE_BOUNDS[profile]
    horizon = round(_lerp(math.ceil(ceiling.horizon_weeks / 2), ceiling.horizon_weeks, ambition))
    count = round(_lerp(math.ceil(ceiling.candidate_count / 2), ceiling.candidate_count, ambition))
    if override is not None:
        override = SolveOverride(
            horizon_weeks=min(horizon, override.horizon_weeks or horizon),
            candidate_count=min(count, override.candidate_count or count),
        )
    else:
        override = SolveOverride(horizon_weeks=horizon, candidate_count=count)
    return EffectiveControls(weights, resolve_solve_bounds(profile, override))


def curvature_envelope(load_bias: float, week_index: int, calibration: CalibrationConfig) -> float:
    """
    How much a week's load shape counts toward the curvature preference.

    Full weight while building, fading as the taper or recovery bias deepens
    and with distance into the plan.
    """
    depth = max(calibration.transition.taper_load_depth, calibration.transition.recovery_load_depth)
    phase = max(CURVATURE_ENVELOPE_FLOOR, 1.0 - (1.0 - load_bias) / depth)
    decay = max(0.35, min(1.0, 1.0 - week_index * 0.04))
    return phase * decay


def curvature_penalty(
    previous_action: float,
    actions: List[float],
    envelopes: List[float],
    curvature: float,
) -> float:
    """
    Mean squared mismatch between the load curve's bend and the preferred bend.

    The bend is the second difference of [previous_action, *actions], scaled
    by max(20, 12% of previous_action). Fewer than two actions have no bend.
    """
    if len(actions) < 2:
        return 0.0
    series = [previous_action] + list(actions)
    scale = max(20.0, previous_action * 0.12)
    total = 0.0
    for t in range(1, len(actions)):
        bend = ((series[t + 1] - series[t]) - (series[t] - series[t - 1])) / scale
        envelope = envelopes[min(t, len(envelopes) - 1)] if envelopes else 0.0
        total += (bend - curvature * envelope * CURVATURE_TARGET_SCALE) ** 2
    return total / (len(actions) - 1)


def build_lattice(
    bounds: ActionBounds,
    previous_action: float,
    candidate_count: int,
    precision: int,
) -> Tuple[List[float], List[float], int]:
    """
    Candidate lattice for one step.

    Args:
        bounds: Admissible load range
        previous_action: Load of the previous week
        candidate_count: Evenly spaced points to generate
        precision: Decimal places candidates are rounded to

    Returns:
        Tuple of (generated values, unique sorted candidates, duplicates removed)

    Raises:
        EmptyCandidateSetError: If no candidate can be generated
    """
    if candidate_count < 1:
        raise EmptyCandidateSetError(f"candidate_count must be >= 1, got {candidate_count}")

    low, high = bounds.min_value, bounds.max_value
    if candidate_count == 1:
        generated = [low]
    else:
        step = (high - low) / (candidate_count - 1)
        generated = [low + i * step for i in range(candidate_count)]
    generated.append(clamp(previous_action, bounds))

    rounded = [round(v, precision) for v in generated]
    unique = sorted(set(v for v in rounded if low - 1e-9 <= v <= high + 1e-9))
    if not unique:
        raise EmptyCandidateSetError(f"No candidate inside [{low}, {high}]")
    return rounded, unique, len(rounded) - len(unique)


def rank_candidates(candidates: List[CandidateScore], previous_action: float) -> List[CandidateScore]:
    """Sort scored candidates by TIE_BREAK_ORDER."""

    def key(candidate: CandidateScore):
        score = candidate.score if candidate.score is not None else -math.inf
        return (
            -score,
            abs(candidate.value - previous_action),
            candidate.goal_date or date.max,
            (candidate.goal_id is None, candidate.goal_id or ""),
            candidate.value,
        )

    return sorted(candidates, key=key)


class DeterministicOptimizer:
    """Chooses one weekly load per MPC step."""

    def __init__(self, calibration: CalibrationConfig, solve_bounds: SolveBounds):
        self.calibration = calibration
        self.solve_bounds = solve_bounds

    def solve_step(
        self,
        previous_action: float,
        bounds: ActionBounds,
        evaluate: Evaluator,
        week_index: int = 0,
    ) -> StepDecision:
        """
        Evaluate the lattice and select the best candidate.

        Args:
            previous_action: Load committed for the previous week
            bounds: Admissible load range for this week
            evaluate: Scores one candidate over the lookahead horizon
            week_index: Index of the week being decided

        Returns:
            StepDecision with every candidate's score and the selection

        Raises:
            EmptyCandidateSetError: If the lattice is empty
            InvariantViolationError: If every candidate breaches a rail
        """
        generated, values, duplicates = build_lattice(
            bounds,
            previous_action,
            self.solve_bounds.candidate_count,
            self.calibration.optimizer.lattice_precision,
        )

        scored: List[CandidateScore] = []
        pruned: List[CandidateScore] = []
        evaluations = {}
        for value in values:
            delta = value - previous_action
            try:
                evaluation = evaluate(value)
            except InvariantViolationError as e:
                pruned.append(CandidateScore(
                    value=value, status="pruned", delta_from_previous=delta, reason=e.code,
                ))
                continue
            except (NumericalDegeneracyError, ProjectionInputError) as e:
                scored.append(CandidateScore(
                    value=value, status="non_finite", delta_from_previous=delta, reason=str(e),
                ))
                continue

            if not math.isfinite(evaluation.score):
                scored.append(CandidateScore(
                    value=value,
                    status="non_finite",
                    delta_from_previous=delta,
                    goal_id=evaluation.goal_id,
                    goal_date=evaluation.goal_date,
                    reason="non-finite objective",
                ))
                continue

            evaluations[value] = evaluation
            scored.append(CandidateScore(
                value=value,
                status="scored",
                score=evaluation.score,
                delta_from_previous=delta,
                goal_id=evaluation.goal_id,
                goal_date=evaluation.goal_date,
                breakdown=evaluation.breakdown,
            ))

        if not scored:
            raise InvariantViolationError(
                "ALL_CANDIDATES_PRUNED",
                [f"Week {week_index}: all {len(pruned)} candidates breach an absolute rail"],
            )

        ranked = [
            candidate.model_copy(update={"rank": rank})
            for rank, candidate in enumerate(rank_candidates(scored, previous_action), start=1)
        ]
        selected = ranked[0]
        if selected.status != "scored":
            logger.warning(f"[OPTIMIZER] Week {week_index}: no finite candidate, selecting {selected.value}")

        logger.debug(
            f"[OPTIMIZER] Week {week_index}: {len(values)} candidates in "
            f"[{bounds.min_value}, {bounds.max_value}], selected {selected.value} "
            f"(score {selected.score}), pruned {len(pruned)}"
        )

        return StepDecision(
            week_index=week_index,
            previous_action=previous_action,
            bounds=bounds,
            solve_bounds=self.solve_bounds,
            generated_candidates=generated,
            duplicates_removed=duplicates,
            candidates=ranked + sorted(pruned, key=lambda c: c.value),
            evaluated_count=len(values),
            pruned_count=len(pruned),
            selected_value=selected.value,
            selected_breakdown=(
                evaluations[selected.value].breakdown if selected.value in evaluations else ObjectiveBreakdown()
            ),
            active_constraints=list(bounds.active_constraints),
            tie_break_order=list(TIE_BREAK_ORDER),
        )
