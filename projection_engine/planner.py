"""
Projection planner.

Runs one complete engine invocation:
1. Validates configuration (calibration, caps, availability, plan length)
2. Estimates the starting state from evidence and the prior snapshot
3. Chooses each week's load with a receding-horizon optimizer step
4. Projects the committed plan and re-checks every absolute rail
5. Scores goals, classifies feasibility and assembles diagnostics

Everything is synchronous and pure: identical requests give identical results.
"""

import math
from datetime import date, timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from projection_engine.calibration import CalibrationConfig
from projection_engine.diagnostics import DiagnosticsBuilder
from projection_engine.errors import ConfigurationError, InvariantViolationError
from projection_engine.estimator import StateEstimator, to_latent_state
from projection_engine.feasibility import FeasibilityCalculator, plan_feasibility
from projection_engine.optimizer import (
    CandidateEvaluation,
    DeterministicOptimizer,
    curvature_envelope,
    curvature_penalty,
    resolve_effective_controls,
)
from projection_engine.projection import ForwardProjectionEngine, softplus
from projection_engine.projection_schemas import (
    GoalScore,
    ObjectiveBreakdown,
    ProjectionPoint,
    ProjectionResult,
    StepDecision,
    Trajectory,
)
from projection_engine.safety import (
    ABSOLUTE_RAILS,
    ActionBounds,
    availability_weekly_tss,
    clamp,
    compute_action_bounds,
    resolve_safety_caps,
    validate_availability,
    validate_invariants,
)
from projection_engine.schemas import Goal, LatentState, ProjectionRequest, TargetKind
from projection_engine.utility import GoalUtilityAggregator


def load_request(data: Dict[str, Any]) -> ProjectionRequest:
    """
    Validate a raw request mapping.

    Raises:
        ConfigurationError: If any part of the request fails validation
    """
    try:
        return ProjectionRequest.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid projection request: {e}") from e


def latent_from_point(point: ProjectionPoint) -> LatentState:
    """Re-seed state from a projected point."""
    return LatentState(
        ctl=max(0.0, point.ctl),
        atl=max(0.0, point.atl),
        durability=max(0.0, min(1.0, point.durability)),
        readiness_latent=max(0.0, min(1.0, point.readiness_latent)),
        uncertainty=max(0.0, min(1.0, point.uncertainty)),
    )


class ProjectionPlanner:
    """
    Orchestrates estimator, optimizer, projection, utility and feasibility.

    The planner never mutates the request; each run builds fresh engine
    objects from it.
    """

    def __init__(self, request: ProjectionRequest):
        """
        Initialize the planner.

        Args:
            request: Validated projection request

        Raises:
            ConfigurationError: If caps, availability or plan length are invalid
        """
        self.request = request
        self.calibration: CalibrationConfig = request.calibration
        self.caps = resolve_safety_caps(request.optimization_profile, request.cap_overrides)
        validate_availability(request.availability)
        self.weights, self.solve_bounds = resolve_effective_controls(
            request.optimization_profile,
            self.calibration,
            request.projection_control,
            request.solve_override,
        )
        self.goals: List[Goal] = sorted(request.goals, key=lambda g: (g.target_date, g.id))
        self.plan_start: date = request.evidence.as_of + timedelta(days=1)
        self.plan_weeks = self._resolve_plan_weeks()

        self.engine = ForwardProjectionEngine(self.calibration, self.caps, self.goals)
        self.aggregator = GoalUtilityAggregator(self.calibration, self.caps.post_goal_recovery_days)
        self.optimizer = DeterministicOptimizer(self.calibration, self.solve_bounds)

    def _resolve_plan_weeks(self) -> int:
        for goal in self.goals:
            if goal.target_date < self.plan_start:
                raise ConfigurationError(
                    f"Goal '{goal.id}' target date {goal.target_date} is before plan start {self.plan_start}"
                )

        if self.request.plan_weeks is not None:
            weeks = self.request.plan_weeks
        elif self.goals:
            last_goal = max(goal.target_date for goal in self.goals)
            weeks = math.ceil(((last_goal - self.plan_start).days + 1) / 7)
        else:
            raise ConfigurationError("plan_weeks is required when no goals are given")

        if weeks > ABSOLUTE_RAILS.max_plan_weeks:
            raise ConfigurationError(
                f"Plan of {weeks} weeks exceeds the {ABSOLUTE_RAILS.max_plan_weeks}-week rail"
            )
        return weeks

    def run(self) -> ProjectionResult:
        """
        Produce the plan.

        Returns:
            ProjectionResult with trajectory, scores, feasibility, snapshot and diagnostics

        Raises:
            ProjectionInputError: If the prior snapshot is inconsistent with the evidence
            InvariantViolationError: If every candidate of a step, or the committed
                trajectory, breaches an absolute rail
            EmptyCandidateSetError: If a step has no candidates
        """
        request = self.request
        logger.info(
            f"[PLANNER] {request.evidence.athlete_id}: {self.plan_weeks} weeks from {self.plan_start}, "
            f"profile {request.optimization_profile.value}, {len(self.goals)} goal(s)"
        )

        # 1. Estimate starting state
        snapshot = StateEstimator(self.calibration).estimate(request.evidence, request.prior_snapshot)
        start_state = to_latent_state(snapshot, self.calibration)
        initial_action = snapshot.last_week_load

        # 2. Receding-horizon loop
        steps: List[StepDecision] = []
        actions: List[float] = []
        state = start_state
        previous = initial_action
        for week_index in range(self.plan_weeks):
            week_start = self.plan_start + timedelta(days=7 * week_index)
            bounds = compute_action_bounds(previous, state.ctl, self.caps, self.calibration, request.availability)
            evaluate = partial(
                self._evaluate_candidate,
                state=state,
                week_start=week_start,
                previous=previous,
                bounds=bounds,
                week_index=week_index,
            )
            decision = self.optimizer.solve_step(previous, bounds, evaluate, week_index)
            steps.append(decision)
            actions.append(decision.selected_value)

            week = self.engine.project(state, week_start, [decision.selected_value], previous, score_goals=False)
            state = latent_from_point(week.points[-1])
            previous = decision.selected_value

        # 3. Commit and re-check
        trajectory = self.engine.project(start_state, self.plan_start, actions, initial_action)
        violations = validate_invariants(trajectory)
        if violations:
            raise InvariantViolationError(
                "COMMITTED_TRAJECTORY_INVALID",
                [v.message for v in violations],
                violations,
            )

        # 4. Score
        feasibility_calculator = FeasibilityCalculator(self.calibration, self.caps, request.availability)
        goal_scores = []
        for goal in self.goals:
            score = self.aggregator.score_goal(goal, trajectory.point_on(goal.target_date), self.goals)
            feasibility = feasibility_calculator.calculate(goal, trajectory, snapshot.evidence_quality)
            goal_scores.append(score.model_copy(update={"feasibility": feasibility}))
        plan_score = max(0.0, min(1.0, self.aggregator.plan_score(goal_scores)))
        overall = plan_feasibility([g.feasibility for g in goal_scores])

        # 5. Diagnostics
        builder = DiagnosticsBuilder(request.evidence.athlete_id, self.calibration)
        builder.set_effective_configuration(
            profile=request.optimization_profile,
            caps=self.caps,
            solve_bounds=self.solve_bounds,
            objective_weights=self.weights,
            projection_control=request.projection_control,
            availability_tss=(
                availability_weekly_tss(request.availability, self.calibration)
                if request.availability is not None
                else None
            ),
            plan_start=self.plan_start,
            plan_weeks=self.plan_weeks,
        )
        for step in steps:
            builder.add_step(step)
        builder.set_confidence(snapshot, trajectory)
        self._narrate(builder, snapshot.evidence_state.value, goal_scores, overall)

        logger.info(
            f"[PLANNER] Plan score {plan_score:.3f}, feasibility {overall.value}, "
            f"peak weekly load {trajectory.max_weekly_load():.0f}"
        )

        return ProjectionResult(
            athlete_id=request.evidence.athlete_id,
            plan_start=self.plan_start,
            trajectory=trajectory,
            selected_actions=actions,
            goal_scores=goal_scores,
            plan_score=plan_score,
            plan_feasibility=overall,
            snapshot=snapshot,
            diagnostics=builder.build(),
        )

    # ========================================================================
    # Candidate evaluation
    # ========================================================================

    def _rollout(
        self,
        candidate: float,
        state: LatentState,
        week_start: date,
        previous: float,
        weeks: int,
    ) -> Tuple[List[Trajectory], List[float]]:
        """
        Project a candidate over the lookahead horizon.

        Later weeks hold the candidate's growth ratio, clamped to each week's bounds.
        """
        ratio = self._growth_ratio(candidate, previous)
        action = candidate
        prior = previous
        trajectories: List[Trajectory] = []
        actions: List[float] = []
        for k in range(weeks):
            if k > 0:
                bounds = compute_action_bounds(
                    prior, state.ctl, self.caps, self.calibration, self.request.availability
                )
                action = clamp(prior * ratio, bounds)
            start = week_start + timedelta(days=7 * k)
            week = self.engine.project(state, start, [action], prior, score_goals=False)
            violations = validate_invariants(week)
            if violations:
                raise InvariantViolationError(
                    violations[0].code, [v.message for v in violations], violations
                )
            trajectories.append(week)
            actions.append(action)
            state = latent_from_point(week.points[-1])
            prior = action
        return trajectories, actions

    @staticmethod
    def _growth_ratio(candidate: float, previous: float) -> float:
        return candidate / previous if previous > 0 else 1.0

    def _evaluate_candidate(
        self,
        candidate: float,
        state: LatentState,
        week_start: date,
        previous: float,
        bounds: ActionBounds,
        week_index: int,
    ) -> CandidateEvaluation:
        """Score one candidate over its rollout."""
        weights = self.weights
        scale = self.calibration.optimizer.volatility_scale_tss
        lookahead = max(1, min(self.solve_bounds.horizon_weeks, self.plan_weeks - week_index))
        weeks, actions = self._rollout(candidate, state, week_start, previous, lookahead)

        points = [p for week in weeks for p in week.points[1:]]
        window_end = weeks[-1].points[-1].day

        goal_term, goal_id, goal_date = self._goal_term(
            points, actions, self._growth_ratio(candidate, previous), week_start, window_end
        )
        readiness = sum(p.readiness_score for p in points) / (100.0 * len(points))
        risk = self._risk(points, [w.weeks[0].cap_usage for w in weeks])

        volatility = ((candidate - previous) / scale) ** 2
        churn = 0.0
        previous_plan = self.request.previous_plan_weekly_tss
        if week_index < len(previous_plan):
            churn = abs(candidate - previous_plan[week_index]) / scale

        curvature = 0.0
        if weights.curvature_weight > 0.0:
            envelopes = [
                curvature_envelope(w.points[1].load_bias, week_index + k, self.calibration)
                for k, w in enumerate(weeks)
            ]
            curvature = curvature_penalty(previous, actions, envelopes, weights.curvature)

        breakdown = ObjectiveBreakdown(
            goal=weights.preparedness_weight * goal_term,
            readiness=weights.readiness_weight * readiness,
            risk=-weights.risk_penalty_weight * risk,
            volatility=-weights.volatility_penalty_weight * volatility,
            churn=-weights.churn_penalty_weight * churn,
            curvature=-weights.curvature_weight * curvature,
        )
        return CandidateEvaluation(breakdown.total, breakdown, goal_id, goal_date)

    def _goal_term(
        self,
        points: List[ProjectionPoint],
        actions: List[float],
        ratio: float,
        window_start: date,
        window_end: date,
    ) -> Tuple[float, Optional[str], Optional[date]]:
        """
        Priority-weighted goal utility over the lookahead window.

        Goals inside the window are scored in full on their date. Goals beyond
        it score their fitness targets at the CTL the rollout reaches on the
        goal date if it keeps holding its growth ratio inside each week's
        bounds, with uncertainty grown to that date. Their other targets wait
        until the goal is in range.
        """
        by_day = {p.day: p for p in points}
        last = points[-1]
        growth = self.calibration.transition.uncertainty_growth_per_day
        goal_scores: List[GoalScore] = []

        for goal in self.goals:
            if goal.target_date < window_start:
                continue
            if goal.target_date <= window_end:
                goal_scores.append(self.aggregator.score_goal(goal, by_day[goal.target_date], self.goals))
                continue

            fitness = [t for t in goal.targets if t.kind == TargetKind.FITNESS_CTL]
            if not fitness:
                continue
            ctl = self.engine.extend_ctl(
                last.ctl,
                window_end + timedelta(days=1),
                goal.target_date,
                actions[-1],
                lambda prior, bounds: clamp(prior * ratio, bounds),
                self.request.availability,
            )
            days_ahead = (goal.target_date - window_end).days
            uncertainty = 1.0 - (1.0 - last.uncertainty) * (1.0 - growth) ** days_ahead
            on_goal_day = last.model_copy(update={"day": goal.target_date, "ctl": ctl, "uncertainty": uncertainty})
            goal_scores.append(self.aggregator.score_goal(goal, on_goal_day, self.goals, targets=fitness))

        if not goal_scores:
            return 0.0, None, None
        goal_id, goal_date = self.aggregator.primary_goal(goal_scores)
        return self.aggregator.plan_score(goal_scores), goal_id, goal_date

    def _risk(self, points: List[ProjectionPoint], weekly_usage: List[float]) -> float:
        """Soft strain, durability and ramp-pressure penalties (no cliffs)."""
        envelope = self.calibration.envelope_penalty
        durability = self.calibration.durability_penalty

        daily = 0.0
        for point in points:
            strain = envelope.slb_width * softplus(
                (point.strain_load_balance - envelope.slb_ceiling) / envelope.slb_width
            )
            floor = durability.floor_width * softplus(
                (durability.durability_floor - point.durability) / durability.floor_width
            )
            daily += envelope.strain_weight * strain + durability.weight * floor
        daily /= len(points)

        onset = envelope.ramp_pressure_onset
        ramp = 0.0
        for usage in weekly_usage:
            excess = max(0.0, usage - onset) / (1.0 - onset)
            ramp += envelope.ramp_pressure_weight * excess * excess
        ramp /= len(weekly_usage)

        return daily + ramp

    def _narrate(
        self,
        builder: DiagnosticsBuilder,
        evidence_state: str,
        goal_scores: list,
        overall,
    ) -> None:
        builder.add_note(
            decision_point="Starting state",
            input_factors=[f"evidence_state={evidence_state}"],
            reasoning="State estimated from history and prior snapshot before any planning.",
            outcome=f"Plan starts {self.plan_start} for {self.plan_weeks} week(s)",
        )
        if self.caps.overrides_applied:
            builder.add_note(
                decision_point="Cap overrides",
                input_factors=list(self.caps.overrides_applied),
                reasoning=self.caps.override_reason or "",
                outcome="Default soft caps replaced within the absolute rails",
            )
        control = self.request.projection_control
        if control is not None:
            builder.add_note(
                decision_point="Projection controls",
                input_factors=[
                    f"ambition={control.ambition:g}",
                    f"risk_tolerance={control.risk_tolerance:g}",
                    f"curvature={control.curvature:g}",
                ],
                reasoning="Controls rescale objective weights and search effort, never the caps",
                outcome=(
                    f"horizon {self.solve_bounds.horizon_weeks} week(s), "
                    f"{self.solve_bounds.candidate_count} candidates"
                ),
            )
        for goal_score in goal_scores:
            f = goal_score.feasibility
            builder.add_note(
                decision_point=f"Goal {goal_score.goal_id}",
                input_factors=[f"required_ctl_ramp={f.required_ctl_ramp:.2f}", f"cap_pressure={f.cap_pressure:.2f}"],
                reasoning=", ".join(f.limiters) if f.limiters else "No limiter active",
                outcome=f"{f.classification.value} (score {goal_score.score:.2f})",
            )
        builder.add_note(
            decision_point="Plan feasibility",
            input_factors=[g.goal_id for g in goal_scores],
            reasoning="Worst classification across goals",
            outcome=overall.value,
        )
