"""
Forward projection engine.

Advances a latent state day by day under a sequence of planned weekly loads:
- CTL/ATL: exponentially weighted accumulators of the applied daily load
- Durability: rises under recovery (positive form), falls under overload (high strain)
- Readiness: relaxes toward a composite of fitness, form, fatigue balance,
  durability and evidence confidence, blended by the calibration weights
- Uncertainty: grows continuously with forecast distance

Tapering and post-goal recovery are continuous biases on the applied load,
driven by the distance to each goal and its priority. There is no week
pattern or phase table.
"""

import math
from datetime import date, timedelta
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence

from loguru import logger

from projection_engine.calibration import CalibrationConfig
from projection_engine.errors import NumericalDegeneracyError, ProjectionInputError
from projection_engine.projection_schemas import ProjectionPoint, Trajectory, WeeklyProjection
from projection_engine.safety import ActionBounds, SafetyCaps, cap_usage, compute_action_bounds
from projection_engine.schemas import AvailabilityWindow, Goal, LatentState, TargetKind
from projection_engine.utility import GoalUtilityAggregator


class DayState(NamedTuple):
    """Lightweight state carried through the daily loop."""

    ctl: float
    atl: float
    durability: float
    readiness_latent: float
    uncertainty: float


class DayContext(NamedTuple):
    """Goal-driven context of one calendar day."""

    load_bias: float
    target_tsb: float


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def softplus(x: float) -> float:
    if x > 30.0:
        return x
    return math.log1p(math.exp(x))


def _unit(value: float) -> float:
    return max(0.0, min(1.0, value))


# ============================================================================
# Transition Functions
# ============================================================================

def fitness_reference(goals: Sequence[Goal], calibration: CalibrationConfig) -> float:
    """CTL the fitness signal is measured against: the highest CTL target, if any."""
    values = [
        target.value
        for goal in goals
        for target in goal.targets
        if target.kind == TargetKind.FITNESS_CTL and target.value > 0
    ]
    if values:
        return max(values)
    return calibration.timeline.fitness_reference_ctl


def day_context(
    day: date,
    goals: Sequence[Goal],
    calibration: CalibrationConfig,
    recovery_days: int,
) -> DayContext:
    """
    Continuous taper/recovery load bias and form target for one day.

    Each goal contributes a bias scaled by priority/10: a taper that grows as
    exp(-days_to_goal / tau) and, after the goal, a recovery that decays as
    exp(-days_since / recovery_days). The strongest contribution wins.

    Args:
        day: Calendar day
        goals: Goal definitions
        calibration: Active calibration
        recovery_days: Post-goal recovery window from the effective caps

    Returns:
        DayContext(load_bias, target_tsb)
    """
    transition = calibration.transition
    timeline = calibration.timeline
    reduction = 0.0
    peak_pull = 0.0

    for goal in goals:
        weight = goal.priority / 10.0
        days_to_goal = (goal.target_date - day).days
        if days_to_goal >= 0:
            reduction = max(
                reduction,
                transition.taper_load_depth * weight * math.exp(-days_to_goal / transition.taper_load_tau_days),
            )
            peak_pull = max(peak_pull, weight * math.exp(-days_to_goal / timeline.taper_tsb_tau_days))
        elif recovery_days > 0:
            days_since = -days_to_goal
            reduction = max(
                reduction,
                transition.recovery_load_depth * weight * math.exp(-(days_since - 1) / recovery_days),
            )

    load_bias = max(transition.load_bias_floor, 1.0 - reduction)
    target_tsb = timeline.build_tsb + (timeline.peak_tsb - timeline.build_tsb) * peak_pull
    return DayContext(load_bias=load_bias, target_tsb=target_tsb)


def readiness_composite(
    ctl: float,
    atl: float,
    durability: float,
    uncertainty: float,
    target_tsb: float,
    fitness_ref: float,
    calibration: CalibrationConfig,
) -> float:
    """Weighted blend of the readiness signals (0-1)."""
    weights = calibration.composite_weights
    timeline = calibration.timeline

    fitness = _unit(ctl / max(fitness_ref, 1.0))
    form = _unit(1.0 - abs((ctl - atl) - target_tsb) / timeline.form_tolerance)
    overflow = max(0.0, atl - ctl) / max(1.0, ctl * timeline.fatigue_overflow_scale)
    fatigue_balance = _unit(1.0 - overflow)
    confidence = _unit(1.0 - uncertainty)

    return (
        weights.fitness * fitness
        + weights.form * form
        + weights.fatigue_balance * fatigue_balance
        + weights.durability * _unit(durability)
        + weights.confidence * confidence
    )


def readiness_score(
    readiness_latent: float,
    uncertainty: float,
    cap_pressure: float,
    calibration: CalibrationConfig,
) -> float:
    """
    Readiness score (0-100) from the latent readiness and its safety context.

    Uncertainty discounts the latent value; cap pressure subtracts a
    quadratic penalty.
    """
    constants = calibration.readiness
    value = readiness_latent * (1.0 - constants.uncertainty_discount * _unit(uncertainty))
    value -= constants.cap_pressure_penalty * _unit(cap_pressure) ** 2
    return 100.0 * _unit(value)


def advance_state(
    state: DayState,
    load: float,
    target_tsb: float,
    fitness_ref: float,
    calibration: CalibrationConfig,
    grow_uncertainty: bool = True,
) -> DayState:
    """
    One day of the coupled transition.

    Shared by the projection engine and the state estimator's predict step.

    Raises:
        NumericalDegeneracyError: If any resulting value is non-finite
    """
    transition = calibration.transition
    durability_penalty = calibration.durability_penalty

    ctl = state.ctl + calibration.ctl_alpha * (load - state.ctl)
    atl = state.atl + calibration.atl_alpha * (load - state.atl)
    tsb = ctl - atl
    slb = atl / max(ctl, 1.0)

    recovery = sigmoid((tsb - transition.recovery_tsb_center) / transition.recovery_tsb_width)
    overload = sigmoid((slb - durability_penalty.overload_slb_center) / durability_penalty.overload_slb_width)
    gain = transition.durability_recovery_rate * recovery * (1.0 - overload)
    loss = transition.durability_overload_rate * overload
    durability = state.durability + gain * (1.0 - state.durability) - loss * state.durability

    if grow_uncertainty:
        uncertainty = state.uncertainty + transition.uncertainty_growth_per_day * (1.0 - state.uncertainty)
    else:
        uncertainty = state.uncertainty

    composite = readiness_composite(ctl, atl, durability, uncertainty, target_tsb, fitness_ref, calibration)
    readiness = state.readiness_latent + transition.readiness_response * (composite - state.readiness_latent)

    result = DayState(ctl, atl, durability, readiness, uncertainty)
    if not all(math.isfinite(v) for v in result):
        raise NumericalDegeneracyError(f"Non-finite state after transition: {result}")
    return result


# ============================================================================
# Projection Engine
# ============================================================================

class ForwardProjectionEngine:
    """
    Simulates the daily trajectory produced by a sequence of weekly actions.

    Each weekly action is a planned weekly TSS spread evenly over its days and
    scaled by the day's continuous taper/recovery bias.
    """

    def __init__(
        self,
        calibration: CalibrationConfig,
        caps: SafetyCaps,
        goals: Optional[Sequence[Goal]] = None,
    ):
        """
        Initialize the engine.

        Args:
            calibration: Active calibration (read-only)
            caps: Effective soft caps (read-only)
            goals: Goal definitions driving taper/recovery bias and attainment
        """
        self.calibration = calibration
        self.caps = caps
        self.goals = list(goals or [])
        self.fitness_ref = fitness_reference(self.goals, calibration)
        self._k_week = 1.0 - (1.0 - calibration.ctl_alpha) ** 7
        self._context_cache: Dict[date, DayContext] = {}

    def context_for(self, day: date) -> DayContext:
        context = self._context_cache.get(day)
        if context is None:
            context = day_context(day, self.goals, self.calibration, self.caps.post_goal_recovery_days)
            self._context_cache[day] = context
        return context

    def project(
        self,
        start_state: LatentState,
        start_date: date,
        weekly_actions: Sequence[float],
        previous_action: float = 0.0,
        horizon_days: Optional[int] = None,
        score_goals: bool = True,
    ) -> Trajectory:
        """
        Project a trajectory.

        Args:
            start_state: Seed state at the end of the day before start_date
            start_date: First day that receives planned load
            weekly_actions: Planned weekly TSS per week
            previous_action: Planned (or observed) load of the week before start_date
            horizon_days: Days to simulate (defaults to 7 per action)
            score_goals: Whether to compute per-goal attainment likelihood

        Returns:
            Trajectory with len(points) == horizon_days + 1

        Raises:
            ProjectionInputError: On NaN/Inf/negative actions or an invalid horizon
            NumericalDegeneracyError: If a transition produces a non-finite value
        """
        actions = self._validate_actions(weekly_actions, previous_action)
        if horizon_days is None:
            horizon_days = 7 * len(actions)
        if isinstance(horizon_days, bool) or not isinstance(horizon_days, int):
            raise ProjectionInputError(f"horizon_days must be an integer, got {horizon_days!r}")
        if horizon_days < 0:
            raise ProjectionInputError(f"horizon_days must be >= 0, got {horizon_days}")
        if horizon_days > 7 * len(actions):
            raise ProjectionInputError(
                f"horizon_days={horizon_days} exceeds the {len(actions)} weekly actions supplied"
            )

        state = DayState(
            start_state.ctl,
            start_state.atl,
            start_state.durability,
            start_state.readiness_latent,
            start_state.uncertainty,
        )
        points = [self._point(0, start_date - timedelta(days=1), state, 0.0, 0.0, 1.0, 0.0)]
        weeks: List[WeeklyProjection] = []

        prior_week_action = previous_action
        for week_index in range(math.ceil(horizon_days / 7)):
            planned = actions[week_index]
            days = min(7, horizon_days - 7 * week_index)
            week_start = start_date + timedelta(days=7 * week_index)
            ctl_start = state.ctl
            ramp_base = max(prior_week_action, ctl_start * 7.0, self.calibration.no_history.weekly_ramp_base_floor)
            planned_daily = planned / 7.0
            expected_ramp = (planned_daily - ctl_start) * self._k_week
            pressure = cap_usage(planned, ramp_base, expected_ramp, self.caps)

            applied_total = 0.0
            for offset in range(days):
                day = week_start + timedelta(days=offset)
                context = self.context_for(day)
                load = planned_daily * context.load_bias
                state = advance_state(state, load, context.target_tsb, self.fitness_ref, self.calibration)
                applied_total += load
                points.append(
                    self._point(7 * week_index + offset + 1, day, state, planned_daily, load, context.load_bias, pressure)
                )

            ctl_ramp = state.ctl - ctl_start
            weeks.append(WeeklyProjection(
                week_index=week_index,
                start_date=week_start,
                end_date=week_start + timedelta(days=days - 1),
                days=days,
                planned_tss=planned * days / 7.0,
                applied_tss=applied_total,
                ramp_base=ramp_base,
                ctl_start=ctl_start,
                ctl_end=state.ctl,
                ctl_ramp=ctl_ramp,
                cap_usage=cap_usage(applied_total * 7.0 / days, ramp_base, ctl_ramp * 7.0 / days, self.caps),
            ))
            prior_week_action = planned

        trajectory = Trajectory(start_date=start_date, points=points, weeks=weeks)
        if score_goals and self.goals:
            trajectory.goal_attainment = self._goal_attainment(trajectory)
        if horizon_days <= 1:
            logger.debug(f"[PROJECTION] Degenerate horizon of {horizon_days} day(s)")
        return trajectory

    def extend_ctl(
        self,
        ctl: float,
        start_date: date,
        end_date: date,
        previous_action: float,
        choose: Callable[[float, ActionBounds], float],
        availability: Optional[AvailabilityWindow] = None,
    ) -> float:
        """
        CTL at the end of end_date when each week's load is picked inside its bounds.

        Only the CTL accumulator is advanced, so long horizons stay cheap. Each
        week recomputes its admissible range from the running CTL and the
        previous week's load, then asks ``choose(previous, bounds)`` for the load.

        Args:
            ctl: CTL at the end of the day before start_date
            start_date: First day to advance
            end_date: Last day to advance (inclusive)
            previous_action: Load of the week before start_date
            choose: Picks the weekly load from (previous load, bounds)
            availability: Optional availability window

        Returns:
            CTL after end_date (ctl unchanged when end_date < start_date)
        """
        alpha = self.calibration.ctl_alpha
        prior = previous_action
        day = start_date
        while day <= end_date:
            bounds = compute_action_bounds(prior, ctl, self.caps, self.calibration, availability)
            action = choose(prior, bounds)
            daily = action / 7.0
            for _ in range(7):
                if day > end_date:
                    break
                ctl += alpha * (daily * self.context_for(day).load_bias - ctl)
                day += timedelta(days=1)
            prior = action
        if not math.isfinite(ctl):
            raise NumericalDegeneracyError(f"Non-finite CTL extending to {end_date}")
        return ctl

    def _validate_actions(self, weekly_actions: Sequence[float], previous_action: float) -> List[float]:
        actions = []
        for index, value in enumerate(weekly_actions):
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ProjectionInputError(f"Weekly action {index} is not a finite number: {value!r}")
            if value < 0:
                raise ProjectionInputError(f"Weekly action {index} is negative: {value}")
            actions.append(float(value))
        if not math.isfinite(previous_action) or previous_action < 0:
            raise ProjectionInputError(f"previous_action must be finite and >= 0, got {previous_action}")
        return actions

    def _point(
        self,
        day_index: int,
        day: date,
        state: DayState,
        planned_load: float,
        load: float,
        load_bias: float,
        pressure: float,
    ) -> ProjectionPoint:
        return ProjectionPoint(
            day_index=day_index,
            day=day,
            planned_load=planned_load,
            load=load,
            load_bias=load_bias,
            ctl=state.ctl,
            atl=state.atl,
            tsb=state.ctl - state.atl,
            strain_load_balance=state.atl / max(state.ctl, 1.0),
            durability=state.durability,
            readiness_latent=state.readiness_latent,
            uncertainty=state.uncertainty,
            readiness_score=readiness_score(state.readiness_latent, state.uncertainty, pressure, self.calibration),
        )

    def _goal_attainment(self, trajectory: Trajectory) -> Dict[str, float]:
        aggregator = GoalUtilityAggregator(self.calibration, self.caps.post_goal_recovery_days)
        return {
            goal.id: aggregator.score_goal(goal, trajectory.point_on(goal.target_date), self.goals).score
            for goal in sorted(self.goals, key=lambda g: (g.target_date, g.id))
        }
