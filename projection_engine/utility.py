"""
Goal/target utility and priority aggregation.

Converts projected state into scores:
- Target utility: expected attainment (0-1) of a target given the projected
  mean and its uncertainty spread, never a pass/fail threshold
- Goal score: weighted mean of target utilities by target weight
- Plan score: weighted mean of goal scores by priority weight

priority_weight = epsilon + (priority / 10) ** gamma, identical at every layer.
"""

import math
from datetime import date
from typing import List, Optional, Sequence, Tuple

from projection_engine.calibration import CalibrationConfig
from projection_engine.projection_schemas import GoalScore, ProjectionPoint, TargetScore
from projection_engine.schemas import Goal, Target, TargetKind


def priority_weight(priority: float, calibration: CalibrationConfig) -> float:
    """
    Aggregation weight of a goal priority.

    Strictly increasing in priority; equal priorities give equal weights.
    """
    utility = calibration.utility
    return utility.priority_epsilon + (priority / 10.0) ** utility.priority_gamma


def weighted_mean(values: Sequence[float], weights: Sequence[float]) -> float:
    """
    Weighted mean with non-negative weights.

    When every weight is zero the plain mean is used.
    """
    if not values:
        return 0.0
    if len(values) != len(weights):
        raise ValueError(f"{len(values)} values but {len(weights)} weights")
    total = sum(weights)
    if total <= 0.0:
        return sum(values) / len(values)
    return sum(v * w for v, w in zip(values, weights)) / total


def _normal_cdf(z: float) -> float:
    return 0.5 * (1.0 + math.erf(z / math.sqrt(2.0)))


def _normal_pdf(z: float) -> float:
    return math.exp(-0.5 * z * z) / math.sqrt(2.0 * math.pi)


def expected_fractional_attainment(mean: float, sd: float, threshold: float) -> float:
    """
    E[min(X, threshold)] / threshold for X ~ N(mean, sd).

    Partial credit below the threshold, saturating above it, and pulled down
    by a wide spread.
    """
    if threshold <= 0.0:
        return 1.0
    sd = max(sd, 1e-9)
    d = (mean - threshold) / sd
    expected_excess = (mean - threshold) * _normal_cdf(d) + sd * _normal_pdf(d)
    return max(0.0, min(1.0, (mean - expected_excess) / threshold))


def expected_window_attainment(mean: float, sd: float, center: float, tolerance: float) -> float:
    """
    E[exp(-(X - center)^2 / (2 tolerance^2))] for X ~ N(mean, sd).

    Equals 1.0 only for a certain projection exactly on center.
    """
    spread = tolerance * tolerance + sd * sd
    return (tolerance / math.sqrt(spread)) * math.exp(-((mean - center) ** 2) / (2.0 * spread))


def projected_metric(point: ProjectionPoint, kind: TargetKind, calibration: CalibrationConfig) -> Tuple[float, float]:
    """Mean and spread of the projected metric a target kind reads."""
    utility = calibration.utility
    uncertainty = max(point.uncertainty, utility.min_sd_fraction)
    if kind == TargetKind.FITNESS_CTL:
        return point.ctl, utility.ctl_sd_scale * uncertainty
    if kind == TargetKind.FORM_TSB:
        return point.tsb, utility.tsb_sd_scale * uncertainty
    if kind == TargetKind.READINESS:
        return point.readiness_score, utility.readiness_sd_scale * uncertainty
    return point.durability, utility.durability_sd_scale * uncertainty


def target_utility(target: Target, point: ProjectionPoint, calibration: CalibrationConfig) -> float:
    """
    Expected attainment (0-1) of a target at the projected state.

    Args:
        target: Target definition
        point: Projected state at the goal's target date
        calibration: Active calibration

    Returns:
        Continuous utility in [0, 1]
    """
    mean, sd = projected_metric(point, target.kind, calibration)
    if target.kind == TargetKind.FORM_TSB:
        tolerance = target.tolerance or calibration.utility.default_form_tolerance
        return expected_window_attainment(mean, sd, target.value, tolerance)
    return expected_fractional_attainment(mean, sd, target.value)


class GoalUtilityAggregator:
    """
    Scores goals and plans from projected state.

    Goals whose dates fall inside each other's recovery window interfere:
    each target's expected attainment is reduced by
    alignment_penalty_weight * exp(-|days apart| / window).
    """

    def __init__(self, calibration: CalibrationConfig, recovery_days: int = 0):
        """
        Initialize the aggregator.

        Args:
            calibration: Active calibration
            recovery_days: Effective post-goal recovery window
        """
        self.calibration = calibration
        self.window = max(calibration.utility.alignment_window_days, float(recovery_days))

    def alignment_penalty(self, goal: Goal, goals: Sequence[Goal]) -> float:
        weight = self.calibration.utility.alignment_penalty_weight
        overlap = 0.0
        for other in goals:
            if other.id == goal.id:
                continue
            days_apart = abs((other.target_date - goal.target_date).days)
            overlap = max(overlap, math.exp(-days_apart / self.window))
        return weight * overlap

    def score_goal(
        self,
        goal: Goal,
        point: ProjectionPoint,
        goals: Sequence[Goal] = (),
        targets: Optional[Sequence[Target]] = None,
    ) -> GoalScore:
        """
        Score one goal at its projected state.

        Args:
            goal: Goal definition
            point: Projected state on the goal's target date
            goals: All goals of the plan, for alignment interference
            targets: Subset of targets to score (defaults to all)

        Returns:
            GoalScore with per-target utilities
        """
        penalty = self.alignment_penalty(goal, goals)
        target_scores: List[TargetScore] = []
        for target in targets if targets is not None else goal.targets:
            mean, sd = projected_metric(point, target.kind, self.calibration)
            raw = target_utility(target, point, self.calibration)
            target_scores.append(TargetScore(
                target_id=target.id,
                kind=target.kind,
                value=target.value,
                weight=target.weight,
                projected_mean=mean,
                projected_sd=sd,
                utility=raw * (1.0 - penalty),
                alignment_penalty=penalty,
            ))

        score = weighted_mean(
            [t.utility for t in target_scores],
            [t.weight for t in target_scores],
        )
        return GoalScore(
            goal_id=goal.id,
            name=goal.name,
            target_date=goal.target_date,
            priority=goal.priority,
            priority_weight=priority_weight(goal.priority, self.calibration),
            score=max(0.0, min(1.0, score)),
            target_scores=target_scores,
        )

    def plan_score(self, goal_scores: Sequence[GoalScore]) -> float:
        """Priority-weighted mean of goal scores."""
        return weighted_mean(
            [g.score for g in goal_scores],
            [g.priority_weight for g in goal_scores],
        )

    @staticmethod
    def primary_goal(goal_scores: Sequence[GoalScore]) -> Tuple[Optional[str], Optional[date]]:
        """
        Goal contributing most to the plan score.

        Ties resolve to the earliest date, then the smallest id.
        """
        if not goal_scores:
            return None, None
        best = min(
            goal_scores,
            key=lambda g: (-(g.priority_weight * g.score), g.target_date, g.goal_id),
        )
        return best.goal_id, best.target_date
