"""
Goal feasibility scoring.

Computes how hard a goal pushes against the configured soft caps, given the
constrained trajectory the optimizer actually produced and the most the caps
could deliver by the goal date.

Feasibility Score = 100 × (1 - Σ(weight_i × penalty_i))
"""

from datetime import date
from typing import Dict, List, Optional

from projection_engine.calibration import CalibrationConfig
from projection_engine.projection import ForwardProjectionEngine
from projection_engine.projection_schemas import GoalFeasibility, Trajectory, WeeklyProjection
from projection_engine.safety import ABSOLUTE_RAILS, SafetyCaps, classify_feasibility
from projection_engine.schemas import AvailabilityWindow, FeasibilityClass, Goal, TargetKind


class FeasibilityCalculator:
    """
    Classifies each goal as feasible, aggressive or unsafe.

    Goal demand is measured two ways: the CTL ramp it needs against the CTL
    ramp cap, and the CTL growth it needs against the growth the caps can
    deliver when every week rides its admissible upper bound (TSS ramp, CTL
    ramp, weekly TSS and availability together). The larger fraction is the
    required ratio. Above 1.0 the goal is unsafe; it is aggressive when the
    ratio or the constrained trajectory's cap usage crosses the aggressive
    threshold.
    """

    def __init__(
        self,
        calibration: CalibrationConfig,
        caps: SafetyCaps,
        availability: Optional[AvailabilityWindow] = None,
    ):
        """
        Initialize calculator.

        Args:
            calibration: Active calibration
            caps: Effective soft caps
            availability: Optional availability window
        """
        self.calibration = calibration
        self.caps = caps
        self.availability = availability
        self.thresholds = calibration.feasibility
        self.engine = ForwardProjectionEngine(calibration, caps)

    def calculate(
        self,
        goal: Goal,
        trajectory: Trajectory,
        evidence_quality: float,
    ) -> GoalFeasibility:
        """
        Calculate feasibility for one goal.

        Args:
            goal: Goal definition
            trajectory: Committed trajectory
            evidence_quality: Overall evidence quality of the start state

        Returns:
            GoalFeasibility with classification, score, limiters and band
        """
        start_ctl = trajectory.points[0].ctl
        required_ramp = self._required_ctl_ramp(goal, start_ctl, trajectory.start_date)
        cap = self.caps.max_ctl_ramp_per_week
        target_ctl = self._target_ctl(goal)

        reachable_ctl = None
        required_ratio = 0.0
        if target_ctl is not None:
            reachable_ctl = self._reachable_ctl(goal, start_ctl, trajectory)
            demand = target_ctl - start_ctl
            if demand > 0.0:
                ramp_ratio = required_ramp / max(cap, ABSOLUTE_RAILS.tolerance)
                deliverable = max(reachable_ctl - start_ctl, ABSOLUTE_RAILS.tolerance)
                required_ratio = max(ramp_ratio, demand / deliverable)

        weeks = [w for w in trajectory.weeks if w.start_date <= goal.target_date]
        tss_pressure = self._mean([self._tss_usage(w) for w in weeks])
        ctl_pressure = self._mean([self._ctl_usage(w) for w in weeks])
        cap_pressure = self._mean([w.cap_usage for w in weeks])

        classification = classify_feasibility(required_ratio, cap_pressure, self.calibration)

        penalties = {
            "required_growth": min(1.0, required_ratio),
            "tss_ramp_pressure": tss_pressure,
            "ctl_ramp_pressure": ctl_pressure,
            "evidence_confidence": 1.0 - max(0.0, min(1.0, evidence_quality)),
        }
        weights = {
            "required_growth": self.thresholds.growth_weight,
            "tss_ramp_pressure": self.thresholds.tss_pressure_weight,
            "ctl_ramp_pressure": self.thresholds.ctl_pressure_weight,
            "evidence_confidence": self.thresholds.confidence_weight,
        }

        breakdown = {}
        total_penalty = 0.0
        for factor, penalty in penalties.items():
            contribution = penalty * weights[factor]
            breakdown[factor] = contribution
            total_penalty += contribution

        score = 100.0 * max(0.0, min(1.0, 1.0 - total_penalty))
        limiters = self._limiters(required_ratio, tss_pressure, ctl_pressure, evidence_quality)
        if reachable_ctl is not None and target_ctl > reachable_ctl + ABSOLUTE_RAILS.tolerance:
            limiters.insert(0, "target_beyond_reachable_ctl")

        return GoalFeasibility(
            goal_id=goal.id,
            classification=classification,
            required_ctl_ramp=required_ramp,
            ctl_ramp_cap=cap,
            required_ratio=required_ratio,
            reachable_ctl=reachable_ctl,
            cap_pressure=cap_pressure,
            score=score,
            band=self._band(score),
            breakdown=breakdown,
            limiters=limiters,
            recommendations=self._generate_recommendations(
                goal, classification, limiters, required_ramp, reachable_ctl
            ),
            uncertainty_pct=self._uncertainty_pct(evidence_quality, cap_pressure),
        )

    @staticmethod
    def _target_ctl(goal: Goal) -> Optional[float]:
        targets = [t.value for t in goal.targets if t.kind == TargetKind.FITNESS_CTL]
        return max(targets) if targets else None

    def _required_ctl_ramp(self, goal: Goal, start_ctl: float, plan_start: date) -> float:
        """CTL per week needed to reach the goal's highest fitness target on time."""
        target = self._target_ctl(goal)
        if target is None:
            return 0.0
        weeks_to_goal = max(1.0, ((goal.target_date - plan_start).days + 1) / 7.0)
        return max(0.0, (target - start_ctl) / weeks_to_goal)

    def _reachable_ctl(self, goal: Goal, start_ctl: float, trajectory: Trajectory) -> float:
        """
        Goal-date CTL when every week from the plan start takes its upper bound.

        The first week ramps from the committed trajectory's ramp base, so the
        simulation starts from the same cap state as the plan.
        """
        previous = trajectory.weeks[0].ramp_base if trajectory.weeks else 0.0
        return self.engine.extend_ctl(
            start_ctl,
            trajectory.start_date,
            goal.target_date,
            previous,
            lambda prior, bounds: bounds.max_value,
            self.availability,
        )

    def _tss_usage(self, week: WeeklyProjection) -> float:
        room = week.ramp_base * self.caps.max_weekly_tss_ramp_pct / 100.0
        growth = week.applied_tss * 7.0 / week.days - week.ramp_base
        if room <= 0:
            return 1.0 if growth > 0 else 0.0
        return max(0.0, min(1.0, growth / room))

    def _ctl_usage(self, week: WeeklyProjection) -> float:
        ramp = week.ctl_ramp * 7.0 / week.days
        cap = self.caps.max_ctl_ramp_per_week
        if cap <= 0:
            return 1.0 if ramp > 0 else 0.0
        return max(0.0, min(1.0, ramp / cap))

    @staticmethod
    def _mean(values: List[float]) -> float:
        if not values:
            return 0.0
        return sum(values) / len(values)

    def _limiters(
        self,
        required_ratio: float,
        tss_pressure: float,
        ctl_pressure: float,
        evidence_quality: float,
    ) -> List[str]:
        limiters = []
        if required_ratio > 1.0 + ABSOLUTE_RAILS.tolerance:
            limiters.append("required_growth_exceeds_caps")
        if tss_pressure >= self.thresholds.aggressive_pressure:
            limiters.append("tss_ramp_cap_pressure")
        if ctl_pressure >= self.thresholds.aggressive_pressure:
            limiters.append("ctl_ramp_cap_pressure")
        if evidence_quality < self.thresholds.low_confidence:
            limiters.append("low_evidence_confidence")
        return limiters

    def _band(self, score: float) -> str:
        """
        Interpret a feasibility score.

        Args:
            score: Feasibility score (0-100)

        Returns:
            "high", "medium" or "low"
        """
        if score >= self.thresholds.high_band_score:
            return "high"
        elif score >= self.thresholds.medium_band_score:
            return "medium"
        else:
            return "low"

    def _uncertainty_pct(self, evidence_quality: float, cap_pressure: float) -> float:
        t = self.thresholds
        confidence = max(0.0, min(1.0, evidence_quality))
        pct = t.band_base + (1.0 - confidence) * t.band_confidence_span + cap_pressure * t.band_pressure_span
        return max(t.band_min, min(t.band_max, pct))

    def _generate_recommendations(
        self,
        goal: Goal,
        classification: FeasibilityClass,
        limiters: List[str],
        required_ramp: float,
        reachable_ctl: Optional[float] = None,
    ) -> List[str]:
        recommendations = []

        if "target_beyond_reachable_ctl" in limiters:
            recommendations.append(
                f"At the cap limits CTL reaches only {reachable_ctl:.1f} by {goal.target_date}. "
                f"Move the date, lower the target, or raise the caps with an explicit override."
            )
        elif "required_growth_exceeds_caps" in limiters:
            recommendations.append(
                f"Goal '{goal.id}' needs {required_ramp:.1f} CTL/week but the cap is "
                f"{self.caps.max_ctl_ramp_per_week:.1f}. Move the date, lower the target, "
                f"or raise the cap with an explicit override."
            )
        if "tss_ramp_cap_pressure" in limiters:
            recommendations.append(
                f"Weekly load grows close to the {self.caps.max_weekly_tss_ramp_pct:.0f}% ramp cap. "
                f"Expect little room to absorb missed sessions."
            )
        if "ctl_ramp_cap_pressure" in limiters:
            recommendations.append(
                "CTL rises near its weekly cap for most of the build. Monitor fatigue closely."
            )
        if "low_evidence_confidence" in limiters:
            recommendations.append(
                "Training history is thin or stale. Record more sessions to narrow the projection."
            )

        if not recommendations and classification == FeasibilityClass.FEASIBLE:
            recommendations.append(
                f"Goal '{goal.id}' fits comfortably within the configured caps."
            )

        return recommendations


def plan_feasibility(feasibilities: List[GoalFeasibility]) -> FeasibilityClass:
    """Worst classification across goals; feasible when there are none."""
    order: Dict[FeasibilityClass, int] = {
        FeasibilityClass.FEASIBLE: 0,
        FeasibilityClass.AGGRESSIVE: 1,
        FeasibilityClass.UNSAFE: 2,
    }
    worst: Optional[FeasibilityClass] = None
    for feasibility in feasibilities:
        if worst is None or order[feasibility.classification] > order[worst]:
            worst = feasibility.classification
    return worst or FeasibilityClass.FEASIBLE
