"""
Tests for target utility and priority aggregation.
"""

from datetime import date, timedelta

import pytest

from projection_engine.projection_schemas import ProjectionPoint
from projection_engine.schemas import Target, TargetKind
from projection_engine.utility import (
    GoalUtilityAggregator,
    expected_fractional_attainment,
    expected_window_attainment,
    priority_weight,
    target_utility,
    weighted_mean,
)
from conftest import make_goal


def _point(ctl=70.0, atl=65.0, uncertainty=0.1, readiness=70.0, durability=0.7):
    return ProjectionPoint(
        day_index=1,
        day=date(2025, 6, 1),
        planned_load=60.0,
        load=60.0,
        load_bias=1.0,
        ctl=ctl,
        atl=atl,
        tsb=ctl - atl,
        strain_load_balance=atl / max(ctl, 1.0),
        durability=durability,
        readiness_latent=readiness / 100.0,
        uncertainty=uncertainty,
        readiness_score=readiness,
    )


# Test Cases: weights


def test_priority_weight_strictly_increasing(calibration):
    weights = [priority_weight(p, calibration) for p in range(0, 11)]
    assert all(later > earlier for earlier, later in zip(weights, weights[1:]))
    assert weights[0] == pytest.approx(calibration.utility.priority_epsilon)


def test_equal_priorities_equal_weights(calibration):
    assert priority_weight(7.0, calibration) == priority_weight(7.0, calibration)


def test_weighted_mean():
    assert weighted_mean([1.0, 0.0], [3.0, 1.0]) == pytest.approx(0.75)
    assert weighted_mean([], []) == 0.0


def test_weighted_mean_zero_weights_falls_back_to_mean():
    assert weighted_mean([0.2, 0.6], [0.0, 0.0]) == pytest.approx(0.4)


def test_weighted_mean_length_mismatch():
    with pytest.raises(ValueError):
        weighted_mean([0.2, 0.6], [1.0])


# Test Cases: attainment


def test_fractional_attainment_saturates():
    assert expected_fractional_attainment(120.0, 0.5, 75.0) == pytest.approx(1.0)


def test_fractional_attainment_partial_credit():
    """Below the threshold, credit is roughly proportional."""
    assert expected_fractional_attainment(60.0, 0.5, 75.0) == pytest.approx(0.8, abs=1e-3)


def test_spread_lowers_attainment_at_threshold():
    narrow = expected_fractional_attainment(75.0, 1.0, 75.0)
    wide = expected_fractional_attainment(75.0, 10.0, 75.0)
    assert wide < narrow < 1.0


def test_window_attainment():
    assert expected_window_attainment(5.0, 0.0, 5.0, 10.0) == pytest.approx(1.0)
    assert expected_window_attainment(15.0, 0.0, 5.0, 10.0) < 1.0
    assert expected_window_attainment(5.0, 5.0, 5.0, 10.0) < 1.0


def test_target_utility_is_continuous(calibration):
    """Utility moves smoothly with the projected CTL; no pass/fail jump."""
    target = Target(id="ctl", kind=TargetKind.FITNESS_CTL, value=75.0)
    below = target_utility(target, _point(ctl=74.0), calibration)
    at = target_utility(target, _point(ctl=75.0), calibration)
    above = target_utility(target, _point(ctl=76.0), calibration)

    assert below < at < above
    assert above - below < 0.05


def test_form_target_uses_default_tolerance(calibration):
    target = Target(id="form", kind=TargetKind.FORM_TSB, value=5.0)
    on_center = target_utility(target, _point(ctl=70.0, atl=65.0, uncertainty=0.0), calibration)
    assert on_center > 0.99


# Test Cases: aggregation


def test_score_goal_weights_targets(calibration):
    goal = make_goal(
        ctl=70.0,
        extra_targets=[Target(id="ready", kind=TargetKind.READINESS, value=100.0, weight=0.0)],
    )
    aggregator = GoalUtilityAggregator(calibration)

    score = aggregator.score_goal(goal, _point(ctl=70.0), [goal])

    assert len(score.target_scores) == 2
    assert score.score == pytest.approx(score.target_scores[0].utility)
    assert score.priority_weight == priority_weight(goal.priority, calibration)


def test_alignment_penalty_for_close_goals(calibration):
    """Goals inside each other's recovery window interfere."""
    a = make_goal(goal_id="a", weeks_out=8)
    b = make_goal(goal_id="b", weeks_out=8)
    b = b.model_copy(update={"target_date": a.target_date + timedelta(days=3)})
    far = b.model_copy(update={"target_date": a.target_date + timedelta(days=120)})
    aggregator = GoalUtilityAggregator(calibration, recovery_days=5)

    close_penalty = aggregator.alignment_penalty(a, [a, b])
    far_penalty = aggregator.alignment_penalty(a, [a, far])

    assert close_penalty > far_penalty
    assert aggregator.alignment_penalty(a, [a]) == 0.0
    assert close_penalty <= calibration.utility.alignment_penalty_weight


def test_plan_score_favours_higher_priority(calibration):
    """Raising one goal's priority moves the plan score toward that goal's score."""
    aggregator = GoalUtilityAggregator(calibration)
    strong = make_goal(goal_id="strong", ctl=60.0, priority=5.0)
    weak = make_goal(goal_id="weak", ctl=120.0, priority=5.0)
    point = _point(ctl=60.0)

    strong_score = aggregator.score_goal(strong, point)
    weak_score = aggregator.score_goal(weak, point)
    baseline = aggregator.plan_score([strong_score, weak_score])

    boosted = aggregator.score_goal(strong.model_copy(update={"priority": 9.0}), point)
    raised = aggregator.plan_score([boosted, weak_score])

    assert strong_score.score > weak_score.score
    assert raised > baseline
    assert weak_score.score <= baseline <= strong_score.score


def test_primary_goal_tie_breaks_by_date_then_id(calibration):
    aggregator = GoalUtilityAggregator(calibration)
    point = _point()
    early = aggregator.score_goal(make_goal(goal_id="b", weeks_out=4), point)
    late = aggregator.score_goal(make_goal(goal_id="a", weeks_out=6), point)
    same_day = aggregator.score_goal(make_goal(goal_id="a", weeks_out=4), point)

    assert GoalUtilityAggregator.primary_goal([late, early]) == ("b", early.target_date)
    assert GoalUtilityAggregator.primary_goal([early, same_day])[0] == "a"
    assert GoalUtilityAggregator.primary_goal([]) == (None, None)
