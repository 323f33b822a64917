"""
Tests for the forward projection engine.
"""

import math
from datetime import date, timedelta

import pytest

from projection_engine.errors import NumericalDegeneracyError, ProjectionInputError
from projection_engine.projection import (
    DayState,
    ForwardProjectionEngine,
    advance_state,
    day_context,
    fitness_reference,
    readiness_score,
)
from projection_engine.safety import resolve_safety_caps
from projection_engine.schemas import LatentState, OptimizationProfile
from conftest import make_goal


START = date(2025, 4, 1)


# Fixtures

@pytest.fixture
def caps():
    return resolve_safety_caps(OptimizationProfile.BALANCED)


@pytest.fixture
def engine(calibration, caps):
    return ForwardProjectionEngine(calibration, caps)


@pytest.fixture
def steady_state():
    return LatentState(ctl=60.0, atl=60.0, durability=0.7, readiness_latent=0.6, uncertainty=0.1)


# Test Cases: degenerate horizons


def test_zero_horizon_returns_seed_only(engine, steady_state):
    """Horizon 0 yields only the seed point."""
    trajectory = engine.project(steady_state, START, [], horizon_days=0)

    assert len(trajectory.points) == 1
    assert trajectory.weeks == []
    assert trajectory.is_degenerate
    assert trajectory.points[0].ctl == steady_state.ctl
    assert trajectory.points[0].day == START - timedelta(days=1)


def test_one_day_horizon(engine, steady_state):
    """Horizon 1 yields one partial week."""
    trajectory = engine.project(steady_state, START, [420.0], horizon_days=1)

    assert len(trajectory.points) == 2
    assert trajectory.is_degenerate
    assert len(trajectory.weeks) == 1
    assert trajectory.weeks[0].days == 1
    assert trajectory.weeks[0].applied_tss == pytest.approx(60.0)


def test_point_count_matches_horizon(engine, steady_state):
    trajectory = engine.project(steady_state, START, [420.0, 420.0, 420.0])

    assert trajectory.horizon_days == 21
    assert len(trajectory.points) == 22
    assert [w.week_index for w in trajectory.weeks] == [0, 1, 2]
    assert trajectory.end_date() == START + timedelta(days=20)


# Test Cases: invalid input


@pytest.mark.parametrize("action", [math.nan, math.inf, -10.0])
def test_invalid_action_rejected(engine, steady_state, action):
    """NaN, infinite and negative actions fail instead of being coerced."""
    with pytest.raises(ProjectionInputError):
        engine.project(steady_state, START, [420.0, action])


def test_horizon_longer_than_actions_rejected(engine, steady_state):
    with pytest.raises(ProjectionInputError, match="exceeds"):
        engine.project(steady_state, START, [420.0], horizon_days=10)


def test_negative_horizon_rejected(engine, steady_state):
    with pytest.raises(ProjectionInputError):
        engine.project(steady_state, START, [420.0], horizon_days=-1)


def test_non_finite_transition_raises(calibration):
    """A transition producing NaN is a numerical degeneracy, never a silent value."""
    state = DayState(math.nan, 50.0, 0.5, 0.5, 0.1)
    with pytest.raises(NumericalDegeneracyError):
        advance_state(state, 60.0, -10.0, 100.0, calibration)


# Test Cases: dynamics


def test_equilibrium_load_holds_ctl(engine, steady_state):
    """A weekly load of 7 x CTL keeps CTL and ATL in place."""
    trajectory = engine.project(steady_state, START, [420.0] * 4)

    for point in trajectory.points:
        assert point.ctl == pytest.approx(60.0)
        assert point.atl == pytest.approx(60.0)
    assert all(abs(w.ctl_ramp) < 1e-9 for w in trajectory.weeks)


def test_higher_load_raises_ctl(engine, steady_state):
    low = engine.project(steady_state, START, [420.0] * 4)
    high = engine.project(steady_state, START, [480.0] * 4)

    assert high.points[-1].ctl > low.points[-1].ctl
    assert high.points[-1].tsb < low.points[-1].tsb


def test_uncertainty_grows_with_forecast_distance(engine, steady_state):
    trajectory = engine.project(steady_state, START, [420.0] * 6)
    values = [p.uncertainty for p in trajectory.points]

    assert all(later > earlier for earlier, later in zip(values, values[1:]))
    assert values[-1] < 1.0


def test_readiness_score_in_range(engine, steady_state):
    trajectory = engine.project(steady_state, START, [0.0, 900.0, 0.0, 600.0])

    for point in trajectory.points:
        assert 0.0 <= point.readiness_score <= 100.0
        assert 0.0 <= point.durability <= 1.0
        assert 0.0 <= point.readiness_latent <= 1.0


def test_extend_ctl_matches_projection(engine, steady_state):
    """The CTL-only extension follows the same accumulator as a full projection."""
    trajectory = engine.project(steady_state, START, [500.0] * 4)

    extended = engine.extend_ctl(60.0, START, START + timedelta(days=27), 420.0, lambda prior, bounds: 500.0)

    assert extended == pytest.approx(trajectory.points[-1].ctl)


def test_extend_ctl_at_upper_bound_respects_caps(engine):
    """Riding the upper bound grows CTL by no more than the weekly cap."""
    end = START + timedelta(days=41)
    capped = engine.extend_ctl(60.0, START, end, 420.0, lambda prior, bounds: bounds.max_value)
    held = engine.extend_ctl(60.0, START, end, 420.0, lambda prior, bounds: prior)

    assert held == pytest.approx(60.0)
    assert 60.0 < capped <= 60.0 + 6 * 3.0 + 1e-6


def test_extend_ctl_empty_span(engine):
    assert engine.extend_ctl(55.0, START, START - timedelta(days=1), 400.0, lambda p, b: 900.0) == 55.0


def test_projection_is_deterministic(calibration, caps, steady_state):
    goals = [make_goal(as_of=START, weeks_out=3)]
    first = ForwardProjectionEngine(calibration, caps, goals).project(steady_state, START, [450.0] * 4)
    second = ForwardProjectionEngine(calibration, caps, goals).project(steady_state, START, [450.0] * 4)

    assert first.model_dump() == second.model_dump()


# Test Cases: taper and recovery


def test_taper_bias_on_goal_day(calibration):
    """A priority-10 goal reduces load by the full taper depth on goal day."""
    goal = make_goal(as_of=START, weeks_out=2)
    depth = calibration.transition.taper_load_depth

    on_day = day_context(goal.target_date, [goal], calibration, recovery_days=5)
    week_before = day_context(goal.target_date - timedelta(days=7), [goal], calibration, recovery_days=5)
    far = day_context(goal.target_date - timedelta(days=60), [goal], calibration, recovery_days=5)

    assert on_day.load_bias == pytest.approx(1.0 - depth)
    assert on_day.load_bias < week_before.load_bias < far.load_bias < 1.0
    assert on_day.target_tsb == pytest.approx(calibration.timeline.peak_tsb)


def test_recovery_bias_after_goal(calibration):
    goal = make_goal(as_of=START, weeks_out=2)
    depth = calibration.transition.recovery_load_depth

    day_after = day_context(goal.target_date + timedelta(days=1), [goal], calibration, recovery_days=5)
    no_recovery = day_context(goal.target_date + timedelta(days=1), [goal], calibration, recovery_days=0)

    assert day_after.load_bias == pytest.approx(1.0 - depth)
    assert no_recovery.load_bias == pytest.approx(1.0)


def test_taper_scales_with_priority(calibration):
    high = make_goal(priority=10.0, as_of=START, weeks_out=2)
    low = make_goal(priority=3.0, as_of=START, weeks_out=2)

    high_bias = day_context(high.target_date, [high], calibration, 5).load_bias
    low_bias = day_context(low.target_date, [low], calibration, 5).load_bias

    assert high_bias < low_bias


def test_taper_lifts_form_on_goal_day(calibration, caps, steady_state):
    """With a goal, the projected TSB on goal day exceeds the goal-free projection."""
    goal = make_goal(as_of=START, weeks_out=3)
    actions = [420.0] * 4
    with_goal = ForwardProjectionEngine(calibration, caps, [goal]).project(steady_state, START, actions)
    without_goal = ForwardProjectionEngine(calibration, caps).project(steady_state, START, actions)

    assert with_goal.point_on(goal.target_date).tsb > without_goal.point_on(goal.target_date).tsb
    assert set(with_goal.goal_attainment) == {goal.id}
    assert without_goal.goal_attainment == {}


# Test Cases: helpers


def test_fitness_reference(calibration):
    goals = [make_goal(ctl=70.0), make_goal(goal_id="b", ctl=85.0)]
    assert fitness_reference(goals, calibration) == 85.0
    assert fitness_reference([], calibration) == calibration.timeline.fitness_reference_ctl


def test_readiness_score_discounts(calibration):
    confident = readiness_score(0.8, 0.0, 0.0, calibration)
    uncertain = readiness_score(0.8, 1.0, 0.0, calibration)
    pressured = readiness_score(0.8, 0.0, 1.0, calibration)

    assert confident == pytest.approx(80.0)
    assert uncertain < confident
    assert pressured < confident
