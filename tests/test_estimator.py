"""
Tests for the state estimator.

Covers load derivation per source, evidence states, uncertainty growth,
prior snapshots and perceived readiness.
"""

import json
from datetime import date, timedelta
from pathlib import Path

import pytest

from projection_engine.errors import ProjectionInputError
from projection_engine.estimator import StateEstimator, derive_load, to_latent_state
from projection_engine.safety import ABSOLUTE_RAILS
from projection_engine.schemas import (
    ActivityRecord,
    EvidenceBundle,
    EvidenceState,
    LoadSource,
    ProfileMetrics,
)
from conftest import AS_OF, make_history


# Fixtures

@pytest.fixture
def estimator(calibration):
    return StateEstimator(calibration)


@pytest.fixture
def mixed_evidence():
    """Evidence mixing TSS, power, pace, heart rate and duration-only records."""
    with open(Path("tests/fixtures/evidence_mixed_sources.json"), "r") as f:
        data = json.load(f)
    return EvidenceBundle.model_validate(data)


# Test Cases: load derivation


def test_derived_loads_per_source(estimator, mixed_evidence):
    """Each day's load comes from its best available source."""
    daily = estimator.aggregate(mixed_evidence)
    by_day = {day.isoformat(): obs for day, obs in daily.items()}

    expected = {
        "2025-03-01": (75.0, 1.0, LoadSource.TSS),
        "2025-03-02": (64.0, 0.9, LoadSource.POWER),
        "2025-03-04": (64.0, 0.8, LoadSource.PACE),
        "2025-03-06": (100.0, 0.9, LoadSource.POWER),
        "2025-03-08": (128.0, 0.7, LoadSource.HEART_RATE),
        "2025-03-10": (42.25, 0.4, LoadSource.DURATION),
    }
    assert set(by_day) == set(expected)
    for day, (load, quality, source) in expected.items():
        assert by_day[day].load == pytest.approx(load), day
        assert by_day[day].quality == pytest.approx(quality), day
        assert by_day[day].sources == [source], day


def test_threshold_signal_only_applies_from_its_date(calibration):
    """An FTP signal never reaches back before its own date."""
    profile = ProfileMetrics(ftp_watts=250.0)
    activity = ActivityRecord(date=AS_OF, duration_s=3600.0, normalized_power=200.0)

    load, quality, source = derive_load(activity, [], profile, calibration)

    assert source == LoadSource.POWER
    assert load == pytest.approx(64.0)
    assert quality == calibration.estimator.power_quality


def test_duration_only_uses_default_intensity(calibration):
    activity = ActivityRecord(date=AS_OF, duration_s=5400.0)

    load, quality, source = derive_load(activity, [], ProfileMetrics(), calibration)

    assert source == LoadSource.DURATION
    assert load == pytest.approx(0.65 ** 2 * 1.5 * 100.0)
    assert quality == calibration.estimator.duration_quality


def test_multiple_activities_same_day_sum(estimator):
    """Loads on one day add up and quality is load-weighted."""
    evidence = EvidenceBundle(
        athlete_id="double",
        as_of=AS_OF,
        activities=[
            ActivityRecord(date=AS_OF, duration_s=3600.0, tss=60.0),
            ActivityRecord(date=AS_OF, duration_s=3600.0),
        ],
    )
    daily = estimator.aggregate(evidence)
    observation = daily[AS_OF]

    assert observation.load == pytest.approx(60.0 + 42.25)
    assert observation.quality == pytest.approx((60.0 * 1.0 + 42.25 * 0.4) / 102.25)


# Test Cases: estimation


def test_rich_history(estimator, history_evidence):
    """Ninety days of regular training gives a rich, confident estimate."""
    snapshot = estimator.estimate(history_evidence)

    ctl = snapshot.variables["ctl"]
    assert snapshot.evidence_state == EvidenceState.RICH
    assert 50.0 < ctl.mean < 65.0
    assert ctl.uncertainty < 15.0
    assert snapshot.evidence_quality == pytest.approx(24 / 28)
    assert snapshot.last_week_load == pytest.approx(400.0)
    assert snapshot.evidence_days == len(history_evidence.activities)


def test_mixed_sources_sparse(estimator, mixed_evidence):
    """Six records inside the quality window are sparse evidence."""
    snapshot = estimator.estimate(mixed_evidence)

    assert snapshot.evidence_state == EvidenceState.SPARSE
    assert snapshot.evidence_days == 6
    assert snapshot.evidence_quality == pytest.approx(4.7 / 28)


def test_no_history_uses_defaults(estimator, empty_evidence, calibration):
    """With no evidence at all the no-history floors apply."""
    snapshot = estimator.estimate(empty_evidence)
    defaults = calibration.no_history

    assert snapshot.evidence_state == EvidenceState.NONE
    assert snapshot.variables["ctl"].mean == defaults.default_ctl
    assert snapshot.variables["atl"].mean == defaults.default_atl
    assert snapshot.variables["ctl"].uncertainty == pytest.approx(defaults.default_ctl_std)
    assert snapshot.evidence_quality == defaults.evidence_quality_floor
    assert snapshot.last_week_load == 0.0


def test_idle_days_decay_fitness_and_grow_uncertainty(estimator):
    """Covered days after the last record are idle: CTL decays, its std dev grows."""
    last_record = AS_OF - timedelta(days=30)
    fresh = make_history(as_of=last_record)
    stale = EvidenceBundle(athlete_id=fresh.athlete_id, as_of=AS_OF, activities=fresh.activities)

    fresh_snapshot = estimator.estimate(fresh)
    stale_snapshot = estimator.estimate(stale)

    assert stale_snapshot.evidence_state == EvidenceState.STALE
    assert stale_snapshot.variables["ctl"].mean < 0.75 * fresh_snapshot.variables["ctl"].mean
    assert stale_snapshot.variables["atl"].mean < stale_snapshot.variables["ctl"].mean
    assert stale_snapshot.variables["ctl"].uncertainty > fresh_snapshot.variables["ctl"].uncertainty
    assert stale_snapshot.evidence_quality < fresh_snapshot.evidence_quality


def test_uncertainty_bounded_by_ceiling(calibration):
    """Long gaps never push the std dev beyond its ceiling."""
    estimator = StateEstimator(calibration)
    old = make_history(as_of=AS_OF - timedelta(days=700), days=14)
    evidence = EvidenceBundle(athlete_id="gap", as_of=AS_OF, activities=old.activities)

    snapshot = estimator.estimate(evidence)

    assert snapshot.variables["ctl"].uncertainty <= calibration.estimator.ctl_std_ceiling
    assert snapshot.variables["atl"].uncertainty <= calibration.estimator.atl_std_ceiling


def test_detrained_athlete_plans_from_lower_load(estimator):
    """Two idle months leave a smaller weekly ramp base than the last training block."""
    trained = make_history(as_of=AS_OF - timedelta(days=60))
    idle = EvidenceBundle(athlete_id=trained.athlete_id, as_of=AS_OF, activities=trained.activities)

    snapshot = estimator.estimate(idle)

    assert snapshot.last_week_load == 0.0
    assert 7.0 * snapshot.variables["ctl"].mean < 0.5 * 400.0


def test_history_rail_ignores_ancient_records(estimator, history_evidence):
    """Records older than the history rail do not change the estimate or extend the replay."""
    ancient = ActivityRecord(date=date(1, 1, 1), duration_s=3600.0, tss=50.0)
    with_ancient = history_evidence.model_copy(
        update={"activities": [ancient] + list(history_evidence.activities)}
    )

    assert estimator.estimate(with_ancient) == estimator.estimate(history_evidence)


def test_history_rail_alone_is_no_history(estimator):
    only_ancient = EvidenceBundle(
        athlete_id="ancient",
        as_of=AS_OF,
        activities=[ActivityRecord(date=date(1, 1, 1), duration_s=3600.0, tss=50.0)],
    )

    snapshot = estimator.estimate(only_ancient)

    assert snapshot.evidence_state == EvidenceState.NONE
    assert snapshot.evidence_days == 0


def test_prior_older_than_rail_is_ignored(estimator, history_evidence):
    prior = estimator.estimate(make_history(as_of=AS_OF - timedelta(days=ABSOLUTE_RAILS.max_history_days + 10)))

    assert estimator.estimate(history_evidence, prior=prior) == estimator.estimate(history_evidence)


def test_estimate_is_deterministic(estimator, history_evidence):
    first = estimator.estimate(history_evidence)
    second = estimator.estimate(history_evidence)
    assert first == second


def test_perceived_readiness_pulls_readiness(estimator, mixed_evidence):
    """A high perceived readiness raises readiness_latent."""
    without = mixed_evidence.model_copy(
        update={"effort_signals": [s for s in mixed_evidence.effort_signals if s.perceived_readiness is None]}
    )

    with_signal = estimator.estimate(mixed_evidence)
    without_signal = estimator.estimate(without)

    assert (
        with_signal.variables["readiness_latent"].mean
        > without_signal.variables["readiness_latent"].mean
    )
    assert (
        with_signal.variables["readiness_latent"].uncertainty
        < without_signal.variables["readiness_latent"].uncertainty
    )


# Test Cases: prior snapshots


def test_prior_snapshot_continues(estimator):
    """A prior seeds the estimate; only evidence after it is replayed."""
    prior = estimator.estimate(make_history())
    later = make_history(as_of=AS_OF + timedelta(days=7), days=97)

    snapshot = estimator.estimate(later, prior=prior)

    assert snapshot.as_of == AS_OF + timedelta(days=7)
    assert snapshot.evidence_days > prior.evidence_days
    assert snapshot.evidence_state == EvidenceState.RICH
    assert abs(snapshot.variables["ctl"].mean - prior.variables["ctl"].mean) < 5.0


def test_prior_newer_than_evidence_rejected(estimator, history_evidence):
    prior = estimator.estimate(history_evidence)
    older = make_history(as_of=AS_OF - timedelta(days=3))

    with pytest.raises(ProjectionInputError, match="after evidence"):
        estimator.estimate(older, prior=prior)


def test_prior_calibration_mismatch_is_not_fatal(estimator, history_evidence):
    """A prior from another calibration version is still usable."""
    prior = estimator.estimate(history_evidence).model_copy(update={"calibration_version": "2024.9"})

    snapshot = estimator.estimate(history_evidence, prior=prior)

    assert snapshot.calibration_version == "2025.1"


def test_to_latent_state(estimator, history_evidence, calibration):
    snapshot = estimator.estimate(history_evidence)
    state = to_latent_state(snapshot, calibration)

    assert state.ctl == snapshot.variables["ctl"].mean
    assert state.uncertainty == pytest.approx(
        snapshot.variables["ctl"].uncertainty / calibration.estimator.ctl_std_reference
    )
    assert state.tsb == pytest.approx(state.ctl - state.atl)


def test_evidence_after_as_of_rejected():
    """Evidence may not contain records dated after as_of."""
    with pytest.raises(ValueError):
        EvidenceBundle(
            athlete_id="future",
            as_of=AS_OF,
            activities=[ActivityRecord(date=AS_OF + timedelta(days=1), duration_s=600.0, tss=10.0)],
        )
