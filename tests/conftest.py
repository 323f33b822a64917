"""
Shared fixtures and evidence factories for projection engine tests.
"""

import json
from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from projection_engine.calibration import DEFAULT_CALIBRATION
from projection_engine.schemas import (
    ActivityRecord,
    EvidenceBundle,
    Goal,
    Target,
    TargetKind,
)


AS_OF = date(2025, 3, 31)
REQUEST_FIXTURE = Path("tests/fixtures/projection_request.json")

# Sums to 400 TSS per week, with one rest day
WEEK_PATTERN = [80.0, 40.0, 70.0, 0.0, 60.0, 90.0, 60.0]


def make_history(
    as_of: date = AS_OF,
    days: int = 90,
    pattern: Sequence[float] = WEEK_PATTERN,
    athlete_id: str = "athlete_001",
) -> EvidenceBundle:
    """Evidence bundle with one TSS activity per non-zero pattern day, ending on as_of."""
    activities: List[ActivityRecord] = []
    for offset in range(days):
        day = as_of - timedelta(days=days - 1 - offset)
        tss = pattern[offset % len(pattern)]
        if tss > 0:
            activities.append(ActivityRecord(date=day, duration_s=3600.0, tss=tss))
    return EvidenceBundle(athlete_id=athlete_id, as_of=as_of, activities=activities)


def make_goal(
    goal_id: str = "race",
    weeks_out: int = 12,
    ctl: Optional[float] = 75.0,
    priority: float = 10.0,
    as_of: date = AS_OF,
    extra_targets: Sequence[Target] = (),
) -> Goal:
    targets = list(extra_targets)
    if ctl is not None:
        targets.insert(0, Target(id=f"{goal_id}_ctl", kind=TargetKind.FITNESS_CTL, value=ctl))
    return Goal(
        id=goal_id,
        name=goal_id.title(),
        target_date=as_of + timedelta(days=7 * weeks_out),
        priority=priority,
        targets=targets,
    )


# Fixtures

@pytest.fixture
def calibration():
    """Default calibration."""
    return DEFAULT_CALIBRATION


@pytest.fixture
def history_evidence():
    """90 days of training averaging 400 TSS per week."""
    return make_history()


@pytest.fixture
def empty_evidence():
    """Athlete with no recorded history."""
    return EvidenceBundle(athlete_id="newcomer", as_of=AS_OF)


@pytest.fixture
def ctl_goal():
    """Priority-10 goal asking for CTL 75 in 12 weeks."""
    return make_goal()


@pytest.fixture
def request_data():
    """Raw projection request: six weeks of history and a race four weeks out."""
    with open(REQUEST_FIXTURE, "r") as f:
        return json.load(f)
