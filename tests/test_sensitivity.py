"""
Tests for what-if sensitivity analysis.
"""

import pytest

from projection_engine.errors import ConfigurationError
from projection_engine.planner import ProjectionPlanner, load_request
from projection_engine.schemas import FeasibilityClass
from projection_engine.sensitivity import SensitivityAnalyzer, reachable_load_ceiling


# Fixtures

@pytest.fixture
def baseline_request(request_data):
    return load_request(request_data)


@pytest.fixture
def analyzer(baseline_request):
    return SensitivityAnalyzer(baseline_request)


# Test Cases


def test_baseline_computed_when_omitted(analyzer, baseline_request):
    expected = ProjectionPlanner(baseline_request).run()
    assert analyzer.baseline_result.model_dump() == expected.model_dump()


def test_raising_caps_raises_load_ceiling(baseline_request):
    """Overriding the caps up to the rails widens the reachable load."""
    analyzer = SensitivityAnalyzer(baseline_request.model_copy(update={"plan_weeks": 1}))
    result = analyzer.modify(
        "cap_overrides",
        {"max_weekly_tss_ramp_pct": 20.0, "max_ctl_ramp_per_week": 8.0, "reason": "what-if"},
    )

    assert result.original_value is None
    assert result.new_load_ceiling > result.baseline_load_ceiling
    assert result.load_ceiling_delta == pytest.approx(result.new_load_ceiling - result.baseline_load_ceiling)
    assert result.baseline_load_ceiling == pytest.approx(reachable_load_ceiling(analyzer.baseline_result))


def test_priority_change_reports_goal_delta(analyzer):
    result = analyzer.modify("goals.0.priority", 3)

    assert result.original_value == 8
    assert set(result.goal_score_deltas) == {"spring_race"}
    assert result.plan_score_delta == pytest.approx(result.new_plan_score - result.baseline_plan_score)


def test_profile_change(analyzer):
    result = analyzer.modify("optimization_profile", "sustainable")

    assert result.original_value == "balanced"
    assert result.feasibility_changed == (result.baseline_feasibility != result.new_feasibility)
    assert result.new_feasibility in set(FeasibilityClass)


def test_baseline_request_untouched(analyzer, baseline_request):
    before = baseline_request.model_dump()
    analyzer.modify("goals.0.priority", 2)
    assert baseline_request.model_dump() == before


@pytest.mark.parametrize("path", ["goals.5.priority", "nonexistent.field", "goals.x.priority"])
def test_invalid_path(analyzer, path):
    with pytest.raises(ValueError, match="Invalid path"):
        analyzer.modify(path, 1)


def test_invalid_value_rejected(analyzer):
    """A modified request is revalidated before running."""
    with pytest.raises(ConfigurationError):
        analyzer.modify("goals.0.priority", 42)
