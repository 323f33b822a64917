"""
Tests for run diagnostics: builder, export and persistence.
"""

import json
from datetime import date

import pytest

from projection_engine.diagnostics import (
    DiagnosticsBuilder,
    binding_constraints,
    export_to_json,
    export_to_markdown,
    load_from_file,
    save_to_file,
)
from projection_engine.errors import ConfigurationError
from projection_engine.planner import ProjectionPlanner, load_request
from projection_engine.projection_schemas import ObjectiveBreakdown, SolveBounds, StepDecision
from projection_engine.safety import ActionBounds
from conftest import REQUEST_FIXTURE


# Fixtures

@pytest.fixture(scope="module")
def result():
    """Projection result for the fixture request."""
    with open(REQUEST_FIXTURE, "r") as f:
        request = load_request(json.load(f))
    return ProjectionPlanner(request).run()


@pytest.fixture
def diagnostics(result):
    return result.diagnostics


def _step(selected, min_value=252.0, max_value=449.4):
    return StepDecision(
        week_index=0,
        previous_action=420.0,
        bounds=ActionBounds(
            min_value=min_value,
            max_value=max_value,
            ramp_base=420.0,
            active_constraints=["max_weekly_tss_ramp_pct", "max_weekly_tss_decrease_pct"],
        ),
        solve_bounds=SolveBounds(horizon_weeks=1, candidate_count=3),
        generated_candidates=[min_value, max_value],
        candidates=[],
        evaluated_count=2,
        pruned_count=0,
        selected_value=selected,
        selected_breakdown=ObjectiveBreakdown(),
        tie_break_order=[],
    )


# Test Cases: content


def test_effective_configuration_recorded(diagnostics):
    config = diagnostics.effective_configuration

    assert diagnostics.athlete_id == "athlete_api"
    assert config.plan_start == date(2025, 4, 1)
    assert config.plan_weeks == 4
    assert config.solve_bounds.horizon_weeks == 2
    assert config.solve_bounds.candidate_count == 5
    assert config.calibration["version"] == config.calibration_version
    assert config.rails.max_ctl_ramp_per_week == 8.0


def test_every_step_recorded(diagnostics, result):
    assert len(diagnostics.steps) == len(result.selected_actions)
    for step in diagnostics.steps:
        assert step.evaluated_count == len([c for c in step.candidates])
        assert step.bounds.min_value <= step.selected_value <= step.bounds.max_value
        assert step.candidates[0].rank == 1


def test_confidence_indicators(diagnostics, result):
    confidence = diagnostics.confidence

    assert confidence.evidence_state == result.snapshot.evidence_state
    assert confidence.end_uncertainty > confidence.start_uncertainty
    assert not confidence.low_confidence


def test_binding_constraints_at_upper_bound():
    assert binding_constraints(_step(449.4)) == ["max_weekly_tss_ramp_pct"]
    assert binding_constraints(_step(252.0)) == ["max_weekly_tss_decrease_pct"]
    assert binding_constraints(_step(300.0)) == []


def test_builder_requires_configuration(calibration):
    builder = DiagnosticsBuilder("athlete", calibration)
    with pytest.raises(ValueError, match="must be set"):
        builder.build()


# Test Cases: export


def test_export_to_json(diagnostics):
    data = export_to_json(diagnostics)

    assert data["athlete_id"] == "athlete_api"
    assert data["effective_configuration"]["plan_start"] == "2025-04-01"
    assert len(data["steps"]) == 4
    json.dumps(data)


def test_export_to_markdown(diagnostics):
    markdown = export_to_markdown(diagnostics)

    for heading in (
        "# Projection Diagnostics",
        "## Effective Caps",
        "## Binding Constraints",
        "## Objective Breakdown",
        "## Confidence",
        "## Optimizer Steps",
        "## Decisions",
    ):
        assert heading in markdown
    assert "`athlete_api`" in markdown
    assert "objective_score_desc" in markdown


def test_save_and_load_json(diagnostics, tmp_path):
    path = save_to_file(diagnostics, tmp_path, format="json")

    assert path.name == "diagnostics_athlete_api_20250401.json"
    assert load_from_file(path) == diagnostics


def test_save_markdown(diagnostics, tmp_path):
    path = save_to_file(diagnostics, tmp_path / "reports", format="markdown")

    assert path.suffix == ".md"
    assert path.read_text().startswith("# Projection Diagnostics")


def test_save_unsupported_format(diagnostics, tmp_path):
    with pytest.raises(ValueError, match="Unsupported format"):
        save_to_file(diagnostics, tmp_path, format="xml")


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_from_file(tmp_path / "missing.json")


def test_load_invalid_file(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"athlete_id": "x"}))
    with pytest.raises(ConfigurationError):
        load_from_file(path)
