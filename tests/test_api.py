"""
Tests for the FastAPI application.
"""

import pytest
from fastapi.testclient import TestClient

from projection_engine.api.main import app
from projection_engine.errors import InvariantViolationError


async def _rail_breach():
    raise InvariantViolationError("TSS_RAMP_RAIL", ["week 0 ramps past the rail"])


app.add_api_route("/api/rail-breach", _rail_breach)


# Fixtures

@pytest.fixture(scope="module")
def client():
    return TestClient(app)


# Test Cases: metadata


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "projection-engine-api",
        "calibration_version": "2025.1",
    }


def test_root(client):
    data = client.get("/").json()
    assert data["health"] == "/health"
    assert data["calibration_version"] == "2025.1"


def test_engine_error_outside_route_handling_keeps_status(client):
    """An engine error a route does not catch still maps to its typed status."""
    response = client.get("/api/rail-breach")

    assert response.status_code == 409
    assert response.json()["error"] == "TSS_RAMP_RAIL"


def test_list_profiles(client):
    response = client.get("/api/profiles")
    data = response.json()

    assert response.status_code == 200
    assert data["count"] == 3
    assert {p["id"] for p in data["profiles"]} == {"outcome_first", "balanced", "sustainable"}
    assert data["rails"]["max_ctl_ramp_per_week"] == 8.0


# Test Cases: projections


def test_create_projection(client, request_data):
    response = client.post("/api/projections", json=request_data)
    data = response.json()

    assert response.status_code == 200
    assert data["plan_feasibility"] in {"feasible", "aggressive", "unsafe"}
    assert 0.0 <= data["plan_score"] <= 1.0
    assert len(data["result"]["selected_actions"]) == 4
    assert data["result"]["snapshot"]["athlete_id"] == "athlete_api"
    assert data["result"]["goal_scores"][0]["goal_id"] == "spring_race"


def test_projection_cap_override_beyond_rail(client, request_data):
    """Overrides past the absolute rails are rejected as configuration errors."""
    request_data["cap_overrides"] = {"max_weekly_tss_ramp_pct": 35.0, "reason": "too far"}

    response = client.post("/api/projections", json=request_data)

    assert response.status_code == 422
    assert response.json()["error"] == "ConfigurationError"


def test_projection_goal_in_past(client, request_data):
    request_data["goals"][0]["target_date"] = "2025-03-01"

    response = client.post("/api/projections", json=request_data)

    assert response.status_code == 422
    assert "before plan start" in response.json()["message"]


def test_projection_invalid_body(client):
    response = client.post("/api/projections", json={"goals": []})
    assert response.status_code == 422


def test_projection_unbalanced_calibration_rejected(client, request_data):
    request_data["calibration"] = {"composite_weights": {"fitness": 0.9}}
    response = client.post("/api/projections", json=request_data)
    assert response.status_code == 422


# Test Cases: estimation


def test_estimate(client, request_data):
    response = client.post("/api/estimate", json={"evidence": request_data["evidence"]})
    data = response.json()

    assert response.status_code == 200
    assert data["snapshot"]["evidence_state"] == "rich"
    assert data["latent_state"]["ctl"] == data["snapshot"]["variables"]["ctl"]["mean"]


def test_estimate_prior_newer_than_evidence(client, request_data):
    evidence = request_data["evidence"]
    prior = client.post("/api/estimate", json={"evidence": evidence}).json()["snapshot"]
    older = dict(
        evidence,
        as_of="2025-03-20",
        activities=[a for a in evidence["activities"] if a["date"] <= "2025-03-20"],
    )

    response = client.post("/api/estimate", json={"evidence": older, "prior_snapshot": prior})

    assert response.status_code == 422
    assert response.json()["error"] == "ProjectionInputError"


# Test Cases: sensitivity


def test_sensitivity(client, request_data):
    response = client.post(
        "/api/sensitivity",
        json={"request": request_data, "path": "goals.0.priority", "new_value": 4},
    )
    data = response.json()

    assert response.status_code == 200
    assert data["scenario_result"]["modified_path"] == "goals.0.priority"
    assert "Plan score changed" in data["summary"]


def test_sensitivity_invalid_path(client, request_data):
    response = client.post(
        "/api/sensitivity",
        json={"request": request_data, "path": "goals.9.priority", "new_value": 4},
    )
    assert response.status_code == 400
    assert "Invalid path" in response.json()["message"]
