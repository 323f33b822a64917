"""
API Request Models

Pydantic models for API request validation.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from projection_engine.calibration import DEFAULT_CALIBRATION, CalibrationConfig
from projection_engine.schemas import EvidenceBundle, ProjectionRequest, StateSnapshot


class EstimateRequest(BaseModel):
    """Request model for state estimation."""

    evidence: EvidenceBundle = Field(..., description="Evidence bundle to estimate from")
    prior_snapshot: Optional[StateSnapshot] = Field(None, description="Snapshot from a previous run")
    calibration: CalibrationConfig = Field(DEFAULT_CALIBRATION, description="Calibration to use")


class SensitivityRequest(BaseModel):
    """Request model for sensitivity analysis."""

    request: ProjectionRequest = Field(..., description="Baseline projection request")
    path: str = Field(
        ...,
        description="Dot-notation path to modify (e.g., 'cap_overrides', 'goals.0.priority')",
    )
    new_value: Any = Field(..., description="New value for the field")
