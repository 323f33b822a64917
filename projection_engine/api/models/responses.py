"""
API Response Models

Pydantic models for API responses.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from projection_engine.projection_schemas import ProjectionResult
from projection_engine.safety import AbsoluteRails
from projection_engine.schemas import FeasibilityClass, LatentState, StateSnapshot
from projection_engine.sensitivity import SensitivityResult


class EstimateResponse(BaseModel):
    """Response for POST /api/estimate."""

    snapshot: StateSnapshot = Field(..., description="Estimated state snapshot")
    latent_state: LatentState = Field(..., description="Seed state the projection would start from")


class ProjectionResponse(BaseModel):
    """Response for POST /api/projections."""

    plan_score: float = Field(..., description="Priority-weighted plan score (0-1)")
    plan_feasibility: FeasibilityClass = Field(..., description="Worst goal feasibility")
    warnings: List[str] = Field(default_factory=list, description="Feasibility limiters and confidence warnings")
    result: ProjectionResult = Field(..., description="Full projection result")


class ProfileInfo(BaseModel):
    """Default caps and solve bounds of one optimization profile."""

    id: str = Field(..., description="Profile ID")
    max_weekly_tss_ramp_pct: float
    max_ctl_ramp_per_week: float
    post_goal_recovery_days: int
    max_weekly_tss_decrease_pct: float
    horizon_weeks: int
    candidate_count: int


class ProfilesListResponse(BaseModel):
    """Response for GET /api/profiles."""

    profiles: List[ProfileInfo] = Field(..., description="Available optimization profiles")
    rails: AbsoluteRails = Field(..., description="Absolute engine rails")
    count: int = Field(..., description="Total number of profiles")


class SensitivityResponse(BaseModel):
    """Response for POST /api/sensitivity."""

    scenario_result: SensitivityResult = Field(..., description="Sensitivity analysis result")
    summary: str = Field(..., description="Human-readable summary")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional details")
