"""
Projection API Routes

Endpoints for state estimation and load projections.
"""

from fastapi import APIRouter, HTTPException, status

from projection_engine.api.models.requests import EstimateRequest
from projection_engine.api.models.responses import EstimateResponse, ProjectionResponse
from projection_engine.errors import (
    ConfigurationError,
    InvariantViolationError,
    ProjectionEngineError,
    ProjectionInputError,
)
from projection_engine.estimator import StateEstimator, to_latent_state
from projection_engine.planner import ProjectionPlanner
from projection_engine.schemas import ProjectionRequest

router = APIRouter()


def engine_http_error(e: ProjectionEngineError) -> HTTPException:
    """Map an engine error to its HTTP status."""
    if isinstance(e, (ConfigurationError, ProjectionInputError)):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": type(e).__name__, "message": str(e)},
        )
    if isinstance(e, InvariantViolationError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": e.code, "message": str(e), "details": e.details},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": type(e).__name__, "message": str(e)},
    )


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_state(request: EstimateRequest) -> EstimateResponse:
    """
    Estimate latent state from evidence and an optional prior snapshot.

    Raises:
        HTTPException: 422 on inconsistent prior or input, 500 on unexpected failure
    """
    try:
        snapshot = StateEstimator(request.calibration).estimate(request.evidence, request.prior_snapshot)
        return EstimateResponse(
            snapshot=snapshot,
            latent_state=to_latent_state(snapshot, request.calibration),
        )
    except ProjectionEngineError as e:
        raise engine_http_error(e)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"State estimation failed: {str(e)}",
        )


@router.post("/projections", response_model=ProjectionResponse)
async def create_projection(request: ProjectionRequest) -> ProjectionResponse:
    """
    Project a training load plan.

    Complete workflow:
    1. Estimate starting state
    2. Choose weekly loads within the effective caps
    3. Score goals and classify feasibility
    4. Return trajectory, scores, new snapshot and diagnostics

    Raises:
        HTTPException: 422 on configuration errors, 409 on rail violations,
            500 on unexpected failure
    """
    try:
        result = ProjectionPlanner(request).run()

        warnings = []
        for goal_score in result.goal_scores:
            for limiter in goal_score.feasibility.limiters:
                warnings.append(f"{goal_score.goal_id}: {limiter}")
        if result.diagnostics.confidence.low_confidence:
            warnings.append("low_confidence")

        return ProjectionResponse(
            plan_score=result.plan_score,
            plan_feasibility=result.plan_feasibility,
            warnings=warnings,
            result=result,
        )
    except HTTPException:
        raise
    except ProjectionEngineError as e:
        raise engine_http_error(e)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Projection failed: {str(e)}",
        )
