"""
Sensitivity Analysis API Routes

Endpoints for what-if scenario analysis.
"""

from fastapi import APIRouter, HTTPException, status

from projection_engine.api.models.requests import SensitivityRequest
from projection_engine.api.models.responses import SensitivityResponse
from projection_engine.api.routes.projections import engine_http_error
from projection_engine.errors import ProjectionEngineError
from projection_engine.sensitivity import SensitivityAnalyzer

router = APIRouter()


@router.post("/sensitivity", response_model=SensitivityResponse)
async def analyze_sensitivity(request: SensitivityRequest) -> SensitivityResponse:
    """
    Perform sensitivity analysis (what-if scenario).

    Explores how changing a single request field affects:
    - Plan and goal scores
    - Feasibility classification
    - Reachable load ceiling

    Raises:
        HTTPException: 400 on an invalid path, engine errors by type, 500 otherwise
    """
    try:
        analyzer = SensitivityAnalyzer(request.request)

        try:
            scenario_result = analyzer.modify(request.path, request.new_value)
        except ProjectionEngineError:
            raise
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid path or value: {str(e)}",
            )

        summary_parts = [
            f"Modified {request.path}: {scenario_result.original_value} → {scenario_result.new_value}",
            f"Plan score changed by {scenario_result.plan_score_delta:+.3f}",
            f"Load ceiling {scenario_result.baseline_load_ceiling:.0f} → {scenario_result.new_load_ceiling:.0f}",
        ]
        if scenario_result.feasibility_changed:
            summary_parts.append(f"Feasibility changed to {scenario_result.new_feasibility.value}")

        return SensitivityResponse(
            scenario_result=scenario_result,
            summary=". ".join(summary_parts),
        )

    except HTTPException:
        raise
    except ProjectionEngineError as e:
        raise engine_http_error(e)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sensitivity analysis failed: {str(e)}",
        )
