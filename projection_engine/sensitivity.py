"""
Sensitivity analysis for exploring "what-if" scenarios.

Modifies one field of a projection request and compares:
- Plan score and per-goal scores
- Plan feasibility classification
- Reachable load ceiling (the highest weekly load the caps admitted)
- Peak committed weekly load
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from projection_engine.planner import ProjectionPlanner, load_request
from projection_engine.projection_schemas import ProjectionResult
from projection_engine.schemas import FeasibilityClass, ProjectionRequest


def reachable_load_ceiling(result: ProjectionResult) -> float:
    """Largest upper bound any optimizer step could select."""
    steps = result.diagnostics.steps
    if not steps:
        return 0.0
    return max(step.bounds.max_value for step in steps)


class SensitivityResult(BaseModel):
    """
    Result of a sensitivity analysis comparing baseline to modified scenario.

    Documents how a single request change affects scores, feasibility and load.
    """

    modified_path: str = Field(
        ..., description="Dot-notation path that was modified (e.g., 'cap_overrides.max_ctl_ramp_per_week')"
    )
    original_value: Any = Field(None, description="Original value before modification")
    new_value: Any = Field(..., description="New value after modification")

    baseline_plan_score: float = Field(..., ge=0.0, le=1.0)
    new_plan_score: float = Field(..., ge=0.0, le=1.0)
    plan_score_delta: float

    baseline_feasibility: FeasibilityClass
    new_feasibility: FeasibilityClass
    feasibility_changed: bool = False

    baseline_load_ceiling: float
    new_load_ceiling: float
    load_ceiling_delta: float

    baseline_peak_weekly_load: float
    new_peak_weekly_load: float

    goal_score_deltas: Dict[str, float] = Field(default_factory=dict)


class SensitivityAnalyzer:
    """
    Re-runs the planner on a modified request.

    Supports interactive "what-if" exploration:
    - "What if I allow a 5 CTL/week ramp?"
    - "What if I move my race two weeks later?"
    - "What if I switch to the sustainable profile?"
    """

    def __init__(
        self,
        baseline_request: ProjectionRequest,
        baseline_result: Optional[ProjectionResult] = None,
    ):
        """
        Initialize the sensitivity analyzer.

        Args:
            baseline_request: Original request
            baseline_result: Original result (computed when omitted)
        """
        self.baseline_request = baseline_request
        self.baseline_result = baseline_result or ProjectionPlanner(baseline_request).run()

    def modify(self, path: str, new_value: Any) -> SensitivityResult:
        """
        Modify a single request field and analyze the impact.

        Args:
            path: Dot-notation path into the request (list items by index,
                e.g. 'goals.0.priority'); missing optional sections are created
            new_value: New value for the field

        Returns:
            SensitivityResult comparing baseline and modified runs

        Raises:
            ValueError: If the path is invalid
            ConfigurationError: If the modified request fails validation
        """
        data = self.baseline_request.model_dump(by_alias=True)
        original_value = self._get_nested_field(data, path)
        self._set_nested_field(data, path, new_value)

        modified_request = load_request(data)
        new_result = ProjectionPlanner(modified_request).run()
        baseline = self.baseline_result

        baseline_goals = {g.goal_id: g.score for g in baseline.goal_scores}
        goal_deltas = {
            g.goal_id: g.score - baseline_goals[g.goal_id]
            for g in new_result.goal_scores
            if g.goal_id in baseline_goals
        }

        baseline_ceiling = reachable_load_ceiling(baseline)
        new_ceiling = reachable_load_ceiling(new_result)

        return SensitivityResult(
            modified_path=path,
            original_value=original_value,
            new_value=new_value,
            baseline_plan_score=baseline.plan_score,
            new_plan_score=new_result.plan_score,
            plan_score_delta=new_result.plan_score - baseline.plan_score,
            baseline_feasibility=baseline.plan_feasibility,
            new_feasibility=new_result.plan_feasibility,
            feasibility_changed=baseline.plan_feasibility != new_result.plan_feasibility,
            baseline_load_ceiling=baseline_ceiling,
            new_load_ceiling=new_ceiling,
            load_ceiling_delta=new_ceiling - baseline_ceiling,
            baseline_peak_weekly_load=baseline.trajectory.max_weekly_load(),
            new_peak_weekly_load=new_result.trajectory.max_weekly_load(),
            goal_score_deltas=goal_deltas,
        )

    def _get_nested_field(self, data: Any, path: str) -> Any:
        """
        Get a nested value using dot notation.

        Returns None when an optional section along the path is unset.

        Raises:
            ValueError: If path is invalid
        """
        current = data
        for part in path.split("."):
            if current is None:
                return None
            current = self._step(current, part, path)
        return current

    def _set_nested_field(self, data: Any, path: str, value: Any) -> None:
        """
        Set a nested value using dot notation.

        Raises:
            ValueError: If path is invalid
        """
        parts = path.split(".")
        current = data

        # Traverse to the parent of the target field
        for part in parts[:-1]:
            if isinstance(current, dict) and current.get(part) is None and part in current:
                current[part] = {}
            current = self._step(current, part, path)

        final_field = parts[-1]
        if isinstance(current, list):
            index = self._index(current, final_field, path)
            current[index] = value
        elif isinstance(current, dict):
            current[final_field] = value
        else:
            raise ValueError(f"Invalid path: {path} (no field '{final_field}')")

    def _step(self, current: Any, part: str, path: str) -> Any:
        if isinstance(current, list):
            return current[self._index(current, part, path)]
        if isinstance(current, dict) and part in current:
            return current[part]
        raise ValueError(f"Invalid path: {path} (failed at '{part}')")

    @staticmethod
    def _index(items: List[Any], part: str, path: str) -> int:
        if not part.isdigit() or int(part) >= len(items):
            raise ValueError(f"Invalid path: {path} (bad index '{part}')")
        return int(part)
