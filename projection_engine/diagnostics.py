"""
Run diagnostics generation and export.

Diagnostics are the audit trail of one run:
- The effective configuration after overrides and clamping
- Which constraints bound the committed actions
- The signed objective breakdown of the committed actions
- Every optimizer step with its candidates and tie-break order
- Confidence indicators for the starting state

They observe the result; nothing here feeds back into planning.
"""

import json
from datetime import date
from pathlib import Path
from typing import List, Optional

from projection_engine.calibration import CalibrationConfig
from projection_engine.errors import ConfigurationError
from projection_engine.projection_schemas import (
    ConfidenceIndicators,
    DecisionNote,
    EffectiveConfiguration,
    ObjectiveBreakdown,
    ObjectiveWeights,
    RunDiagnostics,
    SolveBounds,
    StepDecision,
    Trajectory,
)
from projection_engine.safety import ABSOLUTE_RAILS, SafetyCaps
from projection_engine.schemas import EvidenceState, OptimizationProfile, ProjectionControl, StateSnapshot


def binding_constraints(step: StepDecision) -> List[str]:
    """Constraints that held the selected value at a bound of its step."""
    bounds = step.bounds
    binding = []
    if step.selected_value >= bounds.max_value - 1e-9:
        binding.extend(c for c in bounds.active_constraints if c != "max_weekly_tss_decrease_pct")
    if step.selected_value <= bounds.min_value + 1e-9 and "max_weekly_tss_decrease_pct" in bounds.active_constraints:
        binding.append("max_weekly_tss_decrease_pct")
    return binding


class DiagnosticsBuilder:
    """
    Builds and exports run diagnostics.

    The builder collects steps and notes as the planner produces them and
    assembles an immutable RunDiagnostics at the end.
    """

    def __init__(self, athlete_id: str, calibration: CalibrationConfig):
        """
        Initialize diagnostics builder.

        Args:
            athlete_id: ID of the athlete being planned
            calibration: Active calibration
        """
        self.athlete_id = athlete_id
        self.calibration = calibration
        self.effective_configuration: Optional[EffectiveConfiguration] = None
        self.confidence: Optional[ConfidenceIndicators] = None
        self.steps: List[StepDecision] = []
        self.notes: List[DecisionNote] = []

    def set_effective_configuration(
        self,
        profile: OptimizationProfile,
        caps: SafetyCaps,
        solve_bounds: SolveBounds,
        objective_weights: ObjectiveWeights,
        availability_tss: Optional[float],
        plan_start: date,
        plan_weeks: int,
        projection_control: Optional[ProjectionControl] = None,
    ) -> None:
        """Record the configuration actually used."""
        self.effective_configuration = EffectiveConfiguration(
            calibration_version=self.calibration.version,
            calibration=self.calibration.model_dump(mode="json"),
            optimization_profile=profile,
            caps=caps,
            rails=ABSOLUTE_RAILS,
            solve_bounds=solve_bounds,
            objective_weights=objective_weights,
            projection_control=projection_control,
            availability_weekly_tss=availability_tss,
            plan_start=plan_start,
            plan_weeks=plan_weeks,
        )

    def add_step(self, step: StepDecision) -> None:
        self.steps.append(step)

    def add_note(
        self,
        decision_point: str,
        input_factors: list,
        reasoning: str,
        outcome: str,
    ) -> None:
        """
        Add a narrated decision.

        Args:
            decision_point: The decision that was made
            input_factors: Factors that influenced this decision
            reasoning: Explanation of the decision
            outcome: The resulting choice
        """
        self.notes.append(DecisionNote(
            decision_point=decision_point,
            input_factors=input_factors,
            reasoning=reasoning,
            outcome=outcome,
        ))

    def set_confidence(self, snapshot: StateSnapshot, trajectory: Trajectory) -> None:
        """Derive confidence indicators from the start snapshot and the trajectory."""
        quality = snapshot.evidence_quality
        low = (
            quality < self.calibration.feasibility.low_confidence
            or snapshot.evidence_state in (EvidenceState.NONE, EvidenceState.STALE)
        )
        self.confidence = ConfidenceIndicators(
            evidence_state=snapshot.evidence_state,
            evidence_quality=quality,
            evidence_days=snapshot.evidence_days,
            ctl_std=snapshot.variables["ctl"].uncertainty,
            start_uncertainty=trajectory.points[0].uncertainty,
            end_uncertainty=trajectory.points[-1].uncertainty,
            low_confidence=low,
        )

    def build(self) -> RunDiagnostics:
        """
        Assemble diagnostics.

        Raises:
            ValueError: If configuration or confidence were never recorded
        """
        if self.effective_configuration is None or self.confidence is None:
            raise ValueError("Effective configuration and confidence must be set before build()")

        binding: List[str] = []
        total = ObjectiveBreakdown()
        for step in self.steps:
            for name in binding_constraints(step):
                if name not in binding:
                    binding.append(name)
            total = total + step.selected_breakdown

        return RunDiagnostics(
            athlete_id=self.athlete_id,
            effective_configuration=self.effective_configuration,
            binding_constraints=binding,
            objective_breakdown=total,
            steps=list(self.steps),
            confidence=self.confidence,
            notes=list(self.notes),
        )


# ============================================================================
# Export
# ============================================================================

def export_to_json(diagnostics: RunDiagnostics) -> dict:
    """
    Export diagnostics to a JSON-serializable dictionary.

    Returns:
        Dictionary representation of the diagnostics
    """
    return diagnostics.model_dump(mode="json")


def export_to_markdown(diagnostics: RunDiagnostics) -> str:
    """
    Export diagnostics to a human-readable Markdown report.

    Returns:
        Markdown-formatted diagnostics report
    """
    config = diagnostics.effective_configuration
    caps = config.caps
    lines = []

    # Header
    lines.append("# Projection Diagnostics")
    lines.append("")
    lines.append(f"**Athlete:** `{diagnostics.athlete_id}`")
    lines.append(f"**Calibration:** `{config.calibration_version}`")
    lines.append(f"**Profile:** `{config.optimization_profile.value}`")
    lines.append(f"**Plan:** {config.plan_weeks} week(s) from {config.plan_start.isoformat()}")
    lines.append("")
    lines.append("---")
    lines.append("")

    # Effective caps
    lines.append("## Effective Caps")
    lines.append("")
    lines.append("| Cap | Value | Rail |")
    lines.append("|-----|-------|------|")
    lines.append(
        f"| Weekly TSS ramp | {caps.max_weekly_tss_ramp_pct:.1f}% | {config.rails.max_weekly_tss_ramp_pct:.1f}% |"
    )
    lines.append(
        f"| CTL ramp / week | {caps.max_ctl_ramp_per_week:.1f} | {config.rails.max_ctl_ramp_per_week:.1f} |"
    )
    lines.append(
        f"| Post-goal recovery | {caps.post_goal_recovery_days} d | {config.rails.max_post_goal_recovery_days} d |"
    )
    lines.append(f"| Weekly TSS | {caps.max_weekly_tss:.0f} | {config.rails.max_weekly_tss:.0f} |")
    lines.append("")
    if caps.overrides_applied:
        lines.append(f"**Overrides:** {', '.join(caps.overrides_applied)} ({caps.override_reason})")
        lines.append("")
    lines.append(
        f"**Solve bounds:** horizon {config.solve_bounds.horizon_weeks} week(s), "
        f"{config.solve_bounds.candidate_count} candidates"
    )
    lines.append("")
    lines.append("---")
    lines.append("")

    # Binding constraints & objective
    lines.append("## Binding Constraints")
    lines.append("")
    if not diagnostics.binding_constraints:
        lines.append("*No constraint bound the committed plan*")
    else:
        for name in diagnostics.binding_constraints:
            lines.append(f"- `{name}`")
    lines.append("")

    lines.append("## Objective Breakdown")
    lines.append("")
    lines.append("| Term | Contribution |")
    lines.append("|------|--------------|")
    breakdown = diagnostics.objective_breakdown
    for term in ("goal", "readiness", "risk", "volatility", "churn", "curvature"):
        lines.append(f"| {term.title()} | {getattr(breakdown, term):+.4f} |")
    lines.append(f"| **Total** | **{breakdown.total:+.4f}** |")
    lines.append("")
    lines.append("---")
    lines.append("")

    # Confidence
    confidence = diagnostics.confidence
    lines.append("## Confidence")
    lines.append("")
    lines.append(f"- **Evidence state:** {confidence.evidence_state.value}")
    lines.append(f"- **Evidence quality:** {confidence.evidence_quality:.2f}")
    lines.append(f"- **CTL std dev:** {confidence.ctl_std:.2f}")
    lines.append(
        f"- **Uncertainty:** {confidence.start_uncertainty:.2f} → {confidence.end_uncertainty:.2f}"
    )
    if confidence.low_confidence:
        lines.append("")
        lines.append("⚠️ **Low confidence:** treat the projection as indicative only.")
    lines.append("")
    lines.append("---")
    lines.append("")

    # Steps
    lines.append("## Optimizer Steps")
    lines.append("")
    lines.append("| Week | Previous | Range | Candidates | Pruned | Selected | Score |")
    lines.append("|------|----------|-------|------------|--------|----------|-------|")
    for step in diagnostics.steps:
        lines.append(
            f"| {step.week_index + 1} | {step.previous_action:.0f} | "
            f"{step.bounds.min_value:.0f}-{step.bounds.max_value:.0f} | {step.evaluated_count} | "
            f"{step.pruned_count} | {step.selected_value:.1f} | {step.selected_breakdown.total:+.3f} |"
        )
    lines.append("")
    if diagnostics.steps:
        lines.append(f"**Tie-break order:** {' → '.join(diagnostics.steps[0].tie_break_order)}")
        lines.append("")

    # Notes
    if diagnostics.notes:
        lines.append("---")
        lines.append("")
        lines.append("## Decisions")
        lines.append("")
        for i, note in enumerate(diagnostics.notes, 1):
            lines.append(f"### Decision {i}: {note.decision_point}")
            lines.append("")
            if note.input_factors:
                lines.append(f"**Input Factors:** {', '.join(note.input_factors)}")
                lines.append("")
            lines.append(f"**Reasoning:** {note.reasoning}")
            lines.append("")
            lines.append(f"**Outcome:** {note.outcome}")
            lines.append("")

    return "\n".join(lines)


def save_to_file(diagnostics: RunDiagnostics, output_dir: Path, format: str = "json") -> Path:
    """
    Save diagnostics to file in the specified format.

    Args:
        diagnostics: Diagnostics to save
        output_dir: Directory to save into
        format: Output format ("json" or "markdown")

    Returns:
        Path to saved file

    Raises:
        ValueError: If format is not supported
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    athlete_id = diagnostics.athlete_id.replace(" ", "_")
    stamp = diagnostics.effective_configuration.plan_start.strftime("%Y%m%d")

    if format == "json":
        filepath = output_dir / f"diagnostics_{athlete_id}_{stamp}.json"
        with open(filepath, "w") as f:
            json.dump(export_to_json(diagnostics), f, indent=2)

    elif format == "markdown":
        filepath = output_dir / f"diagnostics_{athlete_id}_{stamp}.md"
        with open(filepath, "w") as f:
            f.write(export_to_markdown(diagnostics))

    else:
        raise ValueError(f"Unsupported format: {format}. Use 'json' or 'markdown'")

    return filepath


def load_from_file(filepath: Path) -> RunDiagnostics:
    """
    Load diagnostics from a JSON file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ConfigurationError: If the JSON is not valid diagnostics
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Diagnostics file not found: {filepath}")

    with open(filepath, "r") as f:
        data = json.load(f)

    try:
        return RunDiagnostics.model_validate(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid diagnostics file: {e}") from e
