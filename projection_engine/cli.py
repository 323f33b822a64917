"""
Command-line interface for the projection engine.

Provides commands for:
- State estimation from an evidence file
- Full projections with weekly plan, goal scores and diagnostics
- Viewing optimization profiles and their default caps
- What-if sensitivity runs
"""

import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from projection_engine.calibration import CalibrationConfig
from projection_engine.diagnostics import save_to_file
from projection_engine.errors import ProjectionEngineError
from projection_engine.estimator import StateEstimator
from projection_engine.logger import setup_logger
from projection_engine.planner import ProjectionPlanner, load_request
from projection_engine.projection_schemas import ProjectionResult
from projection_engine.safety import ABSOLUTE_RAILS, PROFILE_BOUNDS
from projection_engine.schemas import EvidenceBundle, FeasibilityClass, StateSnapshot
from projection_engine.sensitivity import SensitivityAnalyzer, SensitivityResult

# Initialize Typer app and Rich console
app = typer.Typer(
    help="Training Load Projection Engine - deterministic, cap-aware load planning"
)
console = Console()

FEASIBILITY_COLORS = {
    FeasibilityClass.FEASIBLE: "green",
    FeasibilityClass.AGGRESSIVE: "yellow",
    FeasibilityClass.UNSAFE: "red",
}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional rotating log file"),
):
    """Configure logging for every command."""
    setup_logger(level=log_level.upper(), log_file=log_file)


# ===== DISPLAY HELPER FUNCTIONS =====


def _load_json(path: Path, what: str) -> Any:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]✗ Failed to load {what}: {e}[/red]")
        raise typer.Exit(1)


def _display_snapshot(snapshot: StateSnapshot):
    """
    Display a state snapshot as a table.

    Args:
        snapshot: Estimated snapshot
    """
    console.print(
        f"\n[bold]State as of {snapshot.as_of}[/bold] "
        f"(evidence: {snapshot.evidence_state.value}, quality {snapshot.evidence_quality:.2f}, "
        f"{snapshot.evidence_days} day(s))\n"
    )

    table = Table(title="Latent State", box=box.ROUNDED)
    table.add_column("Variable", style="cyan")
    table.add_column("Mean", justify="right")
    table.add_column("Std Dev", justify="right", style="yellow")
    table.add_column("Evidence Quality", justify="right")

    for name, estimate in snapshot.variables.items():
        table.add_row(
            name.replace("_", " ").title(),
            f"{estimate.mean:.2f}",
            f"±{estimate.uncertainty:.2f}",
            f"{estimate.evidence_quality:.2f}",
        )

    console.print(table)
    console.print(f"  Last 7 days load: {snapshot.last_week_load:.0f} TSS")


def _display_result(result: ProjectionResult):
    """
    Display weekly plan, goal scores and feasibility.

    Args:
        result: ProjectionResult from the planner
    """
    color = FEASIBILITY_COLORS[result.plan_feasibility]
    console.print(
        f"\n✓ Projected [green]{len(result.selected_actions)}-week plan[/green] from {result.plan_start}"
    )
    console.print(
        f"  Plan score: [bold]{result.plan_score:.3f}[/bold]  "
        f"Feasibility: [{color}]{result.plan_feasibility.value}[/{color}]\n"
    )
    control = result.diagnostics.effective_configuration.projection_control
    if control is not None:
        console.print(
            f"  Controls: ambition {control.ambition:g}, risk tolerance {control.risk_tolerance:g}, "
            f"curvature {control.curvature:+g}\n"
        )

    table = Table(title="Weekly Plan", box=box.ROUNDED)
    table.add_column("Week", justify="right", style="cyan")
    table.add_column("Start")
    table.add_column("Planned TSS", justify="right")
    table.add_column("Applied TSS", justify="right")
    table.add_column("CTL", justify="right")
    table.add_column("CTL Ramp", justify="right")
    table.add_column("Cap Usage", justify="right", style="yellow")

    for week in result.trajectory.weeks:
        table.add_row(
            str(week.week_index + 1),
            str(week.start_date),
            f"{week.planned_tss:.0f}",
            f"{week.applied_tss:.0f}",
            f"{week.ctl_end:.1f}",
            f"{week.ctl_ramp:+.2f}",
            f"{week.cap_usage:.0%}",
        )
    console.print(table)

    if result.goal_scores:
        goals = Table(title="Goals", box=box.ROUNDED)
        goals.add_column("Goal", style="cyan")
        goals.add_column("Date")
        goals.add_column("Priority", justify="right")
        goals.add_column("Score", justify="right")
        goals.add_column("Reachable CTL", justify="right")
        goals.add_column("Feasibility")
        goals.add_column("Limiters")
        for score in result.goal_scores:
            f = score.feasibility
            c = FEASIBILITY_COLORS[f.classification]
            goals.add_row(
                score.name or score.goal_id,
                str(score.target_date),
                f"{score.priority:g}",
                f"{score.score:.2f}",
                f"{f.reachable_ctl:.1f}" if f.reachable_ctl is not None else "-",
                f"[{c}]{f.classification.value}[/{c}] ({f.band}, ±{f.uncertainty_pct:.0%})",
                ", ".join(f.limiters) or "-",
            )
        console.print(goals)

        for score in result.goal_scores:
            for rec in score.feasibility.recommendations:
                console.print(f"  • {rec}")

    confidence = result.diagnostics.confidence
    if confidence.low_confidence:
        console.print(
            Panel(
                f"Evidence is {confidence.evidence_state.value} (quality {confidence.evidence_quality:.2f}). "
                "Treat this projection as indicative only.",
                title="Low Confidence",
                border_style="yellow",
            )
        )

    if result.diagnostics.binding_constraints:
        console.print(
            f"\n[bold]Binding constraints:[/bold] {', '.join(result.diagnostics.binding_constraints)}"
        )


def _display_sensitivity_result(scenario: SensitivityResult):
    """
    Display sensitivity analysis results with deltas.

    Args:
        scenario: SensitivityResult from analyzer
    """
    console.print("\n[bold]SCENARIO RESULTS[/bold]")
    console.print(f"Modified: {scenario.modified_path} ({scenario.original_value} → {scenario.new_value})\n")

    delta = scenario.plan_score_delta
    delta_color = "green" if delta >= 0 else "red"
    console.print(
        f"Plan score: {scenario.baseline_plan_score:.3f} → {scenario.new_plan_score:.3f} "
        f"([{delta_color}]Δ {delta:+.3f}[/{delta_color}])"
    )
    console.print(
        f"Load ceiling: {scenario.baseline_load_ceiling:.0f} → {scenario.new_load_ceiling:.0f} TSS/week"
    )
    console.print(
        f"Peak weekly load: {scenario.baseline_peak_weekly_load:.0f} → {scenario.new_peak_weekly_load:.0f}"
    )
    changed = "changed" if scenario.feasibility_changed else "unchanged"
    console.print(
        f"Feasibility: {scenario.baseline_feasibility.value} → {scenario.new_feasibility.value} ({changed})"
    )
    for goal_id, goal_delta in scenario.goal_score_deltas.items():
        console.print(f"  {goal_id}: {goal_delta:+.3f}")


# ===== CLI COMMANDS =====


@app.command()
def estimate(
    evidence: Path = typer.Option(
        ...,
        "--evidence",
        "-e",
        help="Path to evidence bundle JSON file",
        exists=True,
    ),
    prior: Optional[Path] = typer.Option(
        None,
        "--prior",
        help="Path to a prior state snapshot JSON file",
        exists=True,
    ),
    calibration: Path = typer.Option(
        Path("models/calibration_v1.json"),
        "--calibration",
        "-c",
        help="Path to calibration JSON file",
    ),
    save_snapshot: Optional[Path] = typer.Option(
        None,
        "--save-snapshot",
        help="Write the resulting snapshot to this file",
    ),
):
    """
    Estimate latent state (CTL, ATL, durability, readiness) from evidence.
    """
    try:
        config = CalibrationConfig.from_file(calibration) if calibration.exists() else CalibrationConfig()
        bundle = EvidenceBundle.model_validate(_load_json(evidence, "evidence"))
        prior_snapshot = (
            StateSnapshot.model_validate(_load_json(prior, "prior snapshot")) if prior else None
        )
        snapshot = StateEstimator(config).estimate(bundle, prior_snapshot)
    except (ProjectionEngineError, ValueError) as e:
        console.print(f"[red]✗ Estimation failed: {e}[/red]")
        raise typer.Exit(1)

    _display_snapshot(snapshot)

    if save_snapshot:
        save_snapshot.parent.mkdir(parents=True, exist_ok=True)
        with open(save_snapshot, "w") as f:
            json.dump(snapshot.model_dump(mode="json"), f, indent=2)
        console.print(f"\n✓ Snapshot saved: [cyan]{save_snapshot}[/cyan]")


@app.command()
def project(
    request: Path = typer.Option(
        ...,
        "--request",
        "-r",
        help="Path to projection request JSON file",
        exists=True,
    ),
    save_diagnostics: bool = typer.Option(
        False,
        "--save-diagnostics/--no-diagnostics",
        help="Save run diagnostics to file",
    ),
    diagnostics_format: str = typer.Option(
        "json",
        "--diagnostics-format",
        "-f",
        help="Diagnostics output format (json or markdown)",
    ),
    output_dir: Path = typer.Option(
        Path("diagnostics_logs"),
        "--output-dir",
        "-o",
        help="Directory for diagnostics and snapshot files",
    ),
):
    """
    Project a training load plan toward the request's goals.
    """
    console.print("\n[bold cyan]Training Load Projection[/bold cyan]\n")

    try:
        projection_request = load_request(_load_json(request, "request"))
        result = ProjectionPlanner(projection_request).run()
    except ProjectionEngineError as e:
        console.print(f"[red]✗ Projection failed: {e}[/red]")
        raise typer.Exit(1)

    _display_result(result)

    if save_diagnostics:
        try:
            path = save_to_file(result.diagnostics, output_dir, format=diagnostics_format)
        except ValueError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(1)
        console.print(f"\n✓ Diagnostics saved: [cyan]{path}[/cyan]")


@app.command()
def profiles():
    """
    View optimization profiles, their default caps and the absolute rails.
    """
    table = Table(title="Optimization Profiles", box=box.ROUNDED)
    table.add_column("Profile", style="cyan")
    table.add_column("TSS Ramp", justify="right")
    table.add_column("CTL Ramp/wk", justify="right")
    table.add_column("Recovery", justify="right")
    table.add_column("Max Decrease", justify="right")
    table.add_column("Horizon", justify="right")
    table.add_column("Candidates", justify="right")

    for profile, bounds in PROFILE_BOUNDS.items():
        table.add_row(
            profile.value,
            f"{bounds.max_weekly_tss_ramp_pct:.0f}%",
            f"{bounds.max_ctl_ramp_per_week:.1f}",
            f"{bounds.post_goal_recovery_days} d",
            f"{bounds.max_weekly_tss_decrease_pct:.0f}%",
            f"{bounds.horizon_weeks} wk",
            str(bounds.candidate_count),
        )
    console.print(table)

    rails = ABSOLUTE_RAILS
    console.print(
        Panel(
            f"Weekly TSS ramp ≤ {rails.max_weekly_tss_ramp_pct:.0f}%   "
            f"CTL ramp ≤ {rails.max_ctl_ramp_per_week:.0f}/week   "
            f"Weekly TSS ≤ {rails.max_weekly_tss:.0f}   CTL ≤ {rails.max_ctl:.0f}\n"
            f"Plan ≤ {rails.max_plan_weeks} weeks   Session ≤ {rails.max_session_hours:.0f} h   "
            f"Sessions/day ≤ {rails.max_sessions_per_day}   "
            f"Horizon {rails.min_horizon_weeks}-{rails.max_horizon_weeks} weeks   "
            f"Candidates {rails.min_candidate_count}-{rails.max_candidate_count}",
            title="Absolute Rails (not configurable)",
            border_style="red",
        )
    )


@app.command()
def what_if(
    request: Path = typer.Option(
        ...,
        "--request",
        "-r",
        help="Path to projection request JSON file",
        exists=True,
    ),
    path: str = typer.Option(
        ...,
        "--path",
        help="Dot-notation path to modify (e.g., 'optimization_profile', 'goals.0.priority')",
    ),
    value: str = typer.Option(
        ...,
        "--value",
        help="New value (parsed as JSON when possible)",
    ),
):
    """
    Sensitivity analysis ("what-if" scenario) on one request field.
    """
    console.print("\n[bold cyan]Sensitivity Analysis[/bold cyan]\n")

    try:
        new_value = json.loads(value)
    except json.JSONDecodeError:
        new_value = value

    try:
        baseline_request = load_request(_load_json(request, "request"))
        analyzer = SensitivityAnalyzer(baseline_request)
        scenario = analyzer.modify(path, new_value)
    except (ProjectionEngineError, ValueError) as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(1)

    _display_sensitivity_result(scenario)


if __name__ == "__main__":
    app()
