#!/usr/bin/env python3
"""
Quick start script to demonstrate the Training Load Projection Engine.

This script shows the complete workflow:
1. Load a projection request (evidence, goals, profile)
2. Estimate the starting state
3. Project a weekly load plan within the safety caps
4. Review goal feasibility and diagnostics
5. Perform sensitivity analysis
"""

import json
from pathlib import Path

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from projection_engine.diagnostics import save_to_file
from projection_engine.estimator import StateEstimator, to_latent_state
from projection_engine.planner import ProjectionPlanner, load_request
from projection_engine.sensitivity import SensitivityAnalyzer

console = Console()


def print_header(title: str):
    """Print a formatted header."""
    console.print(f"\n[bold cyan]{title}[/bold cyan]")
    console.print("=" * len(title))


def main():
    """Run the complete demonstration workflow."""
    console.print("\n[bold magenta]Training Load Projection Engine[/bold magenta]")
    console.print("[dim]Demonstration of complete workflow[/dim]\n")

    # ===== STEP 1: Load Request =====
    print_header("Step 1: Load Projection Request")

    request_path = Path("tests/fixtures/projection_request.json")
    with open(request_path) as f:
        request = load_request(json.load(f))

    console.print(f"✓ Loaded: [green]{request.evidence.athlete_id}[/green]")
    console.print(f"  Evidence through: {request.evidence.as_of}")
    console.print(f"  Activities: {len(request.evidence.activities)}")
    console.print(f"  Profile: {request.optimization_profile.value}")
    for goal in request.goals:
        console.print(f"  Goal: {goal.name or goal.id} on {goal.target_date} (priority {goal.priority:g})")

    # ===== STEP 2: Estimate State =====
    print_header("Step 2: Estimate Starting State")

    snapshot = StateEstimator(request.calibration).estimate(request.evidence, request.prior_snapshot)
    state = to_latent_state(snapshot, request.calibration)

    console.print(f"✓ Evidence: [green]{snapshot.evidence_state.value}[/green] (quality {snapshot.evidence_quality:.2f})")
    console.print(f"  CTL {state.ctl:.1f}  ATL {state.atl:.1f}  TSB {state.tsb:+.1f}")
    console.print(f"  Durability {state.durability:.2f}  Uncertainty {state.uncertainty:.2f}")

    # ===== STEP 3: Project Plan =====
    print_header("Step 3: Project Weekly Plan")

    result = ProjectionPlanner(request).run()

    table = Table(title="Weekly Plan", box=box.ROUNDED)
    table.add_column("Week", justify="right", style="cyan")
    table.add_column("TSS", justify="right")
    table.add_column("CTL", justify="right")
    table.add_column("Cap Usage", justify="right", style="yellow")
    for week in result.trajectory.weeks:
        table.add_row(
            str(week.week_index + 1),
            f"{week.applied_tss:.0f}",
            f"{week.ctl_end:.1f}",
            f"{week.cap_usage:.0%}",
        )
    console.print(table)
    console.print(f"\n[bold]Plan score: {result.plan_score:.3f}[/bold]")

    # ===== STEP 4: Feasibility & Diagnostics =====
    print_header("Step 4: Goal Feasibility")

    for score in result.goal_scores:
        feasibility = score.feasibility
        console.print(
            f"  {score.goal_id}: score {score.score:.2f}, "
            f"[yellow]{feasibility.classification.value}[/yellow] ({feasibility.band})"
        )
        for rec in feasibility.recommendations:
            console.print(f"    • {rec}")

    binding = result.diagnostics.binding_constraints
    console.print(f"\n  Binding constraints: {', '.join(binding) if binding else 'none'}")

    diagnostics_path = save_to_file(result.diagnostics, Path("diagnostics_logs"), format="markdown")
    console.print(f"\n✓ Diagnostics saved to: [cyan]{diagnostics_path}[/cyan]")

    # ===== STEP 5: Sensitivity Analysis =====
    print_header("Step 5: Sensitivity Analysis")

    console.print("[dim]Testing 'what-if' scenarios...[/dim]\n")

    analyzer = SensitivityAnalyzer(request, result)

    console.print("[bold]Scenario 1: Sustainable Profile[/bold]")
    scenario1 = analyzer.modify("optimization_profile", "sustainable")
    console.print(f"  Plan Score: {scenario1.baseline_plan_score:.3f} → {scenario1.new_plan_score:.3f}")
    console.print(f"  Peak Load: {scenario1.baseline_peak_weekly_load:.0f} → {scenario1.new_peak_weekly_load:.0f}")

    console.print("\n[bold]Scenario 2: Lower Goal Priority (8 → 4)[/bold]")
    scenario2 = analyzer.modify("goals.0.priority", 4)
    console.print(f"  Plan Score: {scenario2.baseline_plan_score:.3f} → {scenario2.new_plan_score:.3f}")
    console.print(f"  Feasibility Changed: {scenario2.feasibility_changed}")

    # ===== COMPLETION =====
    console.print("\n")
    panel = Panel(
        "[green]✓[/green] Demonstration complete!\n\n"
        "The engine:\n"
        "  1. Estimated state from the evidence\n"
        "  2. Projected a capped weekly plan\n"
        "  3. Scored goals and classified feasibility\n"
        "  4. Performed sensitivity analysis\n\n"
        "Run diagnostics are in diagnostics_logs/.",
        title="[bold green]Success[/bold green]",
        border_style="green"
    )
    console.print(panel)

    console.print("\n[bold cyan]Next Steps:[/bold cyan]")
    console.print("  • Run CLI: projection-engine project --request <request.json>")
    console.print("  • Start API: uvicorn projection_engine.api.main:app")
    console.print("  • Run tests: python3 -m pytest\n")


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        console.print("\n[dim]Run from the repository root after: pip install -e .[/dim]")
        raise
