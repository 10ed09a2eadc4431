from typing import List

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from core.models import Phase, PHASE_ORDER, RunReport, RunResult, RunStatus
from core.state import config as global_config
from utils.logger import console, logger


def print_phase_results(results: List[RunResult], simulate: bool) -> None:
    """One status line per node, printed when a phase barrier is reached."""
    for res in results:
        if res.status is RunStatus.FAILED:
            logger.log_step("error", f"{res.node}: {escape(res.message)}")
        elif res.status is RunStatus.SKIPPED:
            logger.log_step("skip", f"{res.node}: {escape(res.message)}")
        elif res.changes:
            logger.log_step("changed", f"{res.node}: {escape(res.message)}")
            if global_config.VERBOSITY >= 2:
                verb = "would" if simulate else "did"
                for change in res.changes:
                    console.print(f"         [dim]{verb} {escape(change.action)}[/dim] ({escape(change.resource)})")
        else:
            logger.log_step("success", f"{res.node}: {escape(res.message)}")


def _status_cell(res: RunResult, simulate: bool) -> str:
    if res.status is RunStatus.FAILED:
        return "[error]FAILED[/error]"
    if res.status is RunStatus.SKIPPED:
        return "[skip]SKIPPED[/skip]"
    if res.changes:
        return "[changed]WOULD CHANGE[/changed]" if simulate else "[changed]CHANGED[/changed]"
    return "[success]OK[/success]"


def build_summary_table(report: RunReport) -> Table:
    table = Table(title="Execution Summary", show_lines=False)
    table.add_column("Phase", style="bold")
    table.add_column("Node")
    table.add_column("Role", style="dim")
    table.add_column("Status")
    table.add_column("Changes", justify="right")
    table.add_column("Message", overflow="fold")

    for phase in PHASE_ORDER:
        for res in report.for_phase(phase):
            table.add_row(
                phase.value,
                res.node,
                res.role.value if res.role else "",
                _status_cell(res, report.simulate),
                str(len(res.changes)),
                escape(res.message),
            )
    return table


def remediation_hints(report: RunReport) -> List[str]:
    """Re-run commands that target only the failed nodes of each phase."""
    hints = []
    for phase in PHASE_ORDER:
        failed = [r.node for r in report.for_phase(phase) if r.failed]
        if failed:
            hints.append(f"hakube run --tags {phase.value} --limit {','.join(failed)}")
    return hints


def next_steps(report: RunReport) -> List[str]:
    """Operator guidance printed after a successful real run."""
    steps = []
    phases = {r.phase for r in report.results}
    if Phase.INIT in phases or Phase.POST_CONFIG in phases:
        steps.append("Install a CNI plugin (e.g. Calico or Flannel); nodes stay NotReady until one runs.")
        steps.append("Check the cluster: kubectl get nodes -o wide")
    steps.append("Remove build-time credentials from your shell: unset AF_API_TOKEN CAAS_SA_AF_TOKEN")
    steps.append(
        "Registry credentials remain in /etc/apt/auth.conf.d/hakube-artifactory.conf and "
        "/etc/containerd/config.toml; rotate or remove them once images are mirrored."
    )
    return steps


def render_report(report: RunReport) -> None:
    console.print()
    if report.results:
        console.print(build_summary_table(report))

    if report.aborted:
        console.print(Panel.fit(
            "[warning]Run aborted by operator.[/warning] Nodes may be partially converged; "
            "re-running the same command is safe.",
            border_style="yellow",
        ))

    changes = report.change_count
    if report.simulate:
        console.print(f"\n[bold]🔍 Dry run:[/bold] {changes} change(s) would be applied. Nothing was modified.")
    else:
        console.print(f"\n[bold]📊 Applied:[/bold] {changes} change(s).")

    if report.failures:
        failed = sorted({r.node for r in report.failures})
        console.print(f"[error]❌ Failed ({len(failed)}):[/error] {', '.join(failed)}")
        if report.critical_failures:
            console.print("[error]A control-plane node failed: the cluster is not usable yet.[/error]")
        else:
            console.print("[warning]Only worker nodes failed: the control plane is healthy.[/warning]")
        console.print("\n[bold]Re-run the failed nodes with:[/bold]")
        for hint in remediation_hints(report):
            console.print(f"  {hint}")
        return

    if not report.aborted and not report.simulate:
        console.print("\n[success]✨ Cluster bootstrap completed.[/success]")
        console.print("\n[bold]Next steps:[/bold]")
        for step in next_steps(report):
            console.print(f"  • {step}")
