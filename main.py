import signal
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import find_dotenv, load_dotenv
from rich import print as rprint
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

import inventory as inventory_model
from core.dryrun import DryRunExecutor
from core.engine import PhaseController
from core.errors import ConfigError, HakubeError
from core.executor import RemoteExecutor
from core.models import PHASE_ORDER
from core.registry import TAG_ALIASES, select_phases
from core.report import render_report
from core.settings import load_settings
from core.state import config as global_config
from utils.logger import console, setup_logging, sys_logger

app = typer.Typer(
    help="hakube - HA Kubernetes cluster bootstrap (kubeadm + kube-vip)",
    add_completion=True,
    no_args_is_help=True
)

USAGE_EXAMPLES = """\
[bold]Full dry run[/bold]
  hakube run --check

[bold]Dry run of the preparation only[/bold]
  hakube run --check --tags prep

[bold]Join every node (masters + workers)[/bold]
  hakube run --tags join

[bold]Everything except preparation[/bold]
  hakube run --skip-tags prep

[bold]Only the control-plane nodes, verbose[/bold]
  hakube run --limit masters -v

[bold]Phased rollout (recommended the first time)[/bold]
  hakube run --check --tags prep     # 1. review the preparation
  hakube run --tags prep             # 2. prepare every node
  hakube run --tags init             # 3. initialize the cluster
  hakube run --tags master-join      # 4. add control planes
  hakube run --tags worker-join      # 5. add workers
  hakube run --tags post-config      # 6. final configuration
"""


def _split(values: Optional[List[str]]) -> List[str]:
    """Accepts both '-t a -t b' and '-t a,b'."""
    out = []
    for value in values or []:
        out.extend(v.strip() for v in value.split(",") if v.strip())
    return out


def _fail(error: HakubeError) -> None:
    """Prints an error with its remedial hint and exits 1."""
    rprint(f"[bold red]❌ {escape(str(error))}[/bold red]")
    if isinstance(error, ConfigError) and error.missing:
        for key in error.missing:
            rprint(f"   - {key}")
    if error.hint:
        rprint(f"\n💡 {error.hint}")
    sys_logger.error(f"Aborted before contacting nodes: {error}")
    raise typer.Exit(code=1)


def _load(config_file: Path, config_explicit: bool, inventory_file: Path):
    try:
        cluster_config, executor_settings, provenance = load_settings(str(config_file), explicit=config_explicit)
        topology = inventory_model.load_inventory(str(inventory_file))
    except HakubeError as e:
        _fail(e)
    return cluster_config, executor_settings, provenance, topology


def _print_topology(topology: inventory_model.Inventory, limit: Optional[str] = None) -> None:
    selected = {n.name for n in topology.select(limit)}
    table = Table(title="Topology")
    table.add_column("Node", style="bold")
    table.add_column("Role")
    table.add_column("Address")
    table.add_column("Selected", justify="center")
    for node in topology.nodes:
        table.add_row(node.name, node.role.value, node.address, "✔" if node.name in selected else "[dim]-[/dim]")
    console.print(table)


def _print_config(cluster_config, provenance) -> None:
    table = Table(title="Configuration")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_column("Source", style="dim")
    for key, value in cluster_config.summary().items():
        if value == "" and key not in provenance:
            continue
        table.add_row(key, str(value), provenance.get(key, ""))
    console.print(table)


@app.callback()
def main(
        ctx: typer.Context,
        env_file: Optional[Path] = typer.Option(
            None, "--env-file",
            help="Load environment variables from this file (defaults to ./.env when present).",
            dir_okay=False
        )
):
    """
    hakube CLI.
    Common entry point for all commands.
    """
    if env_file is not None and not env_file.exists():
        rprint(f"[bold red]❌ Env file not found: {env_file}[/bold red]")
        raise typer.Exit(code=1)
    load_dotenv(dotenv_path=env_file or find_dotenv(usecwd=True), override=False)

    if ctx.invoked_subcommand in ("run", "validate"):
        rprint(Panel.fit(
            "[bold white]hakube - HA Kubernetes Bootstrap[/bold white]",
            border_style="blue",
            subtitle="Nornir Engine"
        ))


@app.command()
def run(
        tags: Optional[List[str]] = typer.Option(
            None, "--tags", "-t",
            help="Run only these phases (comma separated, aliases allowed)."
        ),
        skip_tags: Optional[List[str]] = typer.Option(
            None, "--skip-tags",
            help="Skip these phases."
        ),
        limit: Optional[str] = typer.Option(
            None, "--limit", "-l",
            help="Node pattern: names, globs, 'masters'/'workers', '!' to exclude."
        ),
        inventory_file: Path = typer.Option(
            "inventory/hosts.yml", "--inventory", "-i",
            help="Path to the inventory YAML file."
        ),
        config_file: Optional[Path] = typer.Option(
            None, "--config", "-c",
            help="Path to the configuration YAML file (default: cluster_config.yaml).",
            dir_okay=False
        ),
        check: bool = typer.Option(
            False, "--check",
            help="Dry run: report what would change, change nothing."
        ),
        verbose: int = typer.Option(
            0, "--verbose", "-v", count=True,
            help="-v resources, -vv changes, -vvv debug log on console."
        ),
        yes: bool = typer.Option(
            False, "--yes", "-y",
            help="Skip the confirmation prompt."
        ),
        forks: Optional[int] = typer.Option(
            None, "--forks", "-f", min=1,
            help="Maximum number of nodes worked on in parallel."
        ),
):
    """
    [Idempotent] Bootstraps (or converges) the cluster, phase by phase.
    """
    global_config.VERBOSITY = min(verbose, 3)
    setup_logging(global_config.VERBOSITY)

    try:
        phases = select_phases(_split(tags), _split(skip_tags))
    except ValueError as e:
        rprint(f"[bold red]❌ {escape(str(e))}[/bold red]")
        raise typer.Exit(code=1)

    cluster_config, executor_settings, provenance, topology = _load(
        config_file or Path("cluster_config.yaml"), config_file is not None, inventory_file
    )
    if executor_settings.log_file != "hakube.log":
        setup_logging(global_config.VERBOSITY, executor_settings.log_file)
    if forks:
        executor_settings = replace(executor_settings, fan_out=forks)

    if not topology.select(limit):
        rprint(f"[yellow]No nodes match --limit '{limit}'. Nothing to do.[/yellow]")
        raise typer.Exit(code=0)

    if not phases:
        rprint("[yellow]Every phase was filtered out. Nothing to do.[/yellow]")
        raise typer.Exit(code=0)

    mode = "DRY RUN - no changes" if check else "APPLY"
    rprint(f"[bold cyan]Mode:[/bold cyan] {mode}   "
           f"[bold cyan]Phases:[/bold cyan] {', '.join(p.value for p in phases)}")

    if not (yes or check):
        _print_topology(topology, limit)
        _print_config(cluster_config, provenance)
        if not typer.confirm("Proceed with the deployment?", default=False):
            rprint("[yellow]Aborted by operator. No node was contacted.[/yellow]")
            raise typer.Exit(code=1)

    nr = inventory_model.build_nornir(topology, cluster_config, executor_settings)
    executor = RemoteExecutor(nr)
    controller = PhaseController(
        topology,
        cluster_config,
        DryRunExecutor(executor) if check else executor,
        phases=phases,
        limit=limit,
    )

    def _on_sigint(signum, frame):
        rprint("\n[bold yellow]⚠️ Interrupt received: finishing in-flight steps, starting nothing new.[/bold yellow]")
        controller.cancel()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        report = controller.run()
    finally:
        signal.signal(signal.SIGINT, previous)
        nr.close_connections(on_good=True, on_failed=True)

    render_report(report)
    raise typer.Exit(code=report.exit_code)


@app.command()
def validate(
        inventory_file: Path = typer.Option(
            "inventory/hosts.yml", "--inventory", "-i",
            help="Path to the inventory YAML file."
        ),
        config_file: Optional[Path] = typer.Option(
            None, "--config", "-c",
            help="Path to the configuration YAML file (default: cluster_config.yaml).",
            dir_okay=False
        ),
):
    """
    Resolves configuration and inventory without contacting any node.
    """
    setup_logging(0)
    cluster_config, _, provenance, topology = _load(
        config_file or Path("cluster_config.yaml"), config_file is not None, inventory_file
    )
    _print_topology(topology)
    _print_config(cluster_config, provenance)
    rprint(f"[bold green]✅ Configuration valid.[/bold green] Primary control plane: {topology.primary.name}")


@app.command()
def tags():
    """
    Lists the phases and the tags that select them.
    """
    table = Table(title="Phases (run in this order)")
    table.add_column("#", justify="right")
    table.add_column("Phase", style="bold")
    table.add_column("Targets")
    table.add_column("Tags")
    for phase in PHASE_ORDER:
        aliases = sorted(tag for tag, phases in TAG_ALIASES.items() if phase in phases)
        table.add_row(
            str(phase.order + 1),
            phase.value,
            ", ".join(role.value for role in phase.targets),
            ", ".join(aliases),
        )
    console.print(table)


@app.command()
def usage():
    """
    Shows usage examples, including the phased rollout.
    """
    console.print(Panel(USAGE_EXAMPLES, title="hakube usage", border_style="blue"))


if __name__ == "__main__":
    app()
