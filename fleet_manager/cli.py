"""Main CLI entry point for fleet management."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from fleet_manager.bootstrap import BootstrapCoordinator, ReadinessPolicy
from fleet_manager.config import ConfigStore
from fleet_manager.exceptions import FleetManagerError
from fleet_manager.logging_config import get_logger, setup_logging
from fleet_manager.models.cluster import ClusterConfig
from fleet_manager.orchestrator import FleetOrchestrator
from fleet_manager.provider import FleetProvider, FlyctlProvider
from fleet_manager.provisioner import NodeProvisioner

app = typer.Typer(
    name="fleet-manager",
    help="A utility to create a k3s cluster on fly.io",
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)

console = Console()
logger = get_logger(__name__)


def build_orchestrator(
    config: ClusterConfig,
    provider: FleetProvider,
    bootstrap_index: int = 0,
    ready_timeout: float = 900.0,
) -> FleetOrchestrator:
    """Wire the orchestrator and its collaborators for one cluster."""
    provisioner = NodeProvisioner(config, provider)
    policy = ReadinessPolicy(timeout=ready_timeout or None)
    coordinator = BootstrapCoordinator(provisioner, bootstrap_index=bootstrap_index, policy=policy)
    return FleetOrchestrator(config, provisioner, coordinator)


def print_machines(title: str, machines) -> None:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="magenta")
    table.add_column("State", style="green")
    table.add_column("Region", style="yellow")

    for machine in sorted(machines, key=lambda m: m.name):
        table.add_row(machine.name, machine.id, machine.state, machine.region)

    console.print(table)
    console.print(f"\n[bold]Total machines:[/bold] {len(machines)}")


@app.command()
def main(
    ctx: typer.Context,
    cluster_dir: Path = typer.Argument(..., help="The directory containing the cluster config"),
    create: bool = typer.Option(False, "-c", "--create", help="Create the k3s cluster"),
    add_nodegroup: str | None = typer.Option(
        None, "-a", "--add-nodegroup", metavar="GROUP", help="Add a worker node group"
    ),
    taint: bool = typer.Option(False, "-t", "--taint", help="Taint the control plane nodes"),
    list_target: str | None = typer.Option(
        None, "-l", "--list", metavar="cp|GROUP", help="List nodes in the k3s cluster"
    ),
    ssh_target: str | None = typer.Option(
        None, "-s", "--ssh", metavar="cp|GROUP", help="SSH into a node in the k3s cluster"
    ),
    kubeconfig: bool = typer.Option(
        False, "-k", "--kubeconfig", help="Fetch kubeconfig for the k3s cluster"
    ),
    bootstrap_node_id: int = typer.Option(
        0, "--bootstrap-node-id", envvar="BOOTSTRAP_NODE_ID", help="Index of the bootstrap node"
    ),
    ready_timeout: float = typer.Option(
        900.0,
        "--ready-timeout",
        help="Seconds to wait for the bootstrap node to become ready (0 waits forever)",
    ),
    kube_dir: Path | None = typer.Option(
        None, "--kube-dir", help="Directory to write the kubeconfig to (default: ~/.kube)"
    ),
    build_context: Path = typer.Option(
        Path("."), "--build-context", help="Directory with the machine image Dockerfile"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
) -> None:
    """
    Create and maintain a k3s cluster on fly.io.

    Exactly one operation flag must be given, followed by the cluster
    directory containing the 'config' file.
    """
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)

    operations = {
        "create": create,
        "add_nodegroup": add_nodegroup is not None,
        "taint": taint,
        "list": list_target is not None,
        "ssh": ssh_target is not None,
        "kubeconfig": kubeconfig,
    }
    selected = [name for name, enabled in operations.items() if enabled]
    if len(selected) != 1:
        console.print("[red]Error:[/red] Specify exactly one operation")
        typer.echo(ctx.get_help())
        raise typer.Exit(code=1)
    operation = selected[0]

    try:
        config = ConfigStore(cluster_dir).load()
        logger.info(f"Setting cluster name to {config.cluster_name}")

        provider = FlyctlProvider(build_context=build_context)
        provider.ensure_available()

        orchestrator = build_orchestrator(
            config, provider, bootstrap_index=bootstrap_node_id, ready_timeout=ready_timeout
        )

        if operation == "create":
            console.print(f"Creating cluster [cyan]{config.cluster_name}[/cyan]")
            nodes = orchestrator.create_cluster()
            console.print(f"[green]✓[/green] Control plane ready ({len(nodes)} nodes created)")

        elif operation == "add_nodegroup":
            console.print(
                f"Adding node group [cyan]{add_nodegroup}[/cyan] to cluster {config.cluster_name}"
            )
            nodes = orchestrator.add_worker_nodegroup(add_nodegroup)
            console.print(f"[green]✓[/green] Node group ready ({len(nodes)} nodes created)")

        elif operation == "taint":
            console.print(f"Tainting control plane of [cyan]{config.cluster_name}[/cyan]")
            orchestrator.taint_control_plane()
            console.print("[green]✓[/green] Control plane tainted")

        elif operation == "list":
            machines = orchestrator.list_nodes(list_target)
            print_machines(f"{list_target} nodes of {config.cluster_name}", machines)

        elif operation == "ssh":
            code = orchestrator.ssh_node(ssh_target)
            raise typer.Exit(code=code)

        elif operation == "kubeconfig":
            path = orchestrator.fetch_kubeconfig(kube_dir)
            console.print(f"[green]✓[/green] Kubeconfig written to {path}")

    except FleetManagerError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        console.print(f"[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(code=130)
    except typer.Exit:
        raise
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        console.print("\nRun with --verbose --log-file debug.log for more details")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
