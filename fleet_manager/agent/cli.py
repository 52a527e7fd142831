"""CLI entry point run as the machine's init command."""

from pathlib import Path

import typer

from fleet_manager.agent.environment import AgentEnvironment, AgentPaths
from fleet_manager.agent.runner import NodeAgent
from fleet_manager.exceptions import FleetManagerError
from fleet_manager.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="fleet-node-agent",
    help="Prepare this machine, configure k3s and start systemd",
    add_completion=False,
)

logger = get_logger(__name__)


@app.command()
def run(
    root: Path = typer.Option(Path("/"), "--root", help="Prefix for all host paths"),
    handoff: bool = typer.Option(
        True, "--handoff/--no-handoff", help="Exec systemd after a successful setup"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
) -> None:
    """
    Run the boot sequence for this machine.

    Reads the machine environment (ROLE, K3S_VERSION, REGION, ZONE, ...),
    applies host settings, installs k3s on first boot, reconciles the k3s
    configuration and finally replaces itself with systemd.
    """
    log_path = Path(log_file) if log_file else None
    # The agent output is the machine boot log, keep INFO on the console
    setup_logging(verbose=verbose, log_file=log_path, console_level="INFO")

    try:
        env = AgentEnvironment.from_environ()
        agent = NodeAgent(env, paths=AgentPaths(root), handoff=handoff)
        state = agent.run()
        logger.info(f"Boot sequence finished in state {state.value}")
    except FleetManagerError as e:
        logger.error(e.format_message())
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
