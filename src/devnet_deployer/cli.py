import asyncio
import json
from pathlib import Path
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .builder import resolve_config
from .cleanup import cleanup_by_prefix
from .config import build_config, load_config, override_images, parse_assignments
from .deployer import Orchestrator
from .errors import DeployError
from .handles import AnvilHandle, BootstrapHandle, DeploymentResult, L2StackHandle, MonitoringHandle
from .health import HealthReport, check_health
from .logging_config import setup_logging

app = typer.Typer(help="Deploy a local OP stack devnet over Docker.", no_args_is_help=False)
console = Console()


def fail(error: Exception) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {error}")
    return typer.Exit(code=1)


def endpoint_rows(result: DeploymentResult) -> list[tuple[str, str, str]]:
    """(unit, container, host URL) for every published endpoint."""
    rows: list[tuple[str, str, str]] = []
    for name in result.names():
        handle = result[name]
        if isinstance(handle, AnvilHandle):
            rows.append(("l1", handle.container_name, handle.host_url or "-"))
        elif isinstance(handle, BootstrapHandle):
            label = "reused" if handle.skipped else "deployed"
            rows.append((f"contracts ({label})", "-", str(handle.workdir)))
        elif isinstance(handle, L2StackHandle):
            for node in handle.nodes:
                role = node.role.value if node.active or not node.is_sequencer else f"{node.role.value} (standby)"
                rows.append((role, node.execution.container_name, node.execution.host_url or "-"))
                rows.append((f"{role} consensus", node.consensus.container_name, node.consensus.host_url or "-"))
            for label, unit in (("batcher", handle.batcher), ("proposer", handle.proposer)):
                rows.append((label, unit.container_name, unit.host_url or "-"))
            rows.append(("challenger", handle.challenger.container_name, "-"))
            if handle.coordinator is not None:
                for conductor in handle.coordinator.conductors:
                    rows.append(("conductor", conductor.container_name, conductor.host_url or "-"))
        elif isinstance(handle, MonitoringHandle):
            rows.append(("prometheus", handle.prometheus.container_name, handle.prometheus.host_url or "-"))
            rows.append(("grafana", handle.grafana.container_name, handle.grafana.host_url or "-"))
    return rows


def print_result(result: DeploymentResult, network_name: str) -> None:
    table = Table(title=f"Devnet {network_name}")
    table.add_column("Unit", style="magenta")
    table.add_column("Container", style="cyan")
    table.add_column("Endpoint", style="green")
    for row in endpoint_rows(result):
        table.add_row(*row)
    console.print(table)


def print_health(report: HealthReport) -> None:
    table = Table(title=f"Health: {report.network_name}")
    table.add_column("Service", style="magenta")
    table.add_column("Container", style="cyan")
    table.add_column("Running")
    table.add_column("Details")
    for service in report.services:
        details = []
        if service.chain_id is not None:
            details.append(f"chain_id={service.chain_id}")
        details += [f"{head}={number}" for head, number in service.sync.items()]
        details += service.errors
        running = "[green]yes[/green]" if service.running else "[red]no[/red]"
        table.add_row(service.name, service.container_name, running, "\n".join(details))
    console.print(table)
    for error in report.errors:
        console.print(f"[red]{error}[/red]")
    verdict = "[bold green]healthy[/bold green]" if report.healthy else "[bold red]unhealthy[/bold red]"
    console.print(f"Verdict: {verdict}")


async def run_deploy(config_file: Path | None, force: bool, overrides: dict[str, Any], images: dict, binaries: dict):
    config = build_config(config_file, **overrides)
    config = override_images(config, images=images, binaries=binaries)
    config = await resolve_config(config)
    result = await Orchestrator(config).deploy(force=force)
    return config, result


def _deploy(
    config_file: Path | None = None,
    force: bool = False,
    overrides: dict[str, Any] | None = None,
    images: list[str] | None = None,
    binaries: list[str] | None = None,
) -> None:
    try:
        image_map = parse_assignments(images, "--image")
        binary_map = parse_assignments(binaries, "--binary")
        config, result = asyncio.run(run_deploy(config_file, force, overrides or {}, image_map, binary_map))
    except DeployError as e:
        raise fail(e) from None

    print_result(result, config.network_name)
    if config.detach:
        console.print(f"Detached. Stop with: [bold]devnet cleanup {config.network_name}[/bold]")
        console.print(f"Config: {config.config_path}")


@app.callback(invoke_without_command=True)
def callback(
    ctx: typer.Context,
    verbosity: Optional[str] = typer.Option(None, "--verbosity", "-v", help="Log level (DEBUG, INFO, ...)"),
    log_format: Optional[str] = typer.Option(None, "--log-format", help="console or json"),
):
    """
    Devnet deployer. Runs `deploy` when no command is given.
    """
    setup_logging(log_format=log_format, log_level=verbosity)
    if ctx.invoked_subcommand is None:
        _deploy()


@app.command()
def deploy(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Load a saved devnet.toml"),
    network: Optional[str] = typer.Option(None, "--network", "-n", help="Network name (container prefix)"),
    outdata: Optional[Path] = typer.Option(None, "--outdata", "-o", help="Output directory"),
    l1_rpc_url: Optional[str] = typer.Option(None, "--l1", help="L1 RPC URL to fork from"),
    l1_chain_id: Optional[int] = typer.Option(None, "--l1-chain-id"),
    l2_chain_id: Optional[int] = typer.Option(None, "--l2-chain-id"),
    block_time: Optional[int] = typer.Option(None, "--block-time", help="Block time in seconds"),
    genesis_timestamp: Optional[int] = typer.Option(None, "--genesis-timestamp"),
    l2_nodes: Optional[int] = typer.Option(None, "--l2-nodes", help="Total L2 nodes"),
    sequencers: Optional[int] = typer.Option(None, "--sequencers", help="Sequencer count"),
    monitoring: Optional[bool] = typer.Option(None, "--monitoring/--no-monitoring"),
    detach: Optional[bool] = typer.Option(None, "--detach", "-d", help="Exit after deploying"),
    no_cleanup: Optional[bool] = typer.Option(None, "--no-cleanup", help="Leave containers on exit or failure"),
    force: bool = typer.Option(False, "--force", help="Redeploy contracts even if unchanged"),
    images: Optional[List[str]] = typer.Option(None, "--image", help="SERVICE=IMAGE[:TAG], repeatable"),
    binaries: Optional[List[str]] = typer.Option(None, "--binary", help="SERVICE=PATH, repeatable"),
):
    """Deploy a devnet."""
    overrides = {
        "network_name": network,
        "outdata": outdata,
        "l1_rpc_url": l1_rpc_url,
        "l1_chain_id": l1_chain_id,
        "l2_chain_id": l2_chain_id,
        "block_time": block_time,
        "genesis_timestamp": genesis_timestamp,
        "l2_node_count": l2_nodes,
        "sequencer_count": sequencers,
        "monitoring": monitoring,
        "detach": detach,
        "no_cleanup": no_cleanup,
    }
    _deploy(config_file, force, overrides, images, binaries)


@app.command()
def cleanup(prefix: str = typer.Argument(..., help="Network name; every container starting with it is removed")):
    """Remove a (detached) devnet's containers and network. Output files are kept."""
    result = asyncio.run(cleanup_by_prefix(prefix))

    for name in result.containers_removed:
        console.print(f"[green]removed[/green] {name}")
    if result.network_removed:
        console.print(f"[green]removed network[/green] {result.network_removed}")
    if result.nothing_to_do and not result.errors:
        console.print(f"Nothing to clean up for '{prefix}'")
    for error in result.errors:
        console.print(f"[yellow]warning:[/yellow] {error}")
    if result.errors and result.nothing_to_do:
        raise typer.Exit(code=1)


@app.command()
def health(
    config_file: Path = typer.Argument(..., help="devnet.toml of the deployment"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Check a running devnet. Exit code 0 iff healthy."""
    try:
        config = load_config(config_file)
        report = asyncio.run(check_health(config))
    except DeployError as e:
        raise fail(e) from None

    if json_output:
        payload = {
            "network_name": report.network_name,
            "healthy": report.healthy,
            "failures": report.failures(),
            "services": [
                {
                    "name": s.name,
                    "container_name": s.container_name,
                    "running": s.running,
                    "chain_id": s.chain_id,
                    "sync": s.sync,
                }
                for s in report.services
            ],
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        print_health(report)

    if not report.healthy:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
