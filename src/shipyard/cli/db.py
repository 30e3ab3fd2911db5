"""
CLI: ``shipyard db`` -- managed PostgreSQL instances.

The database registry is only persistent when ``SHIPYARD_REGISTRY_PATH`` is
set; without it every invocation starts with an empty registry.
"""

from __future__ import annotations

import typer

from shipyard.cli import utils

app = typer.Typer(no_args_is_help=True)


@app.command("create")
def create(
    name: str = typer.Argument(..., help="Database name."),
    environment: str = typer.Option("production", "--env", "-e", help="Environment."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Provision a new instance. The password is shown only once."""
    instance = utils.run_with_platform(lambda p: p.create_database(name, environment))
    if json_out:
        utils.print_json(instance)
        return
    utils.console.print(f"[green]Created[/] {instance.container_name} ({instance.id})")
    utils.console.print(f"  host:     {instance.host}:{instance.port}")
    utils.console.print(f"  user:     {instance.username}")
    utils.console.print(f"  password: {instance.password}")
    utils.console.print("[yellow]Store the password now; it will not be shown again.[/]")


@app.command("list")
def list_databases(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List registered instances."""

    async def action(platform):
        return platform.list_databases()

    instances = utils.run_with_platform(action)
    if json_out:
        utils.print_json([i.public_dict() for i in instances])
        return
    utils.print_table(
        "Databases",
        ["ID", "Name", "Env", "Host", "Port", "Status"],
        [[i.id, i.name, i.environment, i.host, i.port, i.status.value] for i in instances],
    )


@app.command("stats")
def stats(
    instance_id: str = typer.Argument(..., help="Instance id."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show size, connections, resource usage and uptime."""
    result = utils.run_with_platform(lambda p: p.get_database_stats(instance_id))
    if json_out:
        utils.print_json(result)
        return
    for key, value in result.model_dump().items():
        utils.console.print(f"  {key:<12} {value}")


@app.command("start")
def start(instance_id: str = typer.Argument(..., help="Instance id.")) -> None:
    """Start a stopped instance."""
    instance = utils.run_with_platform(lambda p: p.start_database(instance_id))
    utils.console.print(f"{instance.container_name}: {instance.status.value}")


@app.command("stop")
def stop(instance_id: str = typer.Argument(..., help="Instance id.")) -> None:
    """Stop an instance."""
    instance = utils.run_with_platform(lambda p: p.stop_database(instance_id))
    utils.console.print(f"{instance.container_name}: {instance.status.value}")


@app.command("restart")
def restart(instance_id: str = typer.Argument(..., help="Instance id.")) -> None:
    """Restart an instance."""
    instance = utils.run_with_platform(lambda p: p.restart_database(instance_id))
    utils.console.print(f"{instance.container_name}: {instance.status.value}")


@app.command("delete")
def delete(
    instance_id: str = typer.Argument(..., help="Instance id."),
    purge: bool = typer.Option(False, "--purge", help="Also delete the storage directory."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Remove an instance's container and registry entry."""
    if not yes:
        typer.confirm(f"Delete database {instance_id}?", abort=True)
    utils.run_with_platform(lambda p: p.delete_database(instance_id, purge_storage=purge))
    utils.console.print(f"Deleted {instance_id}")
