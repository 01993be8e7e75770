"""
CLI: ``berth network``: create, remove and attach networks.

Usage::

    berth network create ci-net [--internal]
    berth network ls [--json]
    berth network connect ci-net web
    berth network disconnect ci-net web [--force]
    berth network rm ci-net
"""

from __future__ import annotations

import typer

from berth.cli.utils import adapter_from, console, handle_errors, output_json, print_table

app = typer.Typer(no_args_is_help=True)


@app.command("create")
def create_network(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Network name."),
    internal: bool = typer.Option(False, "--internal", help="No traffic outside the network."),
) -> None:
    """Create a network; prints its id."""
    with handle_errors():
        handle = adapter_from(ctx).create_network(name, internal=internal)
    typer.echo(handle.id or handle.name)


@app.command("rm")
def remove_network(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Network name."),
) -> None:
    """Remove a network."""
    with handle_errors():
        adapter_from(ctx).remove_network(name)
    typer.echo(name)


@app.command("ls")
def list_networks(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List networks."""
    with handle_errors():
        networks = adapter_from(ctx).list_networks()
    if json_out:
        output_json([n.to_dict() for n in networks])
        return
    print_table(
        [{"name": n.name, "id": n.id[:12], "driver": n.driver, "scope": n.scope} for n in networks],
        ["name", "id", "driver", "scope"],
        title="Networks",
    )


@app.command("exists")
def network_exists(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Network name."),
) -> None:
    """Exit 0 if the network exists, 1 otherwise."""
    with handle_errors():
        exists = adapter_from(ctx).network_exists(name)
    if not exists:
        raise typer.Exit(code=1)


@app.command("connect")
def connect(
    ctx: typer.Context,
    network: str = typer.Argument(..., help="Network name."),
    workload: str = typer.Argument(..., help="Workload name or id."),
) -> None:
    """Attach a workload to a network."""
    with handle_errors():
        adapter_from(ctx).connect(workload, network)
    console.print(f"[green]✓[/green] {workload} → {network}")


@app.command("disconnect")
def disconnect(
    ctx: typer.Context,
    network: str = typer.Argument(..., help="Network name."),
    workload: str = typer.Argument(..., help="Workload name or id."),
    force: bool = typer.Option(False, "--force", "-f", help="Succeed even if not attached."),
) -> None:
    """Detach a workload from a network."""
    with handle_errors():
        adapter_from(ctx).disconnect(workload, network, force=force)
    console.print(f"[green]✓[/green] {workload} ✗ {network}")
