"""
Root Typer application for the berth CLI.

Usage::

    berth ps                                   # list managed workloads
    berth ps --filter label=team=ci --json
    berth run alpine:3 web -- sleep 300        # create + start
    berth run --rm -e TOKEN=x alpine:3 job -- sh -c 'exit 0'
    berth exec web -- ls -la /                 # run a command inside
    berth stats                                # usage of running workloads
    berth rm --force web
    berth pull alpine:3
    berth health

    berth network create ci-net --internal
    berth network connect ci-net web

The backend comes from ``BERTH_BACKEND`` (or ``--backend``); every other
knob is a ``BERTH_*`` variable, see ``BerthSettings``.
"""

from __future__ import annotations

import typer

from berth.cli.network import app as network_app
from berth.cli.utils import (
    adapter_from,
    command_args,
    console,
    err_console,
    handle_errors,
    load_settings,
    output_json,
    parse_filters,
    parse_mount,
    parse_pairs,
    print_table,
)
from berth.codec.units import format_bytes
from berth.core.errors import ExecFailed
from berth.core.logging import configure_logging
from berth.runtimes._types import RestartPolicy

app = typer.Typer(
    name="berth",
    help="berth: one container lifecycle across Docker and Kubernetes.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from berth import __version__

        typer.echo(f"berth {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    backend: str | None = typer.Option(
        None, "--backend", "-b",
        help="Backend override: docker-cli, docker-api, kubectl, kubernetes-api, stub.",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for diagnostics on stderr."),
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """berth CLI: run and manage workloads on any backend."""
    with handle_errors():
        settings = load_settings(backend)
    configure_logging(level=log_level, json_format=settings.log_json)
    ctx.obj = {"backend": backend}


# ── Workloads ────────────────────────────────────────────────────────────


@app.command("ps")
def list_workloads(
    ctx: typer.Context,
    filters: list[str] = typer.Option([], "--filter", "-f", help="KEY=VALUE filter (label, name, id). Repeatable."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List workloads (finished auto-remove workloads are reaped)."""
    with handle_errors():
        workloads = adapter_from(ctx).list(parse_filters(filters))

    if json_out:
        output_json([w.to_dict() for w in workloads])
        return
    print_table(
        [
            {"name": w.name, "id": w.id[:12], "state": w.state.value, "status": w.status}
            for w in workloads
        ],
        ["name", "id", "state", "status"],
        title="Workloads",
    )


@app.command(
    "run",
    context_settings={"allow_interspersed_args": False},
)
def run_workload(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Image reference."),
    name: str = typer.Argument(..., help="Workload name."),
    command: list[str] = typer.Argument(None, help="Command and arguments."),
    env: list[str] = typer.Option([], "--env", "-e", help="KEY=VALUE environment entry. Repeatable."),
    labels: list[str] = typer.Option([], "--label", "-l", help="KEY=VALUE label. Repeatable."),
    volumes: list[str] = typer.Option([], "--volume", "-v", help="SOURCE:TARGET[:ro]. Repeatable."),
    tmpfs: list[str] = typer.Option([], "--tmpfs", help="TARGET[:SIZE] in-memory mount. Repeatable."),
    workdir: str | None = typer.Option(None, "--workdir", "-w", help="Working directory."),
    entrypoint: str | None = typer.Option(None, "--entrypoint", help="Override the image entrypoint."),
    network: str | None = typer.Option(None, "--network", help="Attach to this network."),
    hostname: str | None = typer.Option(None, "--hostname", help="Workload hostname."),
    restart: RestartPolicy = typer.Option(RestartPolicy.NO, "--restart", help="Restart policy."),
    auto_remove: bool = typer.Option(False, "--rm", help="Remove the workload once it finishes."),
) -> None:
    """Create and start a workload; prints its id."""
    mounts = [parse_mount(volume=v) for v in volumes] + [parse_mount(tmpfs=t) for t in tmpfs]
    with handle_errors():
        workload_id = adapter_from(ctx).create(
            image,
            name,
            command_args(command) or None,
            entrypoint=entrypoint,
            workdir=workdir,
            mounts=mounts,
            env=parse_pairs(env, "env"),
            labels=parse_pairs(labels, "label"),
            network=network,
            hostname=hostname,
            restart_policy=restart,
            auto_remove=auto_remove,
        )
    typer.echo(workload_id)


@app.command(
    "exec",
    context_settings={"allow_interspersed_args": False},
)
def exec_command(
    ctx: typer.Context,
    workload: str = typer.Argument(..., help="Workload name or id."),
    command: list[str] = typer.Argument(..., help="Command and arguments."),
    env: list[str] = typer.Option([], "--env", "-e", help="KEY=VALUE environment entry. Repeatable."),
    workdir: str | None = typer.Option(None, "--workdir", "-w", help="Working directory."),
    timeout: float | None = typer.Option(None, "--timeout", "-t", help="Seconds before giving up."),
) -> None:
    """Run a command inside a running workload.

    The command's stdout and stderr are forwarded; a non-zero exit is
    passed through as this command's exit code.
    """
    try:
        with handle_errors():
            result = adapter_from(ctx).execute(
                workload,
                command_args(command),
                env=parse_pairs(env, "env"),
                timeout=timeout,
                workdir=workdir,
            )
    except ExecFailed as exc:
        typer.echo(exc.stdout, nl=False)
        typer.echo(exc.stderr, nl=False, err=True)
        raise typer.Exit(code=exc.exit_code or 1) from exc

    typer.echo(result.stdout, nl=False)
    if result.stderr:
        typer.echo(result.stderr, nl=False, err=True)


@app.command("rm")
def remove_workloads(
    ctx: typer.Context,
    workloads: list[str] = typer.Argument(..., help="Workload names or ids."),
    force: bool = typer.Option(False, "--force", "-f", help="Remove even if running."),
) -> None:
    """Remove one or more workloads."""
    with handle_errors():
        adapter = adapter_from(ctx)
        for workload in workloads:
            adapter.remove(workload, force=force)
            typer.echo(workload)


@app.command("stats")
def show_stats(
    ctx: typer.Context,
    workload: str | None = typer.Argument(None, help="One workload; default all running."),
    filters: list[str] = typer.Option([], "--filter", "-f", help="KEY=VALUE filter. Repeatable."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Point-in-time resource usage."""
    with handle_errors():
        samples = adapter_from(ctx).get_stats(workload, filters=parse_filters(filters))

    if json_out:
        output_json([s.to_dict() for s in samples])
        return
    print_table(
        [
            {
                "name": s.workload_name,
                "cpu": f"{s.cpu_usage * 100:.2f}%",
                "mem": f"{s.memory_usage * 100:.2f}%",
                "mem usage": f"{format_bytes(s.memory_io.in_)} / {format_bytes(s.memory_io.out)}",
                "net i/o": f"{format_bytes(s.network_io.in_, binary=False)} / "
                f"{format_bytes(s.network_io.out, binary=False)}",
                "block i/o": f"{format_bytes(s.disk_io.in_, binary=False)} / "
                f"{format_bytes(s.disk_io.out, binary=False)}",
            }
            for s in samples
        ],
        ["name", "cpu", "mem", "mem usage", "net i/o", "block i/o"],
        title="Usage",
    )


@app.command("pull")
def pull_image(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Image reference."),
) -> None:
    """Make an image available to the backend."""
    with handle_errors():
        adapter_from(ctx).pull(image)
    console.print(f"[green]✓[/green] pulled {image}")


@app.command("health")
def health(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Check that the backend is reachable. Exits 1 when it is not."""
    with handle_errors():
        adapter = adapter_from(ctx)
        result = adapter.health()
    if json_out:
        payload = result.to_dict()
        payload["capabilities"] = adapter.capabilities.to_dict()
        output_json(payload)
    elif result.healthy:
        version = f" {result.version}" if result.version else ""
        console.print(f"[green]✓[/green] {result.runtime}{version} ({result.latency_ms or 0:.1f} ms)")
    else:
        err_console.print(f"[bold red]✗[/bold red] {result.runtime}: {result.message}")

    if not result.healthy:
        raise typer.Exit(code=1)


app.add_typer(network_app, name="network", help="Network management.")
