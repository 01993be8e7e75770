"""
CLI utility helpers: adapter construction, error reporting and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import pydantic
import typer
from rich.console import Console
from rich.table import Table

from berth.codec.units import parse_bytes
from berth.core.errors import BackendError, BerthError, CreationFailed, ExecFailed, ValidationError
from berth.core.settings import BerthSettings
from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._types import BindMount, Mount, TmpfsMount, VolumeMount
from berth.runtimes.router import create_adapter

console = Console()
err_console = Console(stderr=True)


# ── Adapter helper ───────────────────────────────────────────────────────


def load_settings(backend: str | None = None) -> BerthSettings:
    """Read ``BERTH_*`` settings; ``backend`` overrides ``BERTH_BACKEND``."""
    try:
        return BerthSettings(backend=backend) if backend else BerthSettings()
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(f"Invalid configuration: {problems}", cause=exc) from exc


def get_adapter(backend: str | None = None) -> BaseRuntimeAdapter:
    """Build the configured adapter; ``backend`` overrides ``BERTH_BACKEND``."""
    return create_adapter(load_settings(backend))


def adapter_from(ctx: typer.Context) -> BaseRuntimeAdapter:
    obj = ctx.obj or {}
    return get_adapter(obj.get("backend"))


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn berth errors into a red message on stderr and exit code 1."""
    try:
        yield
    except ExecFailed:
        raise
    except BerthError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
        if isinstance(exc, CreationFailed):
            err_console.print(f"  reason: {exc.reason.value}")
        diagnostic = getattr(exc, "diagnostic", None)
        if isinstance(exc, (BackendError, CreationFailed)) and diagnostic and diagnostic != exc.message:
            err_console.print(f"  [dim]{diagnostic}[/dim]")
        raise typer.Exit(code=1) from exc


# ── Argument parsing ─────────────────────────────────────────────────────


def parse_pairs(items: Sequence[str] | None, what: str) -> dict[str, str]:
    """``["A=1", "B=2"]`` → ``{"A": "1", "B": "2"}``."""
    pairs: dict[str, str] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"{what} must look like KEY=VALUE, got {item!r}")
        pairs[key] = value
    return pairs


def parse_filters(items: Sequence[str] | None) -> dict[str, list[str]]:
    """``["label=a=b", "name=web"]`` → ``{"label": ["a=b"], "name": ["web"]}``."""
    filters: dict[str, list[str]] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"filter must look like KEY=VALUE, got {item!r}")
        filters.setdefault(key, []).append(value)
    return filters


def command_args(command: Sequence[str] | None) -> list[str]:
    """Drop the ``--`` that separates berth options from the workload command."""
    args = list(command or [])
    if args[:1] == ["--"]:
        del args[0]
    return args


def parse_mount(volume: str | None = None, tmpfs: str | None = None) -> Mount:
    """``/host:/ctr[:ro]`` → BindMount, ``name:/ctr[:ro]`` → VolumeMount, tmpfs ``/ctr[:size]``."""
    if tmpfs is not None:
        path, _, size = tmpfs.partition(":")
        return TmpfsMount(container_path=path, size_bytes=int(parse_bytes(size)) if size else 0)

    parts = (volume or "").split(":")
    if len(parts) not in (2, 3) or not all(parts[:2]):
        raise typer.BadParameter(f"volume must look like SOURCE:TARGET[:ro], got {volume!r}")
    read_only = len(parts) == 3 and parts[2] == "ro"
    if parts[0].startswith(("/", ".")):
        return BindMount(host_path=parts[0], container_path=parts[1], read_only=read_only)
    return VolumeMount(volume_name=parts[0], container_path=parts[1], read_only=read_only)


# ── Output helpers ───────────────────────────────────────────────────────


def output_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def print_table(rows: list[dict[str, Any]], columns: Sequence[str], *, title: str = "") -> None:
    """Render ``rows`` as a rich table with the given column keys."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_header=True, header_style="bold cyan")
    for column in columns:
        table.add_column(column.upper())
    for row in rows:
        table.add_row(*(str(row.get(column, "")) for column in columns))
    console.print(table)
