"""Telemetry normalizer: three raw sample shapes → one ``UsageStats``.

    .. code-block:: text

        SampleSource.TEXT_COLUMNS          docker stats --format '{{json .}}'
          CPUPerc "12.34%"      → 0.1234
          MemPerc ""            → 0.0
          BlockIO "1.2MB / 0B"  → IOPair(1_200_000, 0)

        SampleSource.CUMULATIVE_COUNTERS   GET /containers/{id}/stats?stream=false
          cpu = Δcontainer / Δsystem × online_cpus   (Δsystem ≤ 0 → 0.0)
          mem = usage / limit                         (no limit → 0.0)
          disk = Σ blkio by op Read / Write
          net  = Σ rx_bytes / tx_bytes over interfaces

        SampleSource.CLUSTER_METRICS       kubectl top / metrics.k8s.io
          cpu "250m" → 0.25, memory "64Mi" → bytes / limit
          disk and network → zero pairs

CPU usage is a fraction of one core on every source and is never clamped:
a workload using three cores reports 3.0.

Examples:
    >>> stats = normalize(
    ...     {"ID": "abc", "Name": "t1", "CPUPerc": "50.00%", "MemPerc": "",
    ...      "BlockIO": "0B / 0B", "MemUsage": "1MiB / 2MiB", "NetIO": "1kB / 2kB"},
    ...     SampleSource.TEXT_COLUMNS,
    ... )
    >>> stats.cpu_usage, stats.network_io.out
    (0.5, 2000.0)
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from berth.codec.units import (
    parse_cpu_quantity,
    parse_io_pair,
    parse_memory_quantity,
    parse_percent,
)
from berth.core.errors import BackendError
from berth.runtimes._types import IOPair, UsageStats


class SampleSource(str, Enum):
    """Which raw representation a sample uses."""

    TEXT_COLUMNS = "text_columns"
    CUMULATIVE_COUNTERS = "cumulative_counters"
    CLUSTER_METRICS = "cluster_metrics"


def normalize(raw: Mapping[str, Any], source: SampleSource) -> UsageStats:
    """Convert one raw sample into :class:`UsageStats`.

    Raises:
        BackendError: when the sample is missing fields or holds values
            that cannot be parsed; the raw sample is the diagnostic
    """
    reader = _READERS[SampleSource(source)]
    try:
        return reader(raw)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise BackendError(
            f"Unreadable {SampleSource(source).value} sample: {exc}",
            diagnostic=_dump(raw),
            cause=exc,
        ) from exc


def _dump(raw: Mapping[str, Any]) -> str:
    try:
        return json.dumps(raw, default=str)
    except (TypeError, ValueError):
        return repr(raw)


def _pair(text: str | None) -> IOPair:
    in_, out = parse_io_pair(text or "")
    return IOPair(in_=in_, out=out)


# ---------------------------------------------------------------------------
# Text columns
# ---------------------------------------------------------------------------

def _from_text_columns(raw: Mapping[str, Any]) -> UsageStats:
    return UsageStats(
        workload_id=str(raw["ID"]),
        workload_name=str(raw.get("Name", "")).lstrip("/"),
        cpu_usage=parse_percent(str(raw.get("CPUPerc") or "")),
        memory_usage=parse_percent(str(raw.get("MemPerc") or "")),
        disk_io=_pair(raw.get("BlockIO")),
        memory_io=_pair(raw.get("MemUsage")),
        network_io=_pair(raw.get("NetIO")),
    )


# ---------------------------------------------------------------------------
# Cumulative counters
# ---------------------------------------------------------------------------

def _cpu_from_counters(raw: Mapping[str, Any]) -> float:
    current = raw.get("cpu_stats") or {}
    previous = raw.get("precpu_stats") or {}

    container_delta = (
        (current.get("cpu_usage") or {}).get("total_usage", 0)
        - (previous.get("cpu_usage") or {}).get("total_usage", 0)
    )
    system_delta = current.get("system_cpu_usage", 0) - previous.get("system_cpu_usage", 0)
    if system_delta <= 0 or container_delta < 0:
        return 0.0

    online = current.get("online_cpus") or len(
        (current.get("cpu_usage") or {}).get("percpu_usage") or []
    ) or 1
    return (container_delta / system_delta) * online


def _sum_blkio(raw: Mapping[str, Any]) -> IOPair:
    entries = (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []
    read = write = 0.0
    for entry in entries:
        op = str(entry.get("op", "")).lower()
        if op == "read":
            read += entry.get("value", 0)
        elif op == "write":
            write += entry.get("value", 0)
    return IOPair(in_=read, out=write)


def _sum_networks(raw: Mapping[str, Any]) -> IOPair:
    rx = tx = 0.0
    for iface in (raw.get("networks") or {}).values():
        rx += iface.get("rx_bytes", 0)
        tx += iface.get("tx_bytes", 0)
    return IOPair(in_=rx, out=tx)


def _from_counters(raw: Mapping[str, Any]) -> UsageStats:
    memory = raw.get("memory_stats") or {}
    usage = float(memory.get("usage", 0))
    limit = float(memory.get("limit", 0))
    return UsageStats(
        workload_id=str(raw["id"]),
        workload_name=str(raw.get("name", "")).lstrip("/"),
        cpu_usage=_cpu_from_counters(raw),
        memory_usage=usage / limit if limit > 0 else 0.0,
        disk_io=_sum_blkio(raw),
        memory_io=IOPair(in_=usage, out=limit),
        network_io=_sum_networks(raw),
    )


# ---------------------------------------------------------------------------
# Cluster metrics
# ---------------------------------------------------------------------------

def _from_cluster_metrics(raw: Mapping[str, Any]) -> UsageStats:
    memory = parse_memory_quantity(str(raw.get("memory") or ""))
    limit = parse_memory_quantity(str(raw.get("memory_limit") or ""))
    return UsageStats(
        workload_id=str(raw.get("id") or raw["name"]),
        workload_name=str(raw["name"]),
        cpu_usage=parse_cpu_quantity(str(raw.get("cpu") or "")),
        memory_usage=memory / limit if limit > 0 else 0.0,
        disk_io=IOPair(),
        memory_io=IOPair(in_=memory, out=limit),
        network_io=IOPair(),
    )


_READERS: dict[SampleSource, Callable[[Mapping[str, Any]], UsageStats]] = {
    SampleSource.TEXT_COLUMNS: _from_text_columns,
    SampleSource.CUMULATIVE_COUNTERS: _from_counters,
    SampleSource.CLUSTER_METRICS: _from_cluster_metrics,
}


__all__ = ["SampleSource", "normalize"]
