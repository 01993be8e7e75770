"""Backend-independent workload lifecycle state machine.

Backends report status as free text (``Up 3 seconds``, ``Exited (0) 2
minutes ago``, ``Running``, ``Succeeded``). This module maps that text onto
one enum and defines which transitions are legal.

    .. code-block:: text

        REQUESTED ──► CREATING ──► RUNNING ◄──► EXECUTING
                         │            │
                         ▼            ├──► TERMINATING ──► REMOVED
                       FAILED         │
                                      └──► SUCCEEDED / FAILED   (natural exit)
                                                 │
                                                 ▼
                                        REMOVED (reaped when auto-remove)

    .. mermaid::

        stateDiagram-v2
            [*] --> REQUESTED
            REQUESTED --> CREATING
            CREATING --> RUNNING
            CREATING --> FAILED
            RUNNING --> EXECUTING
            EXECUTING --> RUNNING
            RUNNING --> TERMINATING
            RUNNING --> SUCCEEDED
            RUNNING --> FAILED
            TERMINATING --> REMOVED
            SUCCEEDED --> REMOVED
            FAILED --> REMOVED

Tags:
    berth, runtimes, state-machine, lifecycle
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from enum import Enum

from berth.core.errors import InvalidTransitionError


class WorkloadState(str, Enum):
    """Lifecycle state of a workload."""

    REQUESTED = "requested"
    CREATING = "creating"
    RUNNING = "running"
    EXECUTING = "executing"
    TERMINATING = "terminating"
    REMOVED = "removed"
    FAILED = "failed"
    SUCCEEDED = "succeeded"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        """The workload's process has finished (or the workload is gone)."""
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[WorkloadState] = frozenset({
    WorkloadState.SUCCEEDED,
    WorkloadState.FAILED,
    WorkloadState.REMOVED,
})

VALID_TRANSITIONS: dict[WorkloadState, frozenset[WorkloadState]] = {
    WorkloadState.REQUESTED: frozenset({WorkloadState.CREATING, WorkloadState.FAILED}),
    WorkloadState.CREATING: frozenset({
        WorkloadState.RUNNING,
        WorkloadState.SUCCEEDED,  # short-lived command finished before readiness was observed
        WorkloadState.FAILED,
    }),
    WorkloadState.RUNNING: frozenset({
        WorkloadState.EXECUTING,
        WorkloadState.TERMINATING,
        WorkloadState.SUCCEEDED,
        WorkloadState.FAILED,
    }),
    WorkloadState.EXECUTING: frozenset({
        WorkloadState.RUNNING,
        WorkloadState.TERMINATING,
        WorkloadState.SUCCEEDED,
        WorkloadState.FAILED,
    }),
    WorkloadState.TERMINATING: frozenset({WorkloadState.REMOVED, WorkloadState.FAILED}),
    WorkloadState.SUCCEEDED: frozenset({WorkloadState.TERMINATING, WorkloadState.REMOVED}),
    WorkloadState.FAILED: frozenset({WorkloadState.TERMINATING, WorkloadState.REMOVED}),
    WorkloadState.REMOVED: frozenset(),
    WorkloadState.UNKNOWN: frozenset(set(WorkloadState) - {WorkloadState.REQUESTED}),
}


def validate_transition(current: WorkloadState, target: WorkloadState) -> None:
    """Raise :class:`InvalidTransitionError` if ``current → target`` is illegal."""
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError("WorkloadState", current.value, target.value)


def can_transition(current: WorkloadState, target: WorkloadState) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Status text mapping
# ---------------------------------------------------------------------------

_EXITED = re.compile(r"^exited\s*\((-?\d+)\)", re.IGNORECASE)

_KEYWORDS: dict[str, WorkloadState] = {
    # docker State values
    "created": WorkloadState.CREATING,
    "restarting": WorkloadState.RUNNING,
    "running": WorkloadState.RUNNING,
    "paused": WorkloadState.RUNNING,
    "removing": WorkloadState.TERMINATING,
    "dead": WorkloadState.FAILED,
    # kubernetes pod phases
    "pending": WorkloadState.CREATING,
    "containercreating": WorkloadState.CREATING,
    "succeeded": WorkloadState.SUCCEEDED,
    "failed": WorkloadState.FAILED,
    "terminating": WorkloadState.TERMINATING,
    "completed": WorkloadState.SUCCEEDED,
    "error": WorkloadState.FAILED,
    "unknown": WorkloadState.UNKNOWN,
}


def state_from_status(status: str | None) -> WorkloadState:
    """Map backend status text onto :class:`WorkloadState`.

    Examples:
        >>> state_from_status("Up 3 seconds")
        <WorkloadState.RUNNING: 'running'>
        >>> state_from_status("Exited (0) 2 minutes ago")
        <WorkloadState.SUCCEEDED: 'succeeded'>
        >>> state_from_status("Exited (137) 1 second ago")
        <WorkloadState.FAILED: 'failed'>
        >>> state_from_status("Succeeded")
        <WorkloadState.SUCCEEDED: 'succeeded'>
    """
    text = (status or "").strip()
    if not text:
        return WorkloadState.UNKNOWN
    lowered = text.lower()

    if lowered.startswith("up "):
        return WorkloadState.RUNNING
    match = _EXITED.match(lowered)
    if match:
        return WorkloadState.SUCCEEDED if int(match.group(1)) == 0 else WorkloadState.FAILED
    if lowered.startswith("exited"):
        return WorkloadState.FAILED

    word = lowered.split()[0]
    return _KEYWORDS.get(word, WorkloadState.UNKNOWN)


# ---------------------------------------------------------------------------
# Auto-remove reconciliation
# ---------------------------------------------------------------------------

def auto_remove_label(namespace: str) -> str:
    return f"{namespace}-auto-remove"


def is_reapable(status: str | None, labels: Mapping[str, str], namespace: str) -> bool:
    """True when an auto-remove workload has finished and must be hidden."""
    if labels.get(auto_remove_label(namespace)) != "true":
        return False
    return state_from_status(status).is_terminal


__all__ = [
    "WorkloadState",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "validate_transition",
    "can_transition",
    "state_from_status",
    "auto_remove_label",
    "is_reapable",
]
