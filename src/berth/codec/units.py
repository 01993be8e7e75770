"""Byte-unit and resource-quantity parsing.

Backends report sizes as human text: ``docker stats`` prints ``2.133MiB`` or
``1.5kB``, the cluster metrics API prints ``250m`` cores and ``64Mi`` bytes.
This module turns those strings into plain numbers.

Unit rules:

    .. code-block:: text

        binary   KiB MiB GiB TiB   → 1024^n
        decimal  B  KB  MB  GB  TB → 1000^n
        match    longest suffix, case-insensitive ("kib" before "b")
        none     bare number, multiplier 1
        blank    "" or "--" (docker's placeholder) → 0.0

Examples:
    >>> parse_bytes("2.5MB")
    2500000.0
    >>> parse_bytes("1.5kB")
    1500.0
    >>> parse_bytes("512")
    512.0
    >>> parse_io_pair("1.5MB / 2kB")
    (1500000.0, 2000.0)
"""

from __future__ import annotations

import re

BINARY_UNITS: dict[str, int] = {
    "kib": 1024,
    "mib": 1024 ** 2,
    "gib": 1024 ** 3,
    "tib": 1024 ** 4,
}

DECIMAL_UNITS: dict[str, int] = {
    "b": 1,
    "kb": 1000,
    "mb": 1000 ** 2,
    "gb": 1000 ** 3,
    "tb": 1000 ** 4,
}

# longest first so "mib" wins over "b"
_SUFFIXES = sorted({**BINARY_UNITS, **DECIMAL_UNITS}.items(), key=lambda kv: -len(kv[0]))

_BLANK = {"", "--", "n/a"}

_CPU_SUFFIXES = {"n": 1e-9, "u": 1e-6, "m": 1e-3}

_MEMORY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "Pi": 1024 ** 5,
    "k": 1000,
    "K": 1000,
    "M": 1000 ** 2,
    "G": 1000 ** 3,
    "T": 1000 ** 4,
    "P": 1000 ** 5,
}

_QUANTITY = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)\s*([A-Za-z]*)\s*$")


def parse_bytes(text: str) -> float:
    """Parse a human byte string into a byte count.

    Raises:
        ValueError: when the numeric part is not a number
    """
    value = text.strip()
    if value.lower() in _BLANK:
        return 0.0

    lowered = value.lower()
    for suffix, multiplier in _SUFFIXES:
        if lowered.endswith(suffix):
            number = value[: -len(suffix)].strip()
            return float(number) * multiplier
    return float(value)


def format_bytes(count: float, *, binary: bool = True, precision: int = 3) -> str:
    """Render a byte count with the largest unit whose value is at least 1."""
    if binary:
        units = [("TiB", BINARY_UNITS["tib"]), ("GiB", BINARY_UNITS["gib"]),
                 ("MiB", BINARY_UNITS["mib"]), ("KiB", BINARY_UNITS["kib"])]
    else:
        units = [("TB", DECIMAL_UNITS["tb"]), ("GB", DECIMAL_UNITS["gb"]),
                 ("MB", DECIMAL_UNITS["mb"]), ("kB", DECIMAL_UNITS["kb"])]
    for label, multiplier in units:
        if abs(count) >= multiplier:
            return f"{round(count / multiplier, precision):g}{label}"
    return f"{round(count, precision):g}B"


def parse_percent(text: str) -> float:
    """``"12.34%"`` → ``0.1234``. Blank → 0.0."""
    value = text.strip()
    if value.lower() in _BLANK:
        return 0.0
    return float(value.rstrip("%").strip()) / 100


def parse_io_pair(text: str) -> tuple[float, float]:
    """Parse ``"<in> / <out>"``. A missing side counts as zero."""
    left, _, right = text.partition("/")
    return parse_bytes(left), parse_bytes(right)


def _split_quantity(text: str) -> tuple[float, str]:
    match = _QUANTITY.match(text)
    if match is None:
        raise ValueError(f"Not a quantity: {text!r}")
    return float(match.group(1)), match.group(2)


def parse_cpu_quantity(text: str) -> float:
    """Parse a CPU quantity into cores.

    ``"2"`` → 2.0, ``"250m"`` → 0.25, ``"1500000n"`` → 0.0015.
    """
    value = text.strip()
    if value.lower() in _BLANK:
        return 0.0
    number, suffix = _split_quantity(value)
    if not suffix:
        return number
    if suffix not in _CPU_SUFFIXES:
        raise ValueError(f"Unknown CPU unit {suffix!r} in {text!r}")
    return number * _CPU_SUFFIXES[suffix]


def parse_memory_quantity(text: str) -> float:
    """Parse a memory quantity (``"64Mi"``, ``"1G"``, ``"1048576"``) into bytes."""
    value = text.strip()
    if value.lower() in _BLANK:
        return 0.0
    number, suffix = _split_quantity(value)
    if not suffix:
        return number
    if suffix not in _MEMORY_SUFFIXES:
        raise ValueError(f"Unknown memory unit {suffix!r} in {text!r}")
    return number * _MEMORY_SUFFIXES[suffix]


__all__ = [
    "BINARY_UNITS",
    "DECIMAL_UNITS",
    "parse_bytes",
    "format_bytes",
    "parse_percent",
    "parse_io_pair",
    "parse_cpu_quantity",
    "parse_memory_quantity",
]
