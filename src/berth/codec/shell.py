"""Shell-style command splitting and quoting for CLI backends.

This is deliberately not a shell grammar. The only construct understood is
a single-quoted span that starts a token, which is enough for the
``sh -c '<script>'`` idiom callers rely on:

    .. code-block:: text

        split_command("sh -c 'echo hi && echo bye'")
            → ["sh", "-c", "'echo hi && echo bye'"]     quotes kept
        to_argv("sh -c 'echo hi && echo bye'")
            → ["sh", "-c", "echo hi && echo bye"]       quotes removed

``split_command`` keeps the quotes so a token can be pasted back into a
command line unchanged. ``to_argv`` removes them for transports that take
an argument vector (subprocess, the Engine API ``Cmd`` field, pod ``args``).

The quoting half (``quote_arg``, ``quote_env``, ``quote_label``) builds
values that survive being placed inside a constructed command line.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence

from berth.core.errors import MalformedCommand

_QUOTE = "'"
_ENV_KEY_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")
_NEEDS_QUOTING = re.compile(r"[\s\"'`$\\|&;<>(){}*?!#~\[\]]")


def split_command(command: str) -> list[str]:
    """Split a command string on whitespace, honouring leading single quotes.

    Raises:
        MalformedCommand: when a quoted span has no closing quote
    """
    if not any(ch.isspace() for ch in command):
        return [command] if command else []

    tokens: list[str] = []
    i = 0
    length = len(command)
    while i < length:
        if command[i].isspace():
            i += 1
            continue

        start = i
        if command[i] == _QUOTE:
            close = command.find(_QUOTE, i + 1)
            if close == -1:
                raise MalformedCommand(
                    f"Unterminated quote at position {i}: {command!r}",
                    command=command,
                )
            i = close + 1

        while i < length and not command[i].isspace():
            i += 1
        tokens.append(command[start:i])
    return tokens


def strip_quotes(token: str) -> str:
    """Remove one wrapping pair of single quotes, if present."""
    if len(token) >= 2 and token[0] == _QUOTE and token[-1] == _QUOTE:
        return token[1:-1]
    return token


def to_argv(command: str | Sequence[str]) -> list[str]:
    """Normalise a command to an argument vector.

    Strings are tokenized then unquoted; sequences are copied as-is.
    """
    if isinstance(command, str):
        return [strip_quotes(token) for token in split_command(command)]
    return [str(part) for part in command]


def quote_arg(value: str) -> str:
    """Quote a value for inclusion in a command line.

    Single quotes inside the value would end the quoted span early, so they
    are removed.
    """
    if value == "":
        return "''"
    if not _NEEDS_QUOTING.search(value):
        return value
    return _QUOTE + value.replace(_QUOTE, "") + _QUOTE


def join_command(argv: Sequence[str]) -> str:
    """Render an argument vector as one command line (logs, ``sh -c``)."""
    return " ".join(quote_arg(str(part)) for part in argv)


def filter_env_key(key: str) -> str:
    """Drop characters outside ``[A-Za-z0-9_.-]`` from an environment key."""
    return _ENV_KEY_UNSAFE.sub("", key)


def filter_env(env: Mapping[str, str] | None) -> dict[str, str]:
    """Filter every key. Entries with an empty key (after filtering) or an
    empty value are dropped.
    """
    filtered: dict[str, str] = {}
    for key, value in (env or {}).items():
        safe = filter_env_key(str(key))
        if safe and value is not None and str(value) != "":
            filtered[safe] = str(value)
    return filtered


def quote_env(key: str, value: str) -> str:
    """``KEY=value`` with the key filtered, quoted as one token when needed."""
    return quote_arg(f"{filter_env_key(key)}={value}")


def quote_label(key: str, value: str) -> str:
    """``key=value`` for ``--label`` style flags, quoted as one token when needed."""
    return quote_arg(f"{key}={value}")


__all__ = [
    "split_command",
    "strip_quotes",
    "to_argv",
    "quote_arg",
    "join_command",
    "filter_env_key",
    "filter_env",
    "quote_env",
    "quote_label",
]
