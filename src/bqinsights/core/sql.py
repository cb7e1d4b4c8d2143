"""Literal and identifier formatting for generated BigQuery SQL.

All quoting goes through these helpers so generated queries are deterministic
and safe to compare in snapshot tests.
"""

from __future__ import annotations

from collections.abc import Iterable

__all__ = [
    "escape_literal",
    "format_identifier",
    "format_literal",
    "format_literal_list",
    "format_number",
]


def escape_literal(value: str) -> str:
    """Escape a string so it can safely be inserted as a BigQuery literal."""

    return value.replace("\\", "\\\\").replace("'", "\\'")


def format_literal(value: object) -> str:
    """Return ``value`` formatted as a quoted SQL literal."""

    return "'{}'".format(escape_literal(str(value)))


def format_literal_list(values: Iterable[object]) -> str:
    """Return ``values`` formatted for use inside ``IN`` style expressions."""

    return "({})".format(", ".join(format_literal(value) for value in values))


def format_identifier(name: str) -> str:
    """Quote a (possibly dotted) column reference with backticks.

    ``geo.country`` becomes ```geo`.`country``` so that struct fields keep
    working while reserved words and odd characters are quoted.
    """

    return ".".join("`{}`".format(part.replace("`", "")) for part in name.split("."))


def format_number(value: float) -> str:
    """Render a float without a trailing ``.0`` for whole numbers."""

    if value == int(value):
        return str(int(value))
    return repr(float(value))
