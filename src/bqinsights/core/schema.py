"""Schema configuration and property access for the event table.

The engines never reference physical column names directly.  They ask a
:class:`PropertyAccessor` for SQL expressions (the entity identifier, the event
name, a property by its logical name) and the accessor resolves those against a
:class:`SchemaConfig`.  This keeps the engines agnostic to whether properties
live in flat columns, in a JSON blob, or in GA4 style repeated key/value
records.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from os import PathLike
from typing import Any, Literal

from .errors import ConfigurationError
from .sql import format_identifier, format_literal

__all__ = [
    "NESTED_PROPERTY_PREFIXES",
    "PropertyAccessor",
    "PropertyPath",
    "PropertyStorage",
    "SchemaConfig",
    "UserIdentifier",
    "load_schema_config",
    "parse_property_path",
    "validate_schema_config",
]

logger = logging.getLogger(__name__)

NESTED_PROPERTY_PREFIXES = frozenset({"event_params", "user_properties"})

_NESTED_VALUE = (
    "COALESCE(p.value.string_value, CAST(p.value.int_value AS STRING), "
    "CAST(p.value.double_value AS STRING), CAST(p.value.float_value AS STRING))"
)


@dataclass(frozen=True)
class PropertyPath:
    """Representation of a dotted property path.

    Repeated key/value records are referenced using a ``prefix.key`` syntax
    (for instance ``event_params.currency``).  A missing prefix is represented
    as ``None``.
    """

    prefix: str | None
    key: str


def parse_property_path(path: str) -> PropertyPath:
    """Return the :class:`PropertyPath` describing ``path``."""

    parts = path.split(".")
    prefix = parts[0] if len(parts) > 1 else None
    return PropertyPath(prefix=prefix, key=parts[-1])


@dataclass(frozen=True)
class UserIdentifier:
    """How a stable per-entity identifier is derived.

    ``single`` reads one column; ``computed`` uses an arbitrary SQL expression,
    typically a logged-in id falling back to a device id.
    """

    type: Literal["single", "computed"] = "single"
    column: str | None = "user_pseudo_id"
    expression: str | None = None


@dataclass(frozen=True)
class PropertyStorage:
    type: Literal["flat", "json", "nested"] = "nested"
    columns: tuple[str, ...] | None = None
    json_column: str | None = None

    def __post_init__(self) -> None:
        if self.columns is not None:
            object.__setattr__(self, "columns", tuple(self.columns))


@dataclass(frozen=True)
class SchemaConfig:
    """Describes the event table the engines query.

    The defaults match the GA4 BigQuery export: INT64 microsecond timestamps,
    ``user_pseudo_id`` as the entity and ``event_params``/``user_properties``
    as repeated key/value records.
    """

    table_id: str
    event_name_column: str = "event_name"
    timestamp_column: str = "event_timestamp"
    timestamp_unit: Literal["micros", "timestamp"] = "micros"
    date_column: str | None = None
    tz: str = "UTC"
    user_identifier: UserIdentifier = field(default_factory=UserIdentifier)
    properties: PropertyStorage = field(default_factory=PropertyStorage)
    lowercase_columns: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        errors = validate_schema_config(self)
        if errors:
            raise ConfigurationError("Invalid schema configuration: " + ", ".join(errors))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SchemaConfig:
        """Build a config from the JSON layout of ``schema.config.json``."""

        bigquery_section = data.get("bigquery") or {}
        schema = data.get("schema") or {}
        columns = schema.get("columns") or {}
        user_identifier = schema.get("user_identifier") or {}
        properties = schema.get("properties") or {}

        return cls(
            table_id=bigquery_section.get("table", ""),
            event_name_column=columns.get("event_name", "event_name"),
            timestamp_column=columns.get("timestamp", "event_timestamp"),
            timestamp_unit=columns.get("timestamp_unit", "micros"),
            date_column=columns.get("date"),
            tz=bigquery_section.get("tz", "UTC"),
            user_identifier=UserIdentifier(
                type=user_identifier.get("type", "single"),
                column=user_identifier.get("column"),
                expression=user_identifier.get("expression"),
            ),
            properties=PropertyStorage(
                type=properties.get("type", "nested"),
                columns=properties.get("columns"),
                json_column=properties.get("json_column"),
            ),
            lowercase_columns=dict(schema.get("lowercase_columns") or {}),
        )


def validate_schema_config(config: SchemaConfig) -> list[str]:
    """Return every problem found in ``config`` (empty when valid)."""

    errors: list[str] = []
    if not config.table_id:
        errors.append("Missing bigquery.table")
    if not config.event_name_column:
        errors.append("Missing schema.columns.event_name")
    if not config.timestamp_column:
        errors.append("Missing schema.columns.timestamp")
    if config.timestamp_unit not in {"micros", "timestamp"}:
        errors.append(
            f'Invalid schema.columns.timestamp_unit: "{config.timestamp_unit}". '
            'Must be "micros" or "timestamp"'
        )

    identifier = config.user_identifier
    if identifier.type not in {"single", "computed"}:
        errors.append(
            f'Invalid schema.user_identifier.type: "{identifier.type}". '
            'Must be "single" or "computed"'
        )
    if identifier.type == "single" and not identifier.column:
        errors.append('Missing schema.user_identifier.column for type="single"')
    if identifier.type == "computed" and not identifier.expression:
        errors.append('Missing schema.user_identifier.expression for type="computed"')

    storage = config.properties
    if storage.type not in {"flat", "json", "nested"}:
        errors.append(
            f'Invalid schema.properties.type: "{storage.type}". Must be "flat", "json" or "nested"'
        )
    if storage.type == "json" and not storage.json_column:
        errors.append('Missing schema.properties.json_column for type="json"')
    return errors


def load_schema_config(path: str | PathLike[str]) -> SchemaConfig:
    """Load and validate a JSON schema configuration file."""

    try:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Schema configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Schema configuration is not valid JSON: {exc}") from exc

    config = SchemaConfig.from_mapping(data)
    logger.debug(
        "Loaded schema configuration for %s (properties: %s)",
        config.table_id,
        config.properties.type,
    )
    return config


class PropertyAccessor:
    """Resolves logical names to SQL expressions for one :class:`SchemaConfig`."""

    def __init__(self, schema: SchemaConfig) -> None:
        self.schema = schema

    def column(self, prop: str) -> str:
        """Return the SQL expression reading property ``prop``."""

        storage = self.schema.properties
        if storage.type == "json":
            return "JSON_VALUE({column}, {path})".format(
                column=format_identifier(storage.json_column or ""),
                path=format_literal('$."{}"'.format(prop.replace('"', ""))),
            )

        if storage.type == "nested":
            path = parse_property_path(prop)
            if path.prefix in NESTED_PROPERTY_PREFIXES:
                return (
                    "(SELECT {value} FROM UNNEST({prefix}) p WHERE p.key = {key})".format(
                        value=_NESTED_VALUE,
                        prefix=path.prefix,
                        key=format_literal(path.key),
                    )
                )
        elif storage.columns and prop not in storage.columns:
            logger.warning("Property '%s' is not in the schema configuration, using it as-is", prop)

        return format_identifier(prop)

    def case_insensitive(self, prop: str) -> str:
        """Return a lower-cased STRING expression for ``prop``."""

        lowercase = self.schema.lowercase_columns.get(prop)
        if lowercase:
            return format_identifier(lowercase)
        return f"LOWER(CAST({self.column(prop)} AS STRING))"

    def string(self, prop: str) -> str:
        return f"CAST({self.column(prop)} AS STRING)"

    def entity_expression(self) -> str:
        identifier = self.schema.user_identifier
        if identifier.type == "computed":
            return f"CAST({identifier.expression} AS STRING)"
        return f"CAST({format_identifier(identifier.column or '')} AS STRING)"

    def event_name_expression(self) -> str:
        return format_identifier(self.schema.event_name_column)

    def timestamp_micros_expression(self) -> str:
        column = format_identifier(self.schema.timestamp_column)
        if self.schema.timestamp_unit == "micros":
            return column
        return f"UNIX_MICROS({column})"

    def timestamp_expression(self) -> str:
        column = format_identifier(self.schema.timestamp_column)
        if self.schema.timestamp_unit == "micros":
            return f"TIMESTAMP_MICROS({column})"
        return column

    def date_expression(self) -> str:
        if self.schema.date_column:
            return format_identifier(self.schema.date_column)
        return "DATE({ts}, {tz})".format(
            ts=self.timestamp_expression(), tz=format_literal(self.schema.tz)
        )

    def is_date_like(self, prop: str) -> bool:
        """Whether ``prop`` looks like a date/time value (eligible for granularity)."""

        lowered = prop.lower()
        return (
            "date" in lowered
            or "time" in lowered
            or prop in {self.schema.date_column, self.schema.timestamp_column}
        )
