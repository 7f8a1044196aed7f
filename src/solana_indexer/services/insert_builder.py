"""
Turns one webhook transaction into a parameterized INSERT for its destination table.

Payload keys become column identifiers, so every key must match a strict
identifier pattern before it is used; one bad key rejects the whole event.
Values are always bound parameters, never rendered into SQL text.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from sqlalchemy import DateTime, column, insert, table
from sqlalchemy.sql.dml import Insert

from ..errors import ReservedColumnCollision, UnknownType, UnsafeColumnName, ValidationError
from ..models.events import TransactionEvent
from ..models.types import TRANSACTION_TABLES, lookup_transaction_type

# PostgreSQL truncates identifiers beyond 63 bytes
MAX_IDENTIFIER_LENGTH = 63
IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

METADATA_COLUMNS: Tuple[str, ...] = ("signature", "transaction_type", "timestamp")
# Typed so each dialect renders the event time natively
_COLUMN_TYPES = {"timestamp": DateTime(timezone=True)}


@dataclass(frozen=True)
class InsertStatement:
    """Table, ordered column names and matching bound values."""

    table: str
    columns: Tuple[str, ...]
    values: Tuple[Any, ...]

    def as_params(self) -> Dict[str, Any]:
        return dict(zip(self.columns, self.values))

    def to_sql(self) -> Insert:
        """SQLAlchemy INSERT with identifiers quoted by the dialect and values bound."""
        target = table(self.table, *(column(name, _COLUMN_TYPES.get(name)) for name in self.columns))
        return insert(target).values(self.as_params())


def is_safe_identifier(name: Any) -> bool:
    return (
        isinstance(name, str)
        and len(name) <= MAX_IDENTIFIER_LENGTH
        and IDENTIFIER_PATTERN.fullmatch(name) is not None
    )


def _bind_value(value: Any) -> Any:
    # Nested structures go in as JSON text; scalars pass through unchanged
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return value


def event_timestamp(timestamp_millis: int) -> datetime:
    try:
        return datetime.fromtimestamp(timestamp_millis / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        raise ValidationError(f"Timestamp {timestamp_millis} is out of range", {"timestamp": timestamp_millis}) from None


def build(event: TransactionEvent) -> InsertStatement:
    """Build the INSERT for one event.

    Raises:
        UnknownType: the event type has no destination table
        UnsafeColumnName: a payload key is not a plain identifier
        ReservedColumnCollision: a payload key shadows a metadata column
    """
    transaction_type = lookup_transaction_type(event.type)
    if transaction_type is None:
        raise UnknownType(f"Unknown transaction type {event.type!r}", {"type": event.type})
    table_name = TRANSACTION_TABLES[transaction_type]

    unsafe = [key for key in event.data if not is_safe_identifier(key)]
    if unsafe:
        raise UnsafeColumnName(
            f"{len(unsafe)} payload key(s) are not valid column names",
            # repr keeps control characters readable in the audit log
            {"keys": [repr(key)[:80] for key in unsafe[:10]]}
        )

    reserved = [key for key in event.data if key.lower() in METADATA_COLUMNS]
    if reserved:
        raise ReservedColumnCollision(
            f"Payload redefines reserved column(s): {', '.join(reserved)}",
            {"keys": reserved}
        )

    columns = tuple(event.data.keys()) + METADATA_COLUMNS
    values = tuple(_bind_value(value) for value in event.data.values()) + (
        event.signature,
        transaction_type.value,
        event_timestamp(event.timestamp),
    )
    return InsertStatement(table=table_name, columns=columns, values=values)
