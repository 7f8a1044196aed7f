"""
Guard for ad-hoc read queries against an owner's target database.

This is a keyword denylist, not a SQL parser. A legal SELECT that mentions a
denied word inside a string literal or comment is rejected too; it must never
accept a mutating statement.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..config.settings import QueryConfig
from ..database.target_pool import TargetPool
from ..errors import InvalidState, UnsafeInput, UpstreamFailure
from .connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)

DENIED_KEYWORDS = (
    "insert", "update", "delete", "drop", "alter", "create",
    "truncate", "grant", "revoke", "merge", "copy", "into",
)
_DENIED = re.compile(r"\b(" + "|".join(DENIED_KEYWORDS) + r")\b", re.IGNORECASE)
_SELECT_PREFIX = re.compile(r"select\s", re.IGNORECASE)
# Anything after a statement terminator other than whitespace
_STACKED = re.compile(r";\s*\S")


@dataclass(frozen=True)
class QueryVerdict:
    accepted: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted


ACCEPTED = QueryVerdict(accepted=True)


def validate(sql_text: Optional[str]) -> QueryVerdict:
    """Accept only text that looks like a single read-only SELECT."""
    if sql_text is None or not sql_text.strip():
        return QueryVerdict(False, "Query is empty")

    stripped = sql_text.strip()
    match = _DENIED.search(stripped)
    if match:
        return QueryVerdict(False, f"Query contains forbidden keyword {match.group(1).upper()}")
    if not _SELECT_PREFIX.match(stripped):
        return QueryVerdict(False, "Only SELECT queries are allowed")
    if _STACKED.search(stripped):
        return QueryVerdict(False, "Only a single statement is allowed")
    return ACCEPTED


class QueryGuard:
    """Validates and runs ad-hoc reads on short-lived connections."""

    def __init__(self, connection_registry: ConnectionRegistry, target_pool: TargetPool, config: QueryConfig):
        self.connection_registry = connection_registry
        self.target_pool = target_pool
        self.config = config

    validate = staticmethod(validate)

    def execute(self, owner_id: int, sql_text: str) -> Dict[str, Any]:
        """Run a validated SELECT on the owner's active connection.

        Returns ``{"columns": [...], "rows": [[...], ...], "truncated": bool}``.
        """
        verdict = validate(sql_text)
        if not verdict:
            raise UnsafeInput(verdict.reason, {"reason": verdict.reason})

        connection = self.connection_registry.get_active(owner_id)
        if connection is None:
            raise InvalidState("No active database connection")

        limit = self.config.max_rows
        try:
            with self.target_pool.short_lived(
                connection, statement_timeout_seconds=self.config.statement_timeout_seconds
            ) as conn:
                with conn.begin():
                    if conn.dialect.name == "postgresql":
                        conn.exec_driver_sql("SET TRANSACTION READ ONLY")
                    # No bound parameters, so a literal "%" reaches pyformat drivers untouched
                    result = conn.exec_driver_sql(
                        sql_text.strip().rstrip(";"), execution_options={"no_parameters": True}
                    )
                    columns = list(result.keys())
                    fetched = result.fetchmany(limit + 1)
        except SQLAlchemyError as e:
            logger.warning(f"Ad-hoc query failed for owner {owner_id}: {type(e).__name__}")
            message = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
            raise UpstreamFailure(f"Query failed: {message}") from e

        rows: List[List[Any]] = [list(row) for row in fetched[:limit]]
        logger.info(f"Ad-hoc query for owner {owner_id} returned {len(rows)} rows")
        return {"columns": columns, "rows": rows, "truncated": len(fetched) > limit}
