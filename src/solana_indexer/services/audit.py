"""
Append-only audit log used for user-visible activity and operational diagnosis.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from ..models.store import AuditRecord
from ..models.types import AuditEventType, AuditStatus, as_utc, utcnow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]

# Keys whose values are dropped from metadata before it is persisted
SECRET_KEYS = frozenset({"password", "secret", "secretcredential", "credential", "api_key", "apikey", "token", "auth_header"})


def scrub_secrets(metadata: Any) -> Any:
    """Recursively replace secret-looking values."""
    if isinstance(metadata, Mapping):
        return {
            key: "***" if str(key).lower().replace("-", "_") in SECRET_KEYS else scrub_secrets(value)
            for key, value in metadata.items()
        }
    if isinstance(metadata, (list, tuple)):
        return [scrub_secrets(value) for value in metadata]
    return metadata


class AuditLog:
    """Writes and queries AuditRecord rows."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def record(
        self,
        owner_id: int,
        event_type: AuditEventType,
        status: AuditStatus,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditRecord]:
        """Append one record in its own transaction.

        A failure to write the audit log is logged and swallowed so it never
        turns a successful pipeline step into a failed one.
        """
        entry = AuditRecord(
            owner_id=owner_id,
            event_type=event_type,
            status=status,
            message=message,
            event_metadata=scrub_secrets(metadata or {}),
            created_at=utcnow(),
        )
        try:
            with self._session_factory() as session:
                session.add(entry)
                session.commit()
                session.refresh(entry)
        except SQLAlchemyError as e:
            logger.error(f"Failed to write audit record {event_type.value}/{status.value} for owner {owner_id}: {e}")
            return None

        log = logger.warning if status == AuditStatus.ERROR else logger.debug
        log(f"[owner {owner_id}] {event_type.value} {status.value}: {message}")
        return entry

    def success(self, owner_id: int, event_type: AuditEventType, message: str, metadata: Optional[Dict[str, Any]] = None):
        return self.record(owner_id, event_type, AuditStatus.SUCCESS, message, metadata)

    def error(self, owner_id: int, event_type: AuditEventType, message: str, metadata: Optional[Dict[str, Any]] = None):
        return self.record(owner_id, event_type, AuditStatus.ERROR, message, metadata)

    def list(
        self,
        owner_id: int,
        event_type: Optional[AuditEventType] = None,
        status: Optional[AuditStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[AuditRecord], int]:
        """Records newest first with the total matching count for pagination."""
        conditions = [AuditRecord.owner_id == owner_id]
        if event_type is not None:
            conditions.append(AuditRecord.event_type == event_type)
        if status is not None:
            conditions.append(AuditRecord.status == status)

        with self._session_factory() as session:
            records = session.exec(
                select(AuditRecord)
                .where(*conditions)
                .order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc())
                .offset(max(offset, 0))
                .limit(max(limit, 0))
            ).all()
            total = session.exec(
                select(func.count()).select_from(AuditRecord).where(*conditions)
            ).one()
        return list(records), int(total)

    def recent(self, owner_id: int, limit: int = 10) -> List[AuditRecord]:
        records, _ = self.list(owner_id, limit=limit)
        return records

    def event_summary(self, owner_id: int) -> List[Dict[str, Any]]:
        """Record counts grouped by event type and status."""
        with self._session_factory() as session:
            rows = session.exec(
                select(AuditRecord.event_type, AuditRecord.status, func.count(AuditRecord.id))
                .where(AuditRecord.owner_id == owner_id)
                .group_by(AuditRecord.event_type, AuditRecord.status)
                .order_by(AuditRecord.event_type, AuditRecord.status)
            ).all()
        return [
            {"event_type": _value(event_type), "status": _value(status), "count": int(count)}
            for event_type, status, count in rows
        ]

    def daily_metrics(self, owner_id: int, days: int = 7) -> List[Dict[str, Any]]:
        """Per-day record totals for the last ``days`` days (UTC), oldest first."""
        days = max(days, 1)
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        start = today - timedelta(days=days - 1)

        with self._session_factory() as session:
            rows = session.exec(
                select(AuditRecord.created_at, AuditRecord.status)
                .where(AuditRecord.owner_id == owner_id, AuditRecord.created_at >= start)
            ).all()

        buckets = {
            (start + timedelta(days=i)).date(): {"processed": 0, "success": 0, "error": 0}
            for i in range(days)
        }
        for created_at, status in rows:
            bucket = buckets.get(as_utc(created_at).date())
            if bucket is None:
                continue
            bucket["processed"] += 1
            if _value(status) == AuditStatus.SUCCESS.value:
                bucket["success"] += 1
            else:
                bucket["error"] += 1

        return [
            {
                "date": day.isoformat(),
                "transactions_processed": counts["processed"],
                "success_count": counts["success"],
                "error_count": counts["error"],
            }
            for day, counts in sorted(buckets.items())
        ]


def _value(item: Any) -> Any:
    return item.value if hasattr(item, "value") else item
