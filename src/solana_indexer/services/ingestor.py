"""
Webhook batch ingestion.

Resolves the owner's active configuration and connection, then filters,
builds and inserts every transaction independently: one bad event is
reported and audited on its own and never aborts the rest of the batch.
"""

import logging
import threading
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pydantic
from sqlalchemy.exc import SQLAlchemyError

from ..database.target_pool import TargetPool
from ..errors import IndexerError, UpstreamFailure
from ..models.events import TransactionEvent
from ..models.store import IndexingConfig, TargetConnection
from ..models.types import AuditEventType
from . import insert_builder
from .audit import AuditLog
from .config_registry import ConfigRegistry
from .connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)

NO_ACTIVE_SETUP = "no active configuration or connection"

EventInput = Union[TransactionEvent, Mapping[str, Any]]


class EventStatus(str, Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    INSERT_FAILED = "insert_failed"


@dataclass
class EventOutcome:
    index: int
    signature: Optional[str]
    type: Optional[str]
    status: EventStatus
    table: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "signature": self.signature,
            "type": self.type,
            "status": self.status.value,
            "table": self.table,
            "error": self.error,
        }


@dataclass
class BatchReport:
    owner_id: int
    received: int
    outcomes: List[EventOutcome] = field(default_factory=list)
    aborted_reason: Optional[str] = None

    def _count(self, *statuses: EventStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status in statuses)

    @property
    def inserted(self) -> int:
        return self._count(EventStatus.INSERTED)

    @property
    def skipped(self) -> int:
        return self._count(EventStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(EventStatus.REJECTED, EventStatus.INSERT_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "received": self.received,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "failed": self.failed,
            "aborted_reason": self.aborted_reason,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class _OwnerLock:
    """Mutex serializing one owner's batches."""

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()
        return False


class Ingestor:
    """Runtime entry point for webhook deliveries."""

    def __init__(
        self,
        config_registry: ConfigRegistry,
        connection_registry: ConnectionRegistry,
        target_pool: TargetPool,
        audit: AuditLog
    ):
        self.config_registry = config_registry
        self.connection_registry = connection_registry
        self.target_pool = target_pool
        self.audit = audit
        # Entries disappear once no batch for that owner holds or awaits the lock
        self._owner_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _owner_lock(self, owner_id: int) -> _OwnerLock:
        with self._locks_guard:
            lock = self._owner_locks.get(owner_id)
            if lock is None:
                lock = _OwnerLock()
                self._owner_locks[owner_id] = lock
            return lock

    def ingest(self, owner_id: int, events: Sequence[EventInput]) -> BatchReport:
        """Process one batch. Batches for the same owner run one at a time, in arrival order."""
        with self._owner_lock(owner_id):
            return self._ingest(owner_id, list(events))

    def _ingest(self, owner_id: int, events: List[EventInput]) -> BatchReport:
        report = BatchReport(owner_id=owner_id, received=len(events))
        self.audit.success(owner_id, AuditEventType.WEBHOOK_RECEIVED, f"Received {len(events)} transactions", {
            "count": len(events),
        })

        try:
            config = self.config_registry.get_active(owner_id)
            connection = self.connection_registry.get_active(owner_id)
        except SQLAlchemyError as e:
            logger.error(f"Could not load active setup for owner {owner_id}: {e}")
            self.audit.error(owner_id, AuditEventType.WEBHOOK_PROCESSING_ERROR, "Failed to load active configuration", {
                "count": len(events),
            })
            raise UpstreamFailure("Application store unavailable") from e

        if config is None or connection is None:
            report.aborted_reason = NO_ACTIVE_SETUP
            self.audit.error(owner_id, AuditEventType.WEBHOOK_PROCESSING_ERROR, NO_ACTIVE_SETUP, {
                "count": len(events),
                "has_config": config is not None,
                "has_connection": connection is not None,
            })
            logger.warning(f"Dropped batch of {len(events)} for owner {owner_id}: {NO_ACTIVE_SETUP}")
            return report

        for index, raw in enumerate(events):
            report.outcomes.append(self._process(owner_id, index, raw, config, connection))

        self.audit.success(owner_id, AuditEventType.WEBHOOK_PROCESSED, f"Processed {len(events)} transactions", {
            "count": len(events),
            "inserted": report.inserted,
            "skipped": report.skipped,
            "failed": report.failed,
        })
        logger.info(
            f"Owner {owner_id} batch: {report.received} received, {report.inserted} inserted, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        return report

    def _process(
        self,
        owner_id: int,
        index: int,
        raw: EventInput,
        config: IndexingConfig,
        connection: TargetConnection
    ) -> EventOutcome:
        """Handle one event and audit its outcome. Never raises."""
        try:
            event = raw if isinstance(raw, TransactionEvent) else TransactionEvent.model_validate(raw)
        except pydantic.ValidationError as e:
            signature = raw.get("signature") if isinstance(raw, Mapping) else None
            tx_type = raw.get("type") if isinstance(raw, Mapping) else None
            error = {"code": "MALFORMED_EVENT", "message": f"{e.error_count()} invalid field(s)"}
            return self._failed(owner_id, index, signature, tx_type, EventStatus.REJECTED, error)

        if not self.config_registry.is_enabled(config, event):
            return EventOutcome(index=index, signature=event.signature, type=event.type, status=EventStatus.SKIPPED)

        try:
            statement = insert_builder.build(event)
        except IndexerError as e:
            return self._failed(owner_id, index, event.signature, event.type, EventStatus.REJECTED, e.to_dict())

        try:
            self.target_pool.execute(owner_id, connection, statement.to_sql())
        except SQLAlchemyError as e:
            error = {"code": type(e).__name__, "message": _first_line(e)}
            return self._failed(owner_id, index, event.signature, event.type, EventStatus.INSERT_FAILED, error, statement.table)
        except Exception as e:  # isolation boundary for driver-level surprises
            logger.exception(f"Unexpected insert failure for {event.signature}")
            error = {"code": type(e).__name__, "message": _first_line(e)}
            return self._failed(owner_id, index, event.signature, event.type, EventStatus.INSERT_FAILED, error, statement.table)

        self.audit.success(owner_id, AuditEventType.DATA_INDEXED, f"Indexed {event.type} data", {
            "signature": event.signature,
            "type": event.type,
            "table": statement.table,
        })
        return EventOutcome(
            index=index,
            signature=event.signature,
            type=event.type,
            status=EventStatus.INSERTED,
            table=statement.table,
        )

    def _failed(
        self,
        owner_id: int,
        index: int,
        signature: Optional[str],
        tx_type: Optional[str],
        status: EventStatus,
        error: Dict[str, Any],
        table: Optional[str] = None
    ) -> EventOutcome:
        logger.warning(f"Owner {owner_id} event {index} ({signature}) {status.value}: {error.get('message')}")
        self.audit.error(owner_id, AuditEventType.DATA_INDEXING_ERROR, f"Failed to index {tx_type} data: {error.get('message')}", {
            "signature": signature,
            "type": tx_type,
            "error": error,
        })
        return EventOutcome(index=index, signature=signature, type=tx_type, status=status, table=table, error=error)


def _first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0][:300] if text else type(exc).__name__
