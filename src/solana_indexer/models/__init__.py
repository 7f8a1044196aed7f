"""
Models for the Solana indexer: SQLModel store tables, enums and wire schemas.
"""

from .types import TransactionType, TRANSACTION_TABLES, AuditEventType, AuditStatus
from .store import TargetConnection, IndexingConfig, AuditRecord
from .events import TransactionEvent, WebhookBatch
from .requests import (
    TargetConnectionParams,
    TargetConnectionPatch,
    IndexingConfigCreate,
    IndexingConfigPatch,
)

__all__ = [
    # Enumerations
    "TransactionType",
    "TRANSACTION_TABLES",
    "AuditEventType",
    "AuditStatus",
    # Store tables
    "TargetConnection",
    "IndexingConfig",
    "AuditRecord",
    # Webhook payloads
    "TransactionEvent",
    "WebhookBatch",
    # Mutation inputs
    "TargetConnectionParams",
    "TargetConnectionPatch",
    "IndexingConfigCreate",
    "IndexingConfigPatch",
]
