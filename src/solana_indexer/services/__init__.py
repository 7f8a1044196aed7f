"""
Indexing pipeline services.
"""

from .audit import AuditLog
from .helius_client import HeliusClient
from .subscription_sync import SubscriptionSync, Selection
from .connection_registry import ConnectionRegistry
from .config_registry import ConfigRegistry
from .insert_builder import InsertStatement, build as build_insert
from .ingestor import Ingestor, BatchReport, EventOutcome, EventStatus
from .query_guard import QueryGuard, QueryVerdict, validate as validate_query

__all__ = [
    "AuditLog",
    "HeliusClient",
    "SubscriptionSync",
    "Selection",
    "ConnectionRegistry",
    "ConfigRegistry",
    "InsertStatement",
    "build_insert",
    "Ingestor",
    "BatchReport",
    "EventOutcome",
    "EventStatus",
    "QueryGuard",
    "QueryVerdict",
    "validate_query",
]
