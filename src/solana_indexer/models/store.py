"""
SQLModel tables for the application store.
Holds per-owner target connections, indexing configurations and the audit log.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, FrozenSet
from sqlmodel import SQLModel, Field, Column, Index
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB

from .types import TransactionType, AuditEventType, AuditStatus, lookup_transaction_type, as_utc, utcnow


def _json_column(name: Optional[str] = None) -> Column:
    """JSON column stored as JSONB on PostgreSQL."""
    json_type = JSON().with_variant(JSONB(), "postgresql")
    if name:
        return Column(name, json_type)
    return Column(json_type)


def _timestamp_column() -> Column:
    return Column(DateTime(timezone=True), nullable=False)


class TargetConnection(SQLModel, table=True):
    """Connection parameters for an owner's target database."""

    __tablename__ = "target_connections"
    __table_args__ = (
        Index("idx_target_connections_owner_active", "owner_id", "is_active"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, description="Auto-increment ID")
    owner_id: int = Field(index=True, description="Owning user")

    host: str = Field(max_length=255)
    port: int = Field(description="TCP port, 1-65535")
    database: str = Field(max_length=255)
    username: str = Field(max_length=255)
    # Write-only from the API's point of view
    password: str = Field(max_length=1024)
    use_tls: bool = Field(default=False, description="Require TLS to the target database")

    is_active: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())

    def to_public_dict(self) -> Dict[str, Any]:
        """Representation safe to return to clients or write to audit metadata."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "use_tls": self.use_tls,
            "is_active": self.is_active,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "updated_at": as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }


class IndexingConfig(SQLModel, table=True):
    """Which transaction types and addresses an owner wants indexed."""

    __tablename__ = "indexing_configs"
    __table_args__ = (
        Index("idx_indexing_configs_owner_active", "owner_id", "is_active"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, description="Auto-increment ID")
    owner_id: int = Field(index=True, description="Owning user")
    name: str = Field(max_length=200)

    # Type names in declaration order
    enabled_types: List[str] = Field(default_factory=list, sa_column=_json_column())
    custom_addresses: List[str] = Field(default_factory=list, sa_column=_json_column())

    subscription_id: Optional[str] = Field(default=None, max_length=100, description="Helius webhook ID")
    is_active: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())

    def type_set(self) -> FrozenSet[TransactionType]:
        types = (lookup_transaction_type(name) for name in (self.enabled_types or []))
        return frozenset(t for t in types if t is not None)

    def tracks_address(self, addresses: List[str]) -> bool:
        if not self.custom_addresses or not addresses:
            return False
        return not set(self.custom_addresses).isdisjoint(addresses)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "enabled_types": list(self.enabled_types or []),
            "custom_addresses": list(self.custom_addresses or []),
            "subscription_id": self.subscription_id,
            "is_active": self.is_active,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "updated_at": as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }


class AuditRecord(SQLModel, table=True):
    """Append-only activity log entry."""

    __tablename__ = "audit_records"
    __table_args__ = (
        Index("idx_audit_records_owner_created", "owner_id", "created_at"),
        Index("idx_audit_records_event_type", "event_type"),
        Index("idx_audit_records_status", "status"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, description="Auto-increment ID")
    owner_id: int = Field(description="Owner the event belongs to")
    event_type: AuditEventType = Field(description="What happened")
    status: AuditStatus = Field(description="SUCCESS or ERROR")
    message: Optional[str] = Field(default=None, description="Human readable summary")
    event_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=_json_column("metadata"))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "event_type": self.event_type.value if isinstance(self.event_type, AuditEventType) else self.event_type,
            "status": self.status.value if isinstance(self.status, AuditStatus) else self.status,
            "message": self.message,
            "metadata": self.event_metadata or {},
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
