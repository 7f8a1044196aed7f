"""
Per-owner indexing configurations.

Owns the single-active invariant over IndexingConfig rows and drives
SubscriptionSync whenever a configuration's selection changes. Every mutation
leaves a CONFIG_* audit record behind.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlmodel import select

from ..config.settings import Settings, get_settings
from ..errors import IndexerError, InvalidState, SubscriptionSwapFailure, UpstreamFailure, ValidationError
from ..models.events import TransactionEvent
from ..models.requests import IndexingConfigCreate, IndexingConfigPatch
from ..models.store import IndexingConfig, TargetConnection
from ..models.types import AuditEventType, TransactionType, lookup_transaction_type, ordered_types, utcnow
from .active_set import activate_exclusively, find_active, load_owned
from .audit import AuditLog, SessionFactory, scrub_secrets
from .subscription_sync import SubscriptionSync

logger = logging.getLogger(__name__)


class ConfigRegistry:
    """CRUD plus activation for IndexingConfig records."""

    def __init__(
        self,
        session_factory: SessionFactory,
        subscription_sync: SubscriptionSync,
        audit: AuditLog,
        settings: Optional[Settings] = None
    ):
        self._session_factory = session_factory
        self.subscription_sync = subscription_sync
        self.audit = audit
        self.settings = settings or get_settings()

    def _has_active_connection(self, owner_id: int) -> bool:
        with self._session_factory() as session:
            return find_active(session, TargetConnection, owner_id) is not None

    def create(
        self,
        owner_id: int,
        name: str,
        types: Iterable[Any] = (),
        addresses: Iterable[str] = ()
    ) -> IndexingConfig:
        """Register the subscription and store the config, inactive."""
        request = IndexingConfigCreate.parse({
            "name": name,
            "enabled_types": list(types),
            "custom_addresses": list(addresses),
        })
        if not request.enabled_types and not request.custom_addresses:
            raise ValidationError("Select at least one transaction type or custom address")
        if not self._has_active_connection(owner_id):
            raise InvalidState("An active database connection is required before creating a configuration")

        enabled_types = [t.value for t in ordered_types(request.enabled_types)]
        try:
            handle = self.subscription_sync.reconcile(
                None, enabled_types, request.custom_addresses, self.settings.callback_url(owner_id)
            )
        except UpstreamFailure as e:
            self.audit.error(owner_id, AuditEventType.CONFIG_CREATED, f"Failed to create configuration: {e.message}", {
                "name": request.name,
                "error": e.to_dict(),
            })
            raise

        config = IndexingConfig(
            owner_id=owner_id,
            name=request.name,
            enabled_types=enabled_types,
            custom_addresses=request.custom_addresses,
            subscription_id=handle,
            is_active=False,
        )
        try:
            with self._session_factory() as session:
                session.add(config)
                session.commit()
                session.refresh(config)
        except Exception:
            # The subscription exists but nothing points at it
            self._discard_subscription(handle)
            raise

        self.audit.success(owner_id, AuditEventType.CONFIG_CREATED, f"Created configuration {config.name}", {
            "config_id": config.id,
            "subscription_id": handle,
            "enabled_types": enabled_types,
            "custom_addresses": len(request.custom_addresses),
        })
        return config

    def _discard_subscription(self, handle: str):
        try:
            self.subscription_sync.remove(handle)
        except UpstreamFailure as e:
            logger.error(f"Could not remove orphaned subscription {handle}: {e.message}")

    def list(self, owner_id: int) -> List[IndexingConfig]:
        with self._session_factory() as session:
            return list(session.exec(
                select(IndexingConfig)
                .where(IndexingConfig.owner_id == owner_id)
                .order_by(IndexingConfig.created_at.desc(), IndexingConfig.id.desc())
            ).all())

    def get(self, owner_id: int, config_id: int) -> IndexingConfig:
        with self._session_factory() as session:
            return load_owned(session, IndexingConfig, owner_id, config_id)

    def get_active(self, owner_id: int) -> Optional[IndexingConfig]:
        with self._session_factory() as session:
            return find_active(session, IndexingConfig, owner_id)

    @staticmethod
    def is_enabled(config: IndexingConfig, event: TransactionEvent) -> bool:
        """Whether the config wants this event: its type is enabled or it touches a tracked address."""
        transaction_type = lookup_transaction_type(event.type)
        if transaction_type is not None and transaction_type in config.type_set():
            return True
        return config.tracks_address(event.accounts)

    def update(
        self,
        owner_id: int,
        config_id: int,
        patch: Union[IndexingConfigPatch, Mapping[str, Any]]
    ) -> IndexingConfig:
        """Apply a partial update, then reconcile the subscription if the selection changed.

        The local update is committed before the provider is called and is not
        rolled back when reconciliation fails.
        """
        attempted: Dict[str, Any] = scrub_secrets(dict(patch)) if isinstance(patch, Mapping) else {}
        try:
            request = IndexingConfigPatch.parse(patch)
            attempted = request.changes()
            config, selection_changed = self._apply_patch(owner_id, config_id, request)
            if selection_changed or not config.subscription_id:
                config = self._sync_subscription(owner_id, config)
        except Exception as e:
            if isinstance(e, IndexerError):
                reason, error = e.message, e.to_dict()
            else:
                logger.exception(f"Unexpected failure updating configuration {config_id}")
                reason, error = str(e), {"error": type(e).__name__, "message": str(e)}
            message = f"Failed to update configuration {config_id}: {reason}"
            if isinstance(e, SubscriptionSwapFailure):
                message += " (indexing is paused until the subscription is recreated)"
            self.audit.error(owner_id, AuditEventType.CONFIG_UPDATED, message, {
                "config_id": config_id,
                "patch": attempted,
                "error": error,
            })
            raise

        self.audit.success(owner_id, AuditEventType.CONFIG_UPDATED, f"Updated configuration {config.name}", {
            "config_id": config.id,
            "fields": sorted(attempted),
            "subscription_id": config.subscription_id,
            "is_active": config.is_active,
        })
        return config

    def _apply_patch(self, owner_id: int, config_id: int, request: IndexingConfigPatch) -> Tuple[IndexingConfig, bool]:
        changes = request.changes()
        with self._session_factory() as session:
            config = load_owned(session, IndexingConfig, owner_id, config_id, lock=True)

            effective_types = config.enabled_types
            if "enabled_types" in changes:
                effective_types = [t.value for t in ordered_types(TransactionType(v) for v in changes["enabled_types"])]
            effective_addresses = changes.get("custom_addresses", config.custom_addresses)
            if not effective_types and not effective_addresses:
                raise ValidationError("Select at least one transaction type or custom address")
            selection_changed = (
                list(effective_types) != list(config.enabled_types or [])
                or list(effective_addresses) != list(config.custom_addresses or [])
            )

            if changes.get("is_active") is True:
                config = activate_exclusively(session, IndexingConfig, owner_id, config_id)
            elif changes.get("is_active") is False:
                config.is_active = False

            if "name" in changes:
                config.name = changes["name"]
            # Reassign rather than mutate so the JSON columns are flagged dirty
            config.enabled_types = list(effective_types)
            config.custom_addresses = list(effective_addresses)
            config.updated_at = utcnow()
            session.add(config)
            session.commit()
            session.refresh(config)
        return config, selection_changed

    def _sync_subscription(self, owner_id: int, config: IndexingConfig) -> IndexingConfig:
        previous = config.subscription_id
        try:
            handle = self.subscription_sync.reconcile(
                previous, config.enabled_types, config.custom_addresses, self.settings.callback_url(owner_id)
            )
        except SubscriptionSwapFailure:
            self._store_handle(owner_id, config.id, None)
            config.subscription_id = None
            raise

        if handle != previous:
            self._store_handle(owner_id, config.id, handle)
            config.subscription_id = handle
        return config

    def _store_handle(self, owner_id: int, config_id: int, handle: Optional[str]):
        with self._session_factory() as session:
            config = load_owned(session, IndexingConfig, owner_id, config_id, lock=True)
            config.subscription_id = handle
            config.updated_at = utcnow()
            session.add(config)
            session.commit()

    def delete(self, owner_id: int, config_id: int):
        """Delete an inactive config, then remove its external subscription best-effort."""
        with self._session_factory() as session:
            config = load_owned(session, IndexingConfig, owner_id, config_id, lock=True)
            if not config.is_active:
                session.delete(config)
                session.commit()
        if config.is_active:
            self.audit.error(owner_id, AuditEventType.CONFIG_DELETED, f"Refused to delete active configuration {config.name}", {
                "config_id": config_id,
            })
            raise InvalidState("Active configuration cannot be deleted; deactivate it first", {"id": config_id})

        metadata: Dict[str, Any] = {"config_id": config_id, "subscription_id": config.subscription_id}
        if config.subscription_id:
            try:
                self.subscription_sync.remove(config.subscription_id)
            except UpstreamFailure as e:
                logger.warning(
                    f"Could not delete subscription {config.subscription_id} for config {config_id}, "
                    f"leaving it for manual cleanup: {e.message}"
                )
                metadata["orphaned_subscription_id"] = config.subscription_id

        self.audit.success(owner_id, AuditEventType.CONFIG_DELETED, f"Deleted configuration {config.name}", metadata)
