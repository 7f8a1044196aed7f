"""
Wires the pipeline services together around one application store.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config.settings import Settings, get_settings
from .database.connection import DatabaseConnection
from .database.target_pool import TargetPool
from .services.audit import AuditLog
from .services.config_registry import ConfigRegistry
from .services.connection_registry import ConnectionRegistry
from .services.helius_client import HeliusClient
from .services.ingestor import Ingestor
from .services.query_guard import QueryGuard
from .services.subscription_sync import SubscriptionProvider, SubscriptionSync

logger = logging.getLogger(__name__)


@dataclass
class IndexerServices:
    settings: Settings
    db: DatabaseConnection
    target_pool: TargetPool
    audit: AuditLog
    subscriptions: SubscriptionSync
    connections: ConnectionRegistry
    configs: ConfigRegistry
    ingestor: Ingestor
    queries: QueryGuard

    def close(self):
        self.target_pool.dispose_all()
        provider = self.subscriptions.provider
        if isinstance(provider, HeliusClient):
            provider.close()
        self.db.dispose()
        logger.info("Indexer services shut down")


def build_services(
    settings: Optional[Settings] = None,
    db: Optional[DatabaseConnection] = None,
    provider: Optional[SubscriptionProvider] = None,
    target_pool: Optional[TargetPool] = None
) -> IndexerServices:
    """Build the service graph; any collaborator can be swapped for tests."""
    settings = settings or get_settings()
    db = db or DatabaseConnection(settings=settings)
    target_pool = target_pool or TargetPool(settings=settings)
    provider = provider or HeliusClient(settings=settings)

    session_factory = db.get_session
    audit = AuditLog(session_factory)
    subscriptions = SubscriptionSync(provider)
    connections = ConnectionRegistry(session_factory, target_pool)
    configs = ConfigRegistry(session_factory, subscriptions, audit, settings)
    ingestor = Ingestor(configs, connections, target_pool, audit)
    queries = QueryGuard(connections, target_pool, settings.query)

    return IndexerServices(
        settings=settings,
        db=db,
        target_pool=target_pool,
        audit=audit,
        subscriptions=subscriptions,
        connections=connections,
        configs=configs,
        ingestor=ingestor,
        queries=queries,
    )
