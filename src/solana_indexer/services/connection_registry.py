"""
Per-owner target database connections.

Owns the single-active invariant over TargetConnection rows and the
connectivity probe. Credentials are stored but never returned.
"""

import logging
from typing import Any, List, Mapping, Optional, Union

from sqlmodel import select

from ..database.target_pool import ProbeResult, TargetPool
from ..errors import InvalidState, ValidationError
from ..models.requests import TargetConnectionParams, TargetConnectionPatch
from ..models.store import TargetConnection
from ..models.types import utcnow
from .active_set import activate_exclusively, find_active, load_owned
from .audit import SessionFactory

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """CRUD plus activation for TargetConnection records."""

    def __init__(self, session_factory: SessionFactory, target_pool: TargetPool):
        self._session_factory = session_factory
        self.target_pool = target_pool

    def create(
        self,
        owner_id: int,
        params: Union[TargetConnectionParams, Mapping[str, Any]]
    ) -> TargetConnection:
        """Validate and store a new connection, inactive by default."""
        params = TargetConnectionParams.parse(params)
        connection = TargetConnection(
            owner_id=owner_id,
            host=params.host,
            port=params.port,
            database=params.database,
            username=params.username,
            password=params.password,
            use_tls=params.use_tls,
            is_active=False,
        )
        with self._session_factory() as session:
            session.add(connection)
            session.commit()
            session.refresh(connection)
        logger.info(f"Created target connection {connection.id} for owner {owner_id}")
        return connection

    def list(self, owner_id: int) -> List[TargetConnection]:
        with self._session_factory() as session:
            return list(session.exec(
                select(TargetConnection)
                .where(TargetConnection.owner_id == owner_id)
                .order_by(TargetConnection.created_at.desc(), TargetConnection.id.desc())
            ).all())

    def get(self, owner_id: int, connection_id: int) -> TargetConnection:
        with self._session_factory() as session:
            return load_owned(session, TargetConnection, owner_id, connection_id)

    def get_active(self, owner_id: int) -> Optional[TargetConnection]:
        with self._session_factory() as session:
            return find_active(session, TargetConnection, owner_id)

    def set_active(self, owner_id: int, connection_id: int) -> TargetConnection:
        """Atomically activate one connection and deactivate its siblings."""
        with self._session_factory() as session:
            connection = activate_exclusively(session, TargetConnection, owner_id, connection_id)
            session.commit()
            session.refresh(connection)
        # The previous active connection may still have a pool open
        self.target_pool.evict(owner_id)
        logger.info(f"Owner {owner_id} active target connection is now {connection_id}")
        return connection

    def deactivate(self, owner_id: int, connection_id: int) -> TargetConnection:
        with self._session_factory() as session:
            connection = load_owned(session, TargetConnection, owner_id, connection_id, lock=True)
            was_active = connection.is_active
            connection.is_active = False
            connection.updated_at = utcnow()
            session.add(connection)
            session.commit()
            session.refresh(connection)
        if was_active:
            self.target_pool.evict(owner_id)
        return connection

    def update(
        self,
        owner_id: int,
        connection_id: int,
        patch: Union[TargetConnectionPatch, Mapping[str, Any]]
    ) -> TargetConnection:
        """Apply only the provided fields; activation goes through set_active."""
        patch = TargetConnectionPatch.parse(patch)
        changes = patch.changes()
        activate = changes.pop("is_active", None)

        with self._session_factory() as session:
            connection = load_owned(session, TargetConnection, owner_id, connection_id, lock=True)
            if changes:
                for field, value in changes.items():
                    setattr(connection, field, value)
                connection.updated_at = utcnow()
                session.add(connection)
            if activate is True:
                connection = activate_exclusively(session, TargetConnection, owner_id, connection_id)
            elif activate is False:
                connection.is_active = False
                connection.updated_at = utcnow()
                session.add(connection)
            session.commit()
            session.refresh(connection)

        if changes or activate is not None:
            self.target_pool.evict(owner_id)
        return connection

    def delete(self, owner_id: int, connection_id: int):
        """Delete an inactive connection. Active connections must be deactivated first."""
        with self._session_factory() as session:
            connection = load_owned(session, TargetConnection, owner_id, connection_id, lock=True)
            if connection.is_active:
                raise InvalidState(
                    "Active connection cannot be deleted; deactivate it or activate another first",
                    {"id": connection_id}
                )
            session.delete(connection)
            session.commit()
        logger.info(f"Deleted target connection {connection_id} for owner {owner_id}")

    def test_connectivity(self, params: Union[TargetConnectionParams, Mapping[str, Any]]) -> ProbeResult:
        """Probe a target database with a short-lived connection. Never raises."""
        try:
            params = TargetConnectionParams.parse(params)
        except ValidationError as e:
            fields = ", ".join(err["field"] for err in e.details.get("errors", []))
            return ProbeResult(ok=False, diagnostic=f"Invalid connection parameters: {fields}")
        return self.target_pool.probe(params)
