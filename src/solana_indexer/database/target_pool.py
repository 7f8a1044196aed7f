"""
Connections into user-owned target databases.

Routine inserts share one pooled engine per owner; idle engines are disposed
after the configured idle lifetime. Connectivity probes and ad-hoc reads use
short-lived engines that never outlive the call that created them.
"""

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, Optional, Union

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine, URL
from sqlalchemy.pool import NullPool, QueuePool

from ..config.settings import Settings, TargetPoolConfig, get_settings
from ..models.store import TargetConnection
from ..models.requests import TargetConnectionParams

logger = logging.getLogger(__name__)

ConnectionSpec = Union[TargetConnection, TargetConnectionParams]
EngineFactory = Callable[[ConnectionSpec, bool, int], Engine]


@dataclass
class ProbeResult:
    ok: bool
    diagnostic: str

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "diagnostic": self.diagnostic}


@dataclass
class _PooledEngine:
    engine: Engine
    fingerprint: str
    last_used: float


def build_target_url(spec: ConnectionSpec) -> URL:
    """PostgreSQL URL for a target connection. Rendered with the password hidden by default."""
    return URL.create(
        "postgresql+psycopg2",
        username=spec.username,
        password=spec.password,
        host=spec.host,
        port=spec.port,
        database=spec.database,
    )


def connection_fingerprint(spec: ConnectionSpec) -> str:
    """Digest of every parameter that changes where or how we connect."""
    raw = "|".join(str(part) for part in (
        spec.host, spec.port, spec.database, spec.username, spec.password, spec.use_tls
    ))
    return hashlib.sha256(raw.encode()).hexdigest()


class TargetPool:
    """Per-owner engine registry for target databases."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine_factory: Optional[EngineFactory] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings or get_settings()
        self.config: TargetPoolConfig = self.settings.target_pool
        self._engine_factory = engine_factory or self._create_postgres_engine
        self._clock = clock
        self._engines: Dict[int, _PooledEngine] = {}
        self._lock = threading.Lock()

    def _create_postgres_engine(self, spec: ConnectionSpec, pooled: bool, timeout_seconds: int) -> Engine:
        connect_args = {
            "connect_timeout": timeout_seconds,
            "sslmode": "require" if spec.use_tls else "prefer",
            "application_name": "solana_indexer",
        }
        if pooled:
            return create_engine(
                build_target_url(spec),
                poolclass=QueuePool,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_timeout=self.config.pool_timeout_seconds,
                pool_recycle=self.config.idle_lifetime_seconds,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        return create_engine(build_target_url(spec), poolclass=NullPool, connect_args=connect_args)

    def engine_for(self, owner_id: int, connection: TargetConnection) -> Engine:
        """Pooled engine for the owner's active connection, rebuilt when parameters change."""
        self.evict_idle()
        fingerprint = connection_fingerprint(connection)
        stale = None
        with self._lock:
            pooled = self._engines.get(owner_id)
            if pooled is not None and pooled.fingerprint != fingerprint:
                stale = self._engines.pop(owner_id)
                pooled = None
            if pooled is None:
                engine = self._engine_factory(connection, True, self.config.connection_timeout_seconds)
                pooled = _PooledEngine(engine=engine, fingerprint=fingerprint, last_used=self._clock())
                self._engines[owner_id] = pooled
                logger.info(
                    f"Created target pool for owner {owner_id}: "
                    f"{build_target_url(connection).render_as_string(hide_password=True)}"
                )
            pooled.last_used = self._clock()
        if stale is not None:
            logger.info(f"Connection parameters changed for owner {owner_id}, disposing previous pool")
            stale.engine.dispose()
        return pooled.engine

    def execute(self, owner_id: int, connection: TargetConnection, statement: Any) -> int:
        """Execute one statement in its own transaction on the owner's pool.

        Raises SQLAlchemyError (including pool TimeoutError) on failure.
        """
        engine = self.engine_for(owner_id, connection)
        with engine.begin() as conn:
            result = conn.execute(statement)
            return result.rowcount

    def evict(self, owner_id: int):
        """Dispose the owner's pooled engine, e.g. after credentials change."""
        with self._lock:
            pooled = self._engines.pop(owner_id, None)
        if pooled is not None:
            pooled.engine.dispose()
            logger.info(f"Disposed target pool for owner {owner_id}")

    def evict_idle(self) -> int:
        """Dispose engines unused for longer than the idle lifetime."""
        cutoff = self._clock() - self.config.idle_lifetime_seconds
        with self._lock:
            expired = [owner_id for owner_id, pooled in self._engines.items() if pooled.last_used < cutoff]
            disposed = [self._engines.pop(owner_id) for owner_id in expired]
        for pooled in disposed:
            pooled.engine.dispose()
        if expired:
            logger.debug(f"Disposed {len(expired)} idle target pools")
        return len(expired)

    def dispose_all(self):
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for pooled in engines:
            pooled.engine.dispose()

    def pooled_owners(self):
        with self._lock:
            return sorted(self._engines)

    @contextmanager
    def short_lived(
        self,
        spec: ConnectionSpec,
        timeout_seconds: Optional[int] = None,
        statement_timeout_seconds: Optional[int] = None
    ) -> Generator[Connection, None, None]:
        """Open one unpooled connection and tear the engine down on exit."""
        timeout = timeout_seconds or self.config.connection_timeout_seconds
        engine = self._engine_factory(spec, False, timeout)
        if statement_timeout_seconds:
            install_statement_timeout(engine, statement_timeout_seconds)
        try:
            with engine.connect() as conn:
                yield conn
        finally:
            engine.dispose()

    def probe(self, spec: ConnectionSpec) -> ProbeResult:
        """Check that a target database is reachable. Never raises."""
        timeout = self.config.probe_timeout_seconds
        safe_url = build_target_url(spec).render_as_string(hide_password=True)
        try:
            with self.short_lived(spec, timeout) as conn:
                conn.execute(text("SELECT 1")).scalar()
            logger.info(f"Connectivity probe succeeded for {safe_url}")
            return ProbeResult(ok=True, diagnostic="Connection successful")
        except Exception as e:  # boundary: every failure becomes a diagnostic
            logger.warning(f"Connectivity probe failed for {safe_url}: {type(e).__name__}")
            return ProbeResult(ok=False, diagnostic=f"Connection failed: {_sanitize(str(e), spec)}")


def _sanitize(message: str, spec: ConnectionSpec) -> str:
    password = getattr(spec, "password", None)
    if password:
        message = message.replace(password, "***")
    return message.strip().splitlines()[0] if message.strip() else message


def install_statement_timeout(engine: Engine, timeout_seconds: int):
    """Apply a per-connection statement timeout on PostgreSQL engines."""
    if engine.dialect.name != "postgresql":
        return

    @event.listens_for(engine, "connect")
    def _set_timeout(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute(f"SET statement_timeout = {int(timeout_seconds) * 1000}")
        cursor.close()
