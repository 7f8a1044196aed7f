"""
Shared fixtures for indexer tests.

The application store runs on in-memory SQLite. Target databases are a
SQLite file carrying the three destination tables, handed to TargetPool
through its engine factory. The subscription provider is an in-process fake.
"""

import itertools
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from solana_indexer.config.settings import Settings
from solana_indexer.database.connection import DatabaseConnection
from solana_indexer.database.target_pool import TargetPool
from solana_indexer.errors import UpstreamFailure
from solana_indexer.pipeline import IndexerServices, build_services

OWNER_ID = 1
OTHER_OWNER_ID = 2
UNREACHABLE_HOST = "unreachable.invalid"

TARGET_SCHEMA = (
    """
    CREATE TABLE nft_bids (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        mint TEXT, bidder TEXT, amount NUMERIC, marketplace TEXT,
        signature TEXT, transaction_type TEXT, timestamp TIMESTAMP
    )
    """,
    """
    CREATE TABLE token_prices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        token TEXT, price NUMERIC, source TEXT,
        signature TEXT, transaction_type TEXT, timestamp TIMESTAMP
    )
    """,
    """
    CREATE TABLE borrowable_tokens (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        token TEXT, protocol TEXT, apy NUMERIC, details TEXT,
        signature TEXT, transaction_type TEXT, timestamp TIMESTAMP
    )
    """,
)


class FakeProvider:
    """In-memory stand-in for the Helius webhook API."""

    def __init__(self):
        self.webhooks: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.fail_create = False
        self.fail_delete = False
        self.create_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    def create_subscription(self, callback_url: str, types: Sequence[str], addresses: Sequence[str]) -> str:
        self.calls.append(("create", list(types), list(addresses)))
        if self.fail_create:
            raise UpstreamFailure("Helius rejected webhook creation with HTTP 500", {"status_code": 500})
        if self.create_error is not None:
            raise self.create_error
        webhook_id = f"wh-{next(self._ids)}"
        self.webhooks[webhook_id] = {
            "webhookID": webhook_id,
            "webhookURL": callback_url,
            "transactionTypes": list(types) or ["ANY"],
            "accountAddresses": list(addresses),
        }
        return webhook_id

    def delete_subscription(self, webhook_id: str):
        self.calls.append(("delete", webhook_id))
        if self.fail_delete:
            raise UpstreamFailure("Helius rejected webhook deletion with HTTP 500", {"status_code": 500})
        self.webhooks.pop(webhook_id, None)

    def get_subscription(self, webhook_id: str) -> Dict[str, Any]:
        self.calls.append(("get", webhook_id))
        if webhook_id not in self.webhooks:
            raise UpstreamFailure("Helius rejected webhook lookup with HTTP 404", {"status_code": 404})
        return dict(self.webhooks[webhook_id])

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


class TargetEngineFactory:
    """Engine factory pointing every target connection at the test SQLite file."""

    def __init__(self, url: str):
        self.url = url
        self.calls: List[Tuple[str, bool, int]] = []
        self.engines: List[Engine] = []

    def __call__(self, spec, pooled: bool, timeout_seconds: int) -> Engine:
        self.calls.append((spec.host, pooled, timeout_seconds))
        if spec.host == UNREACHABLE_HOST:
            engine = create_engine("sqlite:////nonexistent-directory/target.db")
        else:
            engine = create_engine(self.url)
        self.engines.append(engine)
        return engine


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(config_data={
        "webhook": {"base_url": "https://indexer.test"},
        "query": {"max_rows": 100, "statement_timeout_seconds": 5},
    })


@pytest.fixture
def db(settings) -> Generator[DatabaseConnection, None, None]:
    connection = DatabaseConnection("sqlite://", settings=settings)
    connection.create_all_tables()
    yield connection
    connection.dispose()


@pytest.fixture
def target_url(tmp_path) -> str:
    url = f"sqlite:///{tmp_path / 'target.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        for ddl in TARGET_SCHEMA:
            conn.execute(text(ddl))
    engine.dispose()
    return url


@pytest.fixture
def engine_factory(target_url) -> TargetEngineFactory:
    return TargetEngineFactory(target_url)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def target_pool(settings, engine_factory, clock) -> Generator[TargetPool, None, None]:
    pool = TargetPool(settings=settings, engine_factory=engine_factory, clock=clock)
    yield pool
    pool.dispose_all()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def services(settings, db, provider, target_pool) -> IndexerServices:
    return build_services(settings, db=db, provider=provider, target_pool=target_pool)


@pytest.fixture
def connection_params() -> Dict[str, Any]:
    return {
        "host": "db.example.com",
        "port": 5432,
        "database": "indexer",
        "username": "indexer",
        "password": "s3cret-pw",
        "use_tls": True,
    }


@pytest.fixture
def active_connection(services, connection_params):
    """Owner 1 with one active target connection."""
    connection = services.connections.create(OWNER_ID, connection_params)
    return services.connections.set_active(OWNER_ID, connection.id)


@pytest.fixture
def active_config(services, active_connection):
    """Owner 1 indexing NFT bids and token prices, plus one tracked address."""
    config = services.configs.create(
        OWNER_ID,
        "Marketplace",
        ["NFT_BID", "TOKEN_PRICE"],
        ["TrackedVault111"],
    )
    return services.configs.update(OWNER_ID, config.id, {"is_active": True})


def make_event(
    tx_type: str = "NFT_BID",
    signature: str = "sig-1",
    data: Optional[Dict[str, Any]] = None,
    accounts: Optional[List[str]] = None,
    timestamp: int = 1_700_000_000_000,
) -> Dict[str, Any]:
    """Webhook transaction as Helius delivers it."""
    if data is None:
        data = {"mint": "Mint111", "bidder": "Bidder111", "amount": 1.5, "marketplace": "tensor"}
    return {
        "type": tx_type,
        "signature": signature,
        "slot": 250_000_000,
        "timestamp": timestamp,
        "data": data,
        "accounts": accounts or [],
    }


def target_rows(url: str, table: str) -> List[Dict[str, Any]]:
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            result = conn.execute(text(f"SELECT * FROM {table} ORDER BY id"))
            return [dict(row._mapping) for row in result]
    finally:
        engine.dispose()


def audit_trail(services: IndexerServices, owner_id: int = OWNER_ID) -> List[Tuple[str, str]]:
    """(event_type, status) pairs, oldest first."""
    records, _ = services.audit.list(owner_id, limit=500)
    return [(r.event_type.value, r.status.value) for r in reversed(records)]
