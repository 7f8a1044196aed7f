"""
Closed enumerations shared by the store models, the ingestion pipeline and the API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional


class TransactionType(str, Enum):
    """Transaction types that can be indexed. Each one writes to exactly one table."""
    NFT_BID = "NFT_BID"
    TOKEN_PRICE = "TOKEN_PRICE"
    BORROWABLE_TOKEN = "BORROWABLE_TOKEN"

    @property
    def table_name(self) -> str:
        return TRANSACTION_TABLES[self]


# Static lookup, adding a type is a code change
TRANSACTION_TABLES: Dict[TransactionType, str] = {
    TransactionType.NFT_BID: "nft_bids",
    TransactionType.TOKEN_PRICE: "token_prices",
    TransactionType.BORROWABLE_TOKEN: "borrowable_tokens",
}


class AuditEventType(str, Enum):
    """Kinds of audit records written by the pipeline."""
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"
    WEBHOOK_PROCESSED = "WEBHOOK_PROCESSED"
    WEBHOOK_PROCESSING_ERROR = "WEBHOOK_PROCESSING_ERROR"
    DATA_INDEXED = "DATA_INDEXED"
    DATA_INDEXING_ERROR = "DATA_INDEXING_ERROR"
    CONFIG_CREATED = "CONFIG_CREATED"
    CONFIG_UPDATED = "CONFIG_UPDATED"
    CONFIG_DELETED = "CONFIG_DELETED"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


def lookup_transaction_type(value: str) -> Optional[TransactionType]:
    """Return the TransactionType named by ``value`` or None when it is not one."""
    try:
        return TransactionType(value)
    except ValueError:
        return None


def ordered_types(types: Iterable[TransactionType]) -> List[TransactionType]:
    """Deduplicate and sort types by declaration order."""
    wanted = set(types)
    return [t for t in TransactionType if t in wanted]


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every app-store column."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Read a stored timestamp as aware UTC. Backends without timezone support hand back naive UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
