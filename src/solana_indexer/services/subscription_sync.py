"""
Keeps one Helius webhook aligned with an indexing configuration's selection.

Helius has no partial update in this design, so a changed selection is applied
as delete-then-create. The swap is not atomic: if creation fails after the old
webhook is gone, SubscriptionSwapFailure is raised and the owner stays
unsubscribed until the next successful reconcile.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Protocol, Sequence, Tuple

from ..errors import IndexerError, SubscriptionSwapFailure, UpstreamFailure
from ..models.types import TransactionType, lookup_transaction_type, ordered_types
from .helius_client import ANY_TRANSACTION_TYPE

logger = logging.getLogger(__name__)


class SubscriptionProvider(Protocol):
    def create_subscription(self, callback_url: str, types: Sequence[str], addresses: Sequence[str]) -> str: ...

    def delete_subscription(self, webhook_id: str) -> None: ...

    def get_subscription(self, webhook_id: str) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class Selection:
    """Normalized (types, addresses) pair.

    Two selections are equal when they cover the same types and the same set of
    addresses. The address order is kept only for creating the subscription.
    """

    types: Tuple[str, ...]
    addresses: Tuple[str, ...] = field(compare=False)
    address_set: FrozenSet[str] = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "address_set", frozenset(self.addresses))

    @classmethod
    def of(cls, types: Iterable[Any], addresses: Iterable[str]) -> "Selection":
        resolved = []
        for item in types:
            t = item if isinstance(item, TransactionType) else lookup_transaction_type(str(item))
            if t is not None:
                resolved.append(t)
        return cls(
            types=tuple(t.value for t in ordered_types(resolved)),
            addresses=tuple(addresses),
        )

    @classmethod
    def from_remote(cls, details: Dict[str, Any]) -> "Selection":
        types = [t for t in details.get("transactionTypes") or [] if t != ANY_TRANSACTION_TYPE]
        return cls.of(types, details.get("accountAddresses") or [])


class SubscriptionSync:
    """Create, replace and delete the external subscription behind a config."""

    def __init__(self, provider: SubscriptionProvider):
        self.provider = provider
        self._materialized: Dict[str, Selection] = {}
        self._lock = threading.Lock()

    def _remember(self, handle: str, selection: Selection):
        with self._lock:
            self._materialized[handle] = selection

    def _forget(self, handle: str):
        with self._lock:
            self._materialized.pop(handle, None)

    def _materialized_selection(self, handle: str) -> Optional[Selection]:
        """What the handle was last created with; asks the provider on a cache miss.

        Returns None when the provider no longer knows the handle.
        """
        with self._lock:
            cached = self._materialized.get(handle)
        if cached is not None:
            return cached

        try:
            details = self.provider.get_subscription(handle)
        except UpstreamFailure as e:
            if e.details.get("status_code") == 404:
                logger.warning(f"Subscription {handle} no longer exists upstream")
                return None
            raise

        selection = Selection.from_remote(details)
        self._remember(handle, selection)
        return selection

    def reconcile(
        self,
        existing_handle: Optional[str],
        desired_types: Iterable[Any],
        desired_addresses: Iterable[str],
        callback_url: str
    ) -> str:
        """Make the external subscription match the desired selection.

        Returns the handle to persist: the existing one when nothing changed,
        otherwise a freshly created one.
        """
        desired = Selection.of(desired_types, desired_addresses)

        if not existing_handle:
            return self._create(desired, callback_url)

        current = self._materialized_selection(existing_handle)
        if current == desired:
            logger.debug(f"Subscription {existing_handle} already matches selection")
            return existing_handle

        if current is None:
            # Nothing left upstream to delete
            self._forget(existing_handle)
            return self._create(desired, callback_url)

        logger.info(f"Replacing subscription {existing_handle}: selection changed")
        self.provider.delete_subscription(existing_handle)
        self._forget(existing_handle)

        try:
            return self._create(desired, callback_url)
        except Exception as e:
            if isinstance(e, IndexerError):
                reason, cause = e.message, e.to_dict()
            else:
                reason, cause = str(e), {"error": type(e).__name__, "message": str(e)}
            logger.error(f"Subscription {existing_handle} deleted but replacement failed: {reason}")
            raise SubscriptionSwapFailure(
                f"Old subscription deleted but replacement could not be created: {reason}",
                deleted_handle=existing_handle,
                details={"cause": cause}
            ) from e

    def _create(self, selection: Selection, callback_url: str) -> str:
        handle = self.provider.create_subscription(callback_url, list(selection.types), list(selection.addresses))
        self._remember(handle, selection)
        return handle

    def remove(self, handle: str):
        """Delete the external subscription. Raises UpstreamFailure on failure."""
        self.provider.delete_subscription(handle)
        self._forget(handle)

    def describe(self, handle: str) -> Dict[str, Any]:
        """Provider's current view of a subscription."""
        return self.provider.get_subscription(handle)
