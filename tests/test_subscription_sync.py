"""Tests for keeping the external subscription aligned with a selection."""

import pytest

from solana_indexer.errors import SubscriptionSwapFailure, UpstreamFailure
from solana_indexer.services.subscription_sync import Selection, SubscriptionSync

from conftest import FakeProvider

CALLBACK = "https://indexer.test/api/webhook/1"


@pytest.fixture
def sync(provider: FakeProvider) -> SubscriptionSync:
    return SubscriptionSync(provider)


class TestSelection:
    def test_types_are_order_insensitive(self) -> None:
        assert Selection.of(["TOKEN_PRICE", "NFT_BID"], []) == Selection.of(["NFT_BID", "TOKEN_PRICE"], [])

    def test_unknown_types_are_dropped(self) -> None:
        assert Selection.of(["NFT_BID", "SWAP"], []).types == ("NFT_BID",)

    def test_remote_any_type_means_address_only(self) -> None:
        remote = {"transactionTypes": ["ANY"], "accountAddresses": ["Addr1"]}
        assert Selection.from_remote(remote) == Selection.of([], ["Addr1"])

    def test_address_order_does_not_matter(self) -> None:
        forward = Selection.of(["NFT_BID"], ["Addr1", "Addr2"])
        backward = Selection.of(["NFT_BID"], ["Addr2", "Addr1"])
        assert forward == backward
        assert hash(forward) == hash(backward)
        assert backward.addresses == ("Addr2", "Addr1")

    def test_address_sets_still_compared(self) -> None:
        assert Selection.of([], ["Addr1"]) != Selection.of([], ["Addr1", "Addr2"])


class TestReconcile:
    def test_creates_when_no_handle(self, sync, provider) -> None:
        handle = sync.reconcile(None, ["TOKEN_PRICE", "NFT_BID"], ["Addr1"], CALLBACK)
        assert handle == "wh-1"
        assert provider.calls == [("create", ["NFT_BID", "TOKEN_PRICE"], ["Addr1"])]
        assert provider.webhooks[handle]["webhookURL"] == CALLBACK

    def test_unchanged_selection_is_a_no_op(self, sync, provider) -> None:
        handle = sync.reconcile(None, ["NFT_BID"], [], CALLBACK)
        assert sync.reconcile(handle, ["NFT_BID"], [], CALLBACK) == handle
        assert provider.count("create") == 1
        assert provider.count("delete") == 0
        assert provider.count("get") == 0

    def test_changed_selection_swaps_subscription(self, sync, provider) -> None:
        old = sync.reconcile(None, ["NFT_BID"], [], CALLBACK)
        new = sync.reconcile(old, ["NFT_BID", "BORROWABLE_TOKEN"], [], CALLBACK)
        assert new != old
        assert [call[0] for call in provider.calls] == ["create", "delete", "create"]
        assert old not in provider.webhooks
        assert provider.webhooks[new]["transactionTypes"] == ["NFT_BID", "BORROWABLE_TOKEN"]

    def test_address_change_swaps_subscription(self, sync, provider) -> None:
        old = sync.reconcile(None, ["NFT_BID"], ["Addr1"], CALLBACK)
        new = sync.reconcile(old, ["NFT_BID"], ["Addr1", "Addr2"], CALLBACK)
        assert new != old
        assert provider.count("delete") == 1

    def test_cache_miss_asks_provider(self, provider) -> None:
        handle = SubscriptionSync(provider).reconcile(None, ["NFT_BID"], ["Addr1"], CALLBACK)

        restarted = SubscriptionSync(provider)
        assert restarted.reconcile(handle, ["NFT_BID"], ["Addr1"], CALLBACK) == handle
        assert provider.count("get") == 1
        assert provider.count("create") == 1

    def test_cache_miss_with_reordered_remote_addresses_is_a_no_op(self, provider) -> None:
        handle = SubscriptionSync(provider).reconcile(None, ["NFT_BID"], ["Addr1", "Addr2"], CALLBACK)
        provider.webhooks[handle]["accountAddresses"] = ["Addr2", "Addr1"]

        restarted = SubscriptionSync(provider)
        assert restarted.reconcile(handle, ["NFT_BID"], ["Addr1", "Addr2"], CALLBACK) == handle
        assert provider.count("delete") == 0
        assert provider.count("create") == 1

    def test_handle_gone_upstream_is_recreated(self, sync, provider) -> None:
        handle = sync.reconcile("wh-missing", ["TOKEN_PRICE"], [], CALLBACK)
        assert handle == "wh-1"
        assert provider.count("delete") == 0

    def test_failed_delete_keeps_old_subscription(self, sync, provider) -> None:
        old = sync.reconcile(None, ["NFT_BID"], [], CALLBACK)
        provider.fail_delete = True
        with pytest.raises(UpstreamFailure) as exc_info:
            sync.reconcile(old, ["TOKEN_PRICE"], [], CALLBACK)
        assert not isinstance(exc_info.value, SubscriptionSwapFailure)
        assert old in provider.webhooks

    def test_failed_create_after_delete_is_a_swap_failure(self, sync, provider) -> None:
        old = sync.reconcile(None, ["NFT_BID"], [], CALLBACK)
        provider.fail_create = True
        with pytest.raises(SubscriptionSwapFailure) as exc_info:
            sync.reconcile(old, ["TOKEN_PRICE"], [], CALLBACK)
        error = exc_info.value
        assert error.deleted_handle == old
        assert error.details["unsubscribed"] is True
        assert provider.webhooks == {}

    def test_unexpected_create_error_after_delete_is_a_swap_failure(self, provider) -> None:
        sync = SubscriptionSync(provider)
        old = sync.reconcile(None, ["NFT_BID"], [], CALLBACK)
        provider.create_error = KeyError("webhookID")

        with pytest.raises(SubscriptionSwapFailure) as exc_info:
            sync.reconcile(old, ["TOKEN_PRICE"], [], CALLBACK)

        error = exc_info.value
        assert error.deleted_handle == old
        assert error.details["cause"]["error"] == "KeyError"
        assert isinstance(error.__cause__, KeyError)

    def test_failed_first_create_is_a_plain_upstream_failure(self, sync, provider) -> None:
        provider.fail_create = True
        with pytest.raises(UpstreamFailure) as exc_info:
            sync.reconcile(None, ["NFT_BID"], [], CALLBACK)
        assert not isinstance(exc_info.value, SubscriptionSwapFailure)


class TestRemove:
    def test_remove_deletes_and_forgets(self, sync, provider) -> None:
        handle = sync.reconcile(None, ["NFT_BID"], [], CALLBACK)
        sync.remove(handle)
        assert provider.webhooks == {}
        # Forgotten handles are looked up again, and recreated when gone
        assert sync.reconcile(handle, ["NFT_BID"], [], CALLBACK) == "wh-2"

    def test_describe_returns_provider_view(self, sync, provider) -> None:
        handle = sync.reconcile(None, [], ["Addr1"], CALLBACK)
        assert sync.describe(handle)["transactionTypes"] == ["ANY"]
