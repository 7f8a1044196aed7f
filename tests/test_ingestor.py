"""Tests for webhook batch ingestion into target databases."""

import gc
import json
import threading

from solana_indexer.models.events import TransactionEvent
from solana_indexer.services.ingestor import NO_ACTIVE_SETUP, EventStatus

from conftest import OTHER_OWNER_ID, OWNER_ID, audit_trail, make_event, target_rows


def _price(signature: str, token: str = "SOL") -> dict:
    return make_event("TOKEN_PRICE", signature, {"token": token, "price": 142.5, "source": "pyth"})


def _bid(signature: str) -> dict:
    return make_event("NFT_BID", signature)


class TestBatch:
    def test_one_bad_event_does_not_stop_the_batch(self, services, active_config, target_url) -> None:
        events = [
            _bid("sig-1"),
            _price("sig-2"),
            make_event("NFT_BID", "sig-bad", {"mint; DROP TABLE nft_bids": "x"}),
            _bid("sig-3"),
            _price("sig-4"),
        ]
        report = services.ingestor.ingest(OWNER_ID, events)

        assert (report.received, report.inserted, report.failed, report.skipped) == (5, 4, 1, 0)
        assert report.outcomes[2].status is EventStatus.REJECTED
        assert report.outcomes[2].error["code"] == "UNSAFE_COLUMN_NAME"
        assert [r["signature"] for r in target_rows(target_url, "nft_bids")] == ["sig-1", "sig-3"]
        assert [r["signature"] for r in target_rows(target_url, "token_prices")] == ["sig-2", "sig-4"]

        trail = audit_trail(services)
        assert trail.count(("DATA_INDEXED", "SUCCESS")) == 4
        assert trail.count(("DATA_INDEXING_ERROR", "ERROR")) == 1
        assert trail[-1] == ("WEBHOOK_PROCESSED", "SUCCESS")

    def test_metadata_columns_written(self, services, active_config, target_url) -> None:
        services.ingestor.ingest(OWNER_ID, [_price("sig-meta", "BONK")])
        row = target_rows(target_url, "token_prices")[0]
        assert row["token"] == "BONK"
        assert row["signature"] == "sig-meta"
        assert row["transaction_type"] == "TOKEN_PRICE"
        assert str(row["timestamp"]).startswith("2023-11-14 22:13:20")

    def test_disabled_type_skipped_without_audit(self, services, active_config, target_url) -> None:
        report = services.ingestor.ingest(OWNER_ID, [
            make_event("BORROWABLE_TOKEN", "sig-skip", {"token": "USDC", "apy": 4.2}),
        ])
        assert report.skipped == 1
        assert target_rows(target_url, "borrowable_tokens") == []
        trail = audit_trail(services)
        assert ("DATA_INDEXED", "SUCCESS") not in trail
        assert ("DATA_INDEXING_ERROR", "ERROR") not in trail

    def test_tracked_address_indexes_disabled_type(self, services, active_config, target_url) -> None:
        event = make_event(
            "BORROWABLE_TOKEN",
            "sig-vault",
            {"token": "USDC", "protocol": "kamino", "details": {"ltv": 0.8}},
            accounts=["TrackedVault111"],
        )
        report = services.ingestor.ingest(OWNER_ID, [event])
        assert report.inserted == 1
        row = target_rows(target_url, "borrowable_tokens")[0]
        assert json.loads(row["details"]) == {"ltv": 0.8}

    def test_unknown_type_on_tracked_address_rejected(self, services, active_config) -> None:
        report = services.ingestor.ingest(OWNER_ID, [make_event("SWAP", "sig-swap", {}, accounts=["TrackedVault111"])])
        assert report.outcomes[0].status is EventStatus.REJECTED
        assert report.outcomes[0].error["code"] == "UNKNOWN_TYPE"

    def test_reserved_column_rejected(self, services, active_config, target_url) -> None:
        report = services.ingestor.ingest(OWNER_ID, [make_event("NFT_BID", "sig-r", {"Signature": "forged"})])
        assert report.outcomes[0].error["code"] == "RESERVED_COLUMN_COLLISION"
        assert target_rows(target_url, "nft_bids") == []

    def test_insert_failure_isolated(self, services, active_config, target_url) -> None:
        events = [make_event("NFT_BID", "sig-missing-col", {"no_such_column": 1}), _bid("sig-ok")]
        report = services.ingestor.ingest(OWNER_ID, events)
        assert report.outcomes[0].status is EventStatus.INSERT_FAILED
        assert report.outcomes[0].table == "nft_bids"
        assert report.outcomes[1].status is EventStatus.INSERTED
        assert [r["signature"] for r in target_rows(target_url, "nft_bids")] == ["sig-ok"]

    def test_malformed_event_rejected(self, services, active_config) -> None:
        malformed = {"type": "NFT_BID", "timestamp": 1}
        report = services.ingestor.ingest(OWNER_ID, [malformed, _bid("sig-after")])
        assert report.outcomes[0].error["code"] == "MALFORMED_EVENT"
        assert report.inserted == 1

    def test_accepts_parsed_events(self, services, active_config) -> None:
        report = services.ingestor.ingest(OWNER_ID, [TransactionEvent.model_validate(_bid("sig-parsed"))])
        assert report.inserted == 1

    def test_empty_batch(self, services, active_config) -> None:
        report = services.ingestor.ingest(OWNER_ID, [])
        assert report.received == 0
        assert audit_trail(services)[-1] == ("WEBHOOK_PROCESSED", "SUCCESS")

    def test_inserts_reuse_owner_pool(self, services, active_config, engine_factory) -> None:
        services.ingestor.ingest(OWNER_ID, [_bid("sig-1"), _bid("sig-2")])
        pooled_calls = [call for call in engine_factory.calls if call[1]]
        assert len(pooled_calls) == 1
        assert services.target_pool.pooled_owners() == [OWNER_ID]


class TestMissingSetup:
    def test_no_active_connection(self, services, active_config, target_url) -> None:
        connection = services.connections.get_active(OWNER_ID)
        services.connections.deactivate(OWNER_ID, connection.id)

        report = services.ingestor.ingest(OWNER_ID, [_bid("sig-1")])

        assert report.aborted_reason == NO_ACTIVE_SETUP
        assert report.outcomes == []
        assert target_rows(target_url, "nft_bids") == []
        assert audit_trail(services)[-1] == ("WEBHOOK_PROCESSING_ERROR", "ERROR")

    def test_no_active_config(self, services, active_connection, target_url) -> None:
        services.configs.create(OWNER_ID, "Inactive", ["NFT_BID"], [])
        report = services.ingestor.ingest(OWNER_ID, [_bid("sig-1")])
        assert report.aborted_reason == NO_ACTIVE_SETUP
        assert target_rows(target_url, "nft_bids") == []

    def test_unknown_owner(self, services, active_config) -> None:
        report = services.ingestor.ingest(OTHER_OWNER_ID, [_bid("sig-1")])
        assert report.aborted_reason == NO_ACTIVE_SETUP
        assert audit_trail(services, OTHER_OWNER_ID) == [
            ("WEBHOOK_RECEIVED", "SUCCESS"),
            ("WEBHOOK_PROCESSING_ERROR", "ERROR"),
        ]


class TestOrdering:
    def test_batches_for_one_owner_do_not_interleave(self, services, active_config, target_url) -> None:
        batches = [[_bid(f"b{n}-{i}") for i in range(5)] for n in range(3)]
        threads = [threading.Thread(target=services.ingestor.ingest, args=(OWNER_ID, batch)) for batch in batches]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        signatures = [r["signature"] for r in target_rows(target_url, "nft_bids")]
        assert len(signatures) == 15
        for start in range(0, 15, 5):
            prefixes = {sig.split("-")[0] for sig in signatures[start:start + 5]}
            assert len(prefixes) == 1


class TestOwnerLocks:
    def test_lock_shared_while_held(self, services) -> None:
        held = services.ingestor._owner_lock(OWNER_ID)
        assert services.ingestor._owner_lock(OWNER_ID) is held
        assert services.ingestor._owner_lock(OTHER_OWNER_ID) is not held

    def test_locks_released_after_batches(self, services, active_config) -> None:
        for owner_id in range(100, 150):
            services.ingestor.ingest(owner_id, [])
        services.ingestor.ingest(OWNER_ID, [_bid("sig-1")])
        gc.collect()
        assert len(services.ingestor._owner_locks) == 0
