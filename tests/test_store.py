"""
Tests for the ChromaDB gateway: isolation, idempotency, field mapping, retries.

Runs against a fresh collection in an ephemeral chromadb client.

Usage:
    pytest tests/test_store.py -v
"""

import threading
import time

import pytest

from schemas.errors import ConfigurationError, ProviderTimeout, ProviderUnavailable
from schemas.vector_record import VectorMetadata, VectorRecord
from vectorstore.store import MAX_TOP_K, VectorStore
from vectorstore.utils import make_vector_id


def _record(embedder, client_id, text, index=0, source="doc.txt", scope_id=None, scope_url=None):
    return VectorRecord(
        id=make_vector_id(client_id, source, index, scope_id),
        values=embedder.embed_single(text),
        metadata=VectorMetadata(
            client_id=client_id,
            source=source,
            chunk_index=index,
            scope_id=scope_id,
            scope_url=scope_url,
        ),
        text=text,
    )


class TestUpsertAndQuery:
    """Tests for VectorStore.upsert() / query()."""

    def test_upsert_is_one_call(self, store, embedder, upsert_calls):
        records = [_record(embedder, "a", f"chunk {i}", index=i) for i in range(5)]
        assert store.upsert(records) == 5
        assert len(upsert_calls) == 1
        assert store.count("a") == 5

    def test_upsert_empty(self, store, upsert_calls):
        assert store.upsert([]) == 0
        assert upsert_calls == []

    def test_upsert_is_idempotent(self, store, embedder):
        records = [_record(embedder, "a", "garden flat with balcony")]
        store.upsert(records)
        store.upsert(records)
        assert store.count("a") == 1

    def test_upsert_replaces_text(self, store, embedder):
        store.upsert([_record(embedder, "a", "old text")])
        store.upsert([_record(embedder, "a", "new text")])
        [match] = store.query("a", embedder.embed_single("new text"), top_k=5)
        assert match.text == "new text"

    def test_query_orders_by_score(self, store, embedder):
        store.upsert([
            _record(embedder, "a", "sunny apartment with balcony", index=0),
            _record(embedder, "a", "office opening hours", index=1),
        ])
        matches = store.query("a", embedder.embed_single("apartment with balcony"), top_k=2)
        assert matches[0].text == "sunny apartment with balcony"
        assert matches[0].score >= matches[1].score

    def test_query_never_crosses_tenants(self, store, embedder):
        store.upsert([_record(embedder, "a", "founded in 1998 by Ana")])
        store.upsert([_record(embedder, "b", "founded in 1998 by Ana")])
        matches = store.query("b", embedder.embed_single("founded in 1998 by Ana"), top_k=10)
        assert len(matches) == 1
        assert matches[0].metadata["client_id"] == "b"

    def test_query_scope(self, store, embedder):
        store.upsert([
            _record(embedder, "a", "two bedrooms", source="l1.txt", scope_id="L-1"),
            _record(embedder, "a", "two bedrooms", source="l2.txt", scope_id="L-2"),
        ])
        matches = store.query("a", embedder.embed_single("two bedrooms"), scope_id="L-2")
        assert [m.metadata["scopeId"] for m in matches] == ["L-2"]

    def test_metadata_filter(self, store, embedder):
        store.upsert([
            _record(embedder, "a", "garage", source="one.txt"),
            _record(embedder, "a", "garage", source="two.txt"),
        ])
        matches = store.query(
            "a", embedder.embed_single("garage"), metadata_filter={"source": "two.txt"},
        )
        assert [m.metadata["source"] for m in matches] == ["two.txt"]

    @pytest.mark.parametrize("key", ["client_id", "scopeId"])
    def test_metadata_filter_cannot_override_isolation(self, store, embedder, key):
        with pytest.raises(ValueError):
            store.query("a", embedder.embed_single("x"), metadata_filter={key: "b"})

    @pytest.mark.parametrize("top_k", [0, -1, MAX_TOP_K + 1])
    def test_top_k_bounds(self, store, embedder, top_k):
        with pytest.raises(ValueError):
            store.query("a", embedder.embed_single("x"), top_k=top_k)

    def test_client_id_required(self, store, embedder):
        with pytest.raises(ValueError):
            store.query("", embedder.embed_single("x"))

    def test_empty_tenant_returns_no_matches(self, store, embedder):
        assert store.query("nobody", embedder.embed_single("x")) == []


class TestFieldMapping:
    """Stored keys follow metadataFieldMap; matches use logical names."""

    FIELD_MAP = {"scopeId": "listing_id", "scopeUrl": "listing_url"}

    def test_stored_keys_are_mapped(self, store, embedder, collection):
        record = _record(embedder, "a", "penthouse", scope_id="L-9", scope_url="https://x/9")
        store.upsert([record], field_map=self.FIELD_MAP)
        stored = collection.get(ids=[record.id])["metadatas"][0]
        assert stored["listing_id"] == "L-9"
        assert stored["listing_url"] == "https://x/9"
        assert "scopeId" not in stored
        assert stored["client_id"] == "a"

    def test_matches_use_logical_names(self, store, embedder):
        store.upsert(
            [_record(embedder, "a", "penthouse", scope_id="L-9")], field_map=self.FIELD_MAP,
        )
        [match] = store.query(
            "a", embedder.embed_single("penthouse"), scope_id="L-9", field_map=self.FIELD_MAP,
        )
        assert match.metadata["scopeId"] == "L-9"
        assert match.metadata["chunkIndex"] == 0

    def test_none_values_are_not_stored(self, store, embedder, collection):
        record = _record(embedder, "a", "studio")
        store.upsert([record])
        stored = collection.get(ids=[record.id])["metadatas"][0]
        assert "scopeId" not in stored and "scopeUrl" not in stored


class TestDeletion:
    """Tests for delete_tenant() and delete_stale_chunks()."""

    def test_delete_tenant_only_touches_that_tenant(self, store, embedder):
        store.upsert([_record(embedder, "a", f"a{i}", index=i) for i in range(3)])
        store.upsert([_record(embedder, "b", "b0")])
        assert store.delete_tenant("a") == 3
        assert store.count("a") == 0
        assert store.count("b") == 1

    def test_delete_stale_chunks(self, store, embedder):
        store.upsert([_record(embedder, "a", f"part {i}", index=i) for i in range(5)])
        assert store.delete_stale_chunks("a", "doc.txt", keep=2) == 3
        assert store.count("a") == 2

    def test_delete_stale_chunks_leaves_scoped_documents(self, store, embedder):
        store.upsert([_record(embedder, "a", f"part {i}", index=i) for i in range(3)])
        store.upsert([_record(embedder, "a", f"scoped {i}", index=i, scope_id="L-1") for i in range(3)])
        assert store.delete_stale_chunks("a", "doc.txt", keep=1) == 2
        assert store.count("a") == 4


class TestStatsAndDimensions:
    """Tests for get_stats() and verify_dimensions()."""

    def test_stats_per_tenant(self, store, embedder):
        store.upsert([_record(embedder, "a", "x", index=i) for i in range(2)])
        store.upsert([_record(embedder, "b", "y")])
        stats = store.get_stats()
        assert stats["count"] == 3
        assert stats["tenants"] == {"a": 2, "b": 1}
        assert stats["dimension"] == embedder.dimensions

    def test_verify_dimensions_ok(self, store, embedder):
        store.upsert([_record(embedder, "a", "x")])
        store.verify_dimensions(embedder.dimensions)

    def test_verify_dimensions_mismatch_from_metadata(self, store):
        with pytest.raises(ConfigurationError):
            store.verify_dimensions(1536)

    def test_verify_dimensions_mismatch_from_data(self, chroma_client, collection_name, embedder):
        existing = VectorStore(
            client=chroma_client, collection_name=f"{collection_name}-legacy", backoff_multiplier=0,
        )
        existing.upsert([_record(embedder, "a", "x")])
        with pytest.raises(ConfigurationError):
            existing.verify_dimensions(embedder.dimensions + 1)


class TestProviderFailures:
    """Store calls are timed out, retried and mapped to ProviderError."""

    def test_transient_failure_is_retried(self, store, embedder, collection, monkeypatch):
        original = collection.query
        calls = []

        def flaky(**kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("chroma restarting")
            return original(**kwargs)

        monkeypatch.setattr(collection, "query", flaky)
        assert store.query("a", embedder.embed_single("x")) == []
        assert len(calls) == 2

    def test_exhausted_retries(self, store, embedder, collection, monkeypatch):
        def down(**kwargs):
            raise ConnectionError("connection refused")

        monkeypatch.setattr(collection, "query", down)
        with pytest.raises(ProviderUnavailable):
            store.query("a", embedder.embed_single("x"))

    def test_rejected_request_is_not_retried(self, store, embedder, collection, monkeypatch):
        calls = []

        def reject(**kwargs):
            calls.append(1)
            raise ValueError("Embedding dimension 3 does not match collection dimensionality 64")

        monkeypatch.setattr(collection, "upsert", reject)
        with pytest.raises(ProviderUnavailable):
            store.upsert([_record(embedder, "a", "x")])
        assert len(calls) == 1

    def test_timeout(self, chroma_client, collection_name, monkeypatch):
        slow_store = VectorStore(
            client=chroma_client,
            collection_name=collection_name,
            timeout=0.05,
            max_attempts=2,
            backoff_multiplier=0,
        )
        monkeypatch.setattr(slow_store.collection, "count", lambda: time.sleep(0.3) or 0)
        with pytest.raises(ProviderTimeout):
            slow_store.get_stats()


class TestDocumentLock:
    """Tests for document_lock()."""

    def test_same_document_is_serialized(self, store):
        inside = []
        overlap = []

        def worker():
            with store.document_lock("a", "doc.txt"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(1)
                time.sleep(0.02)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []

    def test_other_documents_are_not_blocked(self, store):
        with store.document_lock("a", "one.txt"):
            acquired = threading.Event()

            def other():
                with store.document_lock("a", "two.txt"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(timeout=1.0)
            t.join()

    def test_locks_are_released(self, store):
        with store.document_lock("a", "doc.txt"):
            pass
        assert store._doc_locks == {}
