"""ChromaDB gateway: tenant-isolated upsert, query and deletion.

All tenants share one cosine-space collection. Isolation is enforced by a
single mechanism, the ``client_id`` metadata field: it is stamped on every
record written and is part of every ``where`` clause used to read or delete.
Callers cannot widen a query past their tenant.

Every call into Chroma runs under a timeout and is retried with exponential
backoff; exhaustion surfaces as ProviderTimeout / ProviderUnavailable.
"""

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

import chromadb

from schemas.errors import ConfigurationError, ProviderError, ProviderUnavailable
from schemas.settings import MAPPABLE_FIELDS, TENANT_KEY
from schemas.vector_record import Match, VectorRecord
from vectorstore.utils import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_BACKOFF_MULTIPLIER,
    call_with_timeout,
    with_backoff,
)

logger = logging.getLogger(__name__)

PROVIDER = "chromadb"
DEFAULT_COLLECTION = "tenant_knowledge"
DEFAULT_TOP_K = 5
MAX_TOP_K = 50
STATS_PAGE_SIZE = 1000


class FieldMap:
    """Translates logical metadata names to the keys stored in Chroma and back."""

    def __init__(self, mapping: Optional[Mapping[str, str]] = None):
        self._to_stored = {f: f for f in MAPPABLE_FIELDS}
        self._to_stored.update(mapping or {})
        self._to_stored[TENANT_KEY] = TENANT_KEY
        self._to_logical = {v: k for k, v in self._to_stored.items()}

    def key(self, logical: str) -> str:
        return self._to_stored.get(logical, logical)

    def to_stored(self, logical_meta: Mapping[str, Any]) -> dict:
        return {self.key(k): v for k, v in logical_meta.items() if v is not None}

    def to_logical(self, stored_meta: Optional[Mapping[str, Any]]) -> dict:
        return {self._to_logical.get(k, k): v for k, v in (stored_meta or {}).items()}


class VectorStore:
    """Gateway over a single ChromaDB collection shared by all tenants."""

    def __init__(
        self,
        client: Optional[Any] = None,
        path: str = "data/chroma",
        host: Optional[str] = None,
        port: int = 8000,
        collection_name: str = DEFAULT_COLLECTION,
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
        max_attempts: int = DEFAULT_ATTEMPTS,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
    ):
        self.timeout = timeout
        self.collection_name = collection_name
        self._invoke = with_backoff(
            self._invoke_once,
            label="Vector store",
            attempts=max_attempts,
            multiplier=backoff_multiplier,
            max_wait=backoff_max,
        )
        if client is None:
            if host:
                client = self._invoke(chromadb.HttpClient, host=host, port=port)
                self.location = f"{host}:{port}"
            else:
                client = chromadb.PersistentClient(path=path)
                self.location = path
        else:
            self.location = "injected"
        self.client = client

        metadata = {"hnsw:space": "cosine"}
        if dimensions:
            metadata["dimension"] = dimensions
        self.collection = self._invoke(
            self.client.get_or_create_collection,
            name=collection_name,
            metadata=metadata,
        )
        self._locks_guard = threading.Lock()
        self._doc_locks: dict[tuple, list] = {}
        logger.info("Vector store ready: collection '%s' at %s", collection_name, self.location)

    # ------------------------------------------------------------------
    # Provider call wrapper
    # ------------------------------------------------------------------

    def _invoke_once(self, fn, *args, **kwargs):
        try:
            return call_with_timeout(PROVIDER, self.timeout, fn, *args, **kwargs)
        except ProviderError:
            raise
        except (ValueError, TypeError) as e:
            # Chroma rejects malformed input (bad filter, wrong dimensionality) with these.
            raise ProviderUnavailable(PROVIDER, f"request rejected: {e}", retryable=False) from e
        except Exception as e:
            raise ProviderUnavailable(PROVIDER, str(e)) from e

    # ------------------------------------------------------------------
    # Startup checks
    # ------------------------------------------------------------------

    def verify_dimensions(self, dimensions: int) -> None:
        """Fail fast if the collection was built for a different embedding size."""
        recorded = (self.collection.metadata or {}).get("dimension")
        if recorded is not None and int(recorded) != dimensions:
            raise ConfigurationError(
                f"Collection '{self.collection_name}' holds {recorded}-d vectors, "
                f"embedder produces {dimensions}-d"
            )
        if self._invoke(self.collection.count) == 0:
            return
        sample = self._invoke(self.collection.peek, limit=1).get("embeddings")
        if sample is not None and len(sample) > 0 and len(sample[0]) != dimensions:
            raise ConfigurationError(
                f"Collection '{self.collection_name}' holds {len(sample[0])}-d vectors, "
                f"embedder produces {dimensions}-d"
            )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    @contextmanager
    def document_lock(self, client_id: str, source: str, scope_id: Optional[str] = None) -> Iterator[None]:
        """Serialize writes to one document's ids; other documents are not blocked."""
        key = (client_id, scope_id, source)
        with self._locks_guard:
            entry = self._doc_locks.get(key)
            if entry is None:
                entry = self._doc_locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._doc_locks[key]

    def upsert(self, records: list[VectorRecord], field_map: Optional[Mapping[str, str]] = None) -> int:
        """Write records in one call. Existing ids are fully replaced."""
        if not records:
            return 0
        fields = FieldMap(field_map)
        self._invoke(
            self.collection.upsert,
            ids=[r.id for r in records],
            embeddings=[r.values for r in records],
            metadatas=[fields.to_stored(r.metadata.logical()) for r in records],
            documents=[r.text for r in records],
        )
        logger.debug("Upserted %d vectors", len(records))
        return len(records)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def query(
        self,
        client_id: str,
        vector: list[float],
        top_k: int = DEFAULT_TOP_K,
        scope_id: Optional[str] = None,
        metadata_filter: Optional[Mapping[str, Any]] = None,
        field_map: Optional[Mapping[str, str]] = None,
    ) -> list[Match]:
        """Nearest neighbours of ``vector`` within one tenant (and scope).

        Ordered by descending score; ties keep Chroma's native order.
        """
        if not client_id:
            raise ValueError("client_id is required")
        if not 1 <= top_k <= MAX_TOP_K:
            raise ValueError(f"top_k must be between 1 and {MAX_TOP_K}, got {top_k}")

        fields = FieldMap(field_map)
        where = self._build_where(client_id, fields, scope_id=scope_id, extra=metadata_filter)
        results = self._invoke(
            self.collection.query,
            query_embeddings=[vector],
            n_results=top_k,
            where=where,
            include=["metadatas", "documents", "distances"],
        )

        matches = []
        if results and results.get("ids") and results["ids"][0]:
            for i in range(len(results["ids"][0])):
                matches.append(Match(
                    vector_id=results["ids"][0][i],
                    score=1.0 - float(results["distances"][0][i]),
                    metadata=fields.to_logical(results["metadatas"][0][i]),
                    text=results["documents"][0][i] or "",
                ))
        return matches

    def count(self, client_id: str) -> int:
        return len(self._tenant_ids(client_id))

    def get_stats(self) -> dict:
        """Collection size and per-tenant vector counts."""
        total = self._invoke(self.collection.count)
        per_tenant: Counter = Counter()
        for offset in range(0, total, STATS_PAGE_SIZE):
            page = self._invoke(
                self.collection.get,
                include=["metadatas"],
                limit=STATS_PAGE_SIZE,
                offset=offset,
            )
            for meta in page.get("metadatas") or []:
                per_tenant[(meta or {}).get(TENANT_KEY, "<missing>")] += 1
        return {
            "collection": self.collection_name,
            "location": self.location,
            "count": total,
            "dimension": (self.collection.metadata or {}).get("dimension"),
            "tenants": dict(per_tenant),
        }

    # ------------------------------------------------------------------
    # Explicit deletion
    # ------------------------------------------------------------------

    def delete_tenant(self, client_id: str) -> int:
        """Delete every vector owned by ``client_id``."""
        ids = self._tenant_ids(client_id)
        if ids:
            self._invoke(self.collection.delete, ids=ids)
        logger.info("[%s] Deleted %d vectors", client_id, len(ids))
        return len(ids)

    def delete_stale_chunks(
        self,
        client_id: str,
        source: str,
        keep: int,
        scope_id: Optional[str] = None,
        field_map: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Delete a document's chunks with index >= ``keep`` (left over from a longer version)."""
        fields = FieldMap(field_map)
        where = self._build_where(
            client_id,
            fields,
            scope_id=scope_id,
            extra={"source": source, "chunkIndex": {"$gte": keep}},
        )
        found = self._invoke(self.collection.get, where=where, include=["metadatas"])
        scope_key = fields.key("scopeId")
        stale = [
            vid for vid, meta in zip(found.get("ids") or [], found.get("metadatas") or [])
            # Without a scope filter, skip scoped documents that share the source name.
            if (meta or {}).get(scope_key) == scope_id
        ]
        if stale:
            self._invoke(self.collection.delete, ids=stale)
            logger.info("[%s] Pruned %d stale chunks of %s", client_id, len(stale), source)
        return len(stale)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tenant_ids(self, client_id: str) -> list[str]:
        if not client_id:
            raise ValueError("client_id is required")
        found = self._invoke(self.collection.get, where={TENANT_KEY: client_id}, include=[])
        return list(found.get("ids") or [])

    @staticmethod
    def _build_where(
        client_id: str,
        fields: FieldMap,
        scope_id: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> dict:
        """Build a Chroma where clause that always pins the tenant."""
        conditions = [{TENANT_KEY: client_id}]
        if scope_id is not None:
            conditions.append({fields.key("scopeId"): scope_id})
        for logical, condition in (extra or {}).items():
            if logical in (TENANT_KEY, "scopeId"):
                raise ValueError(f"'{logical}' cannot be set through metadata_filter")
            conditions.append({fields.key(logical): condition})
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}
