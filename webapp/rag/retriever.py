"""Retrieval layer: embed the query, search the tenant's vectors, return matches.

Matches come back exactly as the vector store ranked them. There is no
re-ranking, re-scoring or deduplication at this layer.
"""

import logging
import time
from typing import Any, Mapping, Optional

from schemas.errors import ConfigurationError, ProviderError, RetrievalUnavailable
from schemas.query import Query
from schemas.vector_record import Match
from vectorstore.embedder import Embedder
from vectorstore.store import DEFAULT_TOP_K, VectorStore

logger = logging.getLogger(__name__)


class Retriever:
    """Retrieval engine wrapping VectorStore + Embedder."""

    def __init__(self, store: VectorStore, embedder: Embedder):
        self.store = store
        self.embedder = embedder

    def retrieve(
        self,
        query: Query,
        top_k: int = DEFAULT_TOP_K,
        metadata_filter: Optional[Mapping[str, Any]] = None,
        field_map: Optional[Mapping[str, str]] = None,
    ) -> list[Match]:
        """Top ``top_k`` matches for ``query`` within its tenant and scope.

        Args:
            query: Query text plus the tenant (and optional scope) it runs under.
            top_k: Number of matches to return (1..50).
            metadata_filter: Extra conditions on logical metadata fields.
            field_map: The tenant's logical -> stored metadata key mapping.

        Raises:
            RetrievalUnavailable: embedding or search failed after retries.
        """
        t0 = time.perf_counter()
        try:
            vector = self.embedder.embed_single(query.text)
            matches = self.store.query(
                query.client_id,
                vector,
                top_k=top_k,
                scope_id=query.scope_id,
                metadata_filter=metadata_filter,
                field_map=field_map,
            )
        except (ProviderError, ConfigurationError) as e:
            # Rejected credentials surface as ConfigurationError from the embedder
            logger.warning("[%s] Retrieval failed: %s", query.client_id, e)
            raise RetrievalUnavailable(f"Retrieval unavailable for '{query.client_id}': {e}") from e

        logger.info(
            "[%s] Retrieved %d matches (top_k=%d, scope=%s) in %.0fms",
            query.client_id, len(matches), top_k, query.scope_id,
            (time.perf_counter() - t0) * 1000,
        )
        return matches
