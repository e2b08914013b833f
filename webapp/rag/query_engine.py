"""Query engine: relevance gate first, then retrieval, with a graceful fallback."""

import logging
import time
from typing import Any, Mapping, Optional

from processors.relevance_gate import RelevanceGate
from schemas.errors import RetrievalUnavailable
from schemas.query import Query, QueryResponse
from vectorstore.store import DEFAULT_TOP_K
from webapp.rag.prompts import FALLBACK_RESPONSE
from webapp.rag.retriever import Retriever
from webapp.tenants import TenantRegistry

logger = logging.getLogger(__name__)


class QueryEngine:
    """Orchestrates the query path for one request at a time."""

    def __init__(
        self,
        gate: RelevanceGate,
        retriever: Retriever,
        tenants: TenantRegistry,
        top_k: int = DEFAULT_TOP_K,
    ):
        self.gate = gate
        self.retriever = retriever
        self.tenants = tenants
        self.top_k = top_k

    def answer(
        self,
        query: Query,
        top_k: Optional[int] = None,
        metadata_filter: Optional[Mapping[str, Any]] = None,
    ) -> QueryResponse:
        """Gate the query, then retrieve matches if it is in domain.

        A rejected query never reaches the retriever. When retrieval is down
        the response carries a fallback message instead of an error.

        Raises:
            ConfigurationError: the query names an unknown tenant.
        """
        tenant = self.tenants.get(query.client_id)
        t_start = time.perf_counter()
        verdict = self.gate.validate(query.text, tenant)
        if not verdict.is_relevant:
            return QueryResponse.from_verdict(verdict)

        try:
            matches = self.retriever.retrieve(
                query,
                top_k=top_k or self.top_k,
                metadata_filter=metadata_filter,
                field_map=tenant.pipeline.metadata_field_map,
            )
        except RetrievalUnavailable as e:
            logger.warning("[%s] Returning fallback response: %s", query.client_id, e)
            return QueryResponse(
                is_relevant=True,
                reason="Retrieval unavailable",
                suggested_response=FALLBACK_RESPONSE,
            )

        response = QueryResponse.from_verdict(verdict)
        response.matches = matches
        logger.info(
            "[%s] Query answered with %d matches in %.0fms",
            query.client_id, len(matches), (time.perf_counter() - t_start) * 1000,
        )
        return response
