"""
End-to-end tests for the query path: gate → retrieve → respond.

Covers the two-tenant scenario: tenant X ingests about-us.txt, tenant Y has
nothing. X's question about the founding returns X's chunks; the same
question from Y returns no matches; an off-topic question is rejected
without touching the vector store.

Usage:
    pytest tests/test_query_engine.py -v
"""

from unittest.mock import MagicMock

import pytest

from processors.relevance_gate import KeywordRelevanceCheck, RelevanceGate
from schemas.document import IngestionRequest
from schemas.errors import ConfigurationError, ProviderUnavailable, RetrievalUnavailable, UnknownTenant
from schemas.query import Query, RelevanceVerdict
from webapp.rag.prompts import FALLBACK_RESPONSE
from webapp.rag.query_engine import QueryEngine
from webapp.rag.retriever import Retriever

ABOUT_US = (
    "Xavier Homes was founded in 1998 by Ana Costa in Lisbon. "
    "Today a team of twelve agents helps families buy and rent apartments. "
    "Our office on Avenida da Liberdade is open Monday to Saturday."
)


@pytest.fixture
def ingested(pipeline, tenant_x):
    result = pipeline.ingest_document(
        IngestionRequest(
            client_id="tenant-x",
            ingestion_type="general",
            source="about-us.txt",
            document_content=ABOUT_US,
        ),
        tenant_x.pipeline,
    )
    assert result.ok
    return result


class TestTwoTenantScenario:
    """Retrieval is isolated per tenant."""

    def test_owner_gets_matches(self, engine, ingested):
        response = engine.answer(Query(text="Who founded the company?", client_id="tenant-x"))
        assert response.is_relevant is True
        assert response.matches
        assert all(m.metadata["client_id"] == "tenant-x" for m in response.matches)
        assert all(m.metadata["source"] == "about-us.txt" for m in response.matches)
        assert "founded" in response.matches[0].text

    def test_other_tenant_gets_nothing(self, engine, ingested):
        response = engine.answer(Query(text="Who founded the company?", client_id="tenant-y"))
        assert response.is_relevant is True
        assert response.matches == []

    def test_matches_are_ranked(self, engine, ingested):
        matches = engine.answer(Query(text="Who founded the company?", client_id="tenant-x")).matches
        scores = [m.score for m in matches]
        assert scores == sorted(scores, reverse=True)

    def test_top_k(self, engine, ingested):
        response = engine.answer(Query(text="apartments", client_id="tenant-x"), top_k=1)
        assert len(response.matches) == 1

    def test_unknown_tenant(self, engine):
        with pytest.raises(UnknownTenant):
            engine.answer(Query(text="Who founded the company?", client_id="ghost"))


class TestGateInteraction:
    """Rejected queries never reach the retriever."""

    def test_off_topic_rejected_without_retrieval(self, tenants):
        retriever = MagicMock()
        engine = QueryEngine(RelevanceGate(KeywordRelevanceCheck()), retriever, tenants)
        response = engine.answer(Query(text="What is the bread recipe?", client_id="tenant-x"))
        assert response.is_relevant is False
        assert "Xavier Homes" in response.suggested_response
        assert response.matches is None
        retriever.retrieve.assert_not_called()

    def test_mixed_query_retrieves(self, engine, ingested):
        response = engine.answer(
            Query(text="Is there an apartment near a restaurant?", client_id="tenant-x")
        )
        assert response.is_relevant is True
        assert response.matches is not None

    def test_stage_two_rejection(self, store, embedder, tenants):
        classifier = MagicMock()
        classifier.classify.return_value = RelevanceVerdict(
            is_relevant=False, reason="joke", suggested_response="Ask about homes.",
        )
        retriever = MagicMock()
        engine = QueryEngine(RelevanceGate(KeywordRelevanceCheck(), classifier), retriever, tenants)

        response = engine.answer(Query(text="Tell me a joke", client_id="tenant-llm"))

        assert response.is_relevant is False
        assert response.suggested_response == "Ask about homes."
        retriever.retrieve.assert_not_called()


class TestRetrievalFailures:
    """Provider failures degrade to a fallback response."""

    def test_retriever_wraps_provider_errors(self, store):
        embedder = MagicMock()
        embedder.embed_single.side_effect = ProviderUnavailable("openai-embeddings", "down")
        with pytest.raises(RetrievalUnavailable):
            Retriever(store, embedder).retrieve(Query(text="x", client_id="tenant-x"))

    def test_engine_returns_fallback(self, store, tenants):
        embedder = MagicMock()
        embedder.embed_single.side_effect = ProviderUnavailable("openai-embeddings", "down")
        engine = QueryEngine(RelevanceGate(KeywordRelevanceCheck()), Retriever(store, embedder), tenants)

        response = engine.answer(Query(text="Who founded the company?", client_id="tenant-x"))

        assert response.is_relevant is True
        assert response.suggested_response == FALLBACK_RESPONSE
        assert response.matches is None
        assert "down" not in response.suggested_response

    def test_rejected_credentials_return_fallback(self, store, tenants):
        embedder = MagicMock()
        embedder.embed_single.side_effect = ConfigurationError(
            "Embedding provider rejected configuration: Incorrect API key provided: sk-proj-ABCD****WXYZ"
        )
        engine = QueryEngine(RelevanceGate(KeywordRelevanceCheck()), Retriever(store, embedder), tenants)

        response = engine.answer(Query(text="Who founded the company?", client_id="tenant-x"))

        assert response.suggested_response == FALLBACK_RESPONSE
        assert response.matches is None


class TestScopedRetrieval:
    """Scoped queries only see their sub-resource."""

    def test_scope_filter(self, pipeline, engine, tenant_x):
        for scope_id, text in [("L-1", "Two bedrooms with balcony"), ("L-2", "Three bedrooms with garage")]:
            pipeline.ingest_document(
                IngestionRequest(
                    client_id="tenant-x",
                    ingestion_type="scoped",
                    source="listing.txt",
                    document_content=text,
                    scope_id=scope_id,
                ),
                tenant_x.pipeline,
            )
        response = engine.answer(Query(text="How many bedrooms?", client_id="tenant-x", scope_id="L-2"))
        assert [m.metadata["scopeId"] for m in response.matches] == ["L-2"]
