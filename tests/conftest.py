"""Shared fixtures: deterministic embeddings and an in-memory Chroma collection.

Nothing here touches the network. Each test gets its own collection in an
ephemeral chromadb client, so stored vectors never leak between tests.
"""

import hashlib
import math
import re
import uuid

import chromadb
import pytest
from chromadb.config import Settings

from processors.relevance_gate import KeywordRelevanceCheck, RelevanceGate
from schemas.settings import RuntimeSettings
from vectorstore.ingest import IngestionPipeline
from vectorstore.store import VectorStore
from webapp.rag.query_engine import QueryEngine
from webapp.rag.retriever import Retriever
from webapp.services import Services
from webapp.tenants import TenantRegistry

DIM = 64


# =============================================================================
# Embeddings
# =============================================================================

class HashEmbedder:
    """Bag-of-words hashing embedder: texts sharing words are close in cosine space."""

    def __init__(self, dimensions: int = DIM):
        self.dimensions = dimensions
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        for word in re.findall(r"\w+", text.lower()):
            h = int(hashlib.md5(word.encode()).hexdigest(), 16)
            vec[h % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0:
            vec[0] = 1.0
            return vec
        return [v / norm for v in vec]

    def embed(self, texts, show_progress=True):
        self.calls += 1
        return [self._vector(t) for t in texts]

    def embed_single(self, text):
        return self.embed([text], show_progress=False)[0]


# =============================================================================
# Fixtures
# =============================================================================

TENANTS = {
    "tenant-x": {"clientName": "Xavier Homes"},
    "tenant-y": {"clientName": "Yellow Door Realty"},
    "tenant-llm": {"clientName": "Lumen Estates", "relevance": {"llmValidation": True}},
    "tenant-mapped": {
        "clientName": "Mapped Realty",
        "pipeline": {
            "maxChunkSize": 40,
            "metadataFieldMap": {"scopeId": "listing_id", "scopeUrl": "listing_url"},
            "pruneStaleChunks": True,
        },
    },
}


@pytest.fixture
def embedder():
    return HashEmbedder()


@pytest.fixture(scope="session")
def chroma_client():
    return chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False))


@pytest.fixture
def collection_name():
    return f"test-{uuid.uuid4().hex}"


@pytest.fixture
def store(chroma_client, collection_name):
    return VectorStore(
        client=chroma_client,
        collection_name=collection_name,
        dimensions=DIM,
        timeout=5.0,
        max_attempts=3,
        backoff_multiplier=0,
    )


@pytest.fixture
def collection(store):
    return store.collection


@pytest.fixture
def upsert_calls(collection, monkeypatch):
    """Record every upsert the store sends to the collection."""
    calls = []
    original = collection.upsert

    def spy(**kwargs):
        calls.append(kwargs["ids"])
        return original(**kwargs)

    monkeypatch.setattr(collection, "upsert", spy)
    return calls


@pytest.fixture
def tenants():
    return TenantRegistry(tenants=TENANTS)


@pytest.fixture
def tenant_x(tenants):
    return tenants.get("tenant-x")


@pytest.fixture
def mapped_tenant(tenants):
    return tenants.get("tenant-mapped")


@pytest.fixture
def pipeline(embedder, store):
    return IngestionPipeline(embedder, store)


@pytest.fixture
def keyword_check():
    return KeywordRelevanceCheck()


@pytest.fixture
def engine(store, embedder, tenants, keyword_check):
    return QueryEngine(RelevanceGate(keyword_check), Retriever(store, embedder), tenants)


@pytest.fixture
def services(store, embedder, tenants, pipeline, engine):
    return Services(
        settings=RuntimeSettings(),
        tenants=tenants,
        embedder=embedder,
        store=store,
        pipeline=pipeline,
        engine=engine,
    )

