"""Process-wide components, constructed once and injected everywhere.

The web app and the CLI both call ``build_services``; nothing else constructs
provider clients.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from processors.relevance_gate import KeywordRelevanceCheck, RelevanceGate
from schemas.errors import ConfigurationError
from schemas.settings import RuntimeSettings
from vectorstore.embedder import Embedder
from vectorstore.ingest import IngestionPipeline
from vectorstore.store import VectorStore
from webapp.rag.classifier import LLMClient, LLMRelevanceClassifier
from webapp.rag.query_engine import QueryEngine
from webapp.rag.retriever import Retriever
from webapp.tenants import TenantRegistry

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent


@dataclass
class Services:
    settings: RuntimeSettings
    tenants: TenantRegistry
    embedder: Embedder
    store: VectorStore
    pipeline: IngestionPipeline
    engine: QueryEngine


def _resolve(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else PROJECT_ROOT / p


def build_classifier(settings: RuntimeSettings) -> Optional[LLMRelevanceClassifier]:
    """Stage 2 classifier, or None when its provider has no credentials."""
    api_key = (
        settings.anthropic_api_key
        if settings.relevance_llm_provider == "anthropic"
        else settings.openai_api_key
    )
    try:
        llm = LLMClient(
            provider=settings.relevance_llm_provider,
            model=settings.relevance_llm_model,
            api_key=api_key,
            timeout=settings.provider_timeout_s,
        )
    except ConfigurationError as e:
        logger.warning("LLM relevance validation unavailable: %s", e)
        return None
    logger.info("Relevance classifier: %s/%s", llm.provider, llm.model)
    return LLMRelevanceClassifier(llm)


def build_services(settings: Optional[RuntimeSettings] = None) -> Services:
    """Construct every component from settings (environment + .env by default).

    Raises:
        ConfigurationError: missing credentials, bad settings, or a collection
            whose vector dimension differs from the embedding model's.
    """
    if settings is None:
        settings = RuntimeSettings.from_env(env_file=PROJECT_ROOT / ".env")

    embedder = Embedder(
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        api_key=settings.openai_api_key,
        timeout=settings.provider_timeout_s,
        max_attempts=settings.provider_max_attempts,
    )
    store = VectorStore(
        path=str(_resolve(settings.chroma_path)),
        host=settings.chroma_host,
        port=settings.chroma_port,
        collection_name=settings.chroma_collection,
        dimensions=settings.embedding_dimensions,
        timeout=settings.provider_timeout_s,
        max_attempts=settings.provider_max_attempts,
    )
    store.verify_dimensions(settings.embedding_dimensions)

    tenants = TenantRegistry(config_dir=_resolve(settings.tenant_config_dir))
    gate = RelevanceGate(KeywordRelevanceCheck(), classifier=build_classifier(settings))
    engine = QueryEngine(gate, Retriever(store, embedder), tenants, top_k=settings.top_k)

    return Services(
        settings=settings,
        tenants=tenants,
        embedder=embedder,
        store=store,
        pipeline=IngestionPipeline(embedder, store),
        engine=engine,
    )
