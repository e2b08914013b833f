"""OpenAI embedding generator with batching, timeouts and retry logic.

Uses text-embedding-3-small (1536 dimensions by default). The dimension must
match the vector store collection; the store checks that once at startup.

Each API call runs with a client-side timeout and is retried with exponential
backoff. Once attempts are exhausted the caller sees ProviderTimeout or
ProviderUnavailable instead of a raw SDK exception.
"""

import logging
import os
import time
from typing import Optional

import openai
import tiktoken
from openai import OpenAI

from schemas.errors import ConfigurationError, ProviderTimeout, ProviderUnavailable
from vectorstore.utils import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_BACKOFF_MULTIPLIER,
    with_backoff,
)

logger = logging.getLogger(__name__)

PROVIDER = "openai-embeddings"
DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_DIMENSIONS = 1536
DEFAULT_TIMEOUT_S = 30.0
MAX_BATCH_SIZE = 256  # inputs per request
MAX_TOKENS_PER_TEXT = 8000  # below the 8192-token model limit


class Embedder:
    """Generate embeddings using OpenAI's embedding models."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        dimensions: int = DEFAULT_DIMENSIONS,
        api_key: Optional[str] = None,
        client: Optional[OpenAI] = None,
        timeout: float = DEFAULT_TIMEOUT_S,
        max_attempts: int = DEFAULT_ATTEMPTS,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        batch_pause: float = 0.5,
    ):
        self.model = model
        self.dimensions = dimensions
        self.batch_pause = batch_pause
        if client is None:
            key = api_key or os.getenv("OPENAI_API_KEY")
            if not key:
                raise ConfigurationError("OPENAI_API_KEY is required for embeddings")
            # Retries are ours (bounded backoff below), not the SDK's.
            client = OpenAI(api_key=key, timeout=timeout, max_retries=0)
        self.client = client
        self._encoder: Optional[tiktoken.Encoding] = None
        self._embed_batch = with_backoff(
            self._embed_batch_once,
            label="Embedding API",
            attempts=max_attempts,
            multiplier=backoff_multiplier,
            max_wait=backoff_max,
        )

    def _get_encoder(self) -> tiktoken.Encoding:
        if self._encoder is None:
            try:
                self._encoder = tiktoken.encoding_for_model(self.model)
            except KeyError:
                self._encoder = tiktoken.get_encoding("cl100k_base")
        return self._encoder

    def _truncate_text(self, text: str) -> str:
        """Cut text down to MAX_TOKENS_PER_TEXT tokens."""
        # Every token covers at least one byte, so short texts never need encoding.
        if len(text.encode("utf-8")) <= MAX_TOKENS_PER_TEXT:
            return text
        encoder = self._get_encoder()
        tokens = encoder.encode(text)
        if len(tokens) <= MAX_TOKENS_PER_TEXT:
            return text
        logger.warning(
            "Input of %d tokens cut to %d before embedding: '%.60s'",
            len(tokens), MAX_TOKENS_PER_TEXT, text,
        )
        return encoder.decode(tokens[:MAX_TOKENS_PER_TEXT])

    def _embed_batch_once(self, texts: list[str]) -> list[list[float]]:
        """Embed a single batch of texts via the API (one attempt)."""
        try:
            response = self.client.embeddings.create(
                model=self.model,
                input=texts,
                dimensions=self.dimensions,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout(PROVIDER, str(e)) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError, openai.NotFoundError) as e:
            raise ConfigurationError(f"Embedding provider rejected configuration: {e}") from e
        except openai.BadRequestError as e:
            raise ProviderUnavailable(PROVIDER, f"request rejected: {e}", retryable=False) from e
        except openai.OpenAIError as e:
            raise ProviderUnavailable(PROVIDER, str(e)) from e

        embeddings = [list(item.embedding) for item in sorted(response.data, key=lambda d: d.index)]
        for vector in embeddings:
            if len(vector) != self.dimensions:
                raise ConfigurationError(
                    f"Embedding model {self.model} returned {len(vector)} dimensions, "
                    f"expected {self.dimensions}"
                )
        return embeddings

    def embed(self, texts: list[str], show_progress: bool = True) -> list[list[float]]:
        """Return one vector per text, in input order.

        Texts are sent in slices of at most MAX_BATCH_SIZE; each slice is one
        retried API call. ProviderTimeout or ProviderUnavailable propagate once
        a slice runs out of attempts, and nothing from earlier slices is kept.
        """
        if not texts:
            return []

        prepared = [self._truncate_text(t) for t in texts]
        slices = [
            prepared[i:i + MAX_BATCH_SIZE]
            for i in range(0, len(prepared), MAX_BATCH_SIZE)
        ]
        vectors: list[list[float]] = []
        t0 = time.perf_counter()

        for n, chunk in enumerate(slices, start=1):
            t_slice = time.perf_counter()
            vectors.extend(self._embed_batch(chunk))
            if show_progress:
                logger.info(
                    "  embeddings %d/%d: %d texts (%d/%d done, %.2fs)",
                    n, len(slices), len(chunk), len(vectors), len(prepared),
                    time.perf_counter() - t_slice,
                )
            if n < len(slices) and self.batch_pause:
                time.sleep(self.batch_pause)

        if show_progress:
            logger.info(
                "Embedded %d texts at %d dims with %s in %.2fs",
                len(vectors), self.dimensions, self.model, time.perf_counter() - t0,
            )
        return vectors

    def embed_single(self, text: str) -> list[float]:
        """Vector for one query string; no progress logging."""
        return self.embed([text], show_progress=False)[0]
