"""Error taxonomy for the ingestion and query paths.

ConfigurationError blocks startup (or one tenant's operations).
ValidationError skips a single document. ProviderError covers any failed
call to the embedding provider, the vector store or the LLM classifier and
is the only family the retry wrappers retry on.
"""


class RetrievalPipelineError(Exception):
    """Base class for every error raised by this project."""


class ConfigurationError(RetrievalPipelineError):
    """Missing credentials, dimension mismatch, unknown tenant or invalid config."""


class ValidationError(RetrievalPipelineError):
    """Malformed document or request; the document is skipped and reported."""


class ProviderError(RetrievalPipelineError):
    """An external provider call failed.

    ``retryable=False`` marks failures that repeating the same request cannot
    fix (e.g. a rejected payload); the retry wrappers give up on those at once.
    """

    def __init__(self, provider: str, message: str, retryable: bool = True):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.retryable = retryable


class ProviderUnavailable(ProviderError):
    """Provider unreachable, over quota, or rejected the request."""


class ProviderTimeout(ProviderError):
    """Provider did not answer within the configured timeout."""


class IngestionFailed(RetrievalPipelineError):
    """A document could not be ingested after provider retries were exhausted."""

    def __init__(self, source: str, cause: Exception):
        super().__init__(f"Ingestion of '{source}' failed: {cause}")
        self.source = source
        self.cause = cause


class RetrievalUnavailable(RetrievalPipelineError):
    """Retrieval for a query could not complete after provider retries."""


class RelevanceGateError(RetrievalPipelineError):
    """Stage 2 classification failed; callers convert this into a fail-open verdict."""


class UnknownTenant(ConfigurationError):
    """No configuration exists for the requested client_id."""
