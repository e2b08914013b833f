"""Shared helpers for provider calls: deterministic ids, timeouts, retry with backoff."""

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from schemas.errors import ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 4
DEFAULT_BACKOFF_MULTIPLIER = 1.0
DEFAULT_BACKOFF_MAX = 20.0

# Calls that outlive their timeout keep their worker until the client returns;
# the pool bounds how many such stragglers can pile up.
_TIMEOUT_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="provider-call")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def make_vector_id(client_id: str, source: str, chunk_index: int, scope_id: Optional[str] = None) -> str:
    """Deterministic vector id for one chunk of one tenant's document.

    Same tenant, scope, source and index always give the same id, so
    re-ingesting an unchanged document overwrites instead of duplicating.
    """
    digest = hashlib.sha256(f"{scope_id or ''}:{source}".encode()).hexdigest()[:16]
    return f"{client_id}-{digest}-{chunk_index}"


def call_with_timeout(provider: str, timeout: float, fn: Callable[..., T], *args, **kwargs) -> T:
    """Run ``fn`` and raise ProviderTimeout if it does not finish in ``timeout`` seconds."""
    future = _TIMEOUT_POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise ProviderTimeout(provider, f"no response after {timeout:.1f}s")


def with_backoff(
    fn: Callable[..., T],
    label: str,
    attempts: int = DEFAULT_ATTEMPTS,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_wait: float = DEFAULT_BACKOFF_MAX,
) -> Callable[..., T]:
    """Wrap ``fn`` so retryable ProviderErrors are retried with exponential backoff.

    The last error is re-raised unchanged once attempts are exhausted.
    """
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=multiplier, max=max_wait),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "%s retry %d after error: %s",
            label,
            retry_state.attempt_number,
            retry_state.outcome.exception() if retry_state.outcome else "unknown",
        ),
    )(fn)
