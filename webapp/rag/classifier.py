"""Stage 2 of the relevance gate: an LLM decides whether a query is in domain.

The classifier fails open. Any provider error, timeout or unparseable answer
yields ``isRelevant=true`` with a logged warning.
"""

import json
import logging
import os
from typing import Optional

import anthropic
import openai

from processors.relevance_gate import rejection_message
from schemas.errors import ConfigurationError, ProviderTimeout, ProviderUnavailable, RelevanceGateError
from schemas.query import RelevanceVerdict
from schemas.settings import TenantConfig
from webapp.rag.prompts import RELEVANCE_SYSTEM, RELEVANCE_USER

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
}
FAIL_OPEN_REASON = "Validation service error - defaulting to allow"


class LLMClient:
    """Minimal chat client over OpenAI or Anthropic with a request timeout."""

    def __init__(
        self,
        provider: str = "openai",
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client=None,
    ):
        if provider not in DEFAULT_MODELS:
            raise ConfigurationError(f"Unsupported LLM provider: {provider}")
        self.provider = provider
        self.model = model or DEFAULT_MODELS[provider]

        if client is not None:
            self.client = client
        elif provider == "anthropic":
            key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not key:
                raise ConfigurationError("ANTHROPIC_API_KEY is required for the relevance classifier")
            self.client = anthropic.Anthropic(api_key=key, timeout=timeout, max_retries=1)
        else:
            key = api_key or os.getenv("OPENAI_API_KEY")
            if not key:
                raise ConfigurationError("OPENAI_API_KEY is required for the relevance classifier")
            self.client = openai.OpenAI(api_key=key, timeout=timeout, max_retries=1)

    def chat(
        self,
        system: str,
        user: str,
        temperature: float = 0.1,
        max_tokens: int = 200,
    ) -> str:
        """Send a simple chat completion request.

        Raises:
            ProviderTimeout / ProviderUnavailable on any SDK failure.
        """
        try:
            if self.provider == "anthropic":
                response = self.client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
            else:
                response = self.client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
        except (openai.APITimeoutError, anthropic.APITimeoutError) as e:
            raise ProviderTimeout(self.provider, str(e)) from e
        except (openai.OpenAIError, anthropic.AnthropicError) as e:
            raise ProviderUnavailable(self.provider, str(e)) from e

        text = self._reply_text(response)
        if text is None:
            raise ProviderUnavailable(self.provider, "reply carried no text content")
        return text

    def _reply_text(self, response) -> Optional[str]:
        if self.provider == "anthropic":
            blocks = getattr(response, "content", None) or []
            return next((b.text for b in blocks if isinstance(getattr(b, "text", None), str)), None)
        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else None


def parse_json_reply(raw: str) -> dict:
    """Parse a JSON object from an LLM reply, tolerating markdown fences."""
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned.rsplit("```", 1)[0]
    data = json.loads(cleaned.strip())
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class LLMRelevanceClassifier:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    def classify(self, query: str, tenant: TenantConfig) -> RelevanceVerdict:
        """Classify ``query`` for ``tenant``; never raises."""
        try:
            verdict = self._classify_strict(query, tenant)
        except RelevanceGateError as e:
            logger.warning("[%s] Relevance classifier failed, allowing query: %s", tenant.client_id, e)
            return RelevanceVerdict(is_relevant=True, reason=FAIL_OPEN_REASON)
        except Exception:
            logger.exception("[%s] Unexpected relevance classifier error, allowing query", tenant.client_id)
            return RelevanceVerdict(is_relevant=True, reason=FAIL_OPEN_REASON)

        if not verdict.is_relevant and not verdict.suggested_response:
            verdict = verdict.model_copy(update={"suggested_response": rejection_message(tenant)})
        logger.info(
            "[%s] Classifier verdict: relevant=%s (%s)",
            tenant.client_id, verdict.is_relevant, verdict.reason,
        )
        return verdict

    def _classify_strict(self, query: str, tenant: TenantConfig) -> RelevanceVerdict:
        try:
            raw = self.llm.chat(
                system=RELEVANCE_SYSTEM.format(client_name=tenant.client_name),
                user=RELEVANCE_USER.format(query=query),
                temperature=0.1,
                max_tokens=200,
            )
        except (ProviderTimeout, ProviderUnavailable) as e:
            raise RelevanceGateError(str(e)) from e
        try:
            return RelevanceVerdict.model_validate(parse_json_reply(raw))
        except ValueError as e:
            # json.JSONDecodeError and pydantic's ValidationError are both ValueErrors
            raise RelevanceGateError(f"unparseable classifier reply: {e}") from e
