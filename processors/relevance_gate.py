"""Two-stage relevance gate run before any retrieval call is spent on a query.

Stage 1 is a keyword pre-filter over the Portuguese and English word lists in
config/relevance_keywords.json. It rejects a query only when it mentions an
off-topic subject and nothing from the real estate domain, so mixed queries
("apartment near a restaurant") pass.

Stage 2 is an LLM classifier (see webapp/rag/classifier.py), run only for
tenants that enable it and only on queries stage 1 let through.
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional, Protocol

from schemas.errors import ConfigurationError
from schemas.query import RelevanceVerdict
from schemas.settings import TenantConfig
from webapp.rag.prompts import REJECTION_TEMPLATE

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_KEYWORDS_PATH = PROJECT_ROOT / "config" / "relevance_keywords.json"


def rejection_message(tenant: TenantConfig) -> str:
    """Polite redirect naming the tenant; the tenant may override the template."""
    template = tenant.relevance.rejection_message or REJECTION_TEMPLATE
    return template.format(client_name=tenant.client_name)


def _compile(keywords: list[str]) -> Optional[re.Pattern]:
    # A keyword matches at the start of a word, so plurals and inflections match too.
    words = sorted({kw.strip().lower() for kw in keywords if kw.strip()}, key=len, reverse=True)
    if not words:
        return None
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + ")", re.IGNORECASE)


class KeywordRelevanceCheck:
    """Stage 1: cheap multilingual keyword pre-filter."""

    def __init__(
        self,
        off_topic: Optional[list[str]] = None,
        domain: Optional[list[str]] = None,
        keywords_path: Optional[Path] = None,
    ):
        if off_topic is None or domain is None:
            loaded_off, loaded_domain = self._load_keywords(keywords_path or DEFAULT_KEYWORDS_PATH)
            off_topic = loaded_off if off_topic is None else off_topic
            domain = loaded_domain if domain is None else domain
        self._off_topic = _compile(off_topic)
        self._domain = _compile(domain)

    @staticmethod
    def _load_keywords(path: Path) -> tuple[list[str], list[str]]:
        """Read the ``off_topic`` and ``domain`` lists from a JSON keyword file."""
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read relevance keywords {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Relevance keywords {path} must hold a JSON object")
        missing = [key for key in ("off_topic", "domain") if not isinstance(data.get(key), list)]
        if missing:
            raise ConfigurationError(f"Relevance keywords {path} lack list(s): {', '.join(missing)}")
        return data["off_topic"], data["domain"]

    @staticmethod
    def _matches(pattern: Optional[re.Pattern], text: str) -> list[str]:
        if pattern is None:
            return []
        return sorted({m.group(0) for m in pattern.finditer(text)})

    def check(self, query: str, client_name: str, rejection: Optional[str] = None) -> RelevanceVerdict:
        text = query.lower()
        off_topic = self._matches(self._off_topic, text)
        domain = self._matches(self._domain, text)

        if off_topic and not domain:
            return RelevanceVerdict(
                is_relevant=False,
                reason=f"Off-topic keywords without real estate context: {', '.join(off_topic)}",
                suggested_response=rejection or REJECTION_TEMPLATE.format(client_name=client_name),
            )
        if domain:
            return RelevanceVerdict(is_relevant=True, reason=f"Domain keywords: {', '.join(domain)}")
        return RelevanceVerdict(is_relevant=True, reason="No off-topic keywords detected")


class RelevanceClassifier(Protocol):
    def classify(self, query: str, tenant: TenantConfig) -> RelevanceVerdict: ...


class RelevanceGate:
    """Runs stage 1, then stage 2 when the tenant enables LLM validation."""

    def __init__(
        self,
        keyword_check: Optional[KeywordRelevanceCheck] = None,
        classifier: Optional[RelevanceClassifier] = None,
    ):
        self.keyword_check = keyword_check or KeywordRelevanceCheck()
        self.classifier = classifier

    def validate(self, query: str, tenant: TenantConfig) -> RelevanceVerdict:
        verdict = self.keyword_check.check(
            query, tenant.client_name, rejection=rejection_message(tenant),
        )
        if not verdict.is_relevant:
            logger.info("[%s] Query rejected by keyword filter: %s", tenant.client_id, verdict.reason)
            return verdict

        if not tenant.relevance.llm_validation:
            return verdict
        if self.classifier is None:
            logger.warning(
                "[%s] LLM validation enabled but no classifier configured; keyword verdict stands",
                tenant.client_id,
            )
            return verdict
        return self.classifier.classify(query, tenant)
