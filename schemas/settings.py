"""Typed configuration: per-tenant pipeline options and process-wide settings.

Tenant files are written by the admin dashboard and validated here with
unknown keys rejected at load time. Process settings come from the
environment (see ``RuntimeSettings.from_env``).
"""

import json
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from schemas.document import IngestionType
from schemas.errors import ConfigurationError

# Logical metadata fields that may be renamed in the store. client_id is the
# isolation key and always stored under its own name.
MAPPABLE_FIELDS = {"scopeId", "scopeUrl", "source", "chunkIndex"}
TENANT_KEY = "client_id"

DEFAULT_MAX_CHUNK_SIZE = 1000


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    max_chunk_size: int = Field(DEFAULT_MAX_CHUNK_SIZE, alias="maxChunkSize", gt=0)
    allowed_ingestion_types: List[IngestionType] = Field(
        default_factory=lambda: [IngestionType.GENERAL, IngestionType.SCOPED],
        alias="allowedIngestionTypes",
        min_length=1,
    )
    metadata_field_map: Dict[str, str] = Field(
        default_factory=dict,
        alias="metadataFieldMap",
        description="Logical field name -> key used in the vector store",
    )
    prune_stale_chunks: bool = Field(False, alias="pruneStaleChunks")

    @field_validator("metadata_field_map")
    @classmethod
    def _check_field_map(cls, value: Dict[str, str]) -> Dict[str, str]:
        unknown = set(value) - MAPPABLE_FIELDS
        if unknown:
            raise ValueError(
                f"unknown logical fields {sorted(unknown)}; allowed: {sorted(MAPPABLE_FIELDS)}"
            )
        stored = list(value.values())
        if any(not v.strip() for v in stored):
            raise ValueError("stored field names must be non-empty")
        if TENANT_KEY in stored:
            raise ValueError(f"'{TENANT_KEY}' is reserved for tenant isolation")
        # A renamed field must not collide with another field's stored key.
        resolved = [value.get(f, f) for f in sorted(MAPPABLE_FIELDS)]
        if len(set(resolved)) != len(resolved):
            raise ValueError("metadataFieldMap maps two fields onto the same stored key")
        return value

    def allows(self, ingestion_type: str) -> bool:
        return any(t.value == ingestion_type for t in self.allowed_ingestion_types)


class RelevanceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    llm_validation: bool = Field(False, alias="llmValidation")
    rejection_message: Optional[str] = Field(
        None,
        alias="rejectionMessage",
        description="Overrides the default rejection template; may use {client_name}",
    )


class TenantConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    client_id: str = Field(alias="clientId")
    client_name: str = Field(alias="clientName")
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    relevance: RelevanceConfig = Field(default_factory=RelevanceConfig)


def load_pipeline_config(source: Union[Mapping, str, Path]) -> PipelineConfig:
    """Build a PipelineConfig from a mapping, a JSON string or a JSON file path."""
    data = _read_json_source(source)
    try:
        return PipelineConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid pipeline configuration: {e}") from e


def load_tenant_config(source: Union[Mapping, str, Path], client_id: Optional[str] = None) -> TenantConfig:
    """Build a TenantConfig; ``client_id`` fills in or must match ``clientId``."""
    data = dict(_read_json_source(source))
    if client_id is not None:
        declared = data.setdefault("clientId", client_id)
        if declared != client_id:
            raise ConfigurationError(
                f"Tenant config declares clientId '{declared}' but was loaded for '{client_id}'"
            )
    try:
        return TenantConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid tenant configuration for '{client_id}': {e}") from e


def _read_json_source(source: Union[Mapping, str, Path]) -> Mapping:
    if isinstance(source, Mapping):
        return source
    try:
        if isinstance(source, Path) or (isinstance(source, str) and not source.lstrip().startswith("{")):
            with open(source, encoding="utf-8") as f:
                data = json.load(f)
        else:
            data = json.loads(source)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read configuration: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object")
    return data


# ---------------------------------------------------------------------------
# Process settings
# ---------------------------------------------------------------------------

class RuntimeSettings(BaseSettings):
    """Process-wide settings read from the environment (and an optional .env file).

    Empty variables count as unset, so ``RAG_TOP_K=`` keeps the default.
    """

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    openai_api_key: Optional[str] = Field(None, validation_alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(None, validation_alias="ANTHROPIC_API_KEY")
    embedding_model: str = Field("text-embedding-3-small", validation_alias="EMBEDDING_MODEL")
    embedding_dimensions: int = Field(1536, gt=0, validation_alias="EMBEDDING_DIMENSIONS")
    chroma_path: str = Field("data/chroma", validation_alias="CHROMA_PATH")
    chroma_host: Optional[str] = Field(None, validation_alias="CHROMA_HOST")
    chroma_port: int = Field(8000, validation_alias="CHROMA_PORT")
    chroma_collection: str = Field("tenant_knowledge", validation_alias="CHROMA_COLLECTION")
    top_k: int = Field(5, ge=1, le=50, validation_alias="RAG_TOP_K")
    provider_timeout_s: float = Field(30.0, gt=0, validation_alias="PROVIDER_TIMEOUT_S")
    provider_max_attempts: int = Field(4, ge=1, validation_alias="PROVIDER_MAX_ATTEMPTS")
    relevance_llm_provider: str = Field("openai", validation_alias="RELEVANCE_LLM_PROVIDER")
    relevance_llm_model: Optional[str] = Field(None, validation_alias="RELEVANCE_LLM_MODEL")
    tenant_config_dir: str = Field("config/tenants", validation_alias="TENANT_CONFIG_DIR")
    ingest_max_workers: int = Field(1, ge=1, validation_alias="INGEST_MAX_WORKERS")

    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = None) -> "RuntimeSettings":
        """Load settings; invalid values raise ConfigurationError instead of pydantic's error."""
        try:
            return cls(_env_file=env_file)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid environment settings: {e}") from e
