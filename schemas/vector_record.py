"""Pydantic models for records written to and read from the vector store."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class VectorMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_id: str
    source: str
    chunk_index: int = Field(alias="chunkIndex")
    scope_id: Optional[str] = Field(None, alias="scopeId")
    scope_url: Optional[str] = Field(None, alias="scopeUrl")

    def logical(self) -> dict:
        """Metadata keyed by logical field names, without unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


class VectorRecord(BaseModel):
    id: str = Field(description="Deterministic id from tenant, scope, source and chunk index")
    values: List[float] = Field(description="Embedding vector")
    metadata: VectorMetadata
    text: str = Field(description="Chunk text, stored alongside the vector")


class Match(BaseModel):
    """A single similarity hit. Produced by the query path, never persisted."""

    model_config = ConfigDict(populate_by_name=True)

    vector_id: str = Field(alias="vectorId")
    score: float  # 1 - cosine distance, higher = more similar
    metadata: dict = Field(default_factory=dict)
    text: str = ""
