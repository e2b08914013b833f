"""Pydantic models for documents moving through the ingestion pipeline."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class IngestionType(str, Enum):
    GENERAL = "general"  # tenant-wide knowledge
    SCOPED = "scoped"    # bound to one sub-resource (e.g. a listing)


class DocumentState(str, Enum):
    DISCOVERED = "discovered"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    UPSERTED = "upserted"
    FAILED = "failed"


class IngestionRequest(BaseModel):
    """Raw ingestion request as sent by the upload/admin collaborator.

    Field checks happen in the pipeline, which reports a bad request as a
    failed DocumentResult.
    """

    model_config = ConfigDict(populate_by_name=True)

    client_id: str
    ingestion_type: str = Field(alias="ingestionType")
    source: Optional[str] = Field(
        None, description="Document name, e.g. the uploaded filename"
    )
    document_content: Optional[str] = Field(None, alias="documentContent")
    file_path: Optional[str] = Field(None, alias="filePath")
    scope_id: Optional[str] = Field(None, alias="scopeId")
    scope_url: Optional[str] = Field(None, alias="scopeUrl")

    @property
    def label(self) -> str:
        """Best available name for logs and reports."""
        return self.source or self.file_path or "<inline>"


class Document(BaseModel):
    client_id: str
    source: str
    ingestion_type: IngestionType
    text: str
    scope_id: Optional[str] = None
    scope_url: Optional[str] = None


class DocumentResult(BaseModel):
    client_id: str
    source: str
    state: DocumentState = DocumentState.DISCOVERED
    chunk_count: int = 0
    vector_ids: List[str] = Field(default_factory=list)
    pruned: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == DocumentState.UPSERTED


class IngestionReport(BaseModel):
    results: List[DocumentResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.state == DocumentState.FAILED)
