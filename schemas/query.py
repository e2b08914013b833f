"""Pydantic models for the query path."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.vector_record import Match


class Query(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    client_id: str
    scope_id: Optional[str] = Field(None, alias="scopeId")


class RelevanceVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_relevant: bool = Field(alias="isRelevant")
    reason: str = ""
    suggested_response: Optional[str] = Field(None, alias="suggestedResponse")


class QueryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_relevant: bool = Field(alias="isRelevant")
    reason: str = ""
    suggested_response: Optional[str] = Field(None, alias="suggestedResponse")
    matches: Optional[List[Match]] = None

    @classmethod
    def from_verdict(cls, verdict: RelevanceVerdict) -> "QueryResponse":
        return cls(
            is_relevant=verdict.is_relevant,
            reason=verdict.reason,
            suggested_response=verdict.suggested_response,
        )
