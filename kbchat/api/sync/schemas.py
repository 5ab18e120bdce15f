"""Request and response schemas for knowledge base sync endpoints."""

from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator


class SyncRequest(BaseModel):
    """Request schema for POST /v1/sync.

    Provide exactly one of ``csv`` (raw CSV text), ``rows`` (header row first)
    or ``content`` (free text, chunked with a sliding window).
    """

    csv: Optional[str] = Field(default=None, description="Raw CSV text, header row first")
    rows: Optional[List[List[Any]]] = Field(default=None, description="Table rows, header row first")
    content: Optional[str] = Field(default=None, description="Free text to chunk")
    source_label: str = Field(default="csv", max_length=255, description="Shown as the synced document title")

    model_config = {"json_schema_extra": {"example": {
        "csv": "name,age\nAlice,30\nBob,25",
        "source_label": "people.csv",
    }}}

    @model_validator(mode="after")
    def check_single_source(self) -> "SyncRequest":
        provided = [name for name in ("csv", "rows", "content") if getattr(self, name) is not None]
        if len(provided) != 1:
            raise ValueError("Provide exactly one of csv, rows or content")
        return self


class SyncResult(BaseModel):
    """Response schema for POST /v1/sync."""

    chunk_count: int = Field(ge=0, description="Chunks written")
    row_count: int = Field(ge=0, description="Data rows read (or text windows for free text)")


class SyncStatusResponse(BaseModel):
    """Response schema for GET /v1/sync/status."""

    status: str = Field(description="idle | syncing | error | done")
    chunk_count: int = Field(default=0)
    doc_title: Optional[str] = None
    last_synced_at: Optional[str] = None
    error_message: Optional[str] = None
