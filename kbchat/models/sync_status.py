"""Knowledge base sync status model (single row)."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class SyncStatus(SQLModel, table=True):
    """Singleton record describing the last/current knowledge base sync."""

    __tablename__ = "sync_status"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, max_length=36)
    status: str = Field(default="idle", max_length=20, description="idle | syncing | error | done")
    chunk_count: int = Field(default=0, ge=0)
    doc_title: Optional[str] = Field(default=None, max_length=255)
    last_synced_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
