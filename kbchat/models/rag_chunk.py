"""Retrievable chunk model."""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Text
from sqlmodel import Field, SQLModel


class RagChunk(SQLModel, table=True):
    """One retrievable unit of text, usually one source row.

    Within a ``doc_id`` the ``chunk_index`` is unique for a sync generation.
    Every chunk of a ``doc_id`` is deleted and replaced on re-sync.
    """

    __tablename__ = "rag_chunks"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, max_length=36)
    doc_id: str = Field(index=True, max_length=255)
    chunk_index: int = Field(index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    token_count: Optional[int] = None
    # Stored as a JSON array here; the Supabase schema uses pgvector(1536)
    embedding: Optional[List[float]] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    # "metadata" is reserved on declarative models, so the attribute is renamed
    metadata_json: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
