"""Conversation and Message models for persisted chat history."""

from datetime import datetime, timezone
from typing import List
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Text
from sqlmodel import Field, SQLModel


class Conversation(SQLModel, table=True):
    """A user's conversation with the knowledge base."""

    __tablename__ = "conversations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, max_length=36)
    user_id: str = Field(index=True, max_length=255, description="User who owns this conversation")
    title: str = Field(
        default="New conversation",
        max_length=255,
        description="Auto-set from the first user message",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )


class Message(SQLModel, table=True):
    """Append-only chat message. Never updated after insert."""

    __tablename__ = "messages"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, max_length=36)
    conversation_id: str = Field(index=True, max_length=36, description="Parent conversation")
    user_id: str = Field(index=True, max_length=255, description="User who owns this message")
    role: str = Field(max_length=20, description="Message role: 'user' or 'assistant'")
    content: str = Field(sa_column=Column(Text, nullable=False))
    # Snapshot of the chunks used, not a foreign key: chunks vanish on re-sync
    citations: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
