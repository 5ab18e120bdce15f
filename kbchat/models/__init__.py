"""Models module - imports all models for SQLModel registration."""

from kbchat.models.rag_chunk import RagChunk
from kbchat.models.sync_status import SyncStatus
from kbchat.models.conversation import Conversation, Message

__all__ = [
    "RagChunk",
    "SyncStatus",
    "Conversation",
    "Message",
]
