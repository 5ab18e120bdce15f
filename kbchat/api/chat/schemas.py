"""Request and response schemas for chat and conversation endpoints."""

from typing import List, Optional

from pydantic import BaseModel, Field


class Citation(BaseModel):
    """Snapshot of a chunk that grounded an answer.

    Copied into the message at answer time; the chunk itself may be gone after
    the next re-sync.
    """

    chunk_id: str = Field(description="ID of the chunk at answer time")
    chunk_index: int = Field(description="Position of the chunk in its sync generation")
    excerpt: str = Field(description="First 200 characters of the chunk")
    row_number: int = Field(description="Source row number, as cited by [Row N]")
    reference: int = Field(description="1-based retrieval rank")
    similarity: Optional[int] = Field(default=None, description="Similarity percent (vector mode only)")

    model_config = {"json_schema_extra": {"example": {
        "chunk_id": "3b1f0c9e-7d51-4c36-9a3c-2a9a4f7f1a10",
        "chunk_index": 0,
        "excerpt": "name: Alice; age: 30",
        "row_number": 2,
        "reference": 1,
        "similarity": 90,
    }}}


class ChatRequest(BaseModel):
    """Request schema for POST /v1/chat."""

    question: str = Field(..., min_length=1, max_length=4000, description="Natural-language question")
    conversation_id: Optional[str] = Field(
        default=None,
        description="Existing conversation to append to; a new one is created when omitted",
    )
    stream: bool = Field(default=True, description="Stream the answer as Server-Sent Events")

    model_config = {"json_schema_extra": {"example": {
        "question": "How old is Alice?",
        "conversation_id": None,
        "stream": True,
    }}}


class ChatAnswer(BaseModel):
    """Non-streaming answer (``stream=false``)."""

    answer: str
    citations: List[Citation] = Field(default_factory=list)
    conversation_id: str


class ConversationCreateRequest(BaseModel):
    """Request schema for POST /v1/conversations."""

    title: Optional[str] = Field(default=None, max_length=255)


class ConversationRenameRequest(BaseModel):
    """Request schema for PATCH /v1/conversations/{id}."""

    title: str = Field(..., min_length=1, max_length=255)


class ConversationSummary(BaseModel):
    """Conversation list item."""

    id: str
    title: str
    created_at: str
    updated_at: str


class ConversationListResponse(BaseModel):
    """Response schema for GET /v1/conversations."""

    conversations: List[ConversationSummary] = Field(default_factory=list)
    total: int = Field(default=0)


class MessageResponse(BaseModel):
    """Single persisted message."""

    id: str
    role: str
    content: str
    citations: List[Citation] = Field(default_factory=list)
    created_at: str


class ConversationDetailResponse(BaseModel):
    """Conversation with its messages, oldest first."""

    id: str
    title: str
    messages: List[MessageResponse] = Field(default_factory=list)
    created_at: str
    updated_at: str
