"""Chat and conversation history endpoints."""

from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from kbchat.api.chat.schemas import (
    ChatAnswer,
    ChatRequest,
    Citation,
    ConversationCreateRequest,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationRenameRequest,
    ConversationSummary,
    MessageResponse,
)
from kbchat.config.logger import app_logger
from kbchat.db.storage import Storage, get_storage
from kbchat.services import chat_persistence
from kbchat.services.chat_pipeline import prepare_turn
from kbchat.services.errors import ValidationError
from kbchat.services.relay import complete_and_persist, get_relay
from kbchat.utils.auth import require_auth
from kbchat.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _validate_conversation_id(conversation_id: str) -> None:
    try:
        UUID(conversation_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid conversation ID format",
        )


def _summary(conversation: Dict[str, Any]) -> ConversationSummary:
    return ConversationSummary(
        id=str(conversation["id"]),
        title=conversation.get("title") or chat_persistence.DEFAULT_TITLE,
        created_at=conversation.get("created_at", ""),
        updated_at=conversation.get("updated_at", ""),
    )


def _message(message: Dict[str, Any]) -> MessageResponse:
    return MessageResponse(
        id=str(message["id"]),
        role=message["role"],
        content=message["content"],
        citations=[Citation(**citation) for citation in message.get("citations") or []],
        created_at=message.get("created_at", ""),
    )


@router.post(
    "/chat",
    summary="Ask a question; the cited answer streams back as Server-Sent Events",
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def chat(
    request: ChatRequest,
    user_id: str = Depends(require_auth),
    storage: Storage = Depends(get_storage),
):
    """Answer a question from the knowledge base.

    The stream starts with an ``event: citations`` preamble, then answer
    fragments, then ``data: [DONE]``. Upstream rate-limit (429) and quota
    (402) errors are returned as JSON before the stream starts. With
    ``stream=false`` the whole answer is returned as JSON.
    """
    question = request.question.strip()
    if not question:
        raise ValidationError("question is required")
    if request.conversation_id:
        _validate_conversation_id(request.conversation_id)

    turn = await prepare_turn(storage, user_id, question, request.conversation_id)

    if not request.stream:
        answer = await complete_and_persist(storage, turn)
        return success_response(
            data=ChatAnswer(
                answer=answer,
                citations=turn.citations,
                conversation_id=turn.conversation_id,
            ),
            message="Answer generated successfully",
        )

    relay = get_relay(storage)
    frames = await relay.start(turn)
    app_logger.info(f"Streaming answer ({relay.strategy}) for conversation {turn.conversation_id}")

    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Conversation-Id": turn.conversation_id},
    )


@router.get(
    "/conversations",
    response_model=SuccessResponse[ConversationListResponse],
    summary="List the current user's conversations",
)
async def list_conversations(
    user_id: str = Depends(require_auth),
    storage: Storage = Depends(get_storage),
    limit: int = 50,
) -> SuccessResponse[ConversationListResponse]:
    """Conversations ordered by last activity (most recent first)."""
    conversations = await chat_persistence.list_conversations(storage, user_id, limit=limit)
    summaries = [_summary(c) for c in conversations]
    return success_response(
        data=ConversationListResponse(conversations=summaries, total=len(summaries)),
        message=f"Found {len(summaries)} conversations",
    )


@router.post(
    "/conversations",
    response_model=SuccessResponse[ConversationSummary],
    status_code=status.HTTP_201_CREATED,
    summary="Start a new conversation",
)
async def create_conversation(
    request: ConversationCreateRequest,
    user_id: str = Depends(require_auth),
    storage: Storage = Depends(get_storage),
) -> SuccessResponse[ConversationSummary]:
    conversation = await chat_persistence.create_conversation(storage, user_id, request.title)
    return success_response(data=_summary(conversation), message="Conversation created successfully")


@router.get(
    "/conversations/{conversation_id}",
    response_model=SuccessResponse[ConversationDetailResponse],
    summary="Get a conversation with all messages",
)
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(require_auth),
    storage: Storage = Depends(get_storage),
) -> SuccessResponse[ConversationDetailResponse]:
    """Full message history, oldest first, with citation snapshots."""
    _validate_conversation_id(conversation_id)

    conversation = await chat_persistence.get_conversation_detail(storage, conversation_id, user_id)
    if not conversation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )

    summary = _summary(conversation)
    return success_response(
        data=ConversationDetailResponse(
            id=summary.id,
            title=summary.title,
            messages=[_message(m) for m in conversation.get("messages", [])],
            created_at=summary.created_at,
            updated_at=summary.updated_at,
        ),
        message="Conversation retrieved successfully",
    )


@router.patch(
    "/conversations/{conversation_id}",
    response_model=SuccessResponse[ConversationSummary],
    summary="Rename a conversation",
)
async def rename_conversation(
    conversation_id: str,
    request: ConversationRenameRequest,
    user_id: str = Depends(require_auth),
    storage: Storage = Depends(get_storage),
) -> SuccessResponse[ConversationSummary]:
    _validate_conversation_id(conversation_id)

    conversation = await chat_persistence.rename_conversation(storage, conversation_id, user_id, request.title)
    if not conversation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    return success_response(data=_summary(conversation), message="Conversation renamed successfully")


@router.delete(
    "/conversations/{conversation_id}",
    response_model=SuccessResponse[dict],
    summary="Delete a conversation",
)
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(require_auth),
    storage: Storage = Depends(get_storage),
) -> SuccessResponse[dict]:
    """Delete a conversation and all its messages."""
    _validate_conversation_id(conversation_id)

    deleted = await chat_persistence.delete_conversation(storage, conversation_id, user_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    return success_response(
        data={"deleted": True, "conversation_id": conversation_id},
        message="Conversation deleted successfully",
    )
