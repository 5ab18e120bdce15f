"""Chat persistence service for conversations and their messages.

Messages are append-only. Each answered question is written as one user
message followed by exactly one assistant message carrying the citation
snapshot.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from kbchat.api.chat.schemas import Citation
from kbchat.config.logger import app_logger
from kbchat.db.storage import CONVERSATIONS_TABLE, MESSAGES_TABLE, Storage
from kbchat.services.errors import NotFoundError

DEFAULT_TITLE = "New conversation"
TITLE_MAX_CHARS = 50


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def title_from_message(text: str) -> str:
    """First 50 characters of the message, with an ellipsis when truncated."""
    text = text.strip()
    if len(text) <= TITLE_MAX_CHARS:
        return text
    return text[:TITLE_MAX_CHARS] + "…"


async def create_conversation(
    storage: Storage,
    user_id: str,
    title: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a new conversation owned by ``user_id``.

    Args:
        storage: Storage backend
        user_id: The owner
        title: Optional title; defaults to "New conversation"

    Returns:
        The created conversation record
    """
    now = _now()
    conversation = {
        "id": str(uuid4()),
        "user_id": user_id,
        "title": title or DEFAULT_TITLE,
        "created_at": now,
        "updated_at": now,
    }
    rows = await storage.insert_records(CONVERSATIONS_TABLE, [conversation])
    app_logger.debug(f"Created conversation {conversation['id']} for user {user_id}")
    return rows[0]


async def get_conversation(
    storage: Storage,
    conversation_id: str,
    user_id: str,
) -> Optional[Dict[str, Any]]:
    """Conversation owned by ``user_id``, or None (unknown and foreign look the same)."""
    rows = await storage.get_records(
        CONVERSATIONS_TABLE,
        filters={"id": conversation_id, "user_id": user_id},
        limit=1,
    )
    return rows[0] if rows else None


async def require_conversation(
    storage: Storage,
    conversation_id: str,
    user_id: str,
) -> Dict[str, Any]:
    conversation = await get_conversation(storage, conversation_id, user_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


async def list_conversations(
    storage: Storage,
    user_id: str,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """Conversations for a user, most recently active first."""
    return await storage.get_records(
        CONVERSATIONS_TABLE,
        filters={"user_id": user_id},
        limit=limit,
        order_by="updated_at",
        ascending=False,
    )


async def get_conversation_detail(
    storage: Storage,
    conversation_id: str,
    user_id: str,
) -> Optional[Dict[str, Any]]:
    """Get a conversation with all its messages, oldest first.

    Args:
        storage: Storage backend
        conversation_id: The conversation ID
        user_id: The user ID (for authorization)

    Returns:
        Conversation record with ``messages``, or None if not found
    """
    conversation = await get_conversation(storage, conversation_id, user_id)
    if conversation is None:
        return None

    conversation["messages"] = await storage.get_records(
        MESSAGES_TABLE,
        filters={"conversation_id": conversation_id},
        order_by="created_at",
        ascending=True,
    )
    return conversation


async def rename_conversation(
    storage: Storage,
    conversation_id: str,
    user_id: str,
    title: str,
) -> Optional[Dict[str, Any]]:
    if await get_conversation(storage, conversation_id, user_id) is None:
        return None
    rows = await storage.update_records(
        CONVERSATIONS_TABLE,
        {"id": conversation_id, "user_id": user_id},
        {"title": title.strip(), "updated_at": _now()},
    )
    return rows[0] if rows else None


async def delete_conversation(
    storage: Storage,
    conversation_id: str,
    user_id: str,
) -> bool:
    """Delete a conversation and all its messages.

    Returns:
        True if deleted, False if not found
    """
    if await get_conversation(storage, conversation_id, user_id) is None:
        return False

    await storage.delete_records(MESSAGES_TABLE, {"conversation_id": conversation_id})
    await storage.delete_records(CONVERSATIONS_TABLE, {"id": conversation_id, "user_id": user_id})
    app_logger.info(f"Deleted conversation {conversation_id}")
    return True


async def save_message(
    storage: Storage,
    conversation_id: str,
    user_id: str,
    role: str,
    content: str,
    citations: Sequence[Citation] = (),
) -> Dict[str, Any]:
    message = {
        "id": str(uuid4()),
        "conversation_id": conversation_id,
        "user_id": user_id,
        "role": role,
        "content": content,
        "citations": [citation.model_dump(exclude_none=True) for citation in citations],
        "created_at": _now(),
    }
    rows = await storage.insert_records(MESSAGES_TABLE, [message])
    return rows[0]


async def persist_chat_turn(
    storage: Storage,
    conversation_id: str,
    user_id: str,
    question: str,
    answer: str,
    citations: Sequence[Citation],
) -> Dict[str, Any]:
    """Persist a complete chat turn (user message + assistant reply).

    Called once per answered question, after the full answer is known. The
    conversation title is taken from the first user message.

    Returns:
        The assistant message record

    Raises:
        PersistenceError: If any storage write fails
    """
    prior_messages = await storage.count_records(MESSAGES_TABLE, {"conversation_id": conversation_id})

    await save_message(storage, conversation_id, user_id, "user", question)
    assistant_message = await save_message(
        storage,
        conversation_id,
        user_id,
        "assistant",
        answer,
        citations=citations,
    )

    updates: Dict[str, Any] = {"updated_at": _now()}
    if prior_messages == 0:
        conversation = await get_conversation(storage, conversation_id, user_id)
        if conversation and conversation.get("title") in (None, "", DEFAULT_TITLE):
            updates["title"] = title_from_message(question)

    await storage.update_records(CONVERSATIONS_TABLE, {"id": conversation_id}, updates)

    app_logger.debug(f"Persisted chat turn for conversation {conversation_id}")
    return assistant_message
