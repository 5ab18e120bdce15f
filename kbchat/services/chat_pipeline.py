"""Question -> retrieval -> composed prompt, ready for the relay."""

from typing import Optional

from kbchat.config.logger import app_logger
from kbchat.db.storage import Storage
from kbchat.services import chat_persistence
from kbchat.services.composer import build_citations, compose
from kbchat.services.relay import RelayRequest
from kbchat.services.retriever import Retriever, get_retriever, retrieve


async def prepare_turn(
    storage: Storage,
    user_id: str,
    question: str,
    conversation_id: Optional[str] = None,
    retriever: Optional[Retriever] = None,
) -> RelayRequest:
    """Resolve the conversation, retrieve context and compose the prompt.

    Ownership is checked before any retrieval cost is incurred. Without a
    conversation_id the conversation is created later, by the relay, once the
    upstream call has been accepted.

    Raises:
        NotFoundError: conversation_id is unknown or owned by someone else
        RetrievalError: the embedding or chunk query failed (vector mode)
    """
    if conversation_id:
        await chat_persistence.require_conversation(storage, conversation_id, user_id)

    retriever = retriever or get_retriever(storage)
    chunks = await retrieve(retriever, question)
    prompt = compose(chunks, question)

    app_logger.info(
        f"Prepared answer for conversation {conversation_id or '(new)'}: "
        f"{len(chunks)} chunks via {retriever.name} retrieval"
    )

    return RelayRequest(
        system_prompt=prompt.system_prompt,
        user_prompt=prompt.user_prompt,
        citations=build_citations(chunks),
        conversation_id=conversation_id,
        user_id=user_id,
        question=question,
    )
