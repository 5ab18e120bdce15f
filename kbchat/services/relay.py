"""Streaming completion relay.

Two interchangeable strategies implement ``CompletionRelay.start``:

- ``PassThroughRelay`` (persist-after-forward): fragments are forwarded as
  they arrive from upstream; the single assistant message is written after
  the upstream stream ends, whether or not the client is still connected.
- ``ReplayRelay`` (persist-then-replay): the full answer is collected and
  persisted first, then replayed as fixed-size slices.

Either way the assistant message is inserted once, after the answer is
complete. ``start`` opens the upstream call before returning, so upstream
429/402 errors raise while the response can still be a JSON error, and a
first turn only creates its conversation once that call has been accepted.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from kbchat.api.chat.schemas import Citation
from kbchat.config.logger import app_logger
from kbchat.config.settings import settings
from kbchat.db.storage import Storage
from kbchat.services import llm
from kbchat.services.chat_persistence import create_conversation, persist_chat_turn
from kbchat.services.errors import KnowledgeBaseError
from kbchat.services.sse import DONE_EVENT, citations_event, comment, delta_event, error_event

OpenStream = Callable[[List[Dict[str, str]]], Awaitable[AsyncIterator[str]]]
Complete = Callable[[List[Dict[str, str]]], Awaitable[str]]

_END = object()

# Pump tasks still running (e.g. after a client disconnect)
_pending: Set[asyncio.Task] = set()


@dataclass
class RelayRequest:
    system_prompt: str
    user_prompt: str
    citations: List[Citation]
    conversation_id: Optional[str]
    user_id: str
    question: str

    def messages(self) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_prompt},
        ]


def _client_message(exc: BaseException) -> str:
    if isinstance(exc, KnowledgeBaseError):
        return exc.message
    return "The answer stream failed"


async def ensure_conversation(storage: Storage, request: RelayRequest) -> str:
    """Create the conversation for a first turn and record its id on the request."""
    if not request.conversation_id:
        conversation = await create_conversation(storage, request.user_id)
        request.conversation_id = conversation["id"]
    return request.conversation_id


async def wait_for_pending_persistence() -> None:
    """Wait for in-flight pump tasks (called on shutdown and by tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)


async def complete_and_persist(
    storage: Storage,
    request: RelayRequest,
    complete: Optional[Complete] = None,
) -> str:
    """Collect the full answer, persist the turn and return the answer."""
    complete = complete or llm.complete
    answer = await complete(request.messages())
    await ensure_conversation(storage, request)
    await persist_chat_turn(
        storage,
        conversation_id=request.conversation_id,
        user_id=request.user_id,
        question=request.question,
        answer=answer,
        citations=request.citations,
    )
    return answer


class CompletionRelay(ABC):
    """Turns a composed prompt into an SSE frame stream and persists the answer."""

    strategy: str = "abstract"

    def __init__(self, storage: Storage):
        self.storage = storage

    @abstractmethod
    async def start(self, request: RelayRequest) -> AsyncIterator[str]:
        """Open the upstream call and return the SSE frames to send."""


class PassThroughRelay(CompletionRelay):
    """Forward fragments as they arrive; persist after the upstream ends."""

    strategy = "passthrough"

    def __init__(
        self,
        storage: Storage,
        open_stream: Optional[OpenStream] = None,
        heartbeat_seconds: Optional[float] = None,
    ):
        super().__init__(storage)
        self.open_stream = open_stream or llm.open_completion_stream
        heartbeat_seconds = settings.SSE_HEARTBEAT_SECONDS if heartbeat_seconds is None else heartbeat_seconds
        # 0 disables the keep-alive comments
        self.heartbeat_seconds = heartbeat_seconds or None

    async def start(self, request: RelayRequest) -> AsyncIterator[str]:
        deltas = await self.open_stream(request.messages())
        await ensure_conversation(self.storage, request)

        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._pump(request, deltas, queue))
        _pending.add(task)
        task.add_done_callback(_pending.discard)

        return self._frames(request, queue)

    async def _pump(self, request: RelayRequest, deltas: AsyncIterator[str], queue: asyncio.Queue) -> None:
        """Drain upstream into the queue, then persist the accumulated answer."""
        parts: List[str] = []
        try:
            async for fragment in deltas:
                parts.append(fragment)
                queue.put_nowait(fragment)

            await persist_chat_turn(
                self.storage,
                conversation_id=request.conversation_id,
                user_id=request.user_id,
                question=request.question,
                answer="".join(parts),
                citations=request.citations,
            )
        except Exception as exc:
            app_logger.error(f"Answer stream for conversation {request.conversation_id} failed: {exc}")
            queue.put_nowait(exc)
            return

        app_logger.info(
            f"Streamed and persisted answer for conversation {request.conversation_id} "
            f"({len(parts)} fragments)"
        )
        queue.put_nowait(_END)

    async def _frames(self, request: RelayRequest, queue: asyncio.Queue) -> AsyncIterator[str]:
        yield citations_event(request.citations)
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_seconds)
            except asyncio.TimeoutError:
                yield comment()
                continue
            if item is _END:
                yield DONE_EVENT
                return
            if isinstance(item, BaseException):
                yield error_event(_client_message(item))
                return
            yield delta_event(item)


class ReplayRelay(CompletionRelay):
    """Collect and persist the full answer, then replay it in slices."""

    strategy = "replay"

    def __init__(
        self,
        storage: Storage,
        complete: Optional[Complete] = None,
        slice_chars: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ):
        super().__init__(storage)
        self.complete = complete or llm.complete
        self.slice_chars = slice_chars or settings.REPLAY_SLICE_CHARS
        self.delay_seconds = settings.REPLAY_DELAY_SECONDS if delay_seconds is None else delay_seconds

    async def start(self, request: RelayRequest) -> AsyncIterator[str]:
        answer = await complete_and_persist(self.storage, request, self.complete)
        app_logger.info(f"Persisted answer for conversation {request.conversation_id}, replaying")
        return self._frames(request, answer)

    async def _frames(self, request: RelayRequest, answer: str) -> AsyncIterator[str]:
        yield citations_event(request.citations)
        for start in range(0, len(answer), self.slice_chars):
            yield delta_event(answer[start : start + self.slice_chars])
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
        yield DONE_EVENT


def get_relay(storage: Storage, strategy: Optional[str] = None) -> CompletionRelay:
    strategy = (strategy or settings.STREAM_STRATEGY).strip().lower()
    if strategy == ReplayRelay.strategy:
        return ReplayRelay(storage)
    if strategy != PassThroughRelay.strategy:
        app_logger.warning(f"Unknown STREAM_STRATEGY {strategy!r}, using passthrough")
    return PassThroughRelay(storage)
