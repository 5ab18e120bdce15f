"""Tests for the pass-through and replay completion relays."""

import asyncio

import pytest

from conftest import USER, count_messages, fake_stream
from kbchat.db.storage import CONVERSATIONS_TABLE
from kbchat.api.chat.schemas import Citation
from kbchat.services import chat_persistence
from kbchat.services.errors import UpstreamRateLimitError
from kbchat.services.relay import (
    PassThroughRelay,
    RelayRequest,
    ReplayRelay,
    get_relay,
    wait_for_pending_persistence,
)
from kbchat.services.sse import DONE_EVENT, SSEDecoder, comment

ANSWER = "Alice is 30 years old [Row 2]."

CITATIONS = [
    Citation(chunk_id="c1", chunk_index=0, excerpt="name: Alice; age: 30", row_number=2, reference=1, similarity=90)
]


async def _request(storage) -> RelayRequest:
    conversation = await chat_persistence.create_conversation(storage, USER["user_id"])
    return RelayRequest(
        system_prompt="system",
        user_prompt="Data rows:\n[Row 2]\nname: Alice; age: 30\n\nQuestion: How old is Alice?",
        citations=CITATIONS,
        conversation_id=conversation["id"],
        user_id=USER["user_id"],
        question="How old is Alice?",
    )


def _first_turn() -> RelayRequest:
    return RelayRequest(
        system_prompt="system",
        user_prompt="Question: How old is Alice?",
        citations=CITATIONS,
        conversation_id=None,
        user_id=USER["user_id"],
        question="How old is Alice?",
    )


async def _collect(frames) -> list:
    return [frame async for frame in frames]


def _decode(frames) -> SSEDecoder:
    decoder = SSEDecoder()
    decoder.feed("".join(frames).encode("utf-8"))
    return decoder


async def _assistant_messages(storage, conversation_id):
    detail = await chat_persistence.get_conversation_detail(storage, conversation_id, USER["user_id"])
    return [m for m in detail["messages"] if m["role"] == "assistant"]


class TestPassThroughRelay:
    @pytest.mark.asyncio
    async def test_streams_citations_deltas_then_done(self, storage):
        request = await _request(storage)
        relay = PassThroughRelay(storage, open_stream=fake_stream(["Alice is ", "30 years old ", "[Row 2]."]))

        frames = await _collect(await relay.start(request))
        await wait_for_pending_persistence()

        assert frames[0].startswith("event: citations")
        assert frames[-1] == DONE_EVENT
        decoder = _decode(frames)
        assert decoder.finish() == ANSWER
        assert decoder.citations[0]["similarity"] == 90

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fragments",
        [
            [ANSWER],
            ["Alice", " is 30", " years old [Row 2]."],
            list(ANSWER),
        ],
    )
    async def test_persists_exactly_once(self, storage, fragments):
        request = await _request(storage)
        relay = PassThroughRelay(storage, open_stream=fake_stream(fragments))

        await _collect(await relay.start(request))
        await wait_for_pending_persistence()

        assistant = await _assistant_messages(storage, request.conversation_id)
        assert len(assistant) == 1
        assert assistant[0]["content"] == ANSWER
        assert assistant[0]["citations"][0]["row_number"] == 2
        assert await count_messages(storage, conversation_id=request.conversation_id) == 2

    @pytest.mark.asyncio
    async def test_client_disconnect_still_persists(self, storage):
        request = await _request(storage)
        relay = PassThroughRelay(storage, open_stream=fake_stream(["Alice is ", "30 years old ", "[Row 2]."]))

        frames = await relay.start(request)
        await frames.__anext__()
        await frames.__anext__()
        await frames.aclose()
        await wait_for_pending_persistence()

        assistant = await _assistant_messages(storage, request.conversation_id)
        assert [m["content"] for m in assistant] == [ANSWER]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_sends_error_without_done(self, storage):
        request = await _request(storage)
        relay = PassThroughRelay(storage, open_stream=fake_stream(["Alice is ", "30"], fail_at=1))

        frames = await _collect(await relay.start(request))
        await wait_for_pending_persistence()

        assert DONE_EVENT not in frames
        assert frames[-1].startswith("event: error")
        decoder = _decode(frames)
        assert decoder.answer == "Alice is "
        assert decoder.error == "AI service error (500): upstream went away"
        assert await count_messages(storage, conversation_id=request.conversation_id) == 0

    @pytest.mark.asyncio
    async def test_upstream_status_error_raises_before_streaming(self, storage):
        request = await _request(storage)

        async def rate_limited(messages):
            raise UpstreamRateLimitError()

        with pytest.raises(UpstreamRateLimitError):
            await PassThroughRelay(storage, open_stream=rate_limited).start(request)

        assert await count_messages(storage) == 0

    @pytest.mark.asyncio
    async def test_first_turn_sets_title(self, storage):
        request = await _request(storage)
        relay = PassThroughRelay(storage, open_stream=fake_stream([ANSWER]))

        await _collect(await relay.start(request))
        await wait_for_pending_persistence()

        conversation = await chat_persistence.get_conversation(storage, request.conversation_id, USER["user_id"])
        assert conversation["title"] == "How old is Alice?"

    @pytest.mark.asyncio
    async def test_first_turn_creates_conversation_once_upstream_accepts(self, storage):
        request = _first_turn()

        await _collect(await PassThroughRelay(storage, open_stream=fake_stream([ANSWER])).start(request))
        await wait_for_pending_persistence()

        assert request.conversation_id is not None
        assert await storage.count_records(CONVERSATIONS_TABLE) == 1
        assert [m["content"] for m in await _assistant_messages(storage, request.conversation_id)] == [ANSWER]

    @pytest.mark.asyncio
    async def test_rejected_first_turn_leaves_no_conversation(self, storage):
        request = _first_turn()

        async def rate_limited(messages):
            raise UpstreamRateLimitError()

        with pytest.raises(UpstreamRateLimitError):
            await PassThroughRelay(storage, open_stream=rate_limited).start(request)

        assert request.conversation_id is None
        assert await storage.count_records(CONVERSATIONS_TABLE) == 0

    @pytest.mark.asyncio
    async def test_keep_alive_while_upstream_is_quiet(self, storage):
        request = await _request(storage)

        async def slow_stream(messages):
            async def deltas():
                await asyncio.sleep(0.2)
                yield ANSWER

            return deltas()

        relay = PassThroughRelay(storage, open_stream=slow_stream, heartbeat_seconds=0.01)
        frames = await _collect(await relay.start(request))
        await wait_for_pending_persistence()

        assert comment() in frames
        assert frames.index(comment()) < frames.index(DONE_EVENT)
        assert _decode(frames).finish() == ANSWER

    @pytest.mark.asyncio
    async def test_no_keep_alive_when_disabled(self, storage):
        request = await _request(storage)
        relay = PassThroughRelay(storage, open_stream=fake_stream([ANSWER]), heartbeat_seconds=0)

        frames = await _collect(await relay.start(request))

        assert relay.heartbeat_seconds is None
        assert comment() not in frames


class TestReplayRelay:
    @pytest.mark.asyncio
    async def test_persists_before_replaying_slices(self, storage):
        request = await _request(storage)

        async def complete(messages):
            return ANSWER

        frames = await ReplayRelay(storage, complete=complete, slice_chars=6, delay_seconds=0).start(request)

        # Persisted before the first frame is produced
        assert len(await _assistant_messages(storage, request.conversation_id)) == 1

        collected = await _collect(frames)
        decoder = _decode(collected)
        assert decoder.finish() == ANSWER
        assert all(len(part) <= 6 for part in decoder.parts)
        assert len(decoder.parts) == 5

    @pytest.mark.asyncio
    async def test_upstream_failure_persists_nothing(self, storage):
        request = _first_turn()

        async def complete(messages):
            raise UpstreamRateLimitError()

        with pytest.raises(UpstreamRateLimitError):
            await ReplayRelay(storage, complete=complete).start(request)

        assert await count_messages(storage) == 0
        assert await storage.count_records(CONVERSATIONS_TABLE) == 0

    @pytest.mark.asyncio
    async def test_first_turn_conversation_created_before_persisting(self, storage):
        request = _first_turn()

        async def complete(messages):
            return ANSWER

        await ReplayRelay(storage, complete=complete, delay_seconds=0).start(request)

        assert [m["content"] for m in await _assistant_messages(storage, request.conversation_id)] == [ANSWER]


class TestGetRelay:
    @pytest.mark.asyncio
    async def test_strategies(self, storage):
        assert isinstance(get_relay(storage, "replay"), ReplayRelay)
        assert isinstance(get_relay(storage, "passthrough"), PassThroughRelay)
        assert isinstance(get_relay(storage, "unknown"), PassThroughRelay)
