"""Tests for conversation and message persistence."""

import pytest

from kbchat.db.storage import MESSAGES_TABLE
from kbchat.services import chat_persistence
from kbchat.services.errors import NotFoundError


class TestTitles:
    def test_short_message_kept(self):
        assert chat_persistence.title_from_message("  How old is Alice?  ") == "How old is Alice?"

    def test_long_message_truncated(self):
        title = chat_persistence.title_from_message("x" * 80)

        assert title == "x" * 50 + "…"


class TestPersistChatTurn:
    @pytest.mark.asyncio
    async def test_user_then_assistant(self, storage):
        conversation = await chat_persistence.create_conversation(storage, "u1")

        assistant = await chat_persistence.persist_chat_turn(
            storage, conversation["id"], "u1", "How old is Alice?", "30 [Row 2].", citations=[]
        )

        assert assistant["role"] == "assistant"
        detail = await chat_persistence.get_conversation_detail(storage, conversation["id"], "u1")
        assert [(m["role"], m["content"]) for m in detail["messages"]] == [
            ("user", "How old is Alice?"),
            ("assistant", "30 [Row 2]."),
        ]
        assert detail["title"] == "How old is Alice?"

    @pytest.mark.asyncio
    async def test_explicit_title_is_kept(self, storage):
        conversation = await chat_persistence.create_conversation(storage, "u1", title="Ages")

        await chat_persistence.persist_chat_turn(storage, conversation["id"], "u1", "How old?", "30", citations=[])

        assert (await chat_persistence.get_conversation(storage, conversation["id"], "u1"))["title"] == "Ages"


class TestOwnership:
    @pytest.mark.asyncio
    async def test_require_conversation_hides_foreign(self, storage):
        conversation = await chat_persistence.create_conversation(storage, "owner")

        with pytest.raises(NotFoundError):
            await chat_persistence.require_conversation(storage, conversation["id"], "intruder")

    @pytest.mark.asyncio
    async def test_delete_removes_messages(self, storage):
        conversation = await chat_persistence.create_conversation(storage, "u1")
        await chat_persistence.persist_chat_turn(storage, conversation["id"], "u1", "q", "a", citations=[])

        assert await chat_persistence.delete_conversation(storage, conversation["id"], "u1") is True
        assert await storage.count_records(MESSAGES_TABLE, {"conversation_id": conversation["id"]}) == 0
        assert await chat_persistence.delete_conversation(storage, conversation["id"], "u1") is False
