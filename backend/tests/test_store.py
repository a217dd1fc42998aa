"""Tests for the DuckDB collaboration store."""
from datetime import datetime, timedelta, timezone

import pytest

from citruslab.collaboration.schemas import ChatMessage, Collaboration, PresenceEntry, UserRef

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def collaboration(chat_id="chat-1", owner="owner@example.com", **kwargs):
    return Collaboration(chatId=chat_id, owner=owner, createdAt=T0, updatedAt=T0, **kwargs)


class TestCollaborations:
    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, store):
        assert await store.load("nope") is None

    @pytest.mark.asyncio
    async def test_create_if_absent_keeps_first_owner(self, store):
        first = await store.create_if_absent(collaboration(owner="first@example.com"))
        second = await store.create_if_absent(collaboration(owner="second@example.com"))

        assert first.owner == "first@example.com"
        assert second.owner == "first@example.com"

    @pytest.mark.asyncio
    async def test_save_then_load_round_trips_timestamps(self, store):
        c = collaboration(
            activeUsers=[PresenceEntry(email="a@x.com", name="A", lastActive=T0)],
            shareLinkExpiry=T0 + timedelta(hours=1),
        )
        await store.save(c)
        loaded = await store.load("chat-1")

        assert loaded.activeUsers[0].lastActive == T0
        assert loaded.shareLinkExpiry == T0 + timedelta(hours=1)
        assert loaded.activeUsers[0].lastActive.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_overwrites(self, store):
        c = collaboration()
        await store.save(c)
        c.shareLink = "tok"
        await store.save(c)

        loaded = await store.load("chat-1")
        assert loaded.shareLink == "tok"

    @pytest.mark.asyncio
    async def test_find_by_share_token(self, store):
        await store.save(collaboration(shareLink="tok-1", shareLinkEnabled=True))
        await store.save(collaboration(chat_id="chat-2", shareLink="tok-2"))

        found = await store.find_by_share_token("tok-2")
        assert found.chatId == "chat-2"
        assert await store.find_by_share_token("missing") is None


class TestMessages:
    @pytest.mark.asyncio
    async def test_list_returns_oldest_first(self, store):
        sender = UserRef(email="a@x.com", name="A")
        for i in range(3):
            await store.append_message(
                ChatMessage(chatId="c", text=f"m{i}", sender=sender, timestamp=T0 + timedelta(seconds=i))
            )

        messages = await store.list_messages("c")
        assert [m.text for m in messages] == ["m0", "m1", "m2"]
        assert messages[0].timestamp == T0

    @pytest.mark.asyncio
    async def test_pagination_with_before_and_limit(self, store):
        sender = UserRef(email="a@x.com")
        for i in range(5):
            await store.append_message(
                ChatMessage(chatId="c", text=f"m{i}", sender=sender, timestamp=T0 + timedelta(seconds=i))
            )

        latest_two = await store.list_messages("c", limit=2)
        assert [m.text for m in latest_two] == ["m3", "m4"]

        older = await store.list_messages("c", before=latest_two[0].timestamp, limit=2)
        assert [m.text for m in older] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_messages_are_scoped_to_chat(self, store):
        sender = UserRef(email="a@x.com")
        await store.append_message(ChatMessage(chatId="c1", text="one", sender=sender))
        await store.append_message(ChatMessage(chatId="c2", text="two", sender=sender))

        assert [m.text for m in await store.list_messages("c1")] == ["one"]


def test_close_is_idempotent(store):
    store.close()
    store.close()
