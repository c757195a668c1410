"""Tests for read-receipt coordination."""
from datetime import datetime, timedelta, timezone

import pytest

from app.chat.errors import MessageNotFound, NotAuthenticated, TransientIOFailure
from app.chat.events import MarkReadEvent
from app.messages.schemas import Message


def seed(store, sender, recipient, text="hi", send_time=None, read=False, created_at=None):
    message = Message(
        sender=sender,
        recipient=recipient,
        text=text,
        sendTime=send_time,
        readByRecipient=read,
        createdAt=created_at or datetime.now(timezone.utc).replace(tzinfo=None),
    )
    store.insert(message)
    return message


class TestBulkReadOnOpen:
    """Opening a conversation marks it read and tells the peer."""

    @pytest.mark.asyncio
    async def test_marks_unread_and_notifies_peer(self, live_manager, make_connection, store):
        _, peer_ws = await make_connection("u1")
        seed(store, "u1", "u2", "a")
        seed(store, "u1", "u2", "b")
        own = seed(store, "u2", "u1", "mine")

        updated = await live_manager.receipts.mark_conversation_read("u2", "u1")

        assert updated == 2
        assert all(m.readByRecipient for m in store.find_conversation("u1", "u2") if m.sender == "u1")
        # Messages the viewer sent are untouched
        assert store.get(own.id).readByRecipient is False
        assert peer_ws.of_type("all-read") == [{"type": "all-read", "reader": "u2"}]

    @pytest.mark.asyncio
    async def test_repeat_open_changes_nothing(self, live_manager, store):
        seed(store, "u1", "u2")

        assert await live_manager.receipts.mark_conversation_read("u2", "u1") == 1
        assert await live_manager.receipts.mark_conversation_read("u2", "u1") == 0

    @pytest.mark.asyncio
    async def test_peer_offline_is_fine(self, live_manager, store):
        seed(store, "u1", "u2")
        assert await live_manager.receipts.mark_conversation_read("u2", "u1") == 1

    @pytest.mark.asyncio
    async def test_open_returns_history_oldest_first(self, live_manager, store):
        base = datetime(2024, 1, 1, 12, 0, 0)
        late = seed(store, "u1", "u2", "late", created_at=base + timedelta(minutes=5))
        early = seed(store, "u2", "u1", "early", created_at=base)
        seed(store, "u1", "u3", "elsewhere", created_at=base)

        history = await live_manager.receipts.open_conversation("u2", "u1")

        assert [m.id for m in history] == [early.id, late.id]
        assert history[1].readByRecipient is True


class TestPerMessageRead:
    """Single-message reads with the reader's viewing context."""

    @pytest.mark.asyncio
    async def test_sender_learns_reader_is_viewing_them(self, live_manager, make_connection, store):
        _, sender_ws = await make_connection("u1")
        reader, _ = await make_connection("u2")
        message = seed(store, "u1", "u2", send_time="t1")

        await live_manager.registry.set_selected_peer(reader, "u1")
        await live_manager.receipts.mark_message_read(
            reader, MarkReadEvent(type="read", message_id=message.id, recipient="u2", sender="u1")
        )

        assert store.get(message.id).readByRecipient is True
        assert sender_ws.of_type("read") == [
            {"type": "read", "message_id": message.id, "sendTime": "t1", "viewedPartnerOfReader": "u1"}
        ]

    @pytest.mark.asyncio
    async def test_unknown_viewing_context_is_omitted(self, live_manager, make_connection, store):
        _, sender_ws = await make_connection("u1")
        reader, _ = await make_connection("u2")
        message = seed(store, "u1", "u2", send_time="t1")

        await live_manager.receipts.mark_message_read(reader, MarkReadEvent(type="read", message_id=message.id))

        [receipt] = sender_ws.of_type("read")
        assert "viewedPartnerOfReader" not in receipt

    @pytest.mark.asyncio
    async def test_read_is_monotonic(self, live_manager, make_connection, store):
        reader, _ = await make_connection("u2")
        message = seed(store, "u1", "u2", read=True)

        result = await live_manager.receipts.mark_message_read(reader, MarkReadEvent(type="read", message_id=message.id))

        assert result.readByRecipient is True

    @pytest.mark.asyncio
    async def test_unknown_message(self, live_manager, make_connection):
        reader, _ = await make_connection("u2")

        with pytest.raises(MessageNotFound) as exc_info:
            await live_manager.receipts.mark_message_read(
                reader, MarkReadEvent(type="read", message_id="nope", sendTime="t7")
            )
        assert exc_info.value.send_time == "t7"

    @pytest.mark.asyncio
    async def test_cannot_read_someone_elses_message(self, live_manager, make_connection, store):
        intruder, _ = await make_connection("u3")
        message = seed(store, "u1", "u2")

        with pytest.raises(MessageNotFound):
            await live_manager.receipts.mark_message_read(intruder, MarkReadEvent(type="read", message_id=message.id))
        assert store.get(message.id).readByRecipient is False

    @pytest.mark.asyncio
    async def test_unauthenticated_reader(self, live_manager, make_connection, store):
        anon, _ = await make_connection()
        message = seed(store, "u1", "u2")

        with pytest.raises(NotAuthenticated):
            await live_manager.receipts.mark_message_read(anon, MarkReadEvent(type="read", message_id=message.id))

    @pytest.mark.asyncio
    async def test_store_lookup_failure_is_transient(self, live_manager, make_connection, store, monkeypatch):
        reader, reader_ws = await make_connection("u2")
        _, sender_ws = await make_connection("u1")
        message = seed(store, "u1", "u2")

        def broken_get(message_id):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "get", broken_get)

        with pytest.raises(TransientIOFailure):
            await live_manager.receipts.mark_message_read(reader, MarkReadEvent(type="read", message_id=message.id))

        await live_manager.handle_raw(reader, f'{{"type": "read", "message_id": "{message.id}", "sendTime": "t4"}}')
        assert reader_ws.of_type("error") == [
            {"type": "error", "error": "Could not update read state", "sendTime": "t4"}
        ]
        assert sender_ws.of_type("read") == []
