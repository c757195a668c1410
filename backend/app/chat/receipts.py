"""Read-receipt coordination.

Two ways a message becomes read:

* Bulk read-on-open: the viewer opens the thread with a peer. Every unread
  peer -> viewer message is marked read in one update and the peer's live
  connections get ``{"type": "all-read"}``.
* Per-message read: the viewer's client reports one message as seen. The
  original sender's live connections get ``{"type": "read", ...}`` including
  which partner the reader is currently viewing, so the sender's UI can show
  future messages to that reader as seen right away.
"""
import asyncio
import logging
from typing import List

from app.messages.schemas import Message
from app.messages.store import MessageStore
from .errors import MessageNotFound, TransientIOFailure
from .events import AllReadEvent, MarkReadEvent, MessageReadEvent
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class ReadReceiptCoordinator:
    """Marks messages read and tells their senders."""

    def __init__(self, registry: ConnectionRegistry, store: MessageStore) -> None:
        self.registry = registry
        self.store = store

    async def mark_conversation_read(self, viewer_id: str, peer_id: str) -> int:
        """Mark all unread peer -> viewer messages read and notify the peer.

        Returns:
            Number of messages that changed state (0 on a repeat call).
        """
        updated = await asyncio.to_thread(self.store.mark_conversation_read, peer_id, viewer_id)
        notified = await self.registry.send_to_user(peer_id, AllReadEvent(reader=viewer_id).payload())
        logger.info(
            f"[Receipts] {viewer_id} opened thread with {peer_id}: "
            f"{updated} marked read, {notified} peer connection(s) notified"
        )
        return updated

    async def open_conversation(self, viewer_id: str, peer_id: str) -> List[Message]:
        """History fetch: bulk read-on-open, then the ordered conversation."""
        await self.mark_conversation_read(viewer_id, peer_id)
        return await asyncio.to_thread(self.store.find_conversation, viewer_id, peer_id)

    async def mark_message_read(self, reader: Connection, event: MarkReadEvent) -> Message:
        """Mark one message read on behalf of *reader* and notify its sender.

        Raises:
            NotAuthenticated: The reader connection has no identity.
            MessageNotFound: Unknown id, or the message was not sent to the reader.
            TransientIOFailure: The store update failed.
        """
        reader_id = reader.require_identity().userId

        try:
            existing = await asyncio.to_thread(self.store.get, event.message_id)
            if existing is not None and existing.recipient == reader_id:
                message = await asyncio.to_thread(self.store.mark_read, event.message_id)
            else:
                message = None
        except Exception as e:
            logger.error(f"[Receipts] Failed to mark {event.message_id} read: {e}")
            raise TransientIOFailure("Could not update read state", send_time=event.sendTime)
        if message is None:
            raise MessageNotFound(f"No message {event.message_id} addressed to you", send_time=event.sendTime)

        notification = MessageReadEvent(
            message_id=message.id,
            sendTime=message.sendTime if message.sendTime is not None else event.sendTime,
            viewedPartnerOfReader=self.registry.selected_peer_of(reader_id),
        )
        notified = await self.registry.send_to_user(message.sender, notification.payload())
        logger.debug(
            f"[Receipts] {reader_id} read {message.id}; {notified} sender connection(s) notified"
        )
        return message
