"""Message relay: persist, then fan out.

A message is always written to the store before any recipient connection
sees it. If the write fails the sender gets an error and nothing is fanned
out. If the recipient has no live connection the message simply waits in
the store for the next history fetch.

The sender does not get an echo: clients render their own message
optimistically and reconcile it through ``sendTime``.
"""
import asyncio
import logging

from app.files.service import AttachmentStore, AttachmentTooLarge, decode_data_url
from app.messages.schemas import FileRef, Message
from app.messages.store import MessageStore
from .errors import MalformedEvent, TransientIOFailure
from .events import SendMessageEvent
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class MessageRelay:
    """Handles send-message events from live connections."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        store: MessageStore,
        attachments: AttachmentStore,
    ) -> None:
        self.registry = registry
        self.store = store
        self.attachments = attachments

    async def _store_attachment(self, event: SendMessageEvent) -> FileRef:
        try:
            content = decode_data_url(event.file.data)
        except ValueError as e:
            raise MalformedEvent(str(e), send_time=event.sendTime)

        try:
            stored_name = await asyncio.to_thread(self.attachments.save, event.file.name, content)
        except AttachmentTooLarge as e:
            raise MalformedEvent(str(e), send_time=event.sendTime)
        except OSError as e:
            logger.error(f"[Relay] Attachment write failed for {event.file.name!r}: {e}")
            raise TransientIOFailure("Could not store attachment", send_time=event.sendTime)
        return FileRef(name=stored_name)

    async def _discard_attachment(self, file_ref: FileRef) -> None:
        try:
            await asyncio.to_thread(self.attachments.delete, file_ref.name)
        except OSError as e:
            logger.error(f"[Relay] Could not remove orphaned attachment {file_ref.name!r}: {e}")

    async def handle_outbound_message(self, sender: Connection, event: SendMessageEvent) -> Message:
        """Persist *event* as a message from *sender* and deliver it.

        Returns:
            The persisted message.

        Raises:
            NotAuthenticated: The sender connection has no identity.
            MalformedEvent: Sender and recipient are the same user, or the
                attachment is invalid.
            TransientIOFailure: The message or its attachment could not be
                persisted. Nothing was delivered.
        """
        identity = sender.require_identity()
        if event.recipient == identity.userId:
            raise MalformedEvent("Cannot send a message to yourself", send_time=event.sendTime)

        file_ref = await self._store_attachment(event) if event.file is not None else None

        message = Message(
            sender=identity.userId,
            recipient=event.recipient,
            text=event.text,
            file=file_ref,
            readByRecipient=False,
            sendTime=event.sendTime,
        )
        try:
            await asyncio.to_thread(self.store.insert, message)
        except Exception as e:
            logger.error(f"[Relay] Failed to persist message from {identity.userId}: {e}")
            if file_ref is not None:
                await self._discard_attachment(file_ref)
            raise TransientIOFailure("Could not store message", send_time=event.sendTime)

        delivered = await self.fan_out(message)
        logger.info(
            f"[Relay] Message {message.id} {identity.userId} -> {event.recipient} "
            f"delivered to {delivered} live connection(s)"
        )
        return message

    async def fan_out(self, message: Message) -> int:
        """Send *message* to every live connection of its recipient."""
        return await self.registry.send_to_user(message.recipient, message.model_dump(mode="json"))
