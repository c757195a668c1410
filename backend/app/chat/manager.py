"""Relay manager wiring the live-connection components together.

This module owns the lifecycle of a live connection and routes inbound
events to the component responsible for them:

    - ConnectionRegistry: live connections and their identities
    - LivenessSupervisor: heartbeat per connection, reaps dead ones
    - PresenceBroadcaster: full online list to everyone on membership change
    - MessageRelay: persist-then-forward chat messages
    - ReadReceiptCoordinator: bulk and per-message read receipts

Lifecycle:
    open -> register -> (verify credential -> attach identity) -> supervise
    close / liveness timeout -> stop heartbeat -> unregister (exactly once)

Thread Safety:
    Designed for async/await usage with a single event loop. Blocking store
    and attachment I/O is pushed to worker threads so heartbeats of other
    connections keep running.
"""
import asyncio
import logging
from typing import Optional, Union

from fastapi import WebSocket

from app.auth.verifier import AuthFailure, Identity, IdentityVerifier
from app.config import AppConfig, get_config
from app.files.service import AttachmentStore
from app.messages.store import MessageStore
from .errors import RelayError
from .events import (
    AuthenticateEvent,
    ErrorEvent,
    InboundEvent,
    MarkReadEvent,
    PongEvent,
    SelectedUserChangeEvent,
    SendMessageEvent,
    parse_inbound_event,
)
from .liveness import LivenessSupervisor
from .presence import PresenceBroadcaster
from .receipts import ReadReceiptCoordinator
from .registry import Connection, ConnectionRegistry
from .relay import MessageRelay

logger = logging.getLogger(__name__)

# Close code used when a connection misses its heartbeat deadline
GOING_AWAY = 1001


class ChatManager:
    """Owns the registry and the components that act on it.

    Args:
        verifier: Identity verifier for handshake and late credentials.
        store: Message store.
        attachments: Attachment store.
        ping_interval: Seconds between heartbeat pings.
        pong_timeout: Seconds a client has to answer a ping.
    """

    def __init__(
        self,
        verifier: IdentityVerifier,
        store: MessageStore,
        attachments: AttachmentStore,
        ping_interval: float = 10.0,
        pong_timeout: float = 5.0,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.registry = ConnectionRegistry()
        self.presence = PresenceBroadcaster(self.registry)
        self.registry.add_listener(self.presence.broadcast_online_list)
        self.liveness = LivenessSupervisor(ping_interval, pong_timeout, on_dead=self.terminate)
        self.relay = MessageRelay(self.registry, store, attachments)
        self.receipts = ReadReceiptCoordinator(self.registry, store)

    @classmethod
    def from_config(cls, config: AppConfig) -> "ChatManager":
        return cls(
            verifier=IdentityVerifier.from_config(config),
            store=MessageStore.get_instance(config.storage.database_path),
            attachments=AttachmentStore.get_instance(
                config.storage.upload_dir, config.storage.max_attachment_bytes
            ),
            ping_interval=config.heartbeat.ping_interval_seconds,
            pong_timeout=config.heartbeat.pong_timeout_seconds,
        )

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket, token: Optional[str]) -> Connection:
        """Register an accepted WebSocket and try to authenticate it.

        An unverifiable credential leaves the connection open but
        unauthenticated; it receives presence snapshots and may still send an
        ``authenticate`` event.
        """
        connection = Connection(websocket)
        await self.registry.register(connection)
        self.liveness.start(connection)

        attached = False
        if token:
            attached = await self.authenticate(connection, token)
        else:
            logger.info(f"[WS] {connection.id} connected without credential")

        # Attaching already refreshed presence; otherwise refresh on open completion
        if not attached:
            await self.presence.broadcast_online_list()
        return connection

    async def authenticate(self, connection: Connection, token: str) -> bool:
        """Verify *token* and attach the identity to *connection*."""
        try:
            identity = self.verifier.verify(token)
        except AuthFailure as e:
            logger.warning(f"[WS] Authentication failed for {connection.id}: {e}")
            return False

        await self.remember_user(identity)
        return await self.registry.attach_identity(connection, identity)

    async def remember_user(self, identity: Identity) -> None:
        """Add *identity* to the user directory; failures are only logged."""
        try:
            await asyncio.to_thread(self.store.upsert_user, identity.userId, identity.username)
        except Exception as e:
            logger.error(f"Could not record user {identity.userId}: {e}")

    async def disconnect(self, connection: Connection) -> bool:
        """Release a connection after the transport closed. Idempotent."""
        self.liveness.stop(connection)
        removed = await self.registry.unregister(connection)
        if removed:
            logger.info(f"[WS] {connection!r} disconnected ({len(self.registry)} live)")
        return removed

    async def terminate(self, connection: Connection) -> None:
        """Forcibly close a connection that missed its heartbeat."""
        try:
            await connection.close(code=GOING_AWAY)
            await self.disconnect(connection)
        except Exception:
            logger.exception(f"[WS] Failed to terminate {connection!r}")

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def handle_raw(self, connection: Connection, raw: Union[str, bytes]) -> None:
        """Parse and dispatch one inbound frame.

        Relay errors are reported to *connection* only; they never propagate.
        """
        try:
            event = parse_inbound_event(raw)
            await self.dispatch(connection, event)
        except RelayError as e:
            logger.info(f"[WS] Rejected event from {connection!r}: {type(e).__name__}: {e}")
            await connection.send(ErrorEvent(error=str(e), sendTime=e.send_time).payload())

    async def dispatch(self, connection: Connection, event: InboundEvent) -> None:
        if isinstance(event, SendMessageEvent):
            await self.relay.handle_outbound_message(connection, event)
        elif isinstance(event, MarkReadEvent):
            await self.receipts.mark_message_read(connection, event)
        elif isinstance(event, SelectedUserChangeEvent):
            await self.registry.set_selected_peer(connection, event.selectedUserId)
            logger.debug(f"[WS] {connection!r} now viewing {event.selectedUserId}")
        elif isinstance(event, PongEvent):
            self.liveness.pong(connection)
        elif isinstance(event, AuthenticateEvent):
            if not await self.authenticate(connection, event.token):
                await connection.send(ErrorEvent(error="Authentication failed").payload())

    async def shutdown(self) -> None:
        """Close every live connection (application shutdown)."""
        for connection in self.registry.all_connections():
            self.liveness.stop(connection)
            await connection.close(code=GOING_AWAY)
            await self.registry.unregister(connection)


# Process-wide manager used by the routers
_manager: Optional[ChatManager] = None


def get_manager() -> ChatManager:
    """Return the process-wide manager, creating it from config on first use."""
    global _manager
    if _manager is None:
        _manager = ChatManager.from_config(get_config())
    return _manager


def set_manager(manager: Optional[ChatManager]) -> None:
    """Install (or clear, with None) the process-wide manager."""
    global _manager
    _manager = manager
