"""Connection registry for live relay connections.

The registry is the only shared mutable state of the relay. It holds every
live connection, indexed by user id once the connection has an identity, so
fan-out can find all tabs of a user in O(1).

Thread Safety:
    Designed for a single asyncio event loop. Mutations are serialised by an
    ``asyncio.Lock``; reads return copied snapshots so callers never iterate
    over the live collections.
"""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocket

from app.auth.verifier import Identity
from .errors import NotAuthenticated

logger = logging.getLogger(__name__)

MembershipListener = Callable[[], Awaitable[None]]


class Connection:
    """One live client connection.

    Starts unauthenticated; :meth:`ConnectionRegistry.attach_identity` moves it
    to authenticated. Liveness fields are owned by the liveness supervisor.

    Attributes:
        id: Server-generated connection id (for logs).
        websocket: Underlying transport.
        identity: Verified identity, or None while unauthenticated.
        selected_peer: User id of the conversation the client is viewing.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.identity: Optional[Identity] = None
        self.selected_peer: Optional[str] = None
        self.liveness_state = None
        self.liveness_task: Optional[asyncio.Task] = None
        self.pong_received = asyncio.Event()
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        who = self.identity.userId if self.identity else "anonymous"
        return f"<Connection {self.id} user={who}>"

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.userId if self.identity else None

    def require_identity(self) -> Identity:
        """Return the identity or raise :class:`NotAuthenticated`."""
        if self.identity is None:
            raise NotAuthenticated("Connection is not authenticated")
        return self.identity

    def set_selected_peer(self, user_id: Optional[str]) -> None:
        """Record which conversation partner the client is looking at."""
        self.require_identity()
        self.selected_peer = user_id

    async def send(self, message: dict) -> bool:
        """Send a JSON message; returns False instead of raising on failure."""
        try:
            async with self._send_lock:
                await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.id}: {e}")
            return False

    async def close(self, code: int = 1000) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Close of connection {self.id} failed: {e}")


class ConnectionRegistry:
    """Holds the live connections and their identities.

    ``attach_identity`` and ``unregister`` notify membership listeners (the
    presence broadcaster) after the lock is released. Operations on a
    connection that is not registered are no-ops: close races between the
    client and the liveness supervisor are expected.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._connections: Set[Connection] = set()
        # userId -> connections authenticated as that user
        self._by_user: Dict[str, Set[Connection]] = {}
        self._listeners: List[MembershipListener] = []

    def add_listener(self, listener: MembershipListener) -> None:
        self._listeners.append(listener)

    async def _notify(self) -> None:
        for listener in self._listeners:
            await listener()

    async def register(self, connection: Connection) -> None:
        async with self._lock:
            self._connections.add(connection)
        logger.debug(f"[Registry] Registered {connection!r} ({len(self._connections)} live)")

    async def attach_identity(self, connection: Connection, identity: Identity) -> bool:
        """Authenticate *connection* as *identity*.

        Returns:
            False if the connection is no longer registered.
        """
        async with self._lock:
            if connection not in self._connections:
                return False
            previous = connection.identity
            if previous is not None:
                self._discard_from_user_index(connection, previous.userId)
            connection.identity = identity
            self._by_user.setdefault(identity.userId, set()).add(connection)
        logger.info(f"[Registry] {connection.id} authenticated as {identity.userId} ({identity.username})")
        await self._notify()
        return True

    async def unregister(self, connection: Connection) -> bool:
        """Remove *connection*. Idempotent.

        Returns:
            True only for the call that actually removed it.
        """
        async with self._lock:
            if connection not in self._connections:
                return False
            self._connections.discard(connection)
            if connection.identity is not None:
                self._discard_from_user_index(connection, connection.identity.userId)
        logger.debug(f"[Registry] Unregistered {connection!r} ({len(self._connections)} live)")
        await self._notify()
        return True

    def _discard_from_user_index(self, connection: Connection, user_id: str) -> None:
        conns = self._by_user.get(user_id)
        if not conns:
            return
        conns.discard(connection)
        if not conns:
            del self._by_user[user_id]

    async def set_selected_peer(self, connection: Connection, user_id: Optional[str]) -> None:
        async with self._lock:
            connection.set_selected_peer(user_id)

    def is_registered(self, connection: Connection) -> bool:
        return connection in self._connections

    def find_by_user_id(self, user_id: str) -> Set[Connection]:
        """Snapshot of the live connections authenticated as *user_id*."""
        return set(self._by_user.get(user_id, ()))

    def all_connections(self) -> List[Connection]:
        """Snapshot of every registered connection, authenticated or not."""
        return list(self._connections)

    def all_identified(self) -> List[Identity]:
        """Online users, one entry per user id regardless of tab count."""
        online = []
        for user_id, conns in self._by_user.items():
            # Any connection of the user carries the same identity
            online.append(next(iter(conns)).identity)
        return online

    def selected_peer_of(self, user_id: str) -> Optional[str]:
        """Selected peer of the first live connection of *user_id* that has one.

        With several tabs the choice among them is unspecified.
        """
        for conn in self._by_user.get(user_id, ()):
            if conn.selected_peer is not None:
                return conn.selected_peer
        return None

    async def send_to_user(self, user_id: str, message: dict) -> int:
        """Send *message* to every live connection of *user_id* concurrently.

        Returns:
            Number of connections the message was delivered to. Zero when the
            user is offline, which is not an error.
        """
        connections = self.find_by_user_id(user_id)
        if not connections:
            return 0
        results = await asyncio.gather(
            *[conn.send(message) for conn in connections],
            return_exceptions=True,
        )
        return sum(1 for ok in results if ok is True)

    def __len__(self) -> int:
        return len(self._connections)
