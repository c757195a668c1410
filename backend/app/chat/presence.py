"""Online-user broadcasting.

Every membership change pushes the complete online list to every registered
connection (full replace, no deltas). Clients rely on receiving the whole
list each time.
"""
import asyncio
import logging

from .events import OnlineSnapshot
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    """Pushes online snapshots computed from a :class:`ConnectionRegistry`."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    def snapshot(self) -> OnlineSnapshot:
        return OnlineSnapshot(online=self.registry.all_identified())

    async def broadcast_online_list(self) -> int:
        """Send the current online list to all registered connections.

        Returns:
            Number of connections the snapshot was delivered to.
        """
        payload = self.snapshot().payload()
        connections = self.registry.all_connections()
        if not connections:
            return 0

        results = await asyncio.gather(
            *[conn.send(payload) for conn in connections],
            return_exceptions=True,
        )
        delivered = sum(1 for ok in results if ok is True)
        logger.debug(
            f"[Presence] {len(payload['online'])} online; snapshot delivered to "
            f"{delivered}/{len(connections)} connections"
        )
        return delivered
