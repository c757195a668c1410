"""Heartbeat supervision for live connections.

Per-connection state machine::

    ALIVE --(ping sent)--> AWAITING_PONG --(pong)--> ALIVE
                                 |
                          (deadline elapsed)
                                 v
                               DEAD --> terminated

Every ``ping_interval`` seconds the supervisor sends ``{"type": "ping"}`` and
waits up to ``pong_timeout`` seconds for the client's ``{"type": "pong"}``.
ASGI gives applications no access to protocol-level ping frames, so the
exchange happens at the message level. A connection that misses the deadline
is handed to the ``on_dead`` callback, which closes and unregisters it.

Each connection owns exactly one supervisor task; the task is both the
interval timer and the deadline timer, so a connection can never have more
than one timer pair running.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from .events import PING_EVENT
from .registry import Connection

logger = logging.getLogger(__name__)


class LivenessState(str, Enum):
    ALIVE = "alive"
    AWAITING_PONG = "awaiting_pong"
    DEAD = "dead"


DeadConnectionHandler = Callable[[Connection], Awaitable[None]]


class LivenessSupervisor:
    """Runs one heartbeat task per supervised connection.

    Args:
        ping_interval: Seconds between pings.
        pong_timeout: Seconds a client has to answer a ping.
        on_dead: Coroutine called once for a connection that timed out.
    """

    def __init__(
        self,
        ping_interval: float,
        pong_timeout: float,
        on_dead: DeadConnectionHandler,
    ) -> None:
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self._on_dead = on_dead

    def start(self, connection: Connection) -> None:
        """Begin supervising *connection*. Restarting replaces the old task."""
        self.stop(connection)
        connection.liveness_state = LivenessState.ALIVE
        connection.pong_received.clear()
        connection.liveness_task = asyncio.create_task(
            self._run(connection), name=f"liveness-{connection.id}"
        )

    def stop(self, connection: Connection) -> None:
        """Cancel the heartbeat of *connection*. Safe to call repeatedly."""
        task = connection.liveness_task
        connection.liveness_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def pong(self, connection: Connection) -> None:
        """Record a pong. Ignored unless a ping is outstanding."""
        if connection.liveness_state == LivenessState.AWAITING_PONG:
            connection.pong_received.set()

    async def _run(self, connection: Connection) -> None:
        try:
            while True:
                await asyncio.sleep(self.ping_interval)

                connection.pong_received.clear()
                connection.liveness_state = LivenessState.AWAITING_PONG
                await connection.send(PING_EVENT)

                try:
                    await asyncio.wait_for(connection.pong_received.wait(), self.pong_timeout)
                except asyncio.TimeoutError:
                    connection.liveness_state = LivenessState.DEAD
                    logger.warning(
                        f"[Liveness] {connection!r} missed pong within {self.pong_timeout}s; terminating"
                    )
                    connection.liveness_task = None
                    await self._on_dead(connection)
                    return

                connection.liveness_state = LivenessState.ALIVE
        except asyncio.CancelledError:
            logger.debug(f"[Liveness] Supervision of {connection!r} cancelled")
            raise
