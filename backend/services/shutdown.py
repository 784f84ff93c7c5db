"""
Parley Shutdown Coordinator

Drains the process on SIGTERM/SIGINT (started by main.GracefulServer
before uvicorn closes connections, with the app lifespan as a fallback):

1. Stop admitting turns (new send-message frames get a "shutting down" reply)
2. Wait up to the grace period for in-flight turns and background writes
3. Cancel whatever is still running
4. Close every connection, then release external resources in order

Calling shutdown() twice is harmless; the second call returns False.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Tuple

from errors import ShutdownTimeout, log_error

logger = logging.getLogger(__name__)


class ShutdownState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    CLOSED = "closed"


class ShutdownCoordinator:
    """Ordered, idempotent process shutdown."""

    def __init__(self, connections, grace_s: float = 30.0):
        self.connections = connections
        self.grace_s = grace_s
        self._state = ShutdownState.RUNNING
        self._resources: List[Tuple[str, Callable[[], Awaitable[None]]]] = []
        self._done = asyncio.Event()

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def accepting(self) -> bool:
        return self._state == ShutdownState.RUNNING

    def register_resource(self, name: str, close: Callable[[], Awaitable[None]]) -> None:
        """Add an async close callback. Resources are closed in registration order."""
        self._resources.append((name, close))

    async def wait_closed(self) -> None:
        await self._done.wait()

    async def shutdown(self, reason: str = "signal") -> bool:
        """Run the shutdown sequence.

        Returns:
            False if a shutdown was already started
        """
        if self._state != ShutdownState.RUNNING:
            logger.info(f"Shutdown already {self._state.value}, ignoring {reason}")
            return False

        self._state = ShutdownState.DRAINING
        pending = self.connections.in_flight()
        logger.info(f"Shutting down ({reason}): {len(self.connections)} sessions, {pending} turns in flight")
        self.connections.begin_draining()

        try:
            await asyncio.wait_for(self.connections.wait_idle(), timeout=self.grace_s)
        except asyncio.TimeoutError:
            still_running = self.connections.in_flight()
            log_error(
                logger,
                ShutdownTimeout(
                    f"Grace period of {self.grace_s:g}s elapsed, cancelling {still_running} turns",
                    pending=still_running,
                ),
                context="Shutdown",
                include_traceback=False,
            )
            cancelled = await self.connections.cancel_all()
            logger.info(f"Cancelled {cancelled} turns")

        await self.connections.close_all()

        for name, close in self._resources:
            try:
                await close()
                logger.info(f"{name} closed")
            except Exception as e:
                log_error(logger, e, context=f"Shutdown ({name})", include_traceback=False)

        self._state = ShutdownState.CLOSED
        self._done.set()
        logger.info("Shutdown complete")
        return True
