"""
Checkpoint capability.

The host environment calls fire() when the process is about to be
suspended, migrated or stopped. Components register async handlers
that persist whatever they must not lose.
"""

import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

CheckpointHandler = Callable[[], Awaitable[None]]


class Checkpoint:
    """Registry of persistence handlers fired before suspension."""

    def __init__(self):
        self._handlers: list[CheckpointHandler] = []

    def register(self, handler: CheckpointHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unregister(self, handler: CheckpointHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def fire(self) -> None:
        """
        Run every handler in registration order.

        A failing handler is logged and does not prevent the others.
        """
        for handler in list(self._handlers):
            try:
                await handler()
            except Exception as e:
                logger.error(f"[Checkpoint] Handler {handler!r} failed: {e}", exc_info=True)
