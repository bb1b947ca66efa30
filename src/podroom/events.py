"""
In-process event emitter for side effects that must never fail the caller.

Access logging, pipeline notifications and task lifecycle hooks are
registered as handlers. A failing handler is logged and skipped.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], Any]


class EventEmitter:
    """Dispatch named events to sync or async handlers."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._background: Set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler) -> None:
        """Register a handler. Use "*" to receive every event."""
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def emit(self, event: str, payload: Dict[str, Any] = None) -> None:
        """Run all handlers for event, logging (not raising) their failures."""
        payload = payload or {}
        for handler in self._handlers.get(event, []) + self._handlers.get("*", []):
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event handler for '{event}' failed: {e}")

    def emit_background(self, event: str, payload: Dict[str, Any] = None) -> None:
        """Fire-and-forget emit. Falls back to nothing if no loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, dropping event: {event}")
            return
        task = loop.create_task(self.emit(event, payload))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending background emits (used on shutdown and in tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
