"""In-process listener registry used for the coordinator's observational events."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Set, Union

from mcp_core.core.models import AgentMessage

logger = logging.getLogger(__name__)

MessageListener = Callable[[AgentMessage], Union[None, Awaitable[None]]]

MESSAGE_EVENT = "message"


class MessageBus:
    """Fan-out hub mapping event names to plain callback lists.

    A listener that raises is logged and skipped; delivery to the remaining
    listeners continues. Coroutine listeners are scheduled as tasks on the
    running loop.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[MessageListener]] = defaultdict(list)
        self._pending: Set[asyncio.Future[Any]] = set()

    def subscribe(self, event: str, listener: MessageListener) -> None:
        if listener not in self._listeners[event]:
            self._listeners[event].append(listener)

    def unsubscribe(self, event: str, listener: MessageListener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def publish(self, event: str, message: AgentMessage) -> int:
        """Deliver ``message`` to every listener of ``event``; returns the number reached."""
        delivered = 0
        # Copy so listeners may unsubscribe themselves while being notified.
        for listener in list(self._listeners.get(event, ())):
            try:
                outcome = listener(message)
                if inspect.isawaitable(outcome):
                    self._track(asyncio.ensure_future(outcome))
                delivered += 1
            except Exception:  # noqa: BLE001
                logger.exception("Listener %r failed on %s event", listener, event)
        return delivered

    def publish_message(self, message: AgentMessage) -> None:
        """Fan out an envelope on ``message`` and ``message_<type>``."""
        self.publish(MESSAGE_EVENT, message)
        self.publish(f"{MESSAGE_EVENT}_{message.event_type.value.lower()}", message)

    async def drain(self) -> None:
        """Wait for coroutine listeners scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._listeners.clear()

    def _track(self, task: asyncio.Future[Any]) -> None:
        self._pending.add(task)
        task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Future[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener failed: %s", exc)
