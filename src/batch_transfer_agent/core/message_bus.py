"""In-process async event bus for batch progress and desk updates."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Awaitable


logger = logging.getLogger("batch_transfer_agent.message_bus")

PROGRESS_TOPIC = "batch.progress"


@dataclass
class BusMessage:
    topic: str
    payload: dict[str, Any]
    source: str | None = None  # None = the agent itself
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Callback = Callable[[BusMessage], Awaitable[None]]


class MessageBus:
    """Async pub/sub bus. A failing subscriber never affects the publisher."""

    def __init__(self, history_limit: int = 500):
        self._subscribers: dict[str, list[Callback]] = {}  # topic -> callbacks
        self._history: list[BusMessage] = []
        self._history_limit = history_limit
        self._lock = asyncio.Lock()
        self._on_message: Callback | None = None  # sees every topic

    def set_global_listener(self, callback: Callback) -> None:
        self._on_message = callback

    def subscribe(self, topic: str, callback: Callback) -> None:
        if topic not in self._subscribers:
            self._subscribers[topic] = []
        self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Callback) -> None:
        callbacks = self._subscribers.get(topic, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def publish(self, message: BusMessage) -> None:
        async with self._lock:
            self._history.append(message)
            if len(self._history) > self._history_limit:
                del self._history[: len(self._history) - self._history_limit]

        if self._on_message:
            try:
                await self._on_message(message)
            except Exception as e:
                logger.error(f"Global bus listener error: {e}")

        for callback in list(self._subscribers.get(message.topic, [])):
            try:
                await callback(message)
            except Exception as e:
                logger.error(f"Subscriber callback error on topic '{message.topic}': {e}")

    async def emit(self, topic: str, payload: dict[str, Any], source: str | None = None) -> None:
        await self.publish(BusMessage(topic=topic, payload=payload, source=source))

    def get_history(self, limit: int = 50, topic: str | None = None) -> list[BusMessage]:
        # Copy so callers can't mutate the log mid-iteration
        messages = list(self._history)
        if topic:
            messages = [m for m in messages if m.topic == topic]
        return messages[-limit:]
