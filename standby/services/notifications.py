"""
Notification intents and the fire-and-forget publisher.

The state machine only *describes* who must be told what; the publisher
hands each intent to the dispatcher on a background task.  Delivery
failures are logged and never propagate back into a transition.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CLIENT = "client"
PROVIDER = "provider"


@dataclass(frozen=True)
class NotificationIntent:
    recipient_id: int
    recipient_role: str  # client | provider
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    async def notify(self, recipient_id: int, kind: str, payload: dict[str, Any]) -> None: ...


class LogNotificationDispatcher:
    """Default dispatcher: one log line per notification."""

    async def notify(self, recipient_id: int, kind: str, payload: dict[str, Any]) -> None:
        logger.info("Notify %s -> %s %s", kind, recipient_id, payload)


class IntentPublisher:
    def __init__(self, dispatcher: NotificationDispatcher | None = None) -> None:
        self.dispatcher = dispatcher or LogNotificationDispatcher()
        self._tasks: set[asyncio.Task] = set()

    def publish(self, intents: Iterable[NotificationIntent]) -> None:
        """Schedule delivery of every intent and return immediately."""
        for intent in intents:
            task = asyncio.create_task(self._deliver(intent))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, intent: NotificationIntent) -> None:
        payload = {"recipient_role": intent.recipient_role, **intent.payload}
        try:
            await self.dispatcher.notify(intent.recipient_id, intent.kind, payload)
        except Exception:
            logger.error(
                "Notification %s to %s %s failed",
                intent.kind,
                intent.recipient_role,
                intent.recipient_id,
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for every in-flight delivery (shutdown / tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
