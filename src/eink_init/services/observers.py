"""Observer handles for lifecycle events."""

import asyncio
from typing import AsyncIterator, Protocol

from eink_init.models.status import EventMessage


class Observer(Protocol):
    """Anything that can receive lifecycle notifications.

    notify() is called synchronously on the event loop and must not block.
    Raising from notify() marks the observer as unreachable and removes it.
    """

    def notify(self, message: EventMessage) -> None:
        ...


class QueueObserver:
    """Buffers notifications in an asyncio.Queue for async consumers."""

    def __init__(self):
        self._queue: asyncio.Queue[EventMessage] = asyncio.Queue()

    def notify(self, message: EventMessage) -> None:
        self._queue.put_nowait(message)

    async def get(self) -> EventMessage:
        return await self._queue.get()

    def pending(self) -> list[EventMessage]:
        """Drain and return everything received so far without waiting."""
        messages = []
        while not self._queue.empty():
            messages.append(self._queue.get_nowait())
        return messages

    async def until_terminal(self) -> AsyncIterator[EventMessage]:
        """Yield notifications until (and including) ready or failed."""
        while True:
            message = await self.get()
            yield message
            if message.is_terminal:
                return
