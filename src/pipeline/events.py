"""Per-document extraction-complete signals.

The extraction worker publishes a document id once it has written the
extraction result back; waiters (the completion tracker, the batch
automation coordinator) wake up without having to guess a delay.

Events exist only while someone is subscribed to them. A publish with no
subscriber is dropped: the worker writes the result before publishing, so
a waiter that subscribes afterwards finds the text on its first read.
"""

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager

from src.utils.logger import get_logger

logger = get_logger(__name__)


async def wait_until_set(events: list[asyncio.Event], timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for every event to be set.

    Returns:
        True if all were set in time, False if the wait ran out.
    """
    if not events:
        return True
    try:
        await asyncio.wait_for(asyncio.gather(*(e.wait() for e in events)), timeout)
    except TimeoutError:
        return False
    return True


class CompletionHub:
    """Registry of ``asyncio.Event`` objects keyed by document id.

    Each id carries a subscriber count; its event is dropped as soon as the
    last subscriber leaves, so the registry never outlives its waiters.
    """

    def __init__(self) -> None:
        self._events: dict[str, asyncio.Event] = {}
        self._subscribers: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._events)

    @contextmanager
    def subscribe(self, document_ids: list[str]) -> Iterator[list[asyncio.Event]]:
        """Listen for the completion of ``document_ids`` inside the block.

        Yields:
            One event per id, in order. Publishes made while the block is
            open set them.
        """
        events = [self._acquire(d) for d in document_ids]
        try:
            yield events
        finally:
            for document_id in document_ids:
                self._release(document_id)

    def publish(self, document_id: str) -> None:
        """Mark a document's extraction as complete."""
        event = self._events.get(document_id)
        if event is None:
            logger.debug("Extraction complete for document %s (no waiters)", document_id)
            return
        logger.debug("Extraction complete for document %s", document_id)
        event.set()

    def _acquire(self, document_id: str) -> asyncio.Event:
        event = self._events.get(document_id)
        if event is None:
            event = asyncio.Event()
            self._events[document_id] = event
        self._subscribers[document_id] = self._subscribers.get(document_id, 0) + 1
        return event

    def _release(self, document_id: str) -> None:
        remaining = self._subscribers.get(document_id, 0) - 1
        if remaining > 0:
            self._subscribers[document_id] = remaining
            return
        self._subscribers.pop(document_id, None)
        self._events.pop(document_id, None)
