"""
Event stream consumer.

Subscribes to the engine's event feed, keeps container events only and
republishes them as ContainerEvent records in feed order. The feed is a hint
to trigger work, not a source of truth: the reconciler always re-lists.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing, suppress
from typing import Any

from janitor_common.engine import ContainerEngine
from janitor_common.errors import EventStreamError
from janitor_common.models import ContainerEvent

logger = logging.getLogger(__name__)

CONTAINER_FILTERS = {"type": ["container"]}

# Marks the end of a cleanly closed feed on the handoff queue
_END_OF_FEED = object()


def parse_event(raw: dict[str, Any]) -> ContainerEvent | None:
    """
    Normalize a raw engine event.

    Args:
        raw: Event record as decoded from the feed

    Returns:
        ContainerEvent, or None for non-container or incomplete records
    """
    if raw.get("Type", "container") != "container":
        return None

    actor = raw.get("Actor") or {}
    container_id = raw.get("id") or actor.get("ID")
    # Older engines only report "status"
    action = raw.get("Action") or raw.get("status")
    if not container_id or not action:
        return None

    timestamp = raw.get("timeNano") or raw.get("time")
    try:
        timestamp = int(timestamp) if timestamp is not None else None
    except (TypeError, ValueError):
        timestamp = None

    return ContainerEvent(
        container_id=container_id,
        action=action,
        timestamp=timestamp,
        attributes=dict(actor.get("Attributes") or {}),
    )


class EventStreamConsumer:
    """
    Consumes the engine's container event feed.

    A reader task pulls from the engine subscription and hands events over
    through a bounded queue. When the consumer is slow the reader blocks,
    which in turn stops reading the feed, so events are never dropped.
    """

    def __init__(self, engine: ContainerEngine, buffer_size: int = 1):
        """
        Initialize the consumer.

        Args:
            engine: Engine providing the event subscription
            buffer_size: Capacity of the handoff between reader and consumer
        """
        self.engine = engine
        self.buffer_size = buffer_size

    async def events(self) -> AsyncGenerator[ContainerEvent, None]:
        """
        Yield container events in feed order.

        Raises:
            EventStreamError: If the subscription breaks. The subscription is
                closed and not reopened.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.buffer_size)
        reader = asyncio.create_task(self._read_feed(queue))

        try:
            while True:
                item = await queue.get()
                if item is _END_OF_FEED:
                    logger.info("Event feed closed")
                    return
                if isinstance(item, BaseException):
                    raise EventStreamError(
                        f"error while receiving container events: {item}"
                    ) from item
                yield item
        finally:
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

    async def _read_feed(self, queue: asyncio.Queue) -> None:
        """Pump the engine subscription into the handoff queue."""
        try:
            async with aclosing(self.engine.subscribe_events(CONTAINER_FILTERS)) as feed:
                async for raw in feed:
                    event = parse_event(raw)
                    if event is None:
                        continue
                    await queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(e)
            return

        await queue.put(_END_OF_FEED)
