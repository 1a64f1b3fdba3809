"""Event bus — non-blocking pub/sub for status notifications.

The ledger emits after each committed state change. The chat layer (or the
dispatcher in bot.py) consumes on the main asyncio loop. Emitting from a
worker thread goes through call_soon_threadsafe when the bus loop is known.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

log = logging.getLogger("crucible.events")

# Module-level queue, None until init_event_bus() runs.
_queue: asyncio.Queue | None = None
_loop: asyncio.AbstractEventLoop | None = None
_drop_count: int = 0

MAX_QUEUE_SIZE = 10_000


class EventType(str, Enum):
    ACCOUNT_GRANTED = "account_granted"
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class Event:
    type: EventType
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)
    user_id: int | None = None


def init_event_bus() -> asyncio.Queue:
    """Initialize the event bus. Call once from the main asyncio loop."""
    global _queue, _loop
    _queue = asyncio.Queue(maxsize=MAX_QUEUE_SIZE)
    try:
        _loop = asyncio.get_running_loop()
    except RuntimeError:
        _loop = None
    log.info("EVENT_BUS │ initialized (maxsize=%d)", MAX_QUEUE_SIZE)
    return _queue


def _put(event: Event) -> None:
    global _drop_count
    try:
        _queue.put_nowait(event)
    except asyncio.QueueFull:
        _drop_count += 1
        if _drop_count % 100 == 1:
            log.warning("EVENT_BUS │ queue full, dropped %d events total", _drop_count)


def emit(event_type: EventType, data: dict[str, Any], user_id: int | None = None) -> None:
    """Emit an event. Non-blocking. No-op if bus not initialized."""
    if _queue is None:
        return
    event = Event(
        type=event_type,
        timestamp=time.time(),
        data=data,
        user_id=user_id,
    )
    if _loop is not None and _loop.is_running():
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not _loop:
            _loop.call_soon_threadsafe(_put, event)
            return
    _put(event)


async def consume() -> Event:
    """Consume the next event. Blocks until available. Call from async context."""
    if _queue is None:
        raise RuntimeError("Event bus not initialized — call init_event_bus() first")
    return await _queue.get()


def get_drop_count() -> int:
    """Return the total number of dropped events since startup."""
    return _drop_count


def is_initialized() -> bool:
    """Return True if the event bus has been initialized."""
    return _queue is not None


def reset_event_bus() -> None:
    """Tear down the bus (tests, shutdown)."""
    global _queue, _loop, _drop_count
    _queue = None
    _loop = None
    _drop_count = 0
