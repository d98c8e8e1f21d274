"""Observability event sinks.

The request path emits structured events (breaker transitions, completed
identifications) through :func:`safe_emit`, which guarantees a failing sink
never propagates back into the caller.
"""

# pylint: disable=missing-function-docstring

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

BREAKER_TRANSITION = "breaker_transition"
IDENTIFICATION_COMPLETED = "identification_completed"


class EventSink(Protocol):
    def emit(self, event: Dict[str, Any]) -> None:
        ...


def safe_emit(sink: Optional[EventSink], event: Dict[str, Any]) -> None:
    """Timestamp and deliver ``event``; sink errors are logged and dropped."""

    if sink is None:
        return
    enriched = dict(event)
    enriched.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    try:
        sink.emit(enriched)
    except Exception:  # pylint: disable=broad-exception-caught
        logger.warning(
            "Event sink failed for event %s", enriched.get("type"), exc_info=True
        )


class LoggingEventSink:
    """Writes events to a logger at a fixed level."""

    def __init__(self, name: str = "identification_orchestration.events", level: int = logging.INFO) -> None:
        self._logger = logging.getLogger(name)
        self._level = level

    def emit(self, event: Dict[str, Any]) -> None:
        self._logger.log(
            self._level,
            "event %s",
            event.get("type", "unknown"),
            extra={"event": event},
        )


class QueueEventSink:
    """Fans events out to subscriber queues (e.g. a status page stream)."""

    def __init__(self, maxsize: int = 128) -> None:
        self._maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []

    def register_subscriber(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(queue)
        return queue

    def unregister_subscriber(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event: Dict[str, Any]) -> None:
        stale: List[asyncio.Queue] = []
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Drop the oldest event so slow subscribers see recent state
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except Exception:  # pylint: disable=broad-exception-caught
                    stale.append(queue)
            except Exception:  # pylint: disable=broad-exception-caught
                stale.append(queue)

        for queue in stale:
            self.unregister_subscriber(queue)


class CompositeEventSink:
    """Delivers each event to several sinks independently."""

    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self._sinks = list(sinks)

    def emit(self, event: Dict[str, Any]) -> None:
        for sink in self._sinks:
            safe_emit(sink, event)


__all__ = [
    "BREAKER_TRANSITION",
    "IDENTIFICATION_COMPLETED",
    "CompositeEventSink",
    "EventSink",
    "LoggingEventSink",
    "QueueEventSink",
    "safe_emit",
]
