"""
Card-moved events and the notifier that fans them out.

Two delivery paths:
  - listeners: plain callables, called synchronously in subscription order.
    A failing listener is logged and skipped; it never reaches the move.
  - sinks: objects with deliver(event), each run on its own daemon thread.
    publish() never waits for them.

The registry is copy-on-write: subscribe/unsubscribe swap an immutable tuple
under a lock, publish iterates whatever snapshot it read first.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Dict, Any, Tuple, Set

from .schema import Actor

logger = logging.getLogger(__name__)

EVENT_CARD_MOVED = "card.moved"

Listener = Callable[["CardMovedEvent"], None]


@dataclass(frozen=True)
class CardMovedEvent:
    """Published after a move has been committed."""
    card_id: int
    pipeline_id: int
    from_column_id: int
    to_column_id: int
    entity_type: str
    entity_id: str
    actor: Actor
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: str = EVENT_CARD_MOVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "card_id": self.card_id,
            "pipeline_id": self.pipeline_id,
            "from_column_id": self.from_column_id,
            "to_column_id": self.to_column_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor": self.actor.to_dict() if self.actor else None,
            "timestamp": self.timestamp.isoformat(),
        }


def _name_of(obj: Any) -> str:
    return getattr(obj, "__name__", None) or type(obj).__name__


class EventNotifier:
    """Routes card-moved events to listeners and asynchronous sinks."""

    def __init__(self):
        self._listeners: Tuple[Listener, ...] = ()
        self._sinks: Tuple[Any, ...] = ()
        self._lock = threading.Lock()
        self._pending: Set[threading.Thread] = set()
        self._pending_lock = threading.Lock()

    # ── Registry ─────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> None:
        """Register a synchronous listener."""
        with self._lock:
            self._listeners = self._listeners + (listener,)
        logger.info(f"Listener subscribed: {_name_of(listener)}")

    def unsubscribe(self, listener: Listener) -> bool:
        """Remove a listener. Returns False if it was not registered."""
        with self._lock:
            if listener not in self._listeners:
                return False
            remaining = list(self._listeners)
            remaining.remove(listener)
            self._listeners = tuple(remaining)
        logger.info(f"Listener unsubscribed: {_name_of(listener)}")
        return True

    def add_sink(self, sink: Any) -> None:
        """Register an asynchronous sink (anything with deliver(event))."""
        with self._lock:
            self._sinks = self._sinks + (sink,)
        logger.info(f"Sink added: {_name_of(sink)}")

    def remove_sink(self, sink: Any) -> bool:
        with self._lock:
            if sink not in self._sinks:
                return False
            remaining = list(self._sinks)
            remaining.remove(sink)
            self._sinks = tuple(remaining)
        return True

    def listener_count(self) -> int:
        return len(self._listeners)

    def sink_count(self) -> int:
        return len(self._sinks)

    # ── Delivery ─────────────────────────────────────────────

    def publish(self, event: CardMovedEvent) -> None:
        """Deliver to every listener, then hand off to every sink. Never raises."""
        logger.info(
            f"Publishing {event.event_type}: card {event.card_id} "
            f"{event.from_column_id} -> {event.to_column_id}"
        )
        listeners, sinks = self._listeners, self._sinks

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Error in listener: {_name_of(listener)}")

        for sink in sinks:
            self._dispatch(sink, event)

    def _dispatch(self, sink: Any, event: CardMovedEvent) -> None:
        def _worker():
            try:
                sink.deliver(event)
            except Exception:
                logger.exception(f"Error in sink: {_name_of(sink)}")
            finally:
                with self._pending_lock:
                    self._pending.discard(threading.current_thread())

        thread = threading.Thread(
            target=_worker,
            name=f"kanbanflow-sink-{_name_of(sink)}",
            daemon=True,
        )
        with self._pending_lock:
            self._pending.add(thread)
        try:
            thread.start()
        except Exception:
            with self._pending_lock:
                self._pending.discard(thread)
            logger.exception(f"Could not start delivery thread for sink: {_name_of(sink)}")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight sink deliveries.

        Returns True if all finished within timeout.
        """
        with self._pending_lock:
            threads = list(self._pending)
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        with self._pending_lock:
            return not any(t.is_alive() for t in self._pending)
