"""
Notification channel between the reader and its subscriber.

Each notification is a typed message. Subscribers either register a callback
per event name (``on("change", cb)``, receiving the payload) or subscribe to
every message (``subscribe(cb)``, receiving the message object).
Callbacks run synchronously on the reader's worker thread.
"""

from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union
import threading

from .models import ChangeRecord, Cursor


@dataclass(frozen=True)
class Change:
    event: ClassVar[str] = "change"
    record: ChangeRecord

    @property
    def payload(self) -> ChangeRecord:
        return self.record


@dataclass(frozen=True)
class BatchReady:
    event: ClassVar[str] = "batch"
    records: List[ChangeRecord]

    @property
    def payload(self) -> List[ChangeRecord]:
        return self.records


@dataclass(frozen=True)
class CursorAdvanced:
    event: ClassVar[str] = "seq"
    cursor: Cursor

    @property
    def payload(self) -> Cursor:
        return self.cursor


@dataclass(frozen=True)
class Failed:
    event: ClassVar[str] = "error"
    error: Exception
    fatal: bool = False

    @property
    def payload(self) -> Exception:
        return self.error


@dataclass(frozen=True)
class Finished:
    event: ClassVar[str] = "end"
    cursor: Cursor

    @property
    def payload(self) -> Cursor:
        return self.cursor


Message = Union[Change, BatchReady, CursorAdvanced, Failed, Finished]

EVENT_NAMES = frozenset(m.event for m in (Change, BatchReady, CursorAdvanced, Failed, Finished))


class EventChannel:
    """Subscriber-facing channel for one run of the reader."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable[[Any], None]]] = {name: [] for name in EVENT_NAMES}
        self._subscribers: List[Callable[[Message], None]] = []
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self.outcome: Optional[BaseException] = None

    def on(self, event: str, callback: Callable[[Any], None]) -> "EventChannel":
        """Register a callback for one event name. Returns the channel for chaining."""
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event '{event}', expected one of {sorted(EVENT_NAMES)}")
        with self._lock:
            self._handlers[event].append(callback)
        return self

    def subscribe(self, callback: Callable[[Message], None]) -> "EventChannel":
        """Register a callback receiving every message object."""
        with self._lock:
            self._subscribers.append(callback)
        return self

    def emit(self, message: Message) -> None:
        """Deliver a message to every registered callback, in registration order.

        Exceptions raised by callbacks propagate to the caller (the reader loop),
        which ends the run.
        """
        with self._lock:
            handlers = list(self._handlers[message.event])
            subscribers = list(self._subscribers)

        for handler in handlers:
            handler(message.payload)
        for subscriber in subscribers:
            subscriber(message)

    def close(self, outcome: Optional[BaseException] = None) -> None:
        self.outcome = outcome
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the run that owns this channel has ended.

        Returns:
            True if the run ended, False on timeout
        """
        return self._closed.wait(timeout)
