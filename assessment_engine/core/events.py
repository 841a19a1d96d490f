"""
Lifecycle events and the asynchronous event dispatcher.

Assembly and scoring publish immutable events. Each subscribed listener owns a
queue and a worker thread, so a slow or failing listener (audit persistence,
passport update, percentile recalculation) never blocks the publisher or the
other listeners. Listener exceptions are caught, logged and counted per event.

Usage:
    dispatcher = EventDispatcher()
    dispatcher.subscribe("percentiles", percentile_listener.handle, ScoringCompleted)
    dispatcher.start()
    dispatcher.publish(ScoringCompleted(...))
    dispatcher.drain()  # wait until every queue is empty (tests, shutdown)
    dispatcher.shutdown()
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Type

from assessment_engine.core.datetime_utils import utc_now
from assessment_engine.core.graceful_failure import graceful_failure
from assessment_engine.models.models import AssessmentStrategy

logger = logging.getLogger(__name__)

EventHandler = Callable[["EngineEvent"], None]

_STOP = object()


class EventPublisher(Protocol):
    def publish(self, event: "EngineEvent") -> None: ...


# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class EngineEvent:
    """Base event; every event is tagged with its assessment strategy."""

    strategy: AssessmentStrategy
    occurred_at: datetime = field(default_factory=utc_now)

    @property
    def event_name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True, kw_only=True)
class AssemblyStarted(EngineEvent):
    template_id: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class AssemblyCompleted(EngineEvent):
    duration_seconds: float
    question_count: int
    warning_count: int = 0
    template_id: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class AssemblyFailed(EngineEvent):
    error_type: str
    duration_seconds: float
    template_id: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class ScoringStarted(EngineEvent):
    session_id: int
    answer_count: int


@dataclass(frozen=True, kw_only=True)
class ScoringCompleted(EngineEvent):
    session_id: int
    result_id: int
    template_id: int
    score: float
    passed: bool
    duration_seconds: float
    user_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ScoringFailed(EngineEvent):
    session_id: int
    error_type: str
    duration_seconds: float


@dataclass(frozen=True, kw_only=True)
class RetryAttempted(EngineEvent):
    operation: str
    attempt_number: int
    max_attempts: int
    error_type: str
    session_id: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class FallbackInvoked(EngineEvent):
    operation: str
    reason: str
    error_type: str
    session_id: Optional[int] = None


# =============================================================================
# DISPATCHER
# =============================================================================


class _ListenerWorker:
    """Queue plus worker thread for one listener."""

    def __init__(
        self,
        name: str,
        handler: EventHandler,
        event_types: Tuple[Type[EngineEvent], ...],
    ):
        self.name = name
        self.handler = handler
        self.event_types = event_types
        self.queue: "queue.Queue[Any]" = queue.Queue()
        self.thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failed = 0

    def accepts(self, event: EngineEvent) -> bool:
        return isinstance(event, self.event_types)

    def start(self) -> None:
        self.thread = threading.Thread(
            target=self._run, name=f"event-listener-{self.name}", daemon=True
        )
        self.thread.start()

    def _run(self) -> None:
        while True:
            item = self.queue.get()
            try:
                if item is _STOP:
                    return
                self._handle(item)
            finally:
                self.queue.task_done()

    def _handle(self, event: EngineEvent) -> None:
        with graceful_failure(
            f"handle {event.event_name} in listener '{self.name}'",
            logger,
            log_level=logging.ERROR,
            exc_info=True,
        ) as step:
            self.handler(event)
        if step.failed:
            self.failed += 1
        else:
            self.processed += 1


class EventDispatcher:
    """Fan-out dispatcher with one isolated worker per listener."""

    def __init__(self) -> None:
        self._workers: Dict[str, _ListenerWorker] = {}
        self._lock = threading.Lock()
        self._started = False

    def subscribe(
        self,
        name: str,
        handler: EventHandler,
        *event_types: Type[EngineEvent],
    ) -> None:
        """Register a listener for the given event types (all events if none).

        Raises:
            ValueError: If a listener with the same name is already registered
        """
        with self._lock:
            if name in self._workers:
                raise ValueError(f"Listener '{name}' is already subscribed")
            worker = _ListenerWorker(name, handler, event_types or (EngineEvent,))
            self._workers[name] = worker
            if self._started:
                worker.start()

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            for worker in self._workers.values():
                worker.start()
            self._started = True
        logger.debug(f"Event dispatcher started with {len(self._workers)} listener(s)")

    def publish(self, event: EngineEvent) -> None:
        """Enqueue the event for every interested listener; never blocks on handlers."""
        with self._lock:
            workers = [w for w in self._workers.values() if w.accepts(event)]
        for worker in workers:
            worker.queue.put(event)

    def drain(self) -> None:
        """Block until every listener queue has been processed.

        Returns at once when the dispatcher is not running; queued events stay
        pending until start().
        """
        with self._lock:
            if not self._started:
                logger.debug("Event dispatcher is not running, nothing to drain")
                return
            workers = list(self._workers.values())
        for worker in workers:
            if worker.thread is not None and worker.thread.is_alive():
                worker.queue.join()

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop all workers after their queues are processed."""
        with self._lock:
            workers = list(self._workers.values())
            started = self._started
            self._started = False
        if not started:
            return
        for worker in workers:
            worker.queue.put(_STOP)
        for worker in workers:
            if worker.thread is not None:
                worker.thread.join(timeout)
                worker.thread = None

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {
                name: {
                    "processed": w.processed,
                    "failed": w.failed,
                    "pending": w.queue.qsize(),
                }
                for name, w in self._workers.items()
            }


class RecordingDispatcher:
    """Synchronous in-memory dispatcher that keeps every published event.

    Used where events are inspected rather than processed (tests, dry runs).
    """

    def __init__(self) -> None:
        self.events: List[EngineEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: EngineEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: Type[EngineEvent]) -> List[EngineEvent]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]
