"""
Event Dispatch
==============

Appends game events to the log, notifies in-process subscribers and fans
events out to external listeners.

Fan-out is fire-and-forget: publishing runs as a background task and the
caller never waits for acknowledgement. Webhook delivery uses a circuit
breaker and exponential backoff retry.
"""

import asyncio
import time
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import httpx

from hawkops.config import get_settings
from hawkops.core.events import EventType, GameEvent, IEventLog, IEventPublisher
from hawkops.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[GameEvent], Awaitable[None]]


# ========== Event Log ==========

class InMemoryEventLog(IEventLog):
    """Process-local append-only log."""

    def __init__(self):
        self._events: List[GameEvent] = []
        self._lock = asyncio.Lock()

    async def append(self, event: GameEvent) -> GameEvent:
        async with self._lock:
            self._events.append(event)
        return event

    async def list_for_team(
        self,
        game_id: str,
        team_id: str,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[GameEvent]:
        wanted = set(event_types) if event_types is not None else None
        return [
            e for e in self._events
            if e.game_id == game_id and e.team_id == team_id
            and (wanted is None or e.event_type in wanted)
        ]

    async def list_for_game(
        self,
        game_id: str,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[GameEvent]:
        wanted = set(event_types) if event_types is not None else None
        return [
            e for e in self._events
            if e.game_id == game_id and (wanted is None or e.event_type in wanted)
        ]

    def __len__(self) -> int:
        return len(self._events)


# ========== Circuit Breaker ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        """Record successful request."""
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "breaker": self.name,
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


# ========== Publishers ==========

class InMemoryEventPublisher(IEventPublisher):
    """Keeps published events in memory. Used for local runs and tests."""

    def __init__(self):
        self.published: List[GameEvent] = []

    async def publish(self, event: GameEvent) -> None:
        self.published.append(event)


class WebhookEventPublisher(IEventPublisher):
    """
    Webhook publisher with circuit breaker and retry logic.

    Posts each event as JSON. Delivery problems are logged, never raised.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._url = url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._circuit_breaker = CircuitBreaker("event_webhook", failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def publish(self, event: GameEvent) -> None:
        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, dropping event",
                extra={"event_id": event.id, "event_type": event.event_type.value}
            )
            return

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._url, json=event.to_dict())
                if response.status_code < 300:
                    self._circuit_breaker.record_success()
                    return
                logger.warning(
                    "Event webhook returned error status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Event webhook delivery failed",
                    extra={"error": str(e), "attempt": attempt + 1, "event_id": event.id}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(2 ** attempt)

        self._circuit_breaker.record_failure()

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Dispatcher ==========

class EventDispatcher:
    """
    Single emission point for game events.

    ``emit`` appends to the log, awaits in-process subscribers registered
    for the event type, then schedules fan-out in the background.
    Subscriber failures are logged and do not affect the emitter.
    """

    def __init__(
        self,
        event_log: IEventLog,
        publishers: Optional[List[IEventPublisher]] = None
    ):
        self._log = event_log
        self._publishers = publishers or []
        self._subscribers: Dict[EventType, List[EventHandler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    @property
    def event_log(self) -> IEventLog:
        return self._log

    def subscribe(self, event_types: Iterable[EventType], handler: EventHandler) -> None:
        """Register an async handler for the given event types."""
        for event_type in event_types:
            self._subscribers[event_type].append(handler)

    async def emit(self, event: GameEvent) -> GameEvent:
        """Append, notify subscribers and fan out an event."""
        await self._log.append(event)

        for handler in list(self._subscribers.get(event.event_type, [])):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "Event subscriber failed",
                    extra={
                        "event_type": event.event_type.value,
                        "event_id": event.id,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(e),
                    },
                    exc_info=True,
                )

        for publisher in self._publishers:
            task = asyncio.create_task(self._publish(publisher, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return event

    async def _publish(self, publisher: IEventPublisher, event: GameEvent) -> None:
        try:
            await publisher.publish(event)
        except Exception as e:
            logger.error(
                "Event publisher failed",
                extra={"event_id": event.id, "publisher": type(publisher).__name__, "error": str(e)}
            )


def build_publishers() -> List[IEventPublisher]:
    """Publishers configured from settings."""
    settings = get_settings()
    if settings.event_webhook_url:
        return [WebhookEventPublisher(
            settings.event_webhook_url,
            timeout_seconds=settings.event_webhook_timeout_seconds
        )]
    return []
