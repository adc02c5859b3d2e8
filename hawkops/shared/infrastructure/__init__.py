"""
Infrastructure Layer
=====================

Low-level technical concerns shared by every bounded context:
- Logging setup
- Keyed in-process locks
- Event log, dispatch and fan-out
"""

from hawkops.shared.infrastructure.events import (
    CircuitBreaker,
    EventDispatcher,
    InMemoryEventLog,
    InMemoryEventPublisher,
    WebhookEventPublisher,
    build_publishers,
)
from hawkops.shared.infrastructure.locks import KeyedLockRegistry

__all__ = [
    "CircuitBreaker",
    "EventDispatcher",
    "InMemoryEventLog",
    "InMemoryEventPublisher",
    "WebhookEventPublisher",
    "build_publishers",
    "KeyedLockRegistry",
]
