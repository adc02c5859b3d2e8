"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system: the exception hierarchy, the game event
record and the clock.
"""

from hawkops.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    LLMException,
    InvalidTransition,
    EntityNotFound,
    ConcurrentModification,
    CollaboratorUnavailable,
    InvariantViolation,
)
from hawkops.core.events import (
    EventType,
    GameEvent,
    IEventLog,
    IEventPublisher,
)
from hawkops.core.clock import Clock, ensure_utc, utc_now

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "LLMException",
    "InvalidTransition",
    "EntityNotFound",
    "ConcurrentModification",
    "CollaboratorUnavailable",
    "InvariantViolation",
    # Events
    "EventType",
    "GameEvent",
    "IEventLog",
    "IEventPublisher",
    # Time
    "Clock",
    "utc_now",
    "ensure_utc",
]
