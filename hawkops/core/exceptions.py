"""
Core Exceptions
================

Exception hierarchy for the simulation.

The generic kinds (not found, repository, external service) sit under
``ApplicationException``; the simulation error kinds below extend them so
the API layer can map any of them to an HTTP status by base class.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LLMException(ExternalServiceException):
    """Exception for LLM API failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("LLM Service", message, details)


# ========== Simulation Error Kinds ==========

class InvalidTransition(DomainException):
    """
    Raised when a status edge is not in the entity's adjacency table.

    Local to the caller: the entity is left untouched and the error is
    never reported as a system fault.
    """

    def __init__(
        self,
        entity_type: str,
        entity_id: Optional[str],
        current_status: str,
        target_status: str,
        details: Optional[dict] = None
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"{entity_type} {entity_id} cannot move from '{current_status}' to '{target_status}'",
            details or {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class EntityNotFound(ResourceNotFoundException):
    """Raised when a work item, challenge or game cannot be found."""


class ConcurrentModification(RepositoryException):
    """
    Raised when a compare-and-set on status loses a race.

    Callers retry the whole perceive-decide-act cycle, not just the act step.
    """

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_status: str,
        details: Optional[dict] = None
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_status = expected_status
        super().__init__(
            f"{entity_type} {entity_id} changed while expecting status '{expected_status}'",
            details or {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "expected_status": expected_status,
            }
        )


class CollaboratorUnavailable(ExternalServiceException):
    """Raised when the content service times out or fails."""


class InvariantViolation(DomainException):
    """Raised when a defensive check fails; fatal to the single operation."""
