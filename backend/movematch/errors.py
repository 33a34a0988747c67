"""Typed errors raised by the matching engine.

Every error carries a stable ``code`` so HTTP consumers receive an actionable
kind instead of a stack trace (see ``main.matching_error_handler``).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class MatchingError(Exception):
    code = 'matching_error'
    status_code = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'detail': self.message, 'error': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(MatchingError, ValueError):
    """Malformed input: bad reference, missing required fields, illegal state."""
    code = 'validation_error'
    status_code = 400


class UnrecognizedReferenceError(ValidationError):
    code = 'unrecognized_reference'


class InvalidTransitionError(ValidationError):
    code = 'invalid_transition'
    status_code = 409


class CapacityExceededError(ValidationError):
    code = 'capacity_exceeded'
    status_code = 409


class NotFoundError(MatchingError, LookupError):
    code = 'not_found'
    status_code = 404


class IncompleteDataError(NotFoundError):
    """A joined entity is missing or lacks the fields needed to build routes."""
    code = 'incomplete_data'
    status_code = 422


class ProviderUnavailable(MatchingError):
    code = 'provider_unavailable'
    status_code = 503


class CapacityConflictError(MatchingError):
    code = 'capacity_conflict'
    status_code = 409


class PartialApplicationError(MatchingError):
    """Accept left the store half-applied and compensation failed as well."""
    code = 'partial_application'
    status_code = 500


__all__ = [
    'MatchingError',
    'ValidationError',
    'UnrecognizedReferenceError',
    'InvalidTransitionError',
    'CapacityExceededError',
    'NotFoundError',
    'IncompleteDataError',
    'ProviderUnavailable',
    'CapacityConflictError',
    'PartialApplicationError',
]
