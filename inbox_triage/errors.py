"""
Error hierarchy for inbox-triage.

Data-access failures are raised as :class:`RecordNotFoundError` or one of the
:class:`ConstraintViolationError` subclasses; the original driver exception is
kept as ``__cause__``.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError


class InboxTriageError(Exception):
    """Base class for all application errors."""


class RecordNotFoundError(InboxTriageError):
    """Raised by the ``*_or_throw`` lookups, ``update`` and ``delete``."""

    def __init__(self, model: str, where: Optional[Dict[str, Any]] = None):
        self.model = model
        self.where = where or {}
        super().__init__(f"No {model} found for {self.where}")


class ConstraintViolationError(InboxTriageError):
    """Raised when the database rejects a write."""


class UniqueConstraintError(ConstraintViolationError):
    pass


class ForeignKeyConstraintError(ConstraintViolationError):
    pass


class InvalidActionTransitionError(InboxTriageError):
    """Raised when an EmailAction is moved out of a terminal status."""


class GmailAuthError(InboxTriageError):
    """Raised when a Gmail client cannot be built from stored credentials."""


class OAuthFlowError(InboxTriageError):
    """Raised when the Google OAuth handshake fails or returns unusable data."""


def translate_integrity_error(model: str, exc: IntegrityError) -> ConstraintViolationError:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    if "unique" in message or "duplicate key" in message:
        return UniqueConstraintError(f"Unique constraint failed on {model}: {exc.orig}")
    if "foreign key" in message:
        return ForeignKeyConstraintError(f"Foreign key constraint failed on {model}: {exc.orig}")
    return ConstraintViolationError(f"Constraint failed on {model}: {exc.orig}")
