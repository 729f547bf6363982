"""
Clearing House Error Taxonomy

Every rejected operation raises one of these with a human-readable reason
naming the resource involved and its current status. The HTTP gateway
translates them to status codes; the core never does.
"""

from __future__ import annotations

from typing import Any, Optional


class ClearingHouseError(Exception):
    """Base class for every workflow error."""

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r})"


class NotFound(ClearingHouseError):
    """Unknown transaction, negotiation or ledger entry id."""


class InvalidState(ClearingHouseError):
    """Operation not permitted in the resource's current status."""


class InvalidTransition(InvalidState):
    """Status change not allowed by the transaction state machine."""

    def __init__(self, message: str, current: Optional[str] = None,
                 target: Optional[str] = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message, current=current, target=target)


class AlreadyResolved(ClearingHouseError):
    """A one-shot resource (an OPEN negotiation) was already decided."""

    def __init__(self, message: str, status: Optional[str] = None,
                 round: Optional[int] = None) -> None:
        self.status = status
        self.round = round
        super().__init__(message, status=status, round=round)


class InvalidInput(ClearingHouseError, ValueError):
    """Malformed caller input."""


class InvalidResponseType(InvalidInput):
    """Negotiation response was not ACCEPT, REJECT or COUNTER."""


class InvalidRange(InvalidInput):
    """Report or query window with start >= end."""


class IntegrityMismatch(ClearingHouseError):
    """Stored ledger entry no longer matches its digest."""

    def __init__(self, message: str, entry_id: Optional[str] = None) -> None:
        self.entry_id = entry_id
        super().__init__(message, entry_id=entry_id)


class PersistenceFailure(ClearingHouseError):
    """The storage backend failed. Wraps the driver error."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        super().__init__(message)


class ConcurrentModification(ClearingHouseError):
    """A conditional write lost its precondition (status or uniqueness)."""
