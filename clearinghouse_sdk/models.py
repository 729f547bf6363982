"""
Clearing House SDK — Data Models
"""

from __future__ import annotations

from pydantic import BaseModel


class TransactionResult(BaseModel):
    """Result of a transaction create/read/update call."""
    success: bool
    transaction_id: str | None = None
    status: str | None = None       # INITIATED | PENDING_VALIDATION | ... | CANCELLED
    current_approvals: int | None = None
    required_approvals: int | None = None
    error: str | None = None
    raw: dict                       # full response body


class NegotiationResult(BaseModel):
    """Result of a POST /negotiations or /negotiations/{id}/respond call."""
    success: bool
    negotiation_id: str | None = None
    round: int | None = None
    status: str | None = None       # stored status
    effective_status: str | None = None
    error: str | None = None
    raw: dict                       # full response body


class ValidationResult(BaseModel):
    """Result of a POST /transactions/{id}/validate call."""
    success: bool
    validation_id: str | None = None
    quorum_reached: bool = False
    transaction_status: str | None = None
    error: str | None = None
    raw: dict                       # full response body


class PaymentResult(BaseModel):
    """Result of a POST /payments or /payments/{id}/status call."""
    success: bool
    payment_id: str | None = None
    status: str | None = None       # PENDING | PROCESSING | COMPLETED | FAILED
    transaction_status: str | None = None
    error: str | None = None
    raw: dict                       # full response body


class ReportResult(BaseModel):
    """Result of a compliance report call."""
    success: bool
    report_id: str | None = None
    integrity_rate: float | None = None
    total_entries: int = 0
    error: str | None = None
    raw: dict                       # full response body
