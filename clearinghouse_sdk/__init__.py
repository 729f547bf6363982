from clearinghouse_sdk.client import ClearingHouseClient
from clearinghouse_sdk.models import (
    NegotiationResult,
    PaymentResult,
    ReportResult,
    TransactionResult,
    ValidationResult,
)

__all__ = [
    "ClearingHouseClient",
    "NegotiationResult",
    "PaymentResult",
    "ReportResult",
    "TransactionResult",
    "ValidationResult",
]
