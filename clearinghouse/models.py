"""
Clearing House Data Model

Transactions, negotiation rounds, validator decisions, settlement payments
and audit ledger entries, plus the record codec shared by every store.
Records are plain JSON-safe dicts: enums become their values, datetimes
ISO-8601 strings. Structured payloads (contract terms, metadata, state
snapshots) are opaque dicts that the workflow stores, diffs and forwards
but never inspects.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from uuid import uuid4

from clearinghouse.errors import InvalidInput


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TransactionStatus(str, Enum):
    INITIATED = "INITIATED"
    PENDING_VALIDATION = "PENDING_VALIDATION"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class NegotiationStatus(str, Enum):
    OPEN = "OPEN"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COUNTER_OFFERED = "COUNTER_OFFERED"
    EXPIRED = "EXPIRED"  # written only by the expiry sweep


class ProposalType(str, Enum):
    INITIAL = "INITIAL"
    COUNTER_OFFER = "COUNTER_OFFER"


class ResponseType(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    COUNTER = "COUNTER"


class ValidationMethod(str, Enum):
    MANUAL_REVIEW = "MANUAL_REVIEW"
    AUTOMATED_CHECK = "AUTOMATED_CHECK"
    DIGITAL_SIGNATURE = "DIGITAL_SIGNATURE"
    MULTI_PARTY_CONSENSUS = "MULTI_PARTY_CONSENSUS"
    BLOCKCHAIN_VERIFICATION = "BLOCKCHAIN_VERIFICATION"
    PKI_CERTIFICATE = "PKI_CERTIFICATE"
    BIOMETRIC_VERIFICATION = "BIOMETRIC_VERIFICATION"


class ValidatorRole(str, Enum):
    PROVIDER = "PROVIDER"
    CONSUMER = "CONSUMER"
    BROKER = "BROKER"
    REGULATOR = "REGULATOR"
    AUDITOR = "AUDITOR"
    SYSTEM = "SYSTEM"


class ValidationDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CONDITIONAL_APPROVE = "CONDITIONAL_APPROVE"
    REQUEST_MORE_INFO = "REQUEST_MORE_INFO"
    ESCALATE = "ESCALATE"


class AuditEventType(str, Enum):
    TRANSACTION_CREATED = "TRANSACTION_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    TRANSACTION_UPDATED = "TRANSACTION_UPDATED"
    PROPOSAL_SUBMITTED = "PROPOSAL_SUBMITTED"
    PROPOSAL_RESPONDED = "PROPOSAL_RESPONDED"
    NEGOTIATION_EXPIRED = "NEGOTIATION_EXPIRED"
    VALIDATION_RECORDED = "VALIDATION_RECORDED"
    TRANSACTION_APPROVED = "TRANSACTION_APPROVED"
    TRANSACTION_REJECTED = "TRANSACTION_REJECTED"
    TRANSACTION_COMPLETED = "TRANSACTION_COMPLETED"
    TRANSACTION_CANCELLED = "TRANSACTION_CANCELLED"
    TRANSACTION_DELETED = "TRANSACTION_DELETED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    COMPLIANCE_REPORT_GENERATED = "COMPLIANCE_REPORT_GENERATED"
    SYSTEM_CONFIGURATION = "SYSTEM_CONFIGURATION"


class SecurityLevel(str, Enum):
    PUBLIC = "PUBLIC"
    INTERNAL = "INTERNAL"
    CONFIDENTIAL = "CONFIDENTIAL"
    RESTRICTED = "RESTRICTED"
    SECRET = "SECRET"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SystemActor:
    """Explicit stand-in for automated callers (sweeps, report jobs)."""
    name: str = "clearinghouse"

    def __str__(self) -> str:
        return f"system:{self.name}"


SYSTEM_ACTOR = SystemActor()

Actor = Union[str, SystemActor]


def resolve_actor(actor: Actor) -> tuple[Optional[str], str]:
    """Return (actor_user_id, label). System actors have no user id."""
    if isinstance(actor, SystemActor):
        return None, str(actor)
    if not isinstance(actor, str) or not actor.strip():
        raise InvalidInput("An explicit actor (user id or SystemActor) is required.")
    return actor, actor


# ---------------------------------------------------------------------------
# Record codec
# ---------------------------------------------------------------------------

def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return copy.deepcopy(value)
    return value


def parse_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class _RecordMixin:
    _enum_fields: dict[str, type[Enum]] = {}
    _datetime_fields: tuple[str, ...] = ()

    def to_record(self) -> dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_record(cls, record: dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for name, value in record.items():
            if name not in known:
                continue
            if value is not None:
                if name in cls._enum_fields:
                    value = cls._enum_fields[name](value)
                elif name in cls._datetime_fields:
                    value = parse_datetime(value)
            kwargs[name] = copy.deepcopy(value)
        return cls(**kwargs)

    def _coerce_enums(self) -> None:
        for name, enum_type in self._enum_fields.items():
            value = getattr(self, name)
            if value is None or isinstance(value, enum_type):
                continue
            try:
                object.__setattr__(self, name, enum_type(value))
            except ValueError:
                allowed = ", ".join(m.value for m in enum_type)
                raise InvalidInput(
                    f"Invalid {name} {value!r}; expected one of: {allowed}"
                ) from None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Transaction(_RecordMixin):
    initiator_id: str
    provider_id: str
    consumer_id: str
    resource_id: str
    id: str = field(default_factory=_new_id)
    transaction_type: str = "DATA_ACCESS"
    status: TransactionStatus = TransactionStatus.INITIATED
    required_approvals: int = 2
    current_approvals: int = 0    # cache; the validation rows are authoritative
    strict_rejection: bool = True
    contract_id: Optional[str] = None
    request_id: Optional[str] = None
    contract_terms: Optional[dict[str, Any]] = None
    transaction_data: Optional[dict[str, Any]] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    billing_model: Optional[str] = None
    compliance_level: str = "STANDARD"
    security_rating: Optional[str] = None
    risk_score: Optional[float] = None
    priority: str = "NORMAL"
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expected_completion: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 1

    _enum_fields = {"status": TransactionStatus}
    _datetime_fields = (
        "created_at", "updated_at", "expected_completion", "expires_at",
        "completed_at",
    )

    def __post_init__(self) -> None:
        self._coerce_enums()


@dataclass
class Negotiation(_RecordMixin):
    transaction_id: str
    round: int
    proposed_by_user_id: Optional[str]
    proposed_terms: dict[str, Any]
    valid_until: datetime
    id: str = field(default_factory=_new_id)
    proposal_type: ProposalType = ProposalType.INITIAL
    previous_terms: Optional[dict[str, Any]] = None
    changes: Optional[dict[str, Any]] = None
    contract_id: Optional[str] = None
    proposed_price: Optional[float] = None
    payment_terms: Optional[str] = None
    auto_accept: bool = False
    status: NegotiationStatus = NegotiationStatus.OPEN
    proposed_at: datetime = field(default_factory=utcnow)
    response_by_user_id: Optional[str] = None
    response_type: Optional[ResponseType] = None
    response_notes: Optional[str] = None
    counter_offer: Optional[dict[str, Any]] = None
    responded_at: Optional[datetime] = None

    _enum_fields = {
        "proposal_type": ProposalType,
        "status": NegotiationStatus,
        "response_type": ResponseType,
    }
    _datetime_fields = ("valid_until", "proposed_at", "responded_at")

    def __post_init__(self) -> None:
        self._coerce_enums()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.status == NegotiationStatus.OPEN and now > self.valid_until

    def effective_status(self, now: Optional[datetime] = None) -> NegotiationStatus:
        """Stored status, or EXPIRED for an OPEN round past valid_until."""
        if self.is_expired(now):
            return NegotiationStatus.EXPIRED
        return self.status


@dataclass(frozen=True)
class Validation(_RecordMixin):
    transaction_id: str
    validation_type: ValidationMethod
    validator_role: ValidatorRole
    decision: ValidationDecision
    reasoning: str
    validator_id: Optional[str] = None
    id: str = field(default_factory=_new_id)
    conditions: Optional[dict[str, Any]] = None
    score: Optional[float] = None          # 0-100
    confidence: Optional[float] = None     # 0.0-1.0
    evidence_hash: Optional[str] = None
    digital_signature: Optional[str] = None
    validation_data: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    recorded_at: datetime = field(default_factory=utcnow)

    _enum_fields = {
        "validation_type": ValidationMethod,
        "validator_role": ValidatorRole,
        "decision": ValidationDecision,
    }
    _datetime_fields = ("expires_at", "recorded_at")

    def __post_init__(self) -> None:
        self._coerce_enums()


@dataclass
class Payment(_RecordMixin):
    transaction_id: str
    payment_type: str
    payment_method: str
    amount: float
    currency: str
    id: str = field(default_factory=_new_id)
    payer_user_id: Optional[str] = None
    payee_user_id: Optional[str] = None
    payment_reference: Optional[str] = None
    exchange_rate: Optional[float] = None
    processing_fee: Optional[float] = None
    brokerage_fee: Optional[float] = None
    network_fee: Optional[float] = None
    total_fees: Optional[float] = None
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_transaction_id: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    payment_hash: Optional[str] = None
    digital_signature: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    _enum_fields = {"status": PaymentStatus}
    _datetime_fields = ("requested_at", "processed_at", "settled_at")

    def __post_init__(self) -> None:
        self._coerce_enums()


GENESIS_DIGEST = "GENESIS"


@dataclass(frozen=True)
class AuditLogEntry(_RecordMixin):
    event_type: AuditEventType
    event_description: str
    sequence: int
    timestamp: datetime
    previous_digest: str = GENESIS_DIGEST
    id: str = field(default_factory=_new_id)
    transaction_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    previous_state: Optional[dict[str, Any]] = None
    new_state: Optional[dict[str, Any]] = None
    changed_fields: list[str] = field(default_factory=list)
    security_level: SecurityLevel = SecurityLevel.INTERNAL
    compliance_flags: list[str] = field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None
    integrity_digest: str = ""

    _enum_fields = {
        "event_type": AuditEventType,
        "security_level": SecurityLevel,
    }
    _datetime_fields = ("timestamp",)

    def __post_init__(self) -> None:
        self._coerce_enums()


@dataclass(frozen=True)
class NegotiationOutcome:
    """Terminal result of a negotiation handed to the state machine."""
    status: NegotiationStatus      # ACCEPTED or REJECTED
    negotiation_id: str
    round: int
    actor: Actor
    terms: Optional[dict[str, Any]] = None
    notes: Optional[str] = None
