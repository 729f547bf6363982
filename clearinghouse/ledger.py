"""
Audit Ledger
Compliance Reference: ISO/IEC 27001 A.12.4.2 — Protection of log information

Append-only, hash-chained record of every workflow event. Each entry's
digest is SHA-256 over the canonical JSON of its content, and that content
includes the previous entry's digest, so editing one entry, deleting one,
or reordering them is detectable by walking the chain.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from clearinghouse.errors import IntegrityMismatch, InvalidRange, NotFound
from clearinghouse.models import (
    GENESIS_DIGEST,
    Actor,
    AuditEventType,
    AuditLogEntry,
    SecurityLevel,
    resolve_actor,
    utcnow,
)
from clearinghouse.store import Store

logger = logging.getLogger(__name__)

DEFAULT_COMPLIANCE_FLAGS = ["ISO_27001", "PP_NO_5_2021_MIGAS"]


def canonicalize(record: dict[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)


def record_digest(record: dict[str, Any]) -> str:
    """SHA-256 over everything stored except the digest field."""
    content = {k: v for k, v in record.items() if k != "integrity_digest"}
    return hashlib.sha256(canonicalize(content).encode("utf-8")).hexdigest()


def compute_digest(entry: AuditLogEntry) -> str:
    return record_digest(entry.to_record())


@dataclass
class ChainVerification:
    total: int = 0
    verified: int = 0
    tampered: list[str] = field(default_factory=list)      # digest mismatch
    broken_links: list[str] = field(default_factory=list)  # previous_digest mismatch
    sequence_gaps: list[int] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not (self.tampered or self.broken_links or self.sequence_gaps)


class LedgerQuery:
    """
    Lazy, finite, restartable view over a time window of the ledger.

    Nothing is read until iteration starts, and every new iteration
    re-queries the store. Iterating yields decoded entries; `records()`
    yields what is stored, for callers that must survive a corrupted entry.
    """

    def __init__(self, store: Store, start: datetime, end: datetime,
                 filters: dict[str, Any]):
        self._store = store
        self.start = start
        self.end = end
        self.filters = filters

    def __iter__(self) -> Iterator[AuditLogEntry]:
        return self._store.iter_entries(start=self.start, end=self.end, **self.filters)

    def records(self) -> Iterator[dict[str, Any]]:
        return self._store.iter_entry_records(start=self.start, end=self.end, **self.filters)

    def count(self) -> int:
        return sum(1 for _ in self.records())


class AuditLedger:
    """
    Single writer interface for audit entries.

    All workflow components append through this class so that every entry
    is sequenced, chained and digested the same way.
    """

    def __init__(self, store: Store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or utcnow

    def append(
        self,
        event_type: AuditEventType,
        description: str,
        *,
        actor: Actor,
        transaction_id: Optional[str] = None,
        previous_state: Optional[dict[str, Any]] = None,
        new_state: Optional[dict[str, Any]] = None,
        changed_fields: Optional[list[str]] = None,
        security_level: SecurityLevel = SecurityLevel.INTERNAL,
        compliance_flags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """
        Write one entry and return it with its sequence and digest.

        Runs inside the caller's unit of work when there is one, so a failed
        append rolls back the state change it describes.
        """
        actor_user_id, actor_label = resolve_actor(actor)
        metadata = dict(metadata or {})
        metadata.setdefault("actor", actor_label)

        with self.store.atomic():
            self.store.lock_ledger()
            last = self.store.last_link()
            draft = AuditLogEntry(
                event_type=event_type,
                event_description=description,
                sequence=(last[0] + 1) if last else 1,
                timestamp=self._clock(),
                previous_digest=last[1] if last else GENESIS_DIGEST,
                transaction_id=transaction_id,
                actor_user_id=actor_user_id,
                previous_state=previous_state,
                new_state=new_state,
                changed_fields=list(changed_fields or []),
                security_level=security_level,
                compliance_flags=list(
                    DEFAULT_COMPLIANCE_FLAGS if compliance_flags is None else compliance_flags
                ),
                metadata=metadata,
            )
            entry = AuditLogEntry.from_record(
                {**draft.to_record(), "integrity_digest": compute_digest(draft)}
            )
            self.store.append_entry(entry)

        logger.debug("ledger #%d %s tx=%s", entry.sequence, entry.event_type.value,
                     entry.transaction_id)
        return entry

    def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        return self.store.find_entry(entry_id)

    def verify(self, entry_id: str) -> bool:
        """
        Recompute one entry's digest from its stored record.

        Returns False for unknown ids and on mismatch, including a record
        too damaged to decode; never raises for a mismatch so callers decide
        whether it is fatal.
        """
        record = self.store.find_entry_record(entry_id)
        if record is None:
            return False
        return self.verify_record(record)

    def require_intact(self, entry_id: str) -> AuditLogEntry:
        """Fetch an entry, raising IntegrityMismatch if its digest no longer holds."""
        record = self.store.find_entry_record(entry_id)
        if record is None:
            raise NotFound(f"Ledger entry {entry_id} not found.")
        if not self.verify_record(record):
            raise IntegrityMismatch(
                f"Ledger entry {entry_id} (#{record.get('sequence')}) does not match "
                f"its digest.",
                entry_id=entry_id,
            )
        return AuditLogEntry.from_record(record)

    def verify_record(self, record: dict[str, Any]) -> bool:
        ok = record_digest(record) == record.get("integrity_digest")
        if not ok:
            logger.warning("Integrity mismatch on ledger entry %s (#%s)",
                           record.get("id"), record.get("sequence"))
        return ok

    def verify_entry(self, entry: AuditLogEntry) -> bool:
        return self.verify_record(entry.to_record())

    def verify_chain(self, limit: Optional[int] = None) -> ChainVerification:
        """Walk the chain in sequence order, checking digests and links."""
        result = ChainVerification()
        expected_sequence = 1
        expected_link = GENESIS_DIGEST
        for record in self.store.iter_chain_records():
            if limit is not None and result.total >= limit:
                break
            result.total += 1
            if self.verify_record(record):
                result.verified += 1
            else:
                result.tampered.append(record.get("id"))

            sequence = record.get("sequence")
            if sequence != expected_sequence:
                result.sequence_gaps.append(expected_sequence)
            if record.get("previous_digest") != expected_link:
                result.broken_links.append(record.get("id"))
            expected_sequence = (sequence if _is_sequence(sequence) else expected_sequence) + 1
            expected_link = record.get("integrity_digest")

        if not result.valid:
            logger.warning(
                "Ledger chain broken: %d tampered, %d broken links, %d gaps",
                len(result.tampered), len(result.broken_links), len(result.sequence_gaps),
            )
        return result

    def broken_links(self, records: list[dict[str, Any]]) -> list[str]:
        """Ids of records whose previous_digest does not match their predecessor."""
        needed = {r["sequence"] - 1 for r in records
                  if _is_sequence(r.get("sequence")) and r["sequence"] > 1}
        digests = {}
        if needed:
            for record in self.store.iter_chain_records():
                if record.get("sequence") in needed:
                    digests[record["sequence"]] = record.get("integrity_digest")
        broken = []
        for record in records:
            sequence = record.get("sequence")
            if not _is_sequence(sequence):
                broken.append(record.get("id"))
                continue
            expected = digests.get(sequence - 1) if sequence > 1 else GENESIS_DIGEST
            if record.get("previous_digest") != expected:
                broken.append(record.get("id"))
        return broken

    def query_range(self, start: datetime, end: datetime, **filters: Any) -> LedgerQuery:
        """Entries with start <= timestamp <= end, oldest first."""
        if start > end:
            raise InvalidRange(
                f"Query start {start.isoformat()} is after end {end.isoformat()}."
            )
        return LedgerQuery(self.store, start, end, filters)

    def entries_for(self, transaction_id: str) -> list[AuditLogEntry]:
        """Full history of one transaction, including after its deletion."""
        return list(self.store.iter_entries(transaction_id=transaction_id))

    def records_for(self, transaction_id: str) -> list[dict[str, Any]]:
        return list(self.store.iter_entry_records(transaction_id=transaction_id))


def _is_sequence(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
