"""
Audit Ledger Chain Verifier
Compliance Reference: ISO/IEC 27001 A.12.4.2 — Protection of log information

Independently walks the audit ledger, recomputes every SHA-256 digest and
checks each entry's link to its predecessor.

    python -m clearinghouse.verify_chain
"""

from __future__ import annotations

import sys

from clearinghouse.ledger import AuditLedger, record_digest
from clearinghouse.models import GENESIS_DIGEST


def verify(ledger: AuditLedger) -> bool:
    records = list(ledger.store.iter_chain_records())

    if not records:
        print("Audit ledger is empty — nothing to verify.")
        return True

    print(f"Verifying chain of {len(records)} entr{'y' if len(records) == 1 else 'ies'}...\n")

    all_valid = True
    previous_digest = GENESIS_DIGEST
    for record in records:
        expected = record_digest(record)
        digest = str(record.get("integrity_digest"))
        status = "OK"
        if expected != record.get("integrity_digest"):
            status = "TAMPERED"
        elif record.get("previous_digest") != previous_digest:
            status = "BROKEN LINK"
        if status != "OK":
            all_valid = False

        print(f"  [{status}] #{record.get('sequence')}: {record.get('event_type')}")
        print(f"         Actor:    "
              f"{(record.get('metadata') or {}).get('actor', record.get('actor_user_id'))}")
        print(f"         Digest:   {digest[:32]}...")
        print(f"         Previous: {str(record.get('previous_digest'))[:32]}...")
        if status == "TAMPERED":
            print(f"         EXPECTED: {expected[:32]}...")
        print()
        previous_digest = record.get("integrity_digest")

    result = ledger.verify_chain()
    if result.sequence_gaps:
        all_valid = False
        print(f"Sequence gaps at: {', '.join(str(s) for s in result.sequence_gaps)}")

    if all_valid:
        print(f"CHAIN INTEGRITY: VALID — all {len(records)} entries verified.")
    else:
        print("CHAIN INTEGRITY: BROKEN — tampering detected!")

    return all_valid


def main() -> int:
    from clearinghouse.postgres import PostgresStore

    ok = verify(AuditLedger(PostgresStore()))
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
