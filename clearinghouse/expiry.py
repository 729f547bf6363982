"""
Negotiation Expiry -- Timeout handling for OPEN negotiation rounds.
Compliance Reference: PP No. 5/2021 Pasal 8 — Kontrak dan persetujuan data

Expiry is derived at read time (`Negotiation.effective_status`); nothing
here is needed for correctness. The sweep only flips long-expired OPEN rows
to EXPIRED so they drop out of open-round queries, and it does so with a
conditional update so a late response that wins the race is left alone.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from clearinghouse.errors import ConcurrentModification
from clearinghouse.ledger import AuditLedger
from clearinghouse.models import (
    SYSTEM_ACTOR,
    AuditEventType,
    NegotiationStatus,
    utcnow,
)
from clearinghouse.store import Store

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration (from env vars with defaults)
# ---------------------------------------------------------------------------

NEGOTIATION_EXPIRY_GRACE_SECONDS = int(
    os.environ.get("NEGOTIATION_EXPIRY_GRACE_SECONDS", "0")
)


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def expire_stale_negotiations(store: Store, ledger: AuditLedger,
                              now: Optional[datetime] = None) -> list[str]:
    """Flip OPEN rounds past valid_until (plus grace) to EXPIRED.

    Returns:
        List of negotiation ids that were expired by this call.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=NEGOTIATION_EXPIRY_GRACE_SECONDS)

    expired = []
    for negotiation in store.list_open_negotiations():
        if not negotiation.is_expired(cutoff):
            continue
        try:
            with store.atomic():
                store.update_negotiation(
                    negotiation.id,
                    {"status": NegotiationStatus.EXPIRED},
                    expected_status=NegotiationStatus.OPEN,
                )
                ledger.append(
                    AuditEventType.NEGOTIATION_EXPIRED,
                    f"Negotiation round {negotiation.round} expired without a response",
                    actor=SYSTEM_ACTOR,
                    transaction_id=negotiation.transaction_id,
                    metadata={
                        "negotiation_id": negotiation.id,
                        "round": negotiation.round,
                        "valid_until": negotiation.valid_until.isoformat(),
                        "expired_at": now.isoformat(),
                    },
                )
        except ConcurrentModification:
            # a response landed first
            continue
        expired.append(negotiation.id)

    if expired:
        logger.warning("Expired %d stale negotiation round(s)", len(expired))
    return expired


def get_negotiation_summary(store: Store, transaction_ids: Optional[list[str]] = None,
                            now: Optional[datetime] = None) -> dict:
    """Counts of negotiation rounds by effective status.

    Without transaction_ids only rows still stored as OPEN are classified,
    which splits them into open and expired.

    Returns:
        Dict with counts: {open: N, accepted: N, rejected: N, counter_offered: N, expired: N}
    """
    now = now or utcnow()
    summary = {s.value.lower(): 0 for s in NegotiationStatus}

    if transaction_ids is None:
        rounds = store.list_open_negotiations()
    else:
        rounds = [n for tx_id in transaction_ids for n in store.list_negotiations(tx_id)]

    for negotiation in rounds:
        summary[negotiation.effective_status(now).value.lower()] += 1
    return summary
