"""Ledger invariant scan: repair partial commits and drifted balance caches."""

import sentry_sdk
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.exceptions import ConflictError, PartialCommitDetected
from app.core.logging import get_logger
from app.schemas.ledger import ActivityRecord, EntryKind, EntrySign, LedgerEntry, transfer_leg_key
from app.services import balances as balances_service
from app.services import cards as cards_service
from app.storage.base import LedgerTransaction, get_store

log = get_logger(__name__)


class ReconcileReport(BaseModel):
    cards_repaired: int = 0
    cards_quarantined: list[str] = []
    transfers_repaired: int = 0
    transfers_unrepairable: list[str] = []
    projections_checked: int = 0
    projections_drifted: int = 0


def missing_leg(leg: LedgerEntry) -> LedgerEntry:
    """Build the absent half of a transfer from the half that exists."""
    sign = EntrySign.CREDIT if leg.sign == EntrySign.DEBIT else EntrySign.DEBIT
    return LedgerEntry(
        owner_id=leg.counterparty_id,
        counterparty_id=leg.owner_id,
        amount=leg.amount,
        sign=sign,
        kind=EntryKind.TRANSFER,
        reason=leg.reason,
        actor_id=leg.actor_id,
        transfer_id=leg.transfer_id,
        idempotency_key=transfer_leg_key(leg.transfer_id, sign),
    )


async def repair_transfer(leg: LedgerEntry) -> bool:
    """Insert the missing leg of a half-applied transfer. False if it already exists."""
    other = missing_leg(leg)

    async def _apply(tx: LedgerTransaction) -> None:
        await tx.append([other])
        await tx.record_activity(ActivityRecord(
            actor_id=None,
            action_type="repair_transfer_leg",
            description="Inserted missing transfer leg",
            metadata={"transfer_id": leg.transfer_id, "owner_id": other.owner_id, "sign": other.sign.value},
        ))

    try:
        await get_store().run_atomic(_apply)
    except ConflictError:
        return False
    log.warning("partial_commit_repaired", kind="transfer", transfer_id=leg.transfer_id, owner_id=other.owner_id)
    return True


async def reconcile() -> ReconcileReport:
    """
    Scan for invariant breaches and repair them.

    - consumed cards with no credit entry get their credit (or are quarantined)
    - transfers with one leg get the other one
    - cached balances that disagree with the ledger are refreshed
    """
    store = get_store()
    batch = get_settings().reconcile_batch_size
    report = ReconcileReport()

    for card in await store.find_consumed_cards_without_credit(batch):
        try:
            if await cards_service.ensure_card_credited(card):
                report.cards_repaired += 1
        except PartialCommitDetected as e:
            # Not quarantined means the next run retries the card.
            if e.details.get("quarantined"):
                report.cards_quarantined.append(card.code)

    for leg in await store.find_unpaired_transfer_legs(batch):
        log.error("partial_commit_detected", kind="transfer", transfer_id=leg.transfer_id, owner_id=leg.owner_id)
        sentry_sdk.capture_exception(PartialCommitDetected(
            "Transfer applied with one leg",
            details={"transfer_id": leg.transfer_id, "entry_id": leg.id},
        ))
        if not leg.counterparty_id:
            report.transfers_unrepairable.append(leg.transfer_id)
            continue
        if await repair_transfer(leg):
            report.transfers_repaired += 1

    offset = 0
    while True:
        projections = await store.list_projections(batch, offset)
        if not projections:
            break
        for projection in projections:
            report.projections_checked += 1
            if await balances_service.verify_projection(projection):
                report.projections_drifted += 1
        offset += len(projections)

    log.info(
        "ledger_reconciled",
        cards_repaired=report.cards_repaired,
        cards_quarantined=len(report.cards_quarantined),
        transfers_repaired=report.transfers_repaired,
        transfers_unrepairable=len(report.transfers_unrepairable),
        projections_checked=report.projections_checked,
        projections_drifted=report.projections_drifted,
    )
    return report
