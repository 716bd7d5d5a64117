"""Peer-to-peer point transfers."""

from pydantic import BaseModel

from app.core.exceptions import (
    InsufficientBalance,
    InvalidAmount,
    RecipientNotFound,
    SelfTransfer,
)
from app.core.logging import get_logger
from app.schemas.ledger import (
    ActivityRecord,
    EntryKind,
    EntrySign,
    LedgerEntry,
    new_id,
    transfer_leg_key,
)
from app.services import balances as balances_service
from app.storage.base import LedgerTransaction, get_store

log = get_logger(__name__)

DEFAULT_REASON = "Points transfer"


class TransferResult(BaseModel):
    transfer_id: str
    sender_id: str
    recipient_id: str
    amount: int


def transfer_legs(
    transfer_id: str,
    sender_id: str,
    recipient_id: str,
    amount: int,
    reason: str,
    actor_id: str,
) -> tuple[LedgerEntry, LedgerEntry]:
    """The DEBIT and CREDIT entries of one transfer."""
    common = dict(amount=amount, kind=EntryKind.TRANSFER, reason=reason, actor_id=actor_id, transfer_id=transfer_id)
    debit = LedgerEntry(
        owner_id=sender_id,
        counterparty_id=recipient_id,
        sign=EntrySign.DEBIT,
        idempotency_key=transfer_leg_key(transfer_id, EntrySign.DEBIT),
        **common,
    )
    credit = LedgerEntry(
        owner_id=recipient_id,
        counterparty_id=sender_id,
        sign=EntrySign.CREDIT,
        idempotency_key=transfer_leg_key(transfer_id, EntrySign.CREDIT),
        **common,
    )
    return debit, credit


async def transfer(sender_id: str, recipient_id: str, amount: int, reason: str | None = None) -> TransferResult:
    """
    Move amount points from sender to recipient.

    The sender's balance is checked up front and checked again inside the
    atomic unit after the sender is locked, so concurrent transfers from one
    sender can never overdraw it. Both legs commit together or not at all.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(details={"amount": amount})
    if sender_id == recipient_id:
        raise SelfTransfer()
    store = get_store()
    if await store.get_owner(recipient_id) is None:
        raise RecipientNotFound(recipient_id)
    available = await balances_service.get_balance(sender_id)
    if available < amount:
        raise InsufficientBalance(sender_id, amount, available)

    reason = (reason or "").strip() or DEFAULT_REASON
    transfer_id = new_id()
    debit, credit = transfer_legs(transfer_id, sender_id, recipient_id, amount, reason, sender_id)

    async def _apply(tx: LedgerTransaction) -> None:
        await tx.lock_owner(sender_id)
        current = await tx.balance(sender_id)
        if current < amount:
            raise InsufficientBalance(sender_id, amount, current)
        await tx.append([debit, credit])
        await tx.record_activity(ActivityRecord(
            actor_id=sender_id,
            action_type="transfer_points",
            description=f"Transferred {amount} points",
            metadata={"transfer_id": transfer_id, "recipient_id": recipient_id, "amount": amount},
        ))

    await store.run_atomic(_apply)
    log.info("points_transferred", transfer_id=transfer_id, sender_id=sender_id, recipient_id=recipient_id, amount=amount)
    return TransferResult(transfer_id=transfer_id, sender_id=sender_id, recipient_id=recipient_id, amount=amount)


async def transfer_by_code(sender_id: str, recipient_code: str, amount: int, reason: str | None = None) -> TransferResult:
    """Transfer to the owner whose user_code is recipient_code."""
    code = (recipient_code or "").strip()
    recipient = await get_store().find_owner_by_code(code) if code else None
    if recipient is None:
        raise RecipientNotFound(code)
    return await transfer(sender_id, recipient.id, amount, reason)

