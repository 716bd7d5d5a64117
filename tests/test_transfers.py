"""Peer transfers: atomic debit/credit pairs that never overdraw the sender."""

import asyncio

import pytest

from app.core.exceptions import (
    InsufficientBalance,
    InvalidAmount,
    RecipientNotFound,
    SelfTransfer,
    StoreUnavailable,
)
from app.schemas.ledger import EntryKind, EntrySign
from app.services import balances as balances_service
from app.services import transfers as transfers_service

pytestmark = pytest.mark.asyncio


async def test_transfer_moves_points(store, make_owner, fund):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 100)

    result = await transfers_service.transfer(sender.id, recipient.id, 40, "Thanks")
    assert await balances_service.get_balance(sender.id) == 60
    assert await balances_service.get_balance(recipient.id) == 40

    legs = [e for e in store.entries if e.transfer_id == result.transfer_id]
    assert len(legs) == 2
    debit = next(e for e in legs if e.sign == EntrySign.DEBIT)
    credit = next(e for e in legs if e.sign == EntrySign.CREDIT)
    assert (debit.owner_id, debit.counterparty_id) == (sender.id, recipient.id)
    assert (credit.owner_id, credit.counterparty_id) == (recipient.id, sender.id)
    assert debit.amount == credit.amount == 40
    assert debit.kind == credit.kind == EntryKind.TRANSFER
    assert debit.reason == "Thanks"


async def test_transfer_default_reason(store, make_owner, fund):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 10)
    await transfers_service.transfer(sender.id, recipient.id, 10, "  ")
    assert store.entries[-1].reason == transfers_service.DEFAULT_REASON


async def test_transfer_insufficient_balance(store, make_owner, fund):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 30)
    before = len(store.entries)
    with pytest.raises(InsufficientBalance) as exc_info:
        await transfers_service.transfer(sender.id, recipient.id, 31)
    assert exc_info.value.available == 30
    assert exc_info.value.requested == 31
    assert len(store.entries) == before
    assert await balances_service.get_balance(sender.id) == 30


@pytest.mark.parametrize("amount", [0, -5])
async def test_transfer_invalid_amount(store, make_owner, fund, amount):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 30)
    with pytest.raises(InvalidAmount):
        await transfers_service.transfer(sender.id, recipient.id, amount)
    assert len(store.entries) == 1


async def test_transfer_to_self(store, make_owner, fund):
    sender = await make_owner("S001")
    await fund(sender, 30)
    with pytest.raises(SelfTransfer):
        await transfers_service.transfer(sender.id, sender.id, 5)
    assert len(store.entries) == 1


async def test_transfer_unknown_recipient(store, make_owner, fund):
    sender = await make_owner("S001")
    await fund(sender, 30)
    with pytest.raises(RecipientNotFound):
        await transfers_service.transfer(sender.id, "ghost", 5)
    with pytest.raises(RecipientNotFound):
        await transfers_service.transfer_by_code(sender.id, "NOPE", 5)
    assert len(store.entries) == 1


async def test_transfer_by_code(store, make_owner, fund):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 30)
    result = await transfers_service.transfer_by_code(sender.id, " S002 ", 12)
    assert result.recipient_id == recipient.id
    assert await balances_service.get_balance(recipient.id) == 12


async def test_concurrent_transfers_never_overdraw(store, make_owner, fund):
    sender = await make_owner("S001")
    recipients = [await make_owner(f"S10{i}") for i in range(5)]
    await fund(sender, 100)

    results = await asyncio.gather(
        *(transfers_service.transfer(sender.id, r.id, 30) for r in recipients),
        return_exceptions=True,
    )
    ok = [r for r in results if isinstance(r, transfers_service.TransferResult)]
    refused = [r for r in results if isinstance(r, InsufficientBalance)]
    assert len(ok) == 3
    assert len(refused) == 2

    sender_balance = await balances_service.get_balance(sender.id)
    received = [await balances_service.get_balance(r.id) for r in recipients]
    assert sender_balance == 10
    assert sender_balance + sum(received) == 100


async def test_failed_commit_applies_neither_leg(store, make_owner, fund):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 50)
    store.fail_next("commit")
    with pytest.raises(StoreUnavailable):
        await transfers_service.transfer(sender.id, recipient.id, 20)
    assert [e.kind for e in store.entries] == [EntryKind.ADJUSTMENT]
    assert await balances_service.get_balance(sender.id) == 50
    assert await balances_service.get_balance(recipient.id) == 0


async def test_lock_timeout_is_store_unavailable(store, make_owner, fund):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 50)
    store.lock_timeout = 0.01
    await store._lock.acquire()
    try:
        with pytest.raises(StoreUnavailable):
            await transfers_service.transfer(sender.id, recipient.id, 20)
    finally:
        store._lock.release()
    assert await balances_service.get_balance(sender.id) == 50
