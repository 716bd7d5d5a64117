"""MongoDB store against a real replica set. Set LEDGER_TEST_MONGODB_URI to run."""

import asyncio
import os
import uuid

import pytest
import pytest_asyncio
from bson import ObjectId

from app.core.exceptions import AlreadyConsumed, InsufficientBalance
from app.schemas.ledger import EntrySign, Owner, RedeemableCode
from app.storage.base import use_store

MONGODB_URI = os.environ.get("LEDGER_TEST_MONGODB_URI")

pytestmark = [
    pytest.mark.asyncio,
    pytest.mark.skipif(not MONGODB_URI, reason="LEDGER_TEST_MONGODB_URI not set"),
]


@pytest_asyncio.fixture
async def mongo_store(monkeypatch):
    from app.core.config import get_settings
    from app.db import init as db_init
    from app.storage.mongo import MongoLedgerStore

    settings = get_settings()
    db_name = f"schoolpoints_test_{uuid.uuid4().hex[:8]}"
    monkeypatch.setattr(settings, "mongodb_uri", MONGODB_URI)
    monkeypatch.setattr(settings, "mongodb_db_name", db_name)
    monkeypatch.setattr(db_init, "_client", None)
    await db_init.init_db()
    store = MongoLedgerStore()
    use_store(store)
    yield store
    use_store(None)
    client = db_init.get_client()
    await client.drop_database(db_name)
    client.close()


async def _owner(store, code: str) -> Owner:
    return await store.add_owner(Owner(id=str(ObjectId()), user_code=code))


async def test_redeem_and_transfer(mongo_store):
    from app.services import balances as balances_service
    from app.services import cards as cards_service
    from app.services import points as points_service
    from app.services import transfers as transfers_service

    u1 = await _owner(mongo_store, "U1")
    u2 = await _owner(mongo_store, "U2")
    await points_service.adjust_points([u1.id], "system", amount=100, sign=EntrySign.CREDIT)
    await mongo_store.insert_cards([RedeemableCode(code="C1", value=50)])

    await cards_service.redeem("C1", u1.id)
    assert await balances_service.get_balance(u1.id) == 150
    with pytest.raises(AlreadyConsumed):
        await cards_service.redeem("C1", u2.id)

    result = await transfers_service.transfer(u1.id, u2.id, 40, "gift")
    assert await balances_service.get_balance(u1.id) == 110
    assert await balances_service.get_balance(u2.id) == 40
    legs = await mongo_store.list_entries(u2.id, 10, 0)
    assert legs[0].transfer_id == result.transfer_id

    with pytest.raises(InsufficientBalance):
        await transfers_service.transfer(u1.id, u2.id, 1000, "gift")
    assert await balances_service.get_balance(u1.id) == 110


async def test_concurrent_transfers_never_overdraw(mongo_store):
    from app.services import balances as balances_service
    from app.services import points as points_service
    from app.services import transfers as transfers_service

    sender = await _owner(mongo_store, "S")
    recipients = [await _owner(mongo_store, f"R{i}") for i in range(4)]
    await points_service.adjust_points([sender.id], "system", amount=100, sign=EntrySign.CREDIT)

    results = await asyncio.gather(
        *(transfers_service.transfer(sender.id, r.id, 40) for r in recipients),
        return_exceptions=True,
    )
    assert len([r for r in results if isinstance(r, transfers_service.TransferResult)]) == 2
    assert await balances_service.get_balance(sender.id, verify=True) == 20


async def test_reward_stock_and_refund(mongo_store):
    from app.schemas.ledger import RedemptionStatus
    from app.services import balances as balances_service
    from app.services import points as points_service
    from app.services import rewards as rewards_service

    owners = [await _owner(mongo_store, f"R{i}") for i in range(3)]
    await points_service.adjust_points([o.id for o in owners], "system", amount=50, sign=EntrySign.CREDIT)
    reward = await rewards_service.create_reward("Library pass", 30, "system", available_quantity=2)

    results = await asyncio.gather(
        *(rewards_service.redeem_reward(o.id, reward.id) for o in owners),
        return_exceptions=True,
    )
    redeemed = [r for r in results if not isinstance(r, Exception)]
    assert len(redeemed) == 2
    assert (await mongo_store.get_reward(reward.id)).available_quantity == 0

    rejected = await rewards_service.update_redemption_status(redeemed[0].id, RedemptionStatus.REJECTED, "system")
    assert rejected.refund_entry_id
    assert await balances_service.get_balance(redeemed[0].owner_id) == 50
    assert (await mongo_store.get_reward(reward.id)).available_quantity == 1
