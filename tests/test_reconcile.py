"""Ledger reconciliation: partial commits and drifted caches."""

import pytest

from app.core.exceptions import StoreUnavailable
from app.schemas.ledger import BalanceProjection, CardState, EntrySign, RedeemableCode
from app.services import balances as balances_service
from app.services import reconcile as reconcile_service
from app.services import transfers as transfers_service

pytestmark = pytest.mark.asyncio


async def test_clean_ledger_reports_nothing(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 10)
    await balances_service.get_balance(owner.id)
    report = await reconcile_service.reconcile()
    assert report.cards_repaired == 0
    assert report.transfers_repaired == 0
    assert report.projections_checked == 1
    assert report.projections_drifted == 0


async def test_missing_transfer_leg_is_rebuilt(store, make_owner, fund):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    await fund(sender, 50)
    result = await transfers_service.transfer(sender.id, recipient.id, 20)
    # Drop the credit leg as if the store had lost it.
    credit = next(e for e in store.entries if e.transfer_id == result.transfer_id and e.sign == EntrySign.CREDIT)
    store.entries.remove(credit)
    store.keys.discard(credit.idempotency_key)

    report = await reconcile_service.reconcile()
    assert report.transfers_repaired == 1
    legs = [e for e in store.entries if e.transfer_id == result.transfer_id]
    assert len(legs) == 2
    assert await balances_service.get_balance(recipient.id) == 20
    assert await balances_service.get_balance(sender.id) == 30

    again = await reconcile_service.reconcile()
    assert again.transfers_repaired == 0


async def test_missing_leg_mirrors_existing_one(make_owner):
    sender = await make_owner("S001")
    recipient = await make_owner("S002")
    debit, credit = transfers_service.transfer_legs("t1", sender.id, recipient.id, 7, "x", sender.id)
    rebuilt = reconcile_service.missing_leg(debit)
    assert (rebuilt.owner_id, rebuilt.sign, rebuilt.amount) == (credit.owner_id, credit.sign, credit.amount)
    assert rebuilt.idempotency_key == credit.idempotency_key


async def test_consumed_card_without_credit_is_repaired(store, make_owner):
    owner = await make_owner("S001")
    await store.insert_cards([RedeemableCode(code="LOST01", value=25)])
    store.cards["LOST01"] = store.cards["LOST01"].model_copy(update={"state": CardState.CONSUMED, "consumed_by": owner.id})

    report = await reconcile_service.reconcile()
    assert report.cards_repaired == 1
    assert await balances_service.get_balance(owner.id) == 25


async def test_unrepairable_card_is_quarantined(store, make_owner):
    owner = await make_owner("S001")
    await store.insert_cards([RedeemableCode(code="LOST01", value=25)])
    store.cards["LOST01"] = store.cards["LOST01"].model_copy(update={"state": CardState.CONSUMED, "consumed_by": owner.id})
    store.fail_next("atomic")

    report = await reconcile_service.reconcile()
    assert report.cards_quarantined == ["LOST01"]
    assert store.cards["LOST01"].quarantined is True


async def test_card_left_unquarantined_is_retried_next_run(store, make_owner):
    owner = await make_owner("S001")
    await store.insert_cards([RedeemableCode(code="LOST01", value=25)])
    store.cards["LOST01"] = store.cards["LOST01"].model_copy(update={"state": CardState.CONSUMED, "consumed_by": owner.id})
    store.fail_next("atomic")
    store.fail_next("write")

    report = await reconcile_service.reconcile()
    assert report.cards_quarantined == []
    assert store.cards["LOST01"].quarantined is False

    report = await reconcile_service.reconcile()
    assert report.cards_repaired == 1
    assert await balances_service.get_balance(owner.id) == 25


async def test_drifted_projection_is_refreshed(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 10)
    store.projections[owner.id] = BalanceProjection(owner_id=owner.id, balance=77, seq=1)
    report = await reconcile_service.reconcile()
    assert report.projections_drifted == 1
    assert store.projections[owner.id].balance == 10


async def test_worker_job_returns_report(store, make_owner, fund):
    from app.worker.tasks import reconcile_ledger

    owner = await make_owner("S001")
    await fund(owner, 10)
    store.projections[owner.id] = BalanceProjection(owner_id=owner.id, balance=3, seq=1)
    report = await reconcile_ledger({"job_id": "cron:reconcile_ledger"})
    assert report["projections_drifted"] == 1
    assert report["cards_quarantined"] == []


async def test_worker_startup_skips_mongo_on_memory_backend(store, monkeypatch):
    from app.db import init as db_init
    from app.worker.tasks import startup

    async def _no_mongo():
        raise AssertionError("init_db called on the memory backend")

    monkeypatch.setattr(db_init, "init_db", _no_mongo)
    await startup({})


async def test_failed_job_is_logged_without_mongo(store, monkeypatch):
    from app.db import init as db_init
    from app.worker.tasks import reconcile_ledger

    async def _no_mongo():
        raise AssertionError("init_db called on the memory backend")

    monkeypatch.setattr(db_init, "init_db", _no_mongo)
    store.fail_next("read")
    with pytest.raises(StoreUnavailable):
        await reconcile_ledger({"job_id": "cron:reconcile_ledger", "job_try": 1})
