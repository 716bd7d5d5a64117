"""Balance projector: cached reads, self-healing and store failures."""

import pytest

from app.core.exceptions import NotFoundError, StoreUnavailable
from app.schemas.ledger import BalanceProjection
from app.services import balances as balances_service

pytestmark = pytest.mark.asyncio


async def test_balance_empty(make_owner):
    owner = await make_owner("S001")
    assert await balances_service.get_balance(owner.id) == 0


async def test_balance_unknown_owner(store):
    with pytest.raises(NotFoundError):
        await balances_service.get_balance("nobody")


async def test_balance_matches_ledger_and_caches(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 70)
    await fund(owner, 30)
    assert await balances_service.get_balance(owner.id) == 100
    projection = store.projections[owner.id]
    assert projection.balance == 100
    assert projection.seq == 2


async def test_stale_cache_is_refreshed_after_new_entry(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 10)
    assert await balances_service.get_balance(owner.id) == 10
    await fund(owner, 5)
    # Projection still says 10 at seq 1; head is at seq 2.
    assert store.projections[owner.id].balance == 10
    assert await balances_service.get_balance(owner.id) == 15
    assert store.projections[owner.id].seq == 2


async def test_missing_cache_is_rebuilt(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 40)
    await balances_service.get_balance(owner.id)
    store.projections.clear()
    assert await balances_service.get_balance(owner.id) == 40
    assert store.projections[owner.id].balance == 40


async def test_verify_repairs_tampered_cache(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 50)
    await balances_service.get_balance(owner.id)
    store.projections[owner.id] = BalanceProjection(owner_id=owner.id, balance=999, seq=1)
    # Same seq: the cheap path trusts the cache.
    assert await balances_service.get_balance(owner.id) == 999
    assert await balances_service.get_balance(owner.id, verify=True) == 50
    assert store.projections[owner.id].balance == 50
    assert await balances_service.get_balance(owner.id) == 50


async def test_verify_projection_reports_drift(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 50)
    tampered = BalanceProjection(owner_id=owner.id, balance=1, seq=1)
    store.projections[owner.id] = tampered
    assert await balances_service.verify_projection(tampered) is True
    assert await balances_service.verify_projection(store.projections[owner.id]) is False


async def test_store_unavailable_propagates_without_zero(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 20)
    store.fail_next("read", skip=1)
    with pytest.raises(StoreUnavailable) as exc_info:
        await balances_service.get_balance(owner.id)
    assert exc_info.value.details["retryable"] is True
    assert owner.id not in store.projections
    assert await balances_service.get_balance(owner.id) == 20


async def test_projection_never_regresses(store, make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 5)
    await fund(owner, 5)
    await balances_service.get_balance(owner.id)
    await store.save_projection(BalanceProjection(owner_id=owner.id, balance=5, seq=1))
    assert store.projections[owner.id].seq == 2
    assert store.projections[owner.id].balance == 10


async def test_list_entries_newest_first(make_owner, fund):
    owner = await make_owner("S001")
    await fund(owner, 1)
    await fund(owner, 2)
    await fund(owner, 3)
    entries = await balances_service.list_entries(owner.id, limit=2)
    assert [e.amount for e in entries] == [3, 2]
    assert [e.seq for e in entries] == [3, 2]
    older = await balances_service.list_entries(owner.id, limit=2, offset=2)
    assert [e.amount for e in older] == [1]
