"""Recharge card redemption and administration."""

import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import (
    AlreadyConsumed,
    BadRequestError,
    CardDisabled,
    InvalidAmount,
    NotFoundError,
    PartialCommitDetected,
    StoreUnavailable,
)
from app.schemas.ledger import CardState, EntryKind, RedeemableCode, card_credit_key, utcnow
from app.services import balances as balances_service
from app.services import cards as cards_service

pytestmark = pytest.mark.asyncio


async def _card(store, code="ABC123", value=50, **kwargs) -> RedeemableCode:
    card = RedeemableCode(code=code, value=value, **kwargs)
    await store.insert_cards([card])
    return card


async def test_redeem_credits_once(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    result = await cards_service.redeem("ABC123", owner.id)
    assert result.granted == 50
    assert await balances_service.get_balance(owner.id) == 50
    assert store.cards["ABC123"].state == CardState.CONSUMED
    assert store.cards["ABC123"].consumed_by == owner.id

    with pytest.raises(AlreadyConsumed):
        await cards_service.redeem("ABC123", owner.id)
    assert await balances_service.get_balance(owner.id) == 50
    assert len(store.entries) == 1


async def test_redeem_normalizes_code(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    result = await cards_service.redeem("  abc123 ", owner.id)
    assert result.code == "ABC123"


async def test_concurrent_redeem_single_winner(store, make_owner):
    first = await make_owner("S001")
    second = await make_owner("S002")
    await _card(store)

    results = await asyncio.gather(
        cards_service.redeem("ABC123", first.id),
        cards_service.redeem("ABC123", second.id),
        return_exceptions=True,
    )
    wins = [r for r in results if isinstance(r, cards_service.RedeemResult)]
    losses = [r for r in results if isinstance(r, AlreadyConsumed)]
    assert len(wins) == 1
    assert len(losses) == 1
    total = await balances_service.get_balance(first.id) + await balances_service.get_balance(second.id)
    assert total == 50
    assert len([e for e in store.entries if e.card_code == "ABC123"]) == 1


async def test_redeem_unknown_code(store, make_owner):
    owner = await make_owner("S001")
    with pytest.raises(NotFoundError):
        await cards_service.redeem("NOPE", owner.id)
    assert store.entries == []


async def test_redeem_disabled_card(store, make_owner):
    owner = await make_owner("S001")
    await _card(store, state=CardState.DISABLED)
    with pytest.raises(CardDisabled):
        await cards_service.redeem("ABC123", owner.id)
    assert store.entries == []


async def test_redeem_outside_validity_window(store, make_owner):
    owner = await make_owner("S001")
    now = utcnow()
    await _card(store, code="EARLY1", valid_from=now + timedelta(days=1))
    await _card(store, code="LATE01", valid_until=now - timedelta(days=1))
    with pytest.raises(CardDisabled) as early:
        await cards_service.redeem("EARLY1", owner.id)
    assert early.value.details["reason"] == "not_yet_valid"
    with pytest.raises(CardDisabled) as late:
        await cards_service.redeem("LATE01", owner.id)
    assert late.value.details["reason"] == "expired"
    assert store.cards["EARLY1"].state == CardState.ACTIVE


async def test_card_assigned_to_someone_else(store, make_owner):
    owner = await make_owner("S001")
    other = await make_owner("S002")
    await _card(store, assigned_to=other.id)
    with pytest.raises(NotFoundError):
        await cards_service.redeem("ABC123", owner.id)
    result = await cards_service.redeem("ABC123", other.id)
    assert result.granted == 50


async def test_redeem_unknown_owner(store):
    await _card(store)
    with pytest.raises(NotFoundError):
        await cards_service.redeem("ABC123", "ghost")
    assert store.cards["ABC123"].state == CardState.ACTIVE


async def test_failed_commit_leaves_card_active(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    store.fail_next("commit")
    with pytest.raises(StoreUnavailable):
        await cards_service.redeem("ABC123", owner.id)
    assert store.cards["ABC123"].state == CardState.ACTIVE
    assert store.entries == []
    assert await balances_service.get_balance(owner.id) == 0
    # Retry succeeds once the store is back.
    await cards_service.redeem("ABC123", owner.id)
    assert await balances_service.get_balance(owner.id) == 50


async def test_failed_append_leaves_card_active(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    store.fail_next("append")
    with pytest.raises(StoreUnavailable):
        await cards_service.redeem("ABC123", owner.id)
    assert store.cards["ABC123"].state == CardState.ACTIVE
    assert store.entries == []


async def test_lost_credit_is_repaired_after_redeem(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    store.simulate_lost_entries()
    result = await cards_service.redeem("ABC123", owner.id)
    assert result.granted == 50
    credits = [e for e in store.entries if e.idempotency_key == card_credit_key("ABC123")]
    assert len(credits) == 1
    assert credits[0].kind == EntryKind.RECONCILIATION
    assert await balances_service.get_balance(owner.id) == 50
    assert any(a.action_type == "repair_card_credit" for a in store.activity)


async def test_unrepairable_lost_credit_quarantines_card(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    store.simulate_lost_entries()
    store.fail_next("atomic", skip=1)
    with pytest.raises(PartialCommitDetected) as exc_info:
        await cards_service.redeem("ABC123", owner.id)
    assert exc_info.value.details["quarantined"] is True
    card = store.cards["ABC123"]
    assert card.state == CardState.CONSUMED
    assert card.quarantined is True
    assert "repair failed" in card.quarantine_reason


async def test_quarantine_failure_still_reports_partial_commit(store, make_owner, monkeypatch):
    captured = []
    monkeypatch.setattr(cards_service.sentry_sdk, "capture_exception", captured.append)
    owner = await make_owner("S001")
    await _card(store)
    store.simulate_lost_entries()
    store.fail_next("atomic", skip=1)
    store.fail_next("write")
    with pytest.raises(PartialCommitDetected) as exc_info:
        await cards_service.redeem("ABC123", owner.id)
    assert exc_info.value.details["quarantined"] is False
    assert captured == [exc_info.value]
    card = store.cards["ABC123"]
    assert card.state == CardState.CONSUMED
    assert card.quarantined is False


async def test_verification_outage_after_commit_still_grants(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    # get_owner and get_card pass; the post-commit credit lookup fails
    store.fail_next("read", skip=2)
    result = await cards_service.redeem("ABC123", owner.id)
    assert result.granted == 50
    assert store.cards["ABC123"].state == CardState.CONSUMED
    assert len(store.entries) == 1
    assert await balances_service.get_balance(owner.id) == 50


async def test_ensure_card_credited_noop_when_credit_present(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    await cards_service.redeem("ABC123", owner.id)
    assert await cards_service.ensure_card_credited(store.cards["ABC123"]) is False
    assert len(store.entries) == 1


async def test_generate_cards(store, make_owner):
    admin = await make_owner("A001", role_id=4)
    cards = await cards_service.generate_cards(5, 20, admin.id)
    assert len(cards) == 5
    assert len({c.code for c in cards}) == 5
    for card in cards:
        assert len(card.code) == 12
        assert store.cards[card.code].state == CardState.ACTIVE
        assert card.created_by == admin.id


async def test_generate_cards_validation(store, make_owner):
    admin = await make_owner("A001", role_id=4)
    with pytest.raises(BadRequestError):
        await cards_service.generate_cards(0, 20, admin.id)
    with pytest.raises(BadRequestError):
        await cards_service.generate_cards(1001, 20, admin.id)
    with pytest.raises(InvalidAmount):
        await cards_service.generate_cards(1, 0, admin.id)
    now = utcnow()
    with pytest.raises(BadRequestError):
        await cards_service.generate_cards(1, 5, admin.id, valid_from=now, valid_until=now - timedelta(hours=1))
    with pytest.raises(NotFoundError):
        await cards_service.generate_cards(1, 5, admin.id, category_id="missing")
    with pytest.raises(NotFoundError):
        await cards_service.generate_cards(1, 5, admin.id, assigned_to="missing")
    assert store.cards == {}


async def test_disable_card(store, make_owner):
    owner = await make_owner("S001")
    await _card(store)
    card = await cards_service.disable_card("abc123", "u-admin")
    assert card.state == CardState.DISABLED
    with pytest.raises(CardDisabled):
        await cards_service.redeem("ABC123", owner.id)
    with pytest.raises(NotFoundError):
        await cards_service.disable_card("NOPE", "u-admin")


async def test_list_cards_by_state(store, make_owner):
    owner = await make_owner("S001")
    await _card(store, code="AAA111")
    await _card(store, code="BBB222")
    await cards_service.redeem("AAA111", owner.id)
    consumed = await cards_service.list_cards(CardState.CONSUMED)
    assert [c.code for c in consumed] == ["AAA111"]
    assert len(await cards_service.list_cards()) == 2
