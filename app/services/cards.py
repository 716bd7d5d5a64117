"""Recharge cards: one-time redemption and administration."""

import secrets
import string
from datetime import datetime

import sentry_sdk
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.exceptions import (
    AlreadyConsumed,
    BadRequestError,
    CardDisabled,
    ConflictError,
    InvalidAmount,
    NotFoundError,
    PartialCommitDetected,
    StoreUnavailable,
)
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.schemas.ledger import (
    ActivityRecord,
    CardState,
    EntryKind,
    EntrySign,
    LedgerEntry,
    RedeemableCode,
    as_utc,
    card_credit_key,
    utcnow,
)
from app.storage.base import LedgerTransaction, get_store

log = get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
REDEMPTION_REASON = "Recharge card redemption"


class RedeemResult(BaseModel):
    code: str
    granted: int


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _state_error(card: RedeemableCode) -> Exception:
    if card.state == CardState.CONSUMED:
        return AlreadyConsumed(card.code)
    return CardDisabled(card.code)


def _check_redeemable(card: RedeemableCode | None, code: str, redeemer_id: str, now: datetime) -> RedeemableCode:
    # A card reserved for someone else looks the same as an unknown code.
    if card is None or (card.assigned_to and card.assigned_to != redeemer_id):
        raise NotFoundError("Card not found", details={"code": code})
    if card.state != CardState.ACTIVE:
        raise _state_error(card)
    if card.valid_from and now < card.valid_from:
        raise CardDisabled(card.code, reason="not_yet_valid")
    if card.valid_until and now > card.valid_until:
        raise CardDisabled(card.code, reason="expired")
    return card


def _credit_entry(card: RedeemableCode, redeemer_id: str, kind: EntryKind = EntryKind.REDEMPTION) -> LedgerEntry:
    return LedgerEntry(
        owner_id=redeemer_id,
        amount=card.value,
        sign=EntrySign.CREDIT,
        kind=kind,
        category_id=card.category_id,
        reason=REDEMPTION_REASON,
        actor_id=redeemer_id,
        card_code=card.code,
        idempotency_key=card_credit_key(card.code),
    )


async def redeem(code: str, redeemer_id: str) -> RedeemResult:
    """
    Consume a card exactly once and credit its value to redeemer.

    The ACTIVE -> CONSUMED transition and the credit entry commit as one unit.
    Of two racing redemptions one gets the card and the other AlreadyConsumed.
    """
    store = get_store()
    code = normalize_code(code)
    if await store.get_owner(redeemer_id) is None:
        raise NotFoundError("Owner not found", details={"owner_id": redeemer_id})
    _check_redeemable(await store.get_card(code), code, redeemer_id, utcnow())

    async def _apply(tx: LedgerTransaction) -> RedeemableCode:
        consumed = await tx.consume_card(code, redeemer_id, utcnow())
        if consumed is None:
            # Lost the race, or disabled meanwhile: report the state that won.
            current = await store.get_card(code)
            raise _state_error(current) if current else NotFoundError("Card not found", details={"code": code})
        await tx.append([_credit_entry(consumed, redeemer_id)])
        await tx.record_activity(ActivityRecord(
            actor_id=redeemer_id,
            action_type="redeem_card",
            description=f"Redeemed card worth {consumed.value} points",
            metadata={"code": code, "value": consumed.value},
        ))
        return consumed

    consumed = await store.run_atomic(_apply)
    log.info("card_redeemed", code=code, redeemer_id=redeemer_id, value=consumed.value)
    if get_settings().verify_redemptions:
        try:
            await ensure_card_credited(consumed)
        except StoreUnavailable as e:
            # Committed already; the reconcile job re-checks consumed cards.
            log.warning("redemption_verification_deferred", code=code, redeemer_id=redeemer_id, error=str(e))
    return RedeemResult(code=code, granted=consumed.value)


async def ensure_card_credited(card: RedeemableCode) -> bool:
    """
    Check that a consumed card has its credit entry; re-insert it if missing.

    Returns True if a repair was made. If the repair itself fails the card is
    quarantined for manual review and PartialCommitDetected is raised.
    """
    store = get_store()
    if not card.consumed_by:
        return False
    if await store.find_entry_by_key(card_credit_key(card.code)) is not None:
        return False

    log.error("partial_commit_detected", kind="redemption", code=card.code, owner_id=card.consumed_by)

    async def _repair(tx: LedgerTransaction) -> None:
        await tx.append([_credit_entry(card, card.consumed_by, kind=EntryKind.RECONCILIATION)])
        await tx.record_activity(ActivityRecord(
            actor_id=None,
            action_type="repair_card_credit",
            description="Re-inserted missing recharge card credit",
            metadata={"code": card.code, "owner_id": card.consumed_by, "value": card.value},
        ))

    try:
        await store.run_atomic(_repair)
    except ConflictError:
        # Credit appeared concurrently (another repair won).
        return False
    except Exception as e:
        exc = PartialCommitDetected(
            "Card consumed without its credit entry",
            details={"code": card.code, "owner_id": card.consumed_by, "quarantined": True},
        )
        try:
            await store.quarantine_card(card.code, f"credit missing and repair failed: {e}")
        except StoreUnavailable as qe:
            log.error("quarantine_failed", code=card.code, error=str(qe))
            exc.details["quarantined"] = False
        sentry_sdk.capture_exception(exc)
        raise exc from e
    log.warning("partial_commit_repaired", kind="redemption", code=card.code, owner_id=card.consumed_by)
    return True


def generate_code(length: int | None = None) -> str:
    length = length or get_settings().card_code_length
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


async def generate_cards(
    count: int,
    value: int,
    actor_id: str,
    category_id: str | None = None,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    assigned_to: str | None = None,
) -> list[RedeemableCode]:
    """Create count ACTIVE cards worth value points each (admin)."""
    settings = get_settings()
    store = get_store()
    if count < 1 or count > settings.max_cards_per_batch:
        raise BadRequestError(
            f"Card count must be between 1 and {settings.max_cards_per_batch}",
            details={"count": count},
        )
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidAmount(details={"value": value})
    if valid_from and valid_until and as_utc(valid_from) >= as_utc(valid_until):
        raise BadRequestError("valid_until must be after valid_from")
    if category_id and await store.get_category(category_id) is None:
        raise NotFoundError("Category not found", details={"category_id": category_id})
    if assigned_to and await store.get_owner(assigned_to) is None:
        raise NotFoundError("Owner not found", details={"owner_id": assigned_to})

    codes: set[str] = set()
    while len(codes) < count:
        codes.add(generate_code())
    cards = [
        RedeemableCode(
            code=code,
            value=value,
            category_id=category_id,
            valid_from=as_utc(valid_from),
            valid_until=as_utc(valid_until),
            assigned_to=assigned_to,
            created_by=actor_id,
        )
        for code in codes
    ]
    step = settings.card_insert_batch_size
    for i in range(0, len(cards), step):
        await store.insert_cards(cards[i:i + step])
    log.info("cards_generated", count=count, value=value, actor_id=actor_id)
    return cards


async def disable_card(code: str, actor_id: str) -> RedeemableCode:
    """ACTIVE or CONSUMED -> DISABLED. A consumed card keeps its credit."""
    code = normalize_code(code)
    card = await get_store().disable_card(code)
    if card is None:
        raise NotFoundError("Card not found", details={"code": code})
    log.info("card_disabled", code=code, actor_id=actor_id)
    return card


async def list_cards(state: CardState | None = None, limit: int | None = None, offset: int = 0) -> list[RedeemableCode]:
    limit, offset = paginate(limit, offset)
    return await get_store().list_cards(state, limit, offset)
