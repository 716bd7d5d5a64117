"""Teacher/admin point awards and deductions, single or batch."""

from pydantic import BaseModel

from app.core.exceptions import BadRequestError, InvalidAmount, NotFoundError
from app.core.logging import get_logger
from app.schemas.ledger import ActivityRecord, EntryKind, EntrySign, LedgerEntry
from app.storage.base import LedgerTransaction, get_store

log = get_logger(__name__)


class AdjustResult(BaseModel):
    entry_ids: list[str]
    amount: int
    sign: EntrySign
    missing: list[str] = []


async def adjust_points(
    owner_ids: list[str],
    actor_id: str,
    amount: int | None = None,
    sign: EntrySign | None = None,
    category_id: str | None = None,
    reason: str | None = None,
) -> AdjustResult:
    """
    Credit or debit the same amount for each owner, as one atomic unit.

    A category supplies default_points when amount is missing or zero and its
    is_positive flag when sign is missing. Deductions are not balance checked.
    Unknown owner ids are returned in ``missing``.
    """
    store = get_store()
    if not owner_ids:
        raise BadRequestError("At least one owner is required")
    if category_id:
        category = await store.get_category(category_id)
        if category is None:
            raise NotFoundError("Category not found", details={"category_id": category_id})
        if not amount:
            amount = category.default_points
        if sign is None:
            sign = EntrySign.CREDIT if category.is_positive else EntrySign.DEBIT
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(details={"amount": amount})
    sign = sign or EntrySign.CREDIT

    wanted = list(dict.fromkeys(owner_ids))
    owners = await store.get_owners(wanted)
    found = {o.id for o in owners}
    missing = [i for i in wanted if i not in found]
    if not owners:
        raise NotFoundError("No matching owners", details={"missing": missing})

    reason = (reason or "").strip() or ("Points awarded" if sign == EntrySign.CREDIT else "Points deducted")
    entries = [
        LedgerEntry(
            owner_id=owner_id,
            amount=amount,
            sign=sign,
            kind=EntryKind.ADJUSTMENT,
            category_id=category_id,
            reason=reason,
            actor_id=actor_id,
        )
        for owner_id in wanted
        if owner_id in found
    ]

    async def _apply(tx: LedgerTransaction) -> list[LedgerEntry]:
        if sign == EntrySign.DEBIT:
            for entry in entries:
                await tx.lock_owner(entry.owner_id)
        appended = await tx.append(entries)
        await tx.record_activity(ActivityRecord(
            actor_id=actor_id,
            action_type="add_points" if sign == EntrySign.CREDIT else "deduct_points",
            description=f"{'Added' if sign == EntrySign.CREDIT else 'Deducted'} {amount} points for {len(entries)} users",
            metadata={
                "owner_ids": [e.owner_id for e in entries],
                "amount": amount,
                "sign": sign.value,
                "category_id": category_id,
            },
        ))
        return appended

    appended = await store.run_atomic(_apply)
    log.info(
        "points_adjusted",
        actor_id=actor_id,
        sign=sign.value,
        amount=amount,
        count=len(appended),
        missing=len(missing),
    )
    return AdjustResult(entry_ids=[e.id for e in appended], amount=amount, sign=sign, missing=missing)


async def adjust_points_by_code(
    user_codes: list[str],
    actor_id: str,
    amount: int | None = None,
    sign: EntrySign | None = None,
    category_id: str | None = None,
    reason: str | None = None,
) -> AdjustResult:
    """Same as adjust_points, addressing owners by user_code; unknown codes come back in ``missing``."""
    codes = list(dict.fromkeys(c.strip() for c in user_codes if c and c.strip()))
    if not codes:
        raise BadRequestError("At least one user code is required")
    owners = await get_store().find_owners_by_codes(codes)
    by_code = {o.user_code: o.id for o in owners}
    missing_codes = [c for c in codes if c not in by_code]
    if not by_code:
        raise NotFoundError("No matching users", details={"missing": missing_codes})
    result = await adjust_points(
        [by_code[c] for c in codes if c in by_code],
        actor_id,
        amount=amount,
        sign=sign,
        category_id=category_id,
        reason=reason,
    )
    return result.model_copy(update={"missing": missing_codes})
