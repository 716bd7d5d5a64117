from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator

from app.core.pagination import DEFAULT_LIMIT, MAX_LIMIT
from app.deps import get_current_user, require_staff
from app.schemas.ledger import EntrySign, LedgerEntry, Owner
from app.services import balances as balances_service
from app.services import points as points_service
from app.services import transfers as transfers_service

router = APIRouter()


class TransferRequest(BaseModel):
    recipient_code: str | None = None
    recipient_id: str | None = None
    amount: int
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _one_recipient(self):
        if not (self.recipient_code or self.recipient_id):
            raise ValueError("recipient_code or recipient_id is required")
        return self


class AdjustRequest(BaseModel):
    user_codes: list[str] = Field(min_length=1)
    amount: int | None = None
    sign: EntrySign | None = None
    category_id: str | None = None
    reason: str | None = Field(default=None, max_length=500)


def _entry_out(e: LedgerEntry) -> dict:
    return {
        "id": e.id,
        "amount": e.amount,
        "sign": e.sign.value,
        "kind": e.kind.value,
        "category_id": e.category_id,
        "reason": e.reason,
        "actor_id": e.actor_id,
        "transfer_id": e.transfer_id,
        "card_code": e.card_code,
        "seq": e.seq,
        "created_at": e.created_at.isoformat(),
    }


@router.get("/balance")
async def points_balance(user: Owner = Depends(get_current_user)):
    """Return current points balance."""
    balance = await balances_service.get_balance(user.id)
    return {"balance": balance}


@router.get("/ledger")
async def points_ledger(
    user: Owner = Depends(get_current_user),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    entries = await balances_service.list_entries(user.id, limit, offset)
    return {"entries": [_entry_out(e) for e in entries], "limit": limit, "offset": offset}


@router.post("/transfer")
async def points_transfer(body: TransferRequest, user: Owner = Depends(get_current_user)):
    """Transfer points to another user, addressed by user code or id."""
    if body.recipient_code:
        result = await transfers_service.transfer_by_code(user.id, body.recipient_code, body.amount, body.reason)
    else:
        result = await transfers_service.transfer(user.id, body.recipient_id, body.amount, body.reason)
    return {"transfer_id": result.transfer_id, "amount": result.amount}


@router.post("/adjust")
async def points_adjust(body: AdjustRequest, user: Owner = Depends(require_staff)):
    """Teacher/admin: award or deduct points for one or more users."""
    result = await points_service.adjust_points_by_code(
        body.user_codes,
        user.id,
        amount=body.amount,
        sign=body.sign,
        category_id=body.category_id,
        reason=body.reason,
    )
    return result.model_dump(mode="json")
