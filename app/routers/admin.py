from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.pagination import DEFAULT_LIMIT, MAX_LIMIT
from app.deps import require_admin
from app.schemas.ledger import CardState, Owner, RedemptionStatus
from app.services import balances as balances_service
from app.services import cards as cards_service
from app.services import categories as categories_service
from app.services import reconcile as reconcile_service
from app.services import rewards as rewards_service

router = APIRouter()


class GenerateCardsRequest(BaseModel):
    count: int = Field(ge=1)
    value: int
    category_id: str | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    assigned_to: str | None = None


class CategoryRequest(BaseModel):
    name: str
    description: str = ""
    default_points: int
    is_positive: bool = True
    is_mandatory: bool = False
    is_restricted: bool = False


class CategoryUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    default_points: int | None = None
    is_positive: bool | None = None
    is_mandatory: bool | None = None
    is_restricted: bool | None = None


class RewardRequest(BaseModel):
    name: str
    description: str = ""
    points_cost: int
    available_quantity: int | None = None
    role_id: int | None = None
    auto_approve: bool = False
    image_url: str | None = None


class RewardUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    points_cost: int | None = None
    available_quantity: int | None = None
    role_id: int | None = None
    is_active: bool | None = None
    auto_approve: bool | None = None
    image_url: str | None = None


class RedemptionStatusRequest(BaseModel):
    status: RedemptionStatus
    admin_notes: str | None = Field(None, max_length=500)


@router.get("/owners/{owner_id}/balance")
async def admin_owner_balance(
    owner_id: str,
    verify: bool = Query(False),
    user: Owner = Depends(require_admin),
):
    """Admin: balance of any owner; verify=true recomputes from the ledger."""
    balance = await balances_service.get_balance(owner_id, verify=verify)
    return {"owner_id": owner_id, "balance": balance}


@router.get("/cards")
async def admin_cards_list(
    user: Owner = Depends(require_admin),
    state: CardState | None = None,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
):
    """Admin: list recharge cards (newest first)."""
    cards = await cards_service.list_cards(state, limit, offset)
    return {"cards": [c.model_dump(mode="json") for c in cards], "limit": limit, "offset": offset}


@router.post("/cards")
async def admin_cards_generate(body: GenerateCardsRequest, user: Owner = Depends(require_admin)):
    """Admin: generate a batch of recharge cards."""
    cards = await cards_service.generate_cards(
        body.count,
        body.value,
        user.id,
        category_id=body.category_id,
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        assigned_to=body.assigned_to,
    )
    return {"count": len(cards), "cards": [c.model_dump(mode="json") for c in cards]}


@router.post("/cards/{code}/disable")
async def admin_cards_disable(code: str, user: Owner = Depends(require_admin)):
    """Admin: disable a recharge card."""
    card = await cards_service.disable_card(code, user.id)
    return card.model_dump(mode="json")


@router.get("/categories")
async def admin_categories_list(user: Owner = Depends(require_admin)):
    categories = await categories_service.list_categories()
    return {"categories": [c.model_dump(mode="json") for c in categories]}


@router.post("/categories")
async def admin_categories_create(body: CategoryRequest, user: Owner = Depends(require_admin)):
    category = await categories_service.create_category(
        body.name,
        body.default_points,
        user.id,
        description=body.description,
        is_positive=body.is_positive,
        is_mandatory=body.is_mandatory,
        is_restricted=body.is_restricted,
    )
    return category.model_dump(mode="json")


@router.patch("/categories/{category_id}")
async def admin_categories_update(
    category_id: str,
    body: CategoryUpdateRequest,
    user: Owner = Depends(require_admin),
):
    category = await categories_service.update_category(category_id, body.model_dump(exclude_unset=True))
    return category.model_dump(mode="json")


@router.delete("/categories/{category_id}")
async def admin_categories_delete(category_id: str, user: Owner = Depends(require_admin)):
    await categories_service.delete_category(category_id)
    return {"status": "deleted"}


@router.get("/rewards")
async def admin_rewards_list(user: Owner = Depends(require_admin)):
    rewards = await rewards_service.list_rewards(active_only=False)
    return {"rewards": [r.model_dump(mode="json") for r in rewards]}


@router.post("/rewards")
async def admin_rewards_create(body: RewardRequest, user: Owner = Depends(require_admin)):
    reward = await rewards_service.create_reward(
        body.name,
        body.points_cost,
        user.id,
        description=body.description,
        available_quantity=body.available_quantity,
        role_id=body.role_id,
        auto_approve=body.auto_approve,
        image_url=body.image_url,
    )
    return reward.model_dump(mode="json")


@router.patch("/rewards/{reward_id}")
async def admin_rewards_update(
    reward_id: str,
    body: RewardUpdateRequest,
    user: Owner = Depends(require_admin),
):
    reward = await rewards_service.update_reward(reward_id, body.model_dump(exclude_unset=True))
    return reward.model_dump(mode="json")


@router.delete("/rewards/{reward_id}")
async def admin_rewards_delete(reward_id: str, user: Owner = Depends(require_admin)):
    await rewards_service.delete_reward(reward_id)
    return {"status": "deleted"}


@router.get("/redemptions")
async def admin_redemptions_list(
    user: Owner = Depends(require_admin),
    status: RedemptionStatus | None = None,
    owner_id: str | None = None,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
):
    """Admin: reward redemptions (newest first), optionally by status or owner."""
    redemptions = await rewards_service.list_redemptions(owner_id, status, limit, offset)
    return {"redemptions": [r.model_dump(mode="json") for r in redemptions], "limit": limit, "offset": offset}


@router.post("/redemptions/{redemption_id}/status")
async def admin_redemptions_status(
    redemption_id: str,
    body: RedemptionStatusRequest,
    user: Owner = Depends(require_admin),
):
    """Admin: approve, deliver or reject a redemption. Rejecting refunds the points."""
    redemption = await rewards_service.update_redemption_status(
        redemption_id, body.status, user.id, admin_notes=body.admin_notes
    )
    return redemption.model_dump(mode="json")


@router.post("/reconcile")
async def admin_reconcile(user: Owner = Depends(require_admin)):
    """Admin: run the ledger invariant scan now."""
    report = await reconcile_service.reconcile()
    return report.model_dump()
