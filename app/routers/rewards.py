from fastapi import APIRouter, Depends, Query

from app.core.pagination import DEFAULT_LIMIT, MAX_LIMIT
from app.deps import get_current_user
from app.schemas.ledger import Owner
from app.services import rewards as rewards_service

router = APIRouter()


@router.get("")
async def rewards_list(user: Owner = Depends(get_current_user)):
    """Active rewards open to the current user's role."""
    rewards = await rewards_service.list_rewards(active_only=True, role_id=user.role_id)
    return {"rewards": [r.model_dump(mode="json") for r in rewards]}


@router.get("/redemptions")
async def rewards_my_redemptions(
    user: Owner = Depends(get_current_user),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
):
    redemptions = await rewards_service.list_redemptions(user.id, limit=limit, offset=offset)
    return {"redemptions": [r.model_dump(mode="json") for r in redemptions], "limit": limit, "offset": offset}


@router.post("/{reward_id}/redeem")
async def rewards_redeem(reward_id: str, user: Owner = Depends(get_current_user)):
    """Spend points on a reward; returns the redemption record."""
    redemption = await rewards_service.redeem_reward(user.id, reward_id)
    return redemption.model_dump(mode="json")
