from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.deps import get_current_user
from app.schemas.ledger import Owner
from app.services import cards as cards_service

router = APIRouter()


class RedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


@router.post("/redeem")
async def cards_redeem(body: RedeemRequest, user: Owner = Depends(get_current_user)):
    """Redeem a recharge card; returns the points granted."""
    result = await cards_service.redeem(body.code, user.id)
    return {"code": result.code, "granted": result.granted}
