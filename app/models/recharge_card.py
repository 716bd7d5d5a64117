from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from app.schemas.ledger import CardState


class RechargeCard(Document):
    code: Indexed(str, unique=True)
    value: int
    state: CardState = CardState.ACTIVE
    consumed_by: str | None = None
    consumed_at: datetime | None = None
    category_id: str | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    quarantined: bool = False  # partial commit needing manual review
    quarantine_reason: str | None = None

    class Settings:
        name = "recharge_cards"
        indexes = [[("state", 1), ("created_at", -1)]]
