from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.schemas.ledger import RedemptionStatus, new_id


class UserReward(Document):
    """A reward bought with points; the DEBIT is ``entry_id`` in points_ledger."""
    id: str = Field(default_factory=new_id)
    owner_id: str
    reward_id: str
    reward_name: str = ""
    cost: int
    status: RedemptionStatus = RedemptionStatus.PENDING
    redemption_code: str
    entry_id: str | None = None
    refund_entry_id: str | None = None
    admin_notes: str | None = None
    decided_by: str | None = None
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "user_rewards"
        indexes = [
            IndexModel([("owner_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("status", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("reward_id", ASCENDING)]),
            IndexModel([("redemption_code", ASCENDING)], unique=True),
        ]
