from datetime import datetime

from beanie import Document
from pydantic import Field

from app.schemas.ledger import new_id


class CatalogReward(Document):
    """Reward catalog item. available_quantity None: unlimited stock."""
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    points_cost: int
    available_quantity: int | None = None
    role_id: int | None = None
    is_active: bool = True
    auto_approve: bool = False
    image_url: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "rewards"
        indexes = [[("is_active", 1), ("created_at", -1)]]
