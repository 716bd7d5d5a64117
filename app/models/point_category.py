from datetime import datetime

from beanie import Document
from pydantic import Field

from app.schemas.ledger import new_id


class PointsCategory(Document):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    default_points: int
    is_positive: bool = True
    is_mandatory: bool = False
    is_restricted: bool = False
    created_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "point_categories"
