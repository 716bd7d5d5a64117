from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class ActivityLog(Document):
    actor_id: str | None = None  # None for system jobs
    action_type: str
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "activity_log"
        indexes = [
            [("actor_id", 1), ("created_at", -1)],
            [("action_type", 1)],
        ]
