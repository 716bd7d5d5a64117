from datetime import datetime

from beanie import Document
from pydantic import Field


class PointsBalance(Document):
    """Cached balance per owner (``id`` is the owner id); re-derivable from the ledger."""
    id: str
    balance: int
    seq: int
    refreshed_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "points_balances"
