from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.schemas.ledger import EntryKind, EntrySign, new_id


class PointsLedgerEntry(Document):
    """Append-only. Never updated or deleted; corrections are new entries."""
    id: str = Field(default_factory=new_id)
    owner_id: str
    amount: int
    sign: EntrySign
    kind: EntryKind = EntryKind.ADJUSTMENT
    category_id: str | None = None
    reason: str = ""
    actor_id: str
    transfer_id: str | None = None
    counterparty_id: str | None = None
    card_code: str | None = None
    idempotency_key: str | None = None
    seq: int
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "points_ledger"
        indexes = [
            IndexModel([("owner_id", ASCENDING), ("seq", DESCENDING)], unique=True),
            IndexModel(
                [("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
            IndexModel([("transfer_id", ASCENDING)], sparse=True),
            IndexModel([("card_code", ASCENDING)], sparse=True),
        ]
