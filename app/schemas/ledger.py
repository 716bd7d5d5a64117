"""Ledger domain records shared by the storage backends and services.

These are plain pydantic models, independent of how a backend persists them.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

ROLE_STUDENT = 1
ROLE_PARENT = 2
ROLE_TEACHER = 3
ROLE_ADMIN = 4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return uuid.uuid4().hex


class EntrySign(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class EntryKind(str, Enum):
    ADJUSTMENT = "adjustment"
    REDEMPTION = "redemption"
    TRANSFER = "transfer"
    RECONCILIATION = "reconciliation"
    REWARD = "reward"


class CardState(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    DISABLED = "disabled"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELIVERED = "delivered"


class Owner(BaseModel):
    id: str
    full_name: str = ""
    email: str | None = None
    user_code: str
    role_id: int = ROLE_STUDENT
    created_at: datetime = Field(default_factory=utcnow)


class LedgerEntry(BaseModel):
    """Immutable fact. ``seq`` is assigned by the store on append."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    owner_id: str
    amount: int = Field(gt=0)
    sign: EntrySign
    kind: EntryKind = EntryKind.ADJUSTMENT
    category_id: str | None = None
    reason: str = ""
    actor_id: str
    transfer_id: str | None = None
    counterparty_id: str | None = None
    card_code: str | None = None
    idempotency_key: str | None = None
    seq: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def delta(self) -> int:
        return self.amount if self.sign == EntrySign.CREDIT else -self.amount


class LedgerTotals(BaseModel):
    """Recomputed balance and the highest sequence it covers."""

    owner_id: str
    balance: int = 0
    seq: int = 0


class BalanceProjection(BaseModel):
    owner_id: str
    balance: int
    seq: int
    refreshed_at: datetime = Field(default_factory=utcnow)


class RedeemableCode(BaseModel):
    code: str
    value: int = Field(gt=0)
    state: CardState = CardState.ACTIVE
    consumed_by: str | None = None
    consumed_at: datetime | None = None
    category_id: str | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    quarantined: bool = False
    quarantine_reason: str | None = None


class PointCategory(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    default_points: int = Field(gt=0)
    is_positive: bool = True
    is_mandatory: bool = False
    is_restricted: bool = False
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Reward(BaseModel):
    """Catalog item bought with points. available_quantity None means unlimited."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    points_cost: int = Field(gt=0)
    available_quantity: int | None = Field(default=None, ge=0)
    role_id: int | None = None  # None: every role
    is_active: bool = True
    auto_approve: bool = False
    image_url: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class RewardRedemption(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    reward_id: str
    reward_name: str = ""
    cost: int = Field(gt=0)
    status: RedemptionStatus = RedemptionStatus.PENDING
    redemption_code: str
    entry_id: str | None = None
    refund_entry_id: str | None = None
    admin_notes: str | None = None
    decided_by: str | None = None
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ActivityRecord(BaseModel):
    actor_id: str | None
    action_type: str
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


def card_credit_key(code: str) -> str:
    return f"card:{code}"


def transfer_leg_key(transfer_id: str, sign: EntrySign) -> str:
    return f"transfer:{transfer_id}:{sign.value}"


def reward_debit_key(redemption_id: str) -> str:
    return f"reward:{redemption_id}:debit"


def reward_refund_key(redemption_id: str) -> str:
    return f"reward:{redemption_id}:refund"
