"""Ledger store interface.

Ledger services only talk to a ``LedgerStore``. All writes to ledger entries
and card state go through ``run_atomic``; everything else is a read or an
administrative write that does not touch balances.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from app.core.config import get_settings
from app.schemas.ledger import (
    ActivityRecord,
    BalanceProjection,
    CardState,
    LedgerEntry,
    LedgerTotals,
    Owner,
    PointCategory,
    RedeemableCode,
    RedemptionStatus,
    Reward,
    RewardRedemption,
)

T = TypeVar("T")


class LedgerTransaction(ABC):
    """Writes staged inside one atomic unit. Nothing is visible until commit."""

    @abstractmethod
    async def lock_owner(self, owner_id: str) -> None:
        """Serialize this unit against every other unit that locks or appends for owner."""
        ...

    @abstractmethod
    async def balance(self, owner_id: str) -> int:
        """Balance as seen by this unit, including its own staged entries."""
        ...

    @abstractmethod
    async def consume_card(self, code: str, redeemer_id: str, at: datetime) -> RedeemableCode | None:
        """ACTIVE -> CONSUMED. Returns None if the card is not ACTIVE at this point."""
        ...

    @abstractmethod
    async def append(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        """Append entries, assigning per-owner ``seq``. Raises ConflictError on a duplicate idempotency key."""
        ...

    @abstractmethod
    async def record_activity(self, record: ActivityRecord) -> None:
        ...

    @abstractmethod
    async def take_reward(self, reward_id: str) -> Reward | None:
        """Take one unit of an active reward's stock. None if inactive, missing or out of stock."""
        ...

    @abstractmethod
    async def restock_reward(self, reward_id: str) -> None:
        """Return one unit to a limited reward's stock."""
        ...

    @abstractmethod
    async def insert_redemption(self, redemption: RewardRedemption) -> None:
        ...

    @abstractmethod
    async def transition_redemption(
        self,
        redemption_id: str,
        from_statuses: set[RedemptionStatus],
        fields: dict[str, Any],
    ) -> RewardRedemption | None:
        """Apply fields only if the redemption is currently in from_statuses; None otherwise."""
        ...


class LedgerStore(ABC):
    # Owners

    @abstractmethod
    async def add_owner(self, owner: Owner) -> Owner:
        ...

    @abstractmethod
    async def get_owner(self, owner_id: str) -> Owner | None:
        ...

    @abstractmethod
    async def get_owners(self, owner_ids: list[str]) -> list[Owner]:
        ...

    @abstractmethod
    async def find_owners_by_codes(self, user_codes: list[str]) -> list[Owner]:
        ...

    async def find_owner_by_code(self, user_code: str) -> Owner | None:
        found = await self.find_owners_by_codes([user_code])
        return found[0] if found else None

    # Ledger reads

    @abstractmethod
    async def ledger_totals(self, owner_id: str) -> LedgerTotals:
        """Recompute balance and max seq from entries in a single read."""
        ...

    @abstractmethod
    async def head_seq(self, owner_id: str) -> int:
        ...

    @abstractmethod
    async def list_entries(self, owner_id: str, limit: int, offset: int) -> list[LedgerEntry]:
        """Newest first."""
        ...

    @abstractmethod
    async def find_entry_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        ...

    @abstractmethod
    async def find_unpaired_transfer_legs(self, limit: int) -> list[LedgerEntry]:
        """Transfer entries whose paired leg does not exist."""
        ...

    # Projections

    @abstractmethod
    async def get_projection(self, owner_id: str) -> BalanceProjection | None:
        ...

    @abstractmethod
    async def save_projection(self, projection: BalanceProjection) -> None:
        """Upsert; a projection at a lower seq never replaces a newer one."""
        ...

    @abstractmethod
    async def list_projections(self, limit: int, offset: int) -> list[BalanceProjection]:
        ...

    # Recharge cards

    @abstractmethod
    async def get_card(self, code: str) -> RedeemableCode | None:
        ...

    @abstractmethod
    async def insert_cards(self, cards: list[RedeemableCode]) -> None:
        """Raises ConflictError if any code already exists."""
        ...

    @abstractmethod
    async def disable_card(self, code: str) -> RedeemableCode | None:
        ...

    @abstractmethod
    async def quarantine_card(self, code: str, reason: str) -> None:
        ...

    @abstractmethod
    async def list_cards(self, state: CardState | None, limit: int, offset: int) -> list[RedeemableCode]:
        ...

    @abstractmethod
    async def find_consumed_cards_without_credit(self, limit: int) -> list[RedeemableCode]:
        ...

    # Categories

    @abstractmethod
    async def list_categories(self) -> list[PointCategory]:
        ...

    @abstractmethod
    async def get_category(self, category_id: str) -> PointCategory | None:
        ...

    @abstractmethod
    async def insert_category(self, category: PointCategory) -> PointCategory:
        ...

    @abstractmethod
    async def update_category(self, category_id: str, fields: dict[str, Any]) -> PointCategory | None:
        ...

    @abstractmethod
    async def delete_category(self, category_id: str) -> bool:
        ...

    # Rewards

    @abstractmethod
    async def list_rewards(self, active_only: bool) -> list[Reward]:
        ...

    @abstractmethod
    async def get_reward(self, reward_id: str) -> Reward | None:
        ...

    @abstractmethod
    async def insert_reward(self, reward: Reward) -> Reward:
        ...

    @abstractmethod
    async def update_reward(self, reward_id: str, fields: dict[str, Any]) -> Reward | None:
        ...

    @abstractmethod
    async def delete_reward(self, reward_id: str) -> bool:
        ...

    @abstractmethod
    async def reward_has_redemptions(self, reward_id: str) -> bool:
        ...

    @abstractmethod
    async def get_redemption(self, redemption_id: str) -> RewardRedemption | None:
        ...

    @abstractmethod
    async def list_redemptions(
        self,
        owner_id: str | None,
        status: RedemptionStatus | None,
        limit: int,
        offset: int,
    ) -> list[RewardRedemption]:
        """Newest first."""
        ...

    # Health

    @abstractmethod
    async def ping(self) -> None:
        """Raise StoreUnavailable if the backend cannot serve requests."""
        ...

    # Atomic units

    @abstractmethod
    async def run_atomic(self, fn: Callable[[LedgerTransaction], Awaitable[T]]) -> T:
        """Run fn inside one all-or-nothing unit and return its result.

        fn may be invoked more than once when the backend retries a transient
        conflict, so it must only write through the transaction it is given.
        """
        ...


_store: LedgerStore | None = None


def get_store() -> LedgerStore:
    global _store
    if _store is None:
        settings = get_settings()
        if settings.ledger_backend == "memory":
            from app.storage.memory import MemoryLedgerStore
            _store = MemoryLedgerStore(lock_timeout=settings.ledger_lock_timeout_seconds)
        else:
            from app.storage.mongo import MongoLedgerStore
            _store = MongoLedgerStore()
    return _store


def use_store(store: LedgerStore | None) -> None:
    """Replace the process-wide store (None resets to the configured backend)."""
    global _store
    _store = store
