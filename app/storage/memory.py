"""In-process ledger store.

Every atomic unit holds one store-wide lock and stages its writes; commit
applies them all or restores the previous state. Reads never take the lock.
Used for local development and tests, where ``fail_next`` and
``simulate_lost_entries`` inject store faults.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from app.core.exceptions import ConflictError, StoreUnavailable
from app.core.logging import get_logger
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
from app.storage.base import LedgerStore, LedgerTransaction

T = TypeVar("T")

log = get_logger(__name__)


class MemoryTransaction(LedgerTransaction):
    def __init__(self, store: "MemoryLedgerStore") -> None:
        self._store = store
        self.cards: dict[str, RedeemableCode] = {}
        self.entries: list[LedgerEntry] = []
        self.heads: dict[str, int] = {}
        self.activity: list[ActivityRecord] = []
        self.rewards: dict[str, Reward] = {}
        self.redemptions: dict[str, RewardRedemption] = {}

    async def lock_owner(self, owner_id: str) -> None:
        # The unit already holds the store-wide lock.
        await self._store._io("lock_owner")

    async def balance(self, owner_id: str) -> int:
        await self._store._io("read")
        committed = sum(e.delta for e in self._store.entries if e.owner_id == owner_id)
        return committed + sum(e.delta for e in self.entries if e.owner_id == owner_id)

    async def consume_card(self, code: str, redeemer_id: str, at: datetime) -> RedeemableCode | None:
        await self._store._io("consume_card")
        card = self.cards.get(code) or self._store.cards.get(code)
        if card is None or card.state != CardState.ACTIVE:
            return None
        updated = card.model_copy(update={"state": CardState.CONSUMED, "consumed_by": redeemer_id, "consumed_at": at})
        self.cards[code] = updated
        return updated

    async def append(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        await self._store._io("append")
        staged_keys = {e.idempotency_key for e in self.entries if e.idempotency_key}
        out = []
        for entry in entries:
            key = entry.idempotency_key
            if key and (key in self._store.keys or key in staged_keys):
                raise ConflictError("Duplicate ledger entry", details={"idempotency_key": key})
            seq = self.heads.get(entry.owner_id, self._store.heads.get(entry.owner_id, 0)) + 1
            self.heads[entry.owner_id] = seq
            stamped = entry.model_copy(update={"seq": seq})
            self.entries.append(stamped)
            if key:
                staged_keys.add(key)
            out.append(stamped)
        return out

    async def record_activity(self, record: ActivityRecord) -> None:
        self.activity.append(record)

    async def take_reward(self, reward_id: str) -> Reward | None:
        await self._store._io("take_reward")
        reward = self.rewards.get(reward_id) or self._store.rewards.get(reward_id)
        if reward is None or not reward.is_active or reward.available_quantity == 0:
            return None
        if reward.available_quantity is not None:
            reward = reward.model_copy(update={"available_quantity": reward.available_quantity - 1})
            self.rewards[reward_id] = reward
        return reward

    async def restock_reward(self, reward_id: str) -> None:
        await self._store._io("restock_reward")
        reward = self.rewards.get(reward_id) or self._store.rewards.get(reward_id)
        if reward is not None and reward.available_quantity is not None:
            self.rewards[reward_id] = reward.model_copy(update={"available_quantity": reward.available_quantity + 1})

    async def insert_redemption(self, redemption: RewardRedemption) -> None:
        self.redemptions[redemption.id] = redemption

    async def transition_redemption(
        self,
        redemption_id: str,
        from_statuses: set[RedemptionStatus],
        fields: dict[str, Any],
    ) -> RewardRedemption | None:
        await self._store._io("transition_redemption")
        current = self.redemptions.get(redemption_id) or self._store.redemptions.get(redemption_id)
        if current is None or current.status not in from_statuses:
            return None
        updated = current.model_copy(update=fields)
        self.redemptions[redemption_id] = updated
        return updated


class MemoryLedgerStore(LedgerStore):
    def __init__(self, lock_timeout: float = 5.0) -> None:
        self.lock_timeout = lock_timeout
        self.owners: dict[str, Owner] = {}
        self.entries: list[LedgerEntry] = []
        self.keys: set[str] = set()
        self.heads: dict[str, int] = {}
        self.projections: dict[str, BalanceProjection] = {}
        self.cards: dict[str, RedeemableCode] = {}
        self.categories: dict[str, PointCategory] = {}
        self.activity: list[ActivityRecord] = []
        self.rewards: dict[str, Reward] = {}
        self.redemptions: dict[str, RewardRedemption] = {}
        self._lock = asyncio.Lock()
        self._faults: dict[str, list[list]] = {}
        self._lose_entries = False

    # Fault injection

    def fail_next(self, op: str, exc: Exception | None = None, skip: int = 0) -> None:
        """Raise exc (default StoreUnavailable) when op next runs, after letting skip calls through.

        op is one of: read, write, atomic, lock_owner, consume_card, take_reward,
        restock_reward, transition_redemption, append, commit.
        """
        self._faults.setdefault(op, []).append([skip, exc or StoreUnavailable(details={"op": op})])

    def simulate_lost_entries(self) -> None:
        """Next commit applies card changes but silently drops ledger entries."""
        self._lose_entries = True

    async def _io(self, op: str) -> None:
        await asyncio.sleep(0)
        self._raise_fault(op)

    def _raise_fault(self, op: str) -> None:
        pending = self._faults.get(op)
        if not pending:
            return
        if pending[0][0] > 0:
            pending[0][0] -= 1
            return
        raise pending.pop(0)[1]

    # Owners

    async def add_owner(self, owner: Owner) -> Owner:
        await self._io("write")
        if any(o.user_code == owner.user_code for o in self.owners.values()):
            raise ConflictError("User code already in use", details={"user_code": owner.user_code})
        self.owners[owner.id] = owner
        return owner

    async def get_owner(self, owner_id: str) -> Owner | None:
        await self._io("read")
        return self.owners.get(owner_id)

    async def get_owners(self, owner_ids: list[str]) -> list[Owner]:
        await self._io("read")
        return [self.owners[i] for i in owner_ids if i in self.owners]

    async def find_owners_by_codes(self, user_codes: list[str]) -> list[Owner]:
        await self._io("read")
        wanted = set(user_codes)
        return [o for o in self.owners.values() if o.user_code in wanted]

    # Ledger reads

    async def ledger_totals(self, owner_id: str) -> LedgerTotals:
        await self._io("read")
        mine = [e for e in self.entries if e.owner_id == owner_id]
        return LedgerTotals(
            owner_id=owner_id,
            balance=sum(e.delta for e in mine),
            seq=max((e.seq for e in mine), default=0),
        )

    async def head_seq(self, owner_id: str) -> int:
        await self._io("read")
        return self.heads.get(owner_id, 0)

    async def list_entries(self, owner_id: str, limit: int, offset: int) -> list[LedgerEntry]:
        await self._io("read")
        mine = sorted((e for e in self.entries if e.owner_id == owner_id), key=lambda e: e.seq, reverse=True)
        return mine[offset:offset + limit]

    async def find_entry_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        await self._io("read")
        return next((e for e in self.entries if e.idempotency_key == idempotency_key), None)

    async def find_unpaired_transfer_legs(self, limit: int) -> list[LedgerEntry]:
        await self._io("read")
        legs: dict[str, list[LedgerEntry]] = {}
        for e in self.entries:
            if e.transfer_id:
                legs.setdefault(e.transfer_id, []).append(e)
        return [group[0] for group in legs.values() if len(group) == 1][:limit]

    # Projections

    async def get_projection(self, owner_id: str) -> BalanceProjection | None:
        await self._io("read")
        return self.projections.get(owner_id)

    async def save_projection(self, projection: BalanceProjection) -> None:
        await self._io("write")
        current = self.projections.get(projection.owner_id)
        if current is not None and current.seq > projection.seq:
            return
        self.projections[projection.owner_id] = projection

    async def list_projections(self, limit: int, offset: int) -> list[BalanceProjection]:
        await self._io("read")
        ordered = [self.projections[k] for k in sorted(self.projections)]
        return ordered[offset:offset + limit]

    # Recharge cards

    async def get_card(self, code: str) -> RedeemableCode | None:
        await self._io("read")
        return self.cards.get(code)

    async def insert_cards(self, cards: list[RedeemableCode]) -> None:
        await self._io("write")
        clash = [c.code for c in cards if c.code in self.cards]
        if clash or len({c.code for c in cards}) != len(cards):
            raise ConflictError("Card code already exists", details={"codes": clash})
        for card in cards:
            self.cards[card.code] = card

    async def disable_card(self, code: str) -> RedeemableCode | None:
        await self._io("write")
        card = self.cards.get(code)
        if card is None:
            return None
        card = card.model_copy(update={"state": CardState.DISABLED})
        self.cards[code] = card
        return card

    async def quarantine_card(self, code: str, reason: str) -> None:
        await self._io("write")
        card = self.cards.get(code)
        if card is not None:
            self.cards[code] = card.model_copy(update={"quarantined": True, "quarantine_reason": reason})

    async def list_cards(self, state: CardState | None, limit: int, offset: int) -> list[RedeemableCode]:
        await self._io("read")
        cards = sorted(self.cards.values(), key=lambda c: c.created_at, reverse=True)
        if state is not None:
            cards = [c for c in cards if c.state == state]
        return cards[offset:offset + limit]

    async def find_consumed_cards_without_credit(self, limit: int) -> list[RedeemableCode]:
        await self._io("read")
        credited = {e.card_code for e in self.entries if e.card_code}
        return [c for c in self.cards.values() if c.consumed_by and c.code not in credited][:limit]

    # Categories

    async def list_categories(self) -> list[PointCategory]:
        await self._io("read")
        return sorted(self.categories.values(), key=lambda c: c.created_at, reverse=True)

    async def get_category(self, category_id: str) -> PointCategory | None:
        await self._io("read")
        return self.categories.get(category_id)

    async def insert_category(self, category: PointCategory) -> PointCategory:
        await self._io("write")
        self.categories[category.id] = category
        return category

    async def update_category(self, category_id: str, fields: dict[str, Any]) -> PointCategory | None:
        await self._io("write")
        category = self.categories.get(category_id)
        if category is None:
            return None
        category = category.model_copy(update=fields)
        self.categories[category_id] = category
        return category

    async def delete_category(self, category_id: str) -> bool:
        await self._io("write")
        return self.categories.pop(category_id, None) is not None

    # Rewards

    async def list_rewards(self, active_only: bool) -> list[Reward]:
        await self._io("read")
        rewards = sorted(self.rewards.values(), key=lambda r: r.created_at, reverse=True)
        return [r for r in rewards if r.is_active] if active_only else rewards

    async def get_reward(self, reward_id: str) -> Reward | None:
        await self._io("read")
        return self.rewards.get(reward_id)

    async def insert_reward(self, reward: Reward) -> Reward:
        await self._io("write")
        self.rewards[reward.id] = reward
        return reward

    async def update_reward(self, reward_id: str, fields: dict[str, Any]) -> Reward | None:
        await self._io("write")
        reward = self.rewards.get(reward_id)
        if reward is None:
            return None
        reward = reward.model_copy(update=fields)
        self.rewards[reward_id] = reward
        return reward

    async def delete_reward(self, reward_id: str) -> bool:
        await self._io("write")
        return self.rewards.pop(reward_id, None) is not None

    async def reward_has_redemptions(self, reward_id: str) -> bool:
        await self._io("read")
        return any(r.reward_id == reward_id for r in self.redemptions.values())

    async def get_redemption(self, redemption_id: str) -> RewardRedemption | None:
        await self._io("read")
        return self.redemptions.get(redemption_id)

    async def list_redemptions(
        self,
        owner_id: str | None,
        status: RedemptionStatus | None,
        limit: int,
        offset: int,
    ) -> list[RewardRedemption]:
        await self._io("read")
        found = sorted(self.redemptions.values(), key=lambda r: r.created_at, reverse=True)
        if owner_id is not None:
            found = [r for r in found if r.owner_id == owner_id]
        if status is not None:
            found = [r for r in found if r.status == status]
        return found[offset:offset + limit]

    # Health

    async def ping(self) -> None:
        await self._io("read")

    # Atomic units

    async def run_atomic(self, fn: Callable[[LedgerTransaction], Awaitable[T]]) -> T:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("Timed out waiting for ledger lock") from e
        try:
            self._raise_fault("atomic")
            tx = MemoryTransaction(self)
            result = await fn(tx)
            self._commit(tx)
            return result
        finally:
            self._lock.release()

    def _commit(self, tx: MemoryTransaction) -> None:
        snapshot = (
            dict(self.cards),
            dict(self.rewards),
            dict(self.redemptions),
            list(self.entries),
            set(self.keys),
            dict(self.heads),
            list(self.activity),
        )
        try:
            self.cards.update(tx.cards)
            self.rewards.update(tx.rewards)
            self.redemptions.update(tx.redemptions)
            self._raise_fault("commit")
            if self._lose_entries:
                self._lose_entries = False
                log.debug("memory_store_dropped_entries", count=len(tx.entries))
                return
            self.entries.extend(tx.entries)
            self.keys.update(e.idempotency_key for e in tx.entries if e.idempotency_key)
            self.heads.update(tx.heads)
            self.activity.extend(tx.activity)
        except Exception:
            (
                self.cards,
                self.rewards,
                self.redemptions,
                self.entries,
                self.keys,
                self.heads,
                self.activity,
            ) = snapshot
            raise
