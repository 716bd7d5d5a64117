"""Reward catalog and spending points on rewards."""

import secrets
from typing import Any

from app.core.exceptions import (
    BadRequestError,
    ConflictError,
    InsufficientBalance,
    InvalidStatusTransition,
    NotFoundError,
    RewardUnavailable,
)
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.schemas.ledger import (
    ActivityRecord,
    EntryKind,
    EntrySign,
    LedgerEntry,
    Owner,
    RedemptionStatus,
    Reward,
    RewardRedemption,
    new_id,
    reward_debit_key,
    reward_refund_key,
    utcnow,
)
from app.services import balances as balances_service
from app.storage.base import LedgerTransaction, get_store

log = get_logger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I
CODE_LENGTH = 12

EDITABLE_FIELDS = (
    "name",
    "description",
    "points_cost",
    "available_quantity",
    "role_id",
    "is_active",
    "auto_approve",
    "image_url",
)
NULLABLE_FIELDS = ("available_quantity", "role_id", "image_url")

# Rejection refunds the points and returns the item to stock.
TRANSITIONS: dict[RedemptionStatus, set[RedemptionStatus]] = {
    RedemptionStatus.PENDING: {RedemptionStatus.APPROVED, RedemptionStatus.REJECTED, RedemptionStatus.DELIVERED},
    RedemptionStatus.APPROVED: {RedemptionStatus.DELIVERED, RedemptionStatus.REJECTED},
}


def redemption_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def _validate(fields: dict[str, Any]) -> None:
    if "name" in fields and not (fields["name"] or "").strip():
        raise BadRequestError("Reward name is required")
    if "points_cost" in fields:
        cost = fields["points_cost"]
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise BadRequestError("points_cost must be a positive integer")
    quantity = fields.get("available_quantity")
    if quantity is not None and (isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0):
        raise BadRequestError("available_quantity must be a non-negative integer or null")


# Catalog


async def list_rewards(active_only: bool = True, role_id: int | None = None) -> list[Reward]:
    """Catalog, newest first. With role_id, only rewards open to that role."""
    rewards = await get_store().list_rewards(active_only)
    if role_id is not None:
        rewards = [r for r in rewards if r.role_id in (None, 0, role_id)]
    return rewards


async def create_reward(
    name: str,
    points_cost: int,
    actor_id: str,
    description: str = "",
    available_quantity: int | None = None,
    role_id: int | None = None,
    auto_approve: bool = False,
    image_url: str | None = None,
) -> Reward:
    _validate({"name": name, "points_cost": points_cost, "available_quantity": available_quantity})
    reward = Reward(
        name=name.strip(),
        description=description,
        points_cost=points_cost,
        available_quantity=available_quantity,
        role_id=role_id or None,
        auto_approve=auto_approve,
        image_url=image_url,
        created_by=actor_id,
    )
    reward = await get_store().insert_reward(reward)
    log.info("reward_created", reward_id=reward.id, actor_id=actor_id, points_cost=points_cost)
    return reward


async def update_reward(reward_id: str, fields: dict[str, Any]) -> Reward:
    """Partial update. None clears the nullable fields and is ignored elsewhere."""
    fields = {
        k: v for k, v in fields.items()
        if k in EDITABLE_FIELDS and (v is not None or k in NULLABLE_FIELDS)
    }
    _validate(fields)
    if "name" in fields:
        fields["name"] = fields["name"].strip()
    store = get_store()
    reward = await store.update_reward(reward_id, fields) if fields else await store.get_reward(reward_id)
    if reward is None:
        raise NotFoundError("Reward not found", details={"reward_id": reward_id})
    return reward


async def delete_reward(reward_id: str) -> None:
    store = get_store()
    if await store.reward_has_redemptions(reward_id):
        raise ConflictError(
            "Reward has redemptions; deactivate it instead",
            details={"reward_id": reward_id},
        )
    if not await store.delete_reward(reward_id):
        raise NotFoundError("Reward not found", details={"reward_id": reward_id})
    log.info("reward_deleted", reward_id=reward_id)


# Redemption


def _check_available(reward: Reward | None, reward_id: str, owner: Owner) -> Reward:
    if reward is None:
        raise NotFoundError("Reward not found", details={"reward_id": reward_id})
    if not reward.is_active:
        raise RewardUnavailable(reward_id, "inactive")
    if reward.role_id not in (None, 0, owner.role_id):
        raise RewardUnavailable(reward_id, "role")
    if reward.available_quantity == 0:
        raise RewardUnavailable(reward_id, "out_of_stock")
    return reward


async def redeem_reward(owner_id: str, reward_id: str) -> RewardRedemption:
    """
    Spend points on a catalog reward.

    Like a transfer, the balance is checked up front and again inside the
    atomic unit after the owner is locked. The stock decrement, the DEBIT and
    the redemption record commit together or not at all.
    """
    store = get_store()
    owner = await store.get_owner(owner_id)
    if owner is None:
        raise NotFoundError("Owner not found", details={"owner_id": owner_id})
    reward = _check_available(await store.get_reward(reward_id), reward_id, owner)
    available = await balances_service.get_balance(owner_id)
    if available < reward.points_cost:
        raise InsufficientBalance(owner_id, reward.points_cost, available)

    redemption_id = new_id()
    code = redemption_code()

    async def _apply(tx: LedgerTransaction) -> RewardRedemption:
        await tx.lock_owner(owner_id)
        taken = await tx.take_reward(reward_id)
        if taken is None:
            current = await store.get_reward(reward_id)
            raise RewardUnavailable(reward_id, "out_of_stock" if current and current.is_active else "inactive")
        balance = await tx.balance(owner_id)
        if balance < taken.points_cost:
            raise InsufficientBalance(owner_id, taken.points_cost, balance)
        [debit] = await tx.append([LedgerEntry(
            owner_id=owner_id,
            amount=taken.points_cost,
            sign=EntrySign.DEBIT,
            kind=EntryKind.REWARD,
            reason=f"Reward: {taken.name}",
            actor_id=owner_id,
            idempotency_key=reward_debit_key(redemption_id),
        )])
        redemption = RewardRedemption(
            id=redemption_id,
            owner_id=owner_id,
            reward_id=reward_id,
            reward_name=taken.name,
            cost=taken.points_cost,
            status=RedemptionStatus.APPROVED if taken.auto_approve else RedemptionStatus.PENDING,
            redemption_code=code,
            entry_id=debit.id,
        )
        await tx.insert_redemption(redemption)
        await tx.record_activity(ActivityRecord(
            actor_id=owner_id,
            action_type="redeem_reward",
            description=f"Redeemed reward {taken.name} for {taken.points_cost} points",
            metadata={"redemption_id": redemption_id, "reward_id": reward_id, "cost": taken.points_cost},
        ))
        return redemption

    redemption = await store.run_atomic(_apply)
    log.info(
        "reward_redeemed",
        redemption_id=redemption.id,
        owner_id=owner_id,
        reward_id=reward_id,
        cost=redemption.cost,
        status=redemption.status.value,
    )
    return redemption


async def update_redemption_status(
    redemption_id: str,
    status: RedemptionStatus,
    actor_id: str,
    admin_notes: str | None = None,
) -> RewardRedemption:
    """Admin decision on a redemption. Rejecting credits the cost back."""
    store = get_store()
    redemption = await store.get_redemption(redemption_id)
    if redemption is None:
        raise NotFoundError("Redemption not found", details={"redemption_id": redemption_id})
    allowed_from = {current for current, targets in TRANSITIONS.items() if status in targets}
    if redemption.status not in allowed_from:
        raise InvalidStatusTransition(redemption_id, redemption.status.value, status.value)

    now = utcnow()
    fields: dict[str, Any] = {"status": status, "decided_by": actor_id, "updated_at": now}
    if admin_notes is not None:
        fields["admin_notes"] = admin_notes
    if status == RedemptionStatus.DELIVERED:
        fields["delivered_at"] = now
    refund = None
    if status == RedemptionStatus.REJECTED:
        refund = LedgerEntry(
            owner_id=redemption.owner_id,
            amount=redemption.cost,
            sign=EntrySign.CREDIT,
            kind=EntryKind.REWARD,
            reason=f"Refund: {redemption.reward_name}",
            actor_id=actor_id,
            idempotency_key=reward_refund_key(redemption_id),
        )
        fields["refund_entry_id"] = refund.id

    async def _apply(tx: LedgerTransaction) -> RewardRedemption:
        updated = await tx.transition_redemption(redemption_id, allowed_from, fields)
        if updated is None:
            # Decided concurrently by someone else.
            current = await store.get_redemption(redemption_id)
            raise InvalidStatusTransition(
                redemption_id, current.status.value if current else "missing", status.value
            )
        if refund is not None:
            await tx.append([refund])
            await tx.restock_reward(updated.reward_id)
        await tx.record_activity(ActivityRecord(
            actor_id=actor_id,
            action_type=f"{status.value}_reward_redemption",
            description=f"Reward redemption {updated.reward_name} set to {status.value}",
            metadata={"redemption_id": redemption_id, "owner_id": updated.owner_id, "notes": admin_notes},
        ))
        return updated

    updated = await store.run_atomic(_apply)
    log.info("reward_redemption_updated", redemption_id=redemption_id, status=status.value, actor_id=actor_id)
    return updated


async def list_redemptions(
    owner_id: str | None = None,
    status: RedemptionStatus | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[RewardRedemption]:
    limit, offset = paginate(limit, offset)
    return await get_store().list_redemptions(owner_id, status, limit, offset)
