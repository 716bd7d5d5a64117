"""MongoDB ledger store (Beanie documents on Motor).

Atomic units are multi-document transactions run through
``ClientSession.with_transaction``, which retries the callback on transient
write conflicts and unknown commit results. The server must be a replica set
(Atlas always is).
"""

from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from app.core.exceptions import ConflictError, StoreUnavailable
from app.core.logging import get_logger
from app.db.init import get_client
from app.models.activity_log import ActivityLog
from app.models.catalog_reward import CatalogReward
from app.models.ledger_head import LedgerHead
from app.models.point_category import PointsCategory
from app.models.points_balance import PointsBalance
from app.models.points_ledger import PointsLedgerEntry
from app.models.recharge_card import RechargeCard
from app.models.user import User
from app.models.user_reward import UserReward
from app.schemas.ledger import (
    ActivityRecord,
    BalanceProjection,
    CardState,
    EntrySign,
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

_SIGNED_AMOUNT = {
    "$cond": [{"$eq": ["$sign", EntrySign.CREDIT.value]}, "$amount", {"$multiply": ["$amount", -1]}]
}


def _data(doc: BaseModel | dict[str, Any]) -> dict[str, Any]:
    if isinstance(doc, BaseModel):
        return doc.model_dump()
    data = dict(doc)
    if "_id" in data:
        data["id"] = data.pop("_id")
    return data


def _owner(user: User) -> Owner:
    data = user.model_dump()
    data["id"] = str(user.id)
    return Owner(**data)


def _entry(doc: PointsLedgerEntry | dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(**_data(doc))


def _card(doc: RechargeCard | dict[str, Any]) -> RedeemableCode:
    data = _data(doc)
    data.pop("id", None)
    return RedeemableCode(**data)


def _category(doc: PointsCategory) -> PointCategory:
    return PointCategory(**_data(doc))


def _projection(doc: PointsBalance) -> BalanceProjection:
    data = _data(doc)
    data["owner_id"] = data.pop("id")
    return BalanceProjection(**data)


def _reward(doc: CatalogReward | dict[str, Any]) -> Reward:
    return Reward(**_data(doc))


def _redemption(doc: UserReward | dict[str, Any]) -> RewardRedemption:
    return RewardRedemption(**_data(doc))


def _bson_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v.value if isinstance(v, Enum) else v for k, v in fields.items()}


@asynccontextmanager
async def _driver_errors(op: str):
    """Surface driver failures as StoreUnavailable."""
    try:
        yield
    except DuplicateKeyError as e:
        raise ConflictError("Duplicate key", details={"op": op}) from e
    except PyMongoError as e:
        log.warning("ledger_store_unavailable", op=op, error=str(e))
        raise StoreUnavailable(details={"op": op}) from e


class MongoTransaction(LedgerTransaction):
    def __init__(self, session) -> None:
        self.session = session

    async def lock_owner(self, owner_id: str) -> None:
        await LedgerHead.get_motor_collection().update_one(
            {"_id": owner_id},
            {"$inc": {"locks": 1}, "$setOnInsert": {"seq": 0}},
            upsert=True,
            session=self.session,
        )

    async def balance(self, owner_id: str) -> int:
        rows = await PointsLedgerEntry.get_motor_collection().aggregate(
            [
                {"$match": {"owner_id": owner_id}},
                {"$group": {"_id": None, "balance": {"$sum": _SIGNED_AMOUNT}}},
            ],
            session=self.session,
        ).to_list(length=1)
        return int(rows[0]["balance"]) if rows else 0

    async def consume_card(self, code: str, redeemer_id: str, at: datetime) -> RedeemableCode | None:
        doc = await RechargeCard.get_motor_collection().find_one_and_update(
            {"code": code, "state": CardState.ACTIVE.value},
            {"$set": {"state": CardState.CONSUMED.value, "consumed_by": redeemer_id, "consumed_at": at}},
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )
        return _card(doc) if doc else None

    async def append(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        heads = LedgerHead.get_motor_collection()
        out = []
        for entry in entries:
            head = await heads.find_one_and_update(
                {"_id": entry.owner_id},
                {"$inc": {"seq": 1}, "$setOnInsert": {"locks": 0}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=self.session,
            )
            stamped = entry.model_copy(update={"seq": head["seq"]})
            try:
                await PointsLedgerEntry(**stamped.model_dump()).insert(session=self.session)
            except DuplicateKeyError as e:
                raise ConflictError(
                    "Duplicate ledger entry", details={"idempotency_key": entry.idempotency_key}
                ) from e
            out.append(stamped)
        return out

    async def record_activity(self, record: ActivityRecord) -> None:
        await ActivityLog(**record.model_dump()).insert(session=self.session)

    async def take_reward(self, reward_id: str) -> Reward | None:
        rewards = CatalogReward.get_motor_collection()
        doc = await rewards.find_one_and_update(
            {"_id": reward_id, "is_active": True, "available_quantity": {"$gt": 0}},
            {"$inc": {"available_quantity": -1}},
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )
        if doc is None:
            # Unlimited stock
            doc = await rewards.find_one(
                {"_id": reward_id, "is_active": True, "available_quantity": None},
                session=self.session,
            )
        return _reward(doc) if doc else None

    async def restock_reward(self, reward_id: str) -> None:
        await CatalogReward.get_motor_collection().update_one(
            {"_id": reward_id, "available_quantity": {"$type": "number"}},
            {"$inc": {"available_quantity": 1}},
            session=self.session,
        )

    async def insert_redemption(self, redemption: RewardRedemption) -> None:
        await UserReward(**redemption.model_dump()).insert(session=self.session)

    async def transition_redemption(
        self,
        redemption_id: str,
        from_statuses: set[RedemptionStatus],
        fields: dict[str, Any],
    ) -> RewardRedemption | None:
        doc = await UserReward.get_motor_collection().find_one_and_update(
            {"_id": redemption_id, "status": {"$in": [s.value for s in from_statuses]}},
            {"$set": _bson_fields(fields)},
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )
        return _redemption(doc) if doc else None


class MongoLedgerStore(LedgerStore):
    # Owners

    async def add_owner(self, owner: Owner) -> Owner:
        data = owner.model_dump(exclude={"id"})
        async with _driver_errors("add_owner"):
            user = User(**data)
            if ObjectId.is_valid(owner.id):
                user.id = ObjectId(owner.id)
            await user.insert()
        return _owner(user)

    async def get_owner(self, owner_id: str) -> Owner | None:
        if not ObjectId.is_valid(owner_id):
            return None
        async with _driver_errors("get_owner"):
            user = await User.get(ObjectId(owner_id))
        return _owner(user) if user else None

    async def get_owners(self, owner_ids: list[str]) -> list[Owner]:
        ids = [ObjectId(i) for i in owner_ids if ObjectId.is_valid(i)]
        async with _driver_errors("get_owners"):
            users = await User.find({"_id": {"$in": ids}}).to_list()
        return [_owner(u) for u in users]

    async def find_owners_by_codes(self, user_codes: list[str]) -> list[Owner]:
        async with _driver_errors("find_owners_by_codes"):
            users = await User.find({"user_code": {"$in": user_codes}}).to_list()
        return [_owner(u) for u in users]

    # Ledger reads

    async def ledger_totals(self, owner_id: str) -> LedgerTotals:
        async with _driver_errors("ledger_totals"):
            rows = await PointsLedgerEntry.get_motor_collection().aggregate(
                [
                    {"$match": {"owner_id": owner_id}},
                    {"$group": {"_id": None, "balance": {"$sum": _SIGNED_AMOUNT}, "seq": {"$max": "$seq"}}},
                ]
            ).to_list(length=1)
        if not rows:
            return LedgerTotals(owner_id=owner_id)
        return LedgerTotals(owner_id=owner_id, balance=int(rows[0]["balance"]), seq=int(rows[0]["seq"]))

    async def head_seq(self, owner_id: str) -> int:
        async with _driver_errors("head_seq"):
            head = await LedgerHead.get(owner_id)
        return head.seq if head else 0

    async def list_entries(self, owner_id: str, limit: int, offset: int) -> list[LedgerEntry]:
        async with _driver_errors("list_entries"):
            docs = (
                await PointsLedgerEntry.find(PointsLedgerEntry.owner_id == owner_id)
                .sort(-PointsLedgerEntry.seq)
                .skip(offset)
                .limit(limit)
                .to_list()
            )
        return [_entry(d) for d in docs]

    async def find_entry_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        async with _driver_errors("find_entry_by_key"):
            doc = await PointsLedgerEntry.find_one(PointsLedgerEntry.idempotency_key == idempotency_key)
        return _entry(doc) if doc else None

    async def find_unpaired_transfer_legs(self, limit: int) -> list[LedgerEntry]:
        async with _driver_errors("find_unpaired_transfer_legs"):
            rows = await PointsLedgerEntry.get_motor_collection().aggregate(
                [
                    {"$match": {"transfer_id": {"$type": "string"}}},
                    {"$group": {"_id": "$transfer_id", "legs": {"$push": "$$ROOT"}, "n": {"$sum": 1}}},
                    {"$match": {"n": 1}},
                    {"$limit": limit},
                ]
            ).to_list(length=limit)
        return [_entry(r["legs"][0]) for r in rows]

    # Projections

    async def get_projection(self, owner_id: str) -> BalanceProjection | None:
        async with _driver_errors("get_projection"):
            doc = await PointsBalance.get(owner_id)
        return _projection(doc) if doc else None

    async def save_projection(self, projection: BalanceProjection) -> None:
        try:
            await PointsBalance.get_motor_collection().update_one(
                {"_id": projection.owner_id, "seq": {"$lte": projection.seq}},
                {"$set": {
                    "balance": projection.balance,
                    "seq": projection.seq,
                    "refreshed_at": projection.refreshed_at,
                }},
                upsert=True,
            )
        except DuplicateKeyError:
            # A projection at a higher seq already exists.
            return
        except PyMongoError as e:
            raise StoreUnavailable(details={"op": "save_projection"}) from e

    async def list_projections(self, limit: int, offset: int) -> list[BalanceProjection]:
        async with _driver_errors("list_projections"):
            docs = await PointsBalance.find_all().sort("_id").skip(offset).limit(limit).to_list()
        return [_projection(d) for d in docs]

    # Recharge cards

    async def get_card(self, code: str) -> RedeemableCode | None:
        async with _driver_errors("get_card"):
            doc = await RechargeCard.find_one(RechargeCard.code == code)
        return _card(doc) if doc else None

    async def insert_cards(self, cards: list[RedeemableCode]) -> None:
        async with _driver_errors("insert_cards"):
            await RechargeCard.insert_many([RechargeCard(**c.model_dump()) for c in cards])

    async def disable_card(self, code: str) -> RedeemableCode | None:
        async with _driver_errors("disable_card"):
            doc = await RechargeCard.get_motor_collection().find_one_and_update(
                {"code": code},
                {"$set": {"state": CardState.DISABLED.value}},
                return_document=ReturnDocument.AFTER,
            )
        return _card(doc) if doc else None

    async def quarantine_card(self, code: str, reason: str) -> None:
        async with _driver_errors("quarantine_card"):
            await RechargeCard.get_motor_collection().update_one(
                {"code": code},
                {"$set": {"quarantined": True, "quarantine_reason": reason}},
            )

    async def list_cards(self, state: CardState | None, limit: int, offset: int) -> list[RedeemableCode]:
        query = RechargeCard.find(RechargeCard.state == state) if state else RechargeCard.find_all()
        async with _driver_errors("list_cards"):
            docs = await query.sort(-RechargeCard.created_at).skip(offset).limit(limit).to_list()
        return [_card(d) for d in docs]

    async def find_consumed_cards_without_credit(self, limit: int) -> list[RedeemableCode]:
        async with _driver_errors("find_consumed_cards_without_credit"):
            rows = await RechargeCard.get_motor_collection().aggregate(
                [
                    {"$match": {"consumed_by": {"$type": "string"}}},
                    {"$lookup": {
                        "from": PointsLedgerEntry.Settings.name,
                        "localField": "code",
                        "foreignField": "card_code",
                        "as": "credits",
                    }},
                    {"$match": {"credits": {"$size": 0}}},
                    {"$project": {"credits": 0}},
                    {"$limit": limit},
                ]
            ).to_list(length=limit)
        return [_card(r) for r in rows]

    # Categories

    async def list_categories(self) -> list[PointCategory]:
        async with _driver_errors("list_categories"):
            docs = await PointsCategory.find_all().sort(-PointsCategory.created_at).to_list()
        return [_category(d) for d in docs]

    async def get_category(self, category_id: str) -> PointCategory | None:
        async with _driver_errors("get_category"):
            doc = await PointsCategory.get(category_id)
        return _category(doc) if doc else None

    async def insert_category(self, category: PointCategory) -> PointCategory:
        async with _driver_errors("insert_category"):
            doc = PointsCategory(**category.model_dump())
            await doc.insert()
        return _category(doc)

    async def update_category(self, category_id: str, fields: dict[str, Any]) -> PointCategory | None:
        async with _driver_errors("update_category"):
            doc = await PointsCategory.get(category_id)
            if doc is None:
                return None
            await doc.set(fields)
        return _category(doc)

    async def delete_category(self, category_id: str) -> bool:
        async with _driver_errors("delete_category"):
            result = await PointsCategory.get_motor_collection().delete_one({"_id": category_id})
        return result.deleted_count == 1

    # Rewards

    async def list_rewards(self, active_only: bool) -> list[Reward]:
        query = CatalogReward.find(CatalogReward.is_active == True) if active_only else CatalogReward.find_all()  # noqa: E712
        async with _driver_errors("list_rewards"):
            docs = await query.sort(-CatalogReward.created_at).to_list()
        return [_reward(d) for d in docs]

    async def get_reward(self, reward_id: str) -> Reward | None:
        async with _driver_errors("get_reward"):
            doc = await CatalogReward.get(reward_id)
        return _reward(doc) if doc else None

    async def insert_reward(self, reward: Reward) -> Reward:
        async with _driver_errors("insert_reward"):
            doc = CatalogReward(**reward.model_dump())
            await doc.insert()
        return _reward(doc)

    async def update_reward(self, reward_id: str, fields: dict[str, Any]) -> Reward | None:
        async with _driver_errors("update_reward"):
            doc = await CatalogReward.get(reward_id)
            if doc is None:
                return None
            await doc.set(fields)
        return _reward(doc)

    async def delete_reward(self, reward_id: str) -> bool:
        async with _driver_errors("delete_reward"):
            result = await CatalogReward.get_motor_collection().delete_one({"_id": reward_id})
        return result.deleted_count == 1

    async def reward_has_redemptions(self, reward_id: str) -> bool:
        async with _driver_errors("reward_has_redemptions"):
            doc = await UserReward.find_one(UserReward.reward_id == reward_id)
        return doc is not None

    async def get_redemption(self, redemption_id: str) -> RewardRedemption | None:
        async with _driver_errors("get_redemption"):
            doc = await UserReward.get(redemption_id)
        return _redemption(doc) if doc else None

    async def list_redemptions(
        self,
        owner_id: str | None,
        status: RedemptionStatus | None,
        limit: int,
        offset: int,
    ) -> list[RewardRedemption]:
        filters: dict[str, Any] = {}
        if owner_id is not None:
            filters["owner_id"] = owner_id
        if status is not None:
            filters["status"] = status.value
        async with _driver_errors("list_redemptions"):
            docs = await UserReward.find(filters).sort(-UserReward.created_at).skip(offset).limit(limit).to_list()
        return [_redemption(d) for d in docs]

    # Health

    async def ping(self) -> None:
        async with _driver_errors("ping"):
            await get_client().admin.command("ping")

    # Atomic units

    async def run_atomic(self, fn: Callable[[LedgerTransaction], Awaitable[T]]) -> T:
        async def _callback(session):
            return await fn(MongoTransaction(session))

        async with _driver_errors("run_atomic"):
            async with await get_client().start_session() as session:
                return await session.with_transaction(
                    _callback,
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                )
