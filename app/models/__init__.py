from app.models.user import User
from app.models.points_ledger import PointsLedgerEntry
from app.models.ledger_head import LedgerHead
from app.models.points_balance import PointsBalance
from app.models.recharge_card import RechargeCard
from app.models.point_category import PointsCategory
from app.models.catalog_reward import CatalogReward
from app.models.user_reward import UserReward
from app.models.activity_log import ActivityLog
from app.models.failed_job import FailedJob

__all__ = [
    "User",
    "PointsLedgerEntry",
    "LedgerHead",
    "PointsBalance",
    "RechargeCard",
    "PointsCategory",
    "CatalogReward",
    "UserReward",
    "ActivityLog",
    "FailedJob",
]
