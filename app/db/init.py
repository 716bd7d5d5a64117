import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.models.activity_log import ActivityLog
from app.models.catalog_reward import CatalogReward
from app.models.failed_job import FailedJob
from app.models.ledger_head import LedgerHead
from app.models.point_category import PointsCategory
from app.models.points_balance import PointsBalance
from app.models.points_ledger import PointsLedgerEntry
from app.models.recharge_card import RechargeCard
from app.models.user import User
from app.models.user_reward import UserReward

DOCUMENT_MODELS = [
    User,
    PointsLedgerEntry,
    LedgerHead,
    PointsBalance,
    RechargeCard,
    PointsCategory,
    CatalogReward,
    UserReward,
    ActivityLog,
    FailedJob,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    global _client
    if _client is not None:
        return
    settings = get_settings()
    kwargs = {
        "tz_aware": True,
        "serverSelectionTimeoutMS": settings.mongodb_timeout_ms,
        "connectTimeoutMS": settings.mongodb_timeout_ms,
        "socketTimeoutMS": settings.mongodb_timeout_ms,
    }
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    _client = client


def get_client() -> AsyncIOMotorClient:
    """Client bound by init_db; ledger transactions open their sessions on it."""
    if _client is None:
        raise RuntimeError("init_db() has not been awaited")
    return _client


def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
