"""Balance projector: cached balances that are always re-derivable from the ledger."""

from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.schemas.ledger import BalanceProjection, LedgerEntry, LedgerTotals
from app.storage.base import get_store

log = get_logger(__name__)


async def get_balance(owner_id: str, verify: bool = False) -> int:
    """
    Return owner's current balance.

    Served from the projection when its seq matches the owner's ledger head;
    otherwise (or with verify=True) recomputed from the ledger, and the
    projection refreshed when it is missing or differs. Store failures
    propagate as StoreUnavailable; nothing is defaulted to zero.
    """
    store = get_store()
    if await store.get_owner(owner_id) is None:
        raise NotFoundError("Owner not found", details={"owner_id": owner_id})
    projection = await store.get_projection(owner_id)
    if projection is not None and not verify:
        head = await store.head_seq(owner_id)
        if projection.seq == head:
            return projection.balance
    totals = await store.ledger_totals(owner_id)
    await _refresh_if_needed(projection, totals)
    return totals.balance


async def _refresh_if_needed(projection: BalanceProjection | None, totals: LedgerTotals) -> bool:
    if projection is not None and projection.balance == totals.balance and projection.seq == totals.seq:
        return False
    if projection is not None and projection.seq == totals.seq:
        log.warning(
            "balance_projection_drift",
            owner_id=totals.owner_id,
            cached=projection.balance,
            recomputed=totals.balance,
            seq=totals.seq,
        )
    await get_store().save_projection(
        BalanceProjection(owner_id=totals.owner_id, balance=totals.balance, seq=totals.seq)
    )
    log.debug("balance_projection_refreshed", owner_id=totals.owner_id, balance=totals.balance, seq=totals.seq)
    return True


async def verify_projection(projection: BalanceProjection) -> bool:
    """Recompute one cached balance; True if it had drifted and was repaired."""
    totals = await get_store().ledger_totals(projection.owner_id)
    drifted = projection.seq == totals.seq and projection.balance != totals.balance
    await _refresh_if_needed(projection, totals)
    return drifted


async def list_entries(owner_id: str, limit: int | None = None, offset: int = 0) -> list[LedgerEntry]:
    """Ledger history for owner, newest first."""
    limit, offset = paginate(limit, offset)
    return await get_store().list_entries(owner_id, limit, offset)
