"""Point categories (reporting tags on ledger entries)."""

from typing import Any

from app.core.exceptions import BadRequestError, NotFoundError
from app.core.logging import get_logger
from app.schemas.ledger import PointCategory
from app.storage.base import get_store

log = get_logger(__name__)

EDITABLE_FIELDS = ("name", "description", "default_points", "is_positive", "is_mandatory", "is_restricted")


def _validate(fields: dict[str, Any]) -> None:
    if "name" in fields and not (fields["name"] or "").strip():
        raise BadRequestError("Category name is required")
    if "default_points" in fields:
        points = fields["default_points"]
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise BadRequestError("default_points must be a positive integer")


async def list_categories() -> list[PointCategory]:
    return await get_store().list_categories()


async def create_category(
    name: str,
    default_points: int,
    actor_id: str,
    description: str = "",
    is_positive: bool = True,
    is_mandatory: bool = False,
    is_restricted: bool = False,
) -> PointCategory:
    _validate({"name": name, "default_points": default_points})
    category = PointCategory(
        name=name.strip(),
        description=description,
        default_points=default_points,
        is_positive=is_positive,
        is_mandatory=is_mandatory,
        is_restricted=is_restricted,
        created_by=actor_id,
    )
    category = await get_store().insert_category(category)
    log.info("category_created", category_id=category.id, actor_id=actor_id)
    return category


async def update_category(category_id: str, fields: dict[str, Any]) -> PointCategory:
    """Partial update; unknown keys are ignored."""
    fields = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
    _validate(fields)
    if "name" in fields:
        fields["name"] = fields["name"].strip()
    store = get_store()
    category = await store.update_category(category_id, fields) if fields else await store.get_category(category_id)
    if category is None:
        raise NotFoundError("Category not found", details={"category_id": category_id})
    return category


async def delete_category(category_id: str) -> None:
    """Ledger entries keep their category_id; it is a reporting tag only."""
    if not await get_store().delete_category(category_id):
        raise NotFoundError("Category not found", details={"category_id": category_id})
    log.info("category_deleted", category_id=category_id)
