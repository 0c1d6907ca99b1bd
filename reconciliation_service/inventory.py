import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation_service.errors import StorageUnavailableError
from reconciliation_service.models import (
    Inventory,
    InventoryChangeType,
    InventoryHistory,
    Order,
    OrderItem,
)

logger = logging.getLogger(__name__)


class LedgerItem(BaseModel):
    order_item_id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    previous_quantity: Optional[int] = None
    new_quantity: Optional[int] = None
    error: Optional[str] = None


class LedgerReport(BaseModel):
    order_id: str
    decremented: List[LedgerItem] = Field(default_factory=list)
    skipped: List[LedgerItem] = Field(default_factory=list)
    failed: List[LedgerItem] = Field(default_factory=list)
    truncated: bool = False

    @property
    def needs_reconciliation(self) -> bool:
        return bool(self.failed) or self.truncated


def clamp_decrement(current: int, ordered: int) -> int:
    """Stock never goes negative; oversell is clamped at zero."""
    return max(0, current - ordered)


async def load_order_items(session: AsyncSession, order_id: str, limit: int) -> List[OrderItem]:
    try:
        result = await session.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id).limit(limit)
        )
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error("Failed to load line items for order %s: %s", order_id, e)
        raise StorageUnavailableError(f"Failed to load line items for order {order_id}")


async def find_inventory(session: AsyncSession, product_id: str, variant_id: Optional[str]) -> Optional[Inventory]:
    query = select(Inventory).where(Inventory.product_id == product_id)
    # no variant means the variant column is NULL, never "any variant"
    if variant_id:
        query = query.where(Inventory.variant_id == variant_id)
    else:
        query = query.where(Inventory.variant_id.is_(None))
    result = await session.execute(query.limit(1).with_for_update())
    return result.scalars().first()


async def decrement_item(session: AsyncSession, item: OrderItem, reason: str) -> Optional[LedgerItem]:
    inventory = await find_inventory(session, item.product_id, item.product_variant_id)
    if inventory is None:
        return None

    previous_quantity = inventory.quantity
    new_quantity = clamp_decrement(previous_quantity, item.quantity)
    inventory.quantity = new_quantity
    inventory.updated_at = datetime.utcnow()
    session.add(inventory)
    session.add(InventoryHistory(
        inventory_id=inventory.id,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        change_type=InventoryChangeType.STOCK_OUT,
        reason=reason,
        created_by=None,
    ))
    await session.flush()

    return LedgerItem(
        order_item_id=item.id,
        product_id=item.product_id,
        variant_id=item.product_variant_id,
        quantity=item.quantity,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
    )


async def decrement_inventory_for_order(
    session: AsyncSession, order: Order, reason: str, max_items: int = 100
) -> LedgerReport:
    """
    Decrement stock for every line item of a newly paid order.

    Each item runs in its own savepoint: one item failing rolls back only that
    item and the loop moves on. Failed items are reported, not raised.
    """
    report = LedgerReport(order_id=order.id)
    items = await load_order_items(session, order.id, max_items + 1)
    if len(items) > max_items:
        report.truncated = True
        items = items[:max_items]
        logger.error(
            "Order %s has more than %s line items; remaining items were not decremented",
            order.id, max_items,
            extra={"order_id": order.id, "max_line_items": max_items},
        )

    for item in items:
        try:
            async with session.begin_nested():
                entry = await decrement_item(session, item, reason)
        except SQLAlchemyError as e:
            report.failed.append(LedgerItem(
                order_item_id=item.id,
                product_id=item.product_id,
                variant_id=item.product_variant_id,
                quantity=item.quantity,
                error=str(e),
            ))
            logger.error(
                "Inventory decrement failed for order %s product %s variant %s: %s",
                order.id, item.product_id, item.product_variant_id, e,
                extra={
                    "order_id": order.id,
                    "order_item_id": item.id,
                    "product_id": item.product_id,
                    "variant_id": item.product_variant_id,
                    "quantity": item.quantity,
                },
            )
            continue

        if entry is None:
            logger.warning(
                "No inventory record for product %s variant %s (order %s), skipping",
                item.product_id, item.product_variant_id, order.id,
            )
            report.skipped.append(LedgerItem(
                order_item_id=item.id,
                product_id=item.product_id,
                variant_id=item.product_variant_id,
                quantity=item.quantity,
            ))
            continue

        report.decremented.append(entry)
        logger.info(
            "Inventory for product %s variant %s: %s -> %s",
            entry.product_id, entry.variant_id, entry.previous_quantity, entry.new_quantity,
        )

    return report
