"""Inventory and coupon usage owed by paid orders.

Entering ``paid`` records one ``ConsumptionIntent`` per line item, plus one
for the coupon when the order carries a code. The storefront reads these rows
to decrement stock and mark coupons used.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.consumption import ConsumptionIntent, ConsumptionKind
from app.models.order import Order
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)


class Consumption:
    @staticmethod
    def record(db: Session, order: Order) -> list[ConsumptionIntent]:
        """Add the order's consumption rows; the caller commits."""
        intents = []
        for item in order.line_items or []:
            intents.append(
                ConsumptionIntent(
                    order_id=order.id,
                    owner_id=order.owner_id,
                    kind=ConsumptionKind.inventory,
                    sku=item.get("sku"),
                    quantity=int(item.get("quantity") or 1),
                )
            )
        if order.coupon_code:
            intents.append(
                ConsumptionIntent(
                    order_id=order.id,
                    owner_id=order.owner_id,
                    kind=ConsumptionKind.coupon,
                    coupon_code=order.coupon_code,
                    quantity=1,
                )
            )
        db.add_all(intents)
        db.flush()
        logger.info("Recorded %d consumption intents for order %s", len(intents), order.id)
        return intents

    @staticmethod
    def for_order(db: Session, order_id) -> list[ConsumptionIntent]:
        return list(
            db.scalars(
                select(ConsumptionIntent)
                .where(ConsumptionIntent.order_id == coerce_uuid(order_id))
                .order_by(ConsumptionIntent.created_at)
            ).all()
        )
