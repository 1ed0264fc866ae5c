"""
Purchase reconciliation.

Admin side of a closed order day: record what was actually bought per
product (fanned out to every order item that asked for it), enforce the
shortage-reason rule, and complete a product group once everything in it
is purchased.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core.errors import (
    IncompletePurchaseError,
    NotFoundError,
    ReasonRequiredError,
    ValidationError,
)
from backend.app.db.models.core_types import PURCHASABLE_STATUSES, OrderStatus, PurchaseReason
from backend.app.db.models.models_v1 import (
    Branch,
    Department,
    Order,
    OrderItem,
    Product,
    ProductGroup,
    Unit,
    User,
)
from backend.services.aggregation import ItemRow
from backend.services.quantities import ZERO, apportion, to_money, to_qty

logger = logging.getLogger(__name__)

PURCHASE_REASONS = [r.value for r in PurchaseReason]


# ---------- READS ----------
def load_item_rows(
    db: Session,
    order_date: date,
    statuses: Iterable[OrderStatus] | None = None,
) -> list[ItemRow]:
    """
    Flat, denormalized order-item rows for one day.

    A single SELECT, so the result is one consistent snapshot even while
    requesters keep submitting.
    """
    statuses = tuple(statuses) if statuses else PURCHASABLE_STATUSES
    stmt = (
        select(
            OrderItem.id.label("order_item_id"),
            OrderItem.order_id,
            OrderItem.product_id,
            Product.name.label("product_name"),
            Product.code.label("product_code"),
            Product.purchase_sort_order,
            OrderItem.quantity,
            OrderItem.requested_price,
            OrderItem.actual_price,
            OrderItem.actual_quantity,
            OrderItem.is_purchased,
            OrderItem.purchase_reason,
            Unit.abbreviation.label("unit_abbr"),
            Product.product_group_id,
            ProductGroup.name.label("product_group_name"),
            Order.branch_id,
            Branch.name.label("branch_name"),
            Order.department_id,
            Department.name.label("department_name"),
            Order.user_id,
            User.name.label("user_name"),
            Order.order_date,
            Order.status,
        )
        .join(Order, Order.id == OrderItem.order_id)
        .join(Product, Product.id == OrderItem.product_id)
        .outerjoin(Unit, Unit.id == Product.unit_id)
        .outerjoin(ProductGroup, ProductGroup.id == Product.product_group_id)
        .outerjoin(Branch, Branch.id == Order.branch_id)
        .outerjoin(Department, Department.id == Order.department_id)
        .outerjoin(User, User.id == Order.user_id)
        .where(Order.order_date == order_date)
        .where(Order.status.in_(statuses))
        .order_by(OrderItem.id)
    )
    rows = []
    for r in db.execute(stmt).mappings():
        data = dict(r)
        data["status"] = data["status"].value if data["status"] is not None else None
        data["is_purchased"] = bool(data["is_purchased"])
        rows.append(ItemRow(**data))
    return rows


class SqlLastPriceLookup:
    """Most recent recorded actual price of a product on a day before ``before``."""

    def __init__(self, db: Session, before: date):
        self.db = db
        self.before = before
        self._cache: dict[int, Decimal | None] = {}

    def last_actual_price(self, product_id: int) -> Decimal | None:
        if product_id not in self._cache:
            self._cache[product_id] = self.db.execute(
                select(OrderItem.actual_price)
                .join(Order, Order.id == OrderItem.order_id)
                .where(OrderItem.product_id == product_id)
                .where(OrderItem.actual_price.is_not(None))
                .where(Order.order_date < self.before)
                .order_by(Order.order_date.desc(), OrderItem.id.desc())
                .limit(1)
            ).scalar_one_or_none()
        return self._cache[product_id]


# ---------- RECORDING ----------
def _normalize_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    reason = reason.strip()
    return reason or None


def _apply_purchase(
    items: Sequence[OrderItem],
    product_id: int,
    actual_price,
    actual_quantity,
    is_purchased: bool,
    purchase_reason: str | None,
) -> dict:
    reason = _normalize_reason(purchase_reason)
    ordered = sum((to_qty(it.quantity) for it in items), ZERO)

    if actual_price is None and actual_quantity is None and not is_purchased:
        # reset of this product's purchase, always allowed
        for it in items:
            it.actual_price = None
            it.actual_quantity = None
            it.is_purchased = False
            it.purchase_reason = None
        return {"actual_quantity": None, "purchase_reason": None}

    price = to_money(actual_price)
    if price is not None and price < 0:
        raise ValidationError("actual_price must be >= 0", field="actual_price")
    actual = to_qty(actual_quantity) if actual_quantity is not None else ordered
    if actual < 0:
        raise ValidationError("actual_quantity must be >= 0", field="actual_quantity")

    if is_purchased and actual < ordered and reason is None:
        logger.warning("Shortage without reason refused: product=%s ordered=%s actual=%s", product_id, ordered, actual)
        raise ReasonRequiredError(product_id, ordered, actual, PURCHASE_REASONS)

    shares = apportion(actual, [to_qty(it.quantity) for it in items])
    for it, share in zip(items, shares):
        it.actual_price = price
        it.actual_quantity = share
        it.is_purchased = bool(is_purchased)
        # only a short item keeps the reason; full or over-delivery needs none
        it.purchase_reason = reason if share < to_qty(it.quantity) else None

    return {"actual_quantity": actual, "purchase_reason": reason if actual < ordered else None}


def _step_back_completed(items: Sequence[OrderItem]) -> None:
    """A completed order whose item is no longer purchased goes back to confirmed."""
    for order in {it.order for it in items}:
        if order.status == OrderStatus.completed and not all(i.is_purchased for i in order.items):
            order.status = OrderStatus.confirmed
            logger.info("Order %s back to confirmed: purchase withdrawn", order.order_number)


def _item_summary(it: OrderItem) -> dict:
    return {
        "order_item_id": it.id,
        "order_id": it.order_id,
        "quantity": float(it.quantity),
        "actual_price": float(it.actual_price) if it.actual_price is not None else None,
        "actual_quantity": float(it.actual_quantity) if it.actual_quantity is not None else None,
        "is_purchased": it.is_purchased,
        "purchase_reason": it.purchase_reason,
    }


def record_purchase_by_product(
    db: Session,
    order_date: date,
    product_id: int,
    actual_price=None,
    actual_quantity=None,
    is_purchased: bool = True,
    purchase_reason: str | None = None,
) -> dict:
    """
    Record one purchase for a product across every order item of the day.

    actual_price is the unit price paid and is copied to every item.
    actual_quantity (defaults to the total ordered) is split pro-rata to the
    requested quantities so the item values add up to it exactly.
    """
    items = (
        db.execute(
            select(OrderItem)
            .join(Order, Order.id == OrderItem.order_id)
            .where(Order.order_date == order_date)
            .where(Order.status.in_(PURCHASABLE_STATUSES))
            .where(OrderItem.product_id == product_id)
            .order_by(OrderItem.id)
            .with_for_update(of=OrderItem)
        )
        .scalars()
        .all()
    )
    if not items:
        raise NotFoundError("Order items", f"product {product_id} on {order_date}")

    applied = _apply_purchase(items, product_id, actual_price, actual_quantity, is_purchased, purchase_reason)
    _step_back_completed(items)
    db.flush()
    logger.info(
        "Purchase recorded: date=%s product=%s price=%s qty=%s purchased=%s (%d items)",
        order_date,
        product_id,
        actual_price,
        applied["actual_quantity"],
        is_purchased,
        len(items),
    )
    return {
        "product_id": product_id,
        "order_date": order_date,
        "actual_price": float(items[0].actual_price) if items[0].actual_price is not None else None,
        "actual_quantity": float(applied["actual_quantity"]) if applied["actual_quantity"] is not None else None,
        "is_purchased": all(it.is_purchased for it in items),
        "purchase_reason": applied["purchase_reason"],
        "items": [_item_summary(it) for it in items],
    }


def record_purchase(
    db: Session,
    item_id: int,
    actual_price=None,
    actual_quantity=None,
    is_purchased: bool = True,
    purchase_reason: str | None = None,
) -> dict:
    item = db.execute(select(OrderItem).where(OrderItem.id == item_id).with_for_update()).scalar_one_or_none()
    if item is None:
        raise NotFoundError("Order item", item_id)

    _apply_purchase([item], item.product_id, actual_price, actual_quantity, is_purchased, purchase_reason)
    _step_back_completed([item])
    db.flush()
    logger.info("Purchase recorded on item %s (purchased=%s)", item_id, is_purchased)
    return _item_summary(item)


# ---------- COMPLETION ----------
def _advance(order: Order) -> bool:
    if order.status not in (OrderStatus.submitted, OrderStatus.confirmed):
        return False
    if all(it.is_purchased for it in order.items):
        order.status = OrderStatus.completed
        return True
    if order.status == OrderStatus.submitted:
        order.status = OrderStatus.confirmed
        return True
    return False


def complete_purchases_by_product_group(db: Session, order_date: date, product_group_id: int | None) -> dict:
    """
    Close purchasing of one product group for a day.

    Every item of the group must already be purchased, otherwise
    IncompletePurchaseError lists exactly the unpurchased items and nothing
    changes. Orders touching the group move to completed when all of their
    items are purchased, to confirmed otherwise. Repeating the call is a
    no-op (updated == 0).
    """
    stmt = (
        select(OrderItem, Product.name)
        .join(Order, Order.id == OrderItem.order_id)
        .join(Product, Product.id == OrderItem.product_id)
        .where(Order.order_date == order_date)
        .where(Order.status.in_(PURCHASABLE_STATUSES))
        .order_by(OrderItem.id)
        .with_for_update(of=OrderItem)
    )
    if product_group_id is None:
        stmt = stmt.where(Product.product_group_id.is_(None))
    else:
        stmt = stmt.where(Product.product_group_id == product_group_id)
    rows = db.execute(stmt).all()

    # precondition checked on the locked rows, in the same transaction as the status flip
    missing = [
        {
            "order_item_id": it.id,
            "order_id": it.order_id,
            "product_id": it.product_id,
            "product_name": name,
        }
        for it, name in rows
        if not it.is_purchased
    ]
    if missing:
        logger.warning(
            "Completion refused: date=%s group=%s missing=%d items",
            order_date,
            product_group_id,
            len(missing),
        )
        raise IncompletePurchaseError(missing)

    order_ids = sorted({it.order_id for it, _ in rows})
    orders = []
    if order_ids:
        orders = (
            db.execute(select(Order).where(Order.id.in_(order_ids)).order_by(Order.id).with_for_update())
            .scalars()
            .all()
        )
    updated = sum(1 for order in orders if _advance(order))
    db.flush()
    logger.info("Purchases completed: date=%s group=%s updated=%d", order_date, product_group_id, updated)
    return {"order_date": order_date, "product_group_id": product_group_id, "updated": updated}


def complete_purchases_by_date(db: Session, order_date: date) -> dict:
    """Complete every order of the day whose items are all purchased."""
    orders = (
        db.execute(
            select(Order)
            .where(Order.order_date == order_date)
            .where(Order.status.in_((OrderStatus.submitted, OrderStatus.confirmed)))
            .order_by(Order.id)
            .with_for_update()
        )
        .scalars()
        .all()
    )
    updated = 0
    for order in orders:
        if order.items and all(it.is_purchased for it in order.items):
            order.status = OrderStatus.completed
            updated += 1
    db.flush()
    logger.info("Purchases completed for %s: updated=%d", order_date, updated)
    return {"order_date": order_date, "updated": updated}
