"""
Order record: the order + order-item aggregate and its state machine.

    draft -> submitted -> confirmed -> completed
    draft/submitted -> cancelled
    any -> draft                      (admin reset, clears purchase/receiving fields)

Create, edit, submit and delete need the order day gate to be open for
(order_date, branch) at the moment of the call. confirmed/completed are only
reached through purchase completion (backend.services.purchasing).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from backend.app.core.errors import (
    EmptyOrderError,
    InvalidTransitionError,
    NotFoundError,
    OrderLockedError,
    ValidationError,
)
from backend.app.db.models.core_types import EDITABLE_STATUSES, OrderStatus
from backend.app.db.models.models_v1 import Department, Order, OrderItem, Product, User
from backend.services import order_day_gate
from backend.services.quantities import ZERO, to_money, to_qty

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemInput:
    product_id: int
    quantity: Decimal
    requested_price: Decimal | None = None
    notes: str | None = None


@dataclass
class ItemChangeSet:
    added: list[ItemInput] = field(default_factory=list)
    modified: list[tuple[Any, ItemInput]] = field(default_factory=list)
    removed: list[Any] = field(default_factory=list)
    unchanged: list[Any] = field(default_factory=list)

    @property
    def remaining_count(self) -> int:
        return len(self.added) + len(self.modified) + len(self.unchanged)


def _check_unique_products(items: Sequence[ItemInput]) -> None:
    seen: set[int] = set()
    for it in items:
        if it.product_id in seen:
            raise ValidationError(f"Duplicate product_id {it.product_id} in order", product_id=it.product_id)
        seen.add(it.product_id)


def plan_item_changes(existing: Iterable[Any], incoming: Sequence[ItemInput]) -> ItemChangeSet:
    """
    Reconcile the current items of an order with a wholesale replacement list.

    Keyed by product_id. An incoming quantity <= 0 removes the product, and so
    does leaving it out of ``incoming``. ``existing`` only needs product_id,
    quantity, requested_price and notes attributes; nothing is mutated.
    """
    _check_unique_products(incoming)
    current = {it.product_id: it for it in existing}
    wanted = {it.product_id: it for it in incoming if it.quantity > 0}

    plan = ItemChangeSet()
    for pid in sorted(current):
        old = current[pid]
        new = wanted.get(pid)
        if new is None:
            plan.removed.append(old)
        elif (
            to_qty(old.quantity) != new.quantity
            or to_money(old.requested_price) != new.requested_price
            or (old.notes or None) != (new.notes or None)
        ):
            plan.modified.append((old, new))
        else:
            plan.unchanged.append(old)

    for pid in sorted(wanted):
        if pid not in current:
            plan.added.append(wanted[pid])
    return plan


def compute_total(items: Iterable[Any]) -> Decimal:
    total = ZERO
    for it in items:
        if it.requested_price is not None:
            total += Decimal(it.quantity) * Decimal(it.requested_price)
    return to_money(total)


def _resolve_inputs(
    db: Session,
    items: Sequence[ItemInput],
    current_prices: dict[int, Decimal | None] | None = None,
) -> list[ItemInput]:
    """Validate products and fill missing requested prices (current item price, then product default)."""
    current_prices = current_prices or {}
    resolved = []
    for it in items:
        qty = to_qty(it.quantity)
        price = to_money(it.requested_price)
        if qty > 0:
            product = db.get(Product, it.product_id)
            if product is None:
                raise NotFoundError("Product", it.product_id)
            if price is None:
                price = to_money(current_prices.get(it.product_id))
            if price is None:
                price = to_money(product.default_price)
        if price is not None and price < 0:
            raise ValidationError("requested_price must be >= 0", product_id=it.product_id)
        notes = it.notes.strip() if it.notes and it.notes.strip() else None
        resolved.append(ItemInput(it.product_id, qty, price, notes))
    return resolved


def get_order(db: Session, order_id: int, *, lock: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if lock:
        stmt = stmt.with_for_update()
    order = db.execute(stmt).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def ensure_editable(db: Session, order: Order) -> None:
    if order.status not in EDITABLE_STATUSES:
        raise OrderLockedError(order.id, OrderLockedError.STATUS, order.status.value)
    if not order_day_gate.is_open(db, order.order_date, order.branch_id):
        raise OrderLockedError(order.id, OrderLockedError.DAY_CLOSED, order.status.value)


def create_order(db: Session, user: User, order_date: date, items: Sequence[ItemInput]) -> Order:
    if user.branch_id is None or user.department_id is None:
        raise ValidationError("User is not assigned to a branch/department", user_id=user.id)
    if not order_day_gate.is_open(db, order_date, user.branch_id):
        raise OrderLockedError(None, OrderLockedError.DAY_CLOSED)

    _check_unique_products(items)
    resolved = [it for it in _resolve_inputs(db, items) if it.quantity > 0]
    if not resolved:
        raise EmptyOrderError()

    order = Order(
        order_number=f"TMP-{uuid.uuid4().hex}",
        branch_id=user.branch_id,
        department_id=user.department_id,
        user_id=user.id,
        order_date=order_date,
        status=OrderStatus.draft,
        total_amount=compute_total(resolved),
    )
    for it in resolved:
        order.items.append(
            OrderItem(
                product_id=it.product_id,
                quantity=it.quantity,
                requested_price=it.requested_price,
                notes=it.notes,
            )
        )
    db.add(order)
    db.flush()  # get order.id

    order.order_number = f"ORD-{order_date:%Y%m%d}-{order.id:06d}"
    db.flush()
    logger.info("Order %s created by user=%s for %s (%d items)", order.order_number, user.id, order_date, len(resolved))
    return order


def update_order(db: Session, order_id: int, items: Sequence[ItemInput]) -> Order:
    order = get_order(db, order_id, lock=True)
    ensure_editable(db, order)

    _check_unique_products(items)
    current_prices = {it.product_id: it.requested_price for it in order.items}
    plan = plan_item_changes(order.items, _resolve_inputs(db, items, current_prices))
    if plan.remaining_count == 0:
        raise EmptyOrderError()

    for old in plan.removed:
        order.items.remove(old)
    for old, new in plan.modified:
        if to_qty(old.quantity) != new.quantity and _has_purchase(old):
            # the recorded purchase was split against the old quantity
            clear_purchase(old)
            logger.info("Order %s: purchase of product %s cleared by quantity edit", order.order_number, old.product_id)
        old.quantity = new.quantity
        old.requested_price = new.requested_price
        old.notes = new.notes
    for new in plan.added:
        order.items.append(
            OrderItem(
                product_id=new.product_id,
                quantity=new.quantity,
                requested_price=new.requested_price,
                notes=new.notes,
            )
        )
    db.flush()

    order.total_amount = compute_total(order.items)
    db.flush()
    logger.info(
        "Order %s updated: +%d ~%d -%d",
        order.order_number,
        len(plan.added),
        len(plan.modified),
        len(plan.removed),
    )
    return order


def submit_order(db: Session, order_id: int) -> Order:
    order = get_order(db, order_id, lock=True)
    if order.status != OrderStatus.draft:
        raise InvalidTransitionError(order.id, order.status.value, OrderStatus.submitted.value)
    if not order_day_gate.is_open(db, order.order_date, order.branch_id):
        raise OrderLockedError(order.id, OrderLockedError.DAY_CLOSED, order.status.value)
    if not any(it.quantity > 0 for it in order.items):
        raise EmptyOrderError()

    order.status = OrderStatus.submitted
    order.submitted_at = datetime.now(timezone.utc)
    order.total_amount = compute_total(order.items)
    db.flush()
    logger.info("Order %s submitted", order.order_number)
    return order


def delete_order(db: Session, order_id: int) -> dict:
    order = get_order(db, order_id, lock=True)
    ensure_editable(db, order)
    db.delete(order)
    db.flush()
    logger.info("Order %s deleted", order.order_number)
    return {"id": order_id, "deleted": True}


def cancel_order(db: Session, order_id: int) -> Order:
    order = get_order(db, order_id, lock=True)
    if order.status not in EDITABLE_STATUSES:
        raise InvalidTransitionError(order.id, order.status.value, OrderStatus.cancelled.value)
    order.status = OrderStatus.cancelled
    db.flush()
    logger.info("Order %s cancelled", order.order_number)
    return order


def transfer_order(db: Session, order_id: int, branch_id: int, department_id: int) -> Order:
    """Move an order to another branch/department, keeping where it came from."""
    order = get_order(db, order_id, lock=True)
    if order.status in (OrderStatus.completed, OrderStatus.cancelled):
        raise OrderLockedError(order.id, OrderLockedError.STATUS, order.status.value)

    department = db.get(Department, department_id)
    if department is None:
        raise NotFoundError("Department", department_id)
    if department.branch_id != branch_id:
        raise ValidationError(
            "Department does not belong to branch",
            branch_id=branch_id,
            department_id=department_id,
        )
    if order.branch_id == branch_id and order.department_id == department_id:
        raise ValidationError("Order already belongs to this branch/department", order_id=order.id)

    if order.branch_id != branch_id:
        order.transferred_from_branch_id = order.branch_id
    order.branch_id = branch_id
    order.department_id = department_id
    db.flush()
    logger.info("Order %s transferred to branch=%s department=%s", order.order_number, branch_id, department_id)
    return order


# ---------- RESETS (admin) ----------
def _has_purchase(item: OrderItem) -> bool:
    return bool(item.is_purchased) or item.actual_quantity is not None or item.actual_price is not None


def clear_purchase(item: OrderItem) -> None:
    item.actual_price = None
    item.actual_quantity = None
    item.is_purchased = False
    item.purchase_reason = None


def clear_item(item: OrderItem) -> None:
    clear_purchase(item)
    item.received_quantity = None
    item.is_received = False
    item.received_at = None


def _reset(order: Order) -> None:
    order.status = OrderStatus.draft
    order.submitted_at = None
    for item in order.items:
        clear_item(item)


def reset_order(db: Session, order_id: int) -> Order:
    order = get_order(db, order_id, lock=True)
    _reset(order)
    db.flush()
    logger.info("Order %s reset to draft", order.order_number)
    return order


def reset_order_day(db: Session, order_date: date) -> dict:
    orders = (
        db.execute(
            select(Order)
            .where(Order.order_date == order_date)
            .where(Order.status != OrderStatus.cancelled)
            .with_for_update()
        )
        .scalars()
        .all()
    )
    for order in orders:
        _reset(order)
    db.flush()
    logger.info("Order day %s reset (%d orders)", order_date, len(orders))
    return {"order_date": order_date, "orders_reset": len(orders)}


def reset_all_orders(db: Session) -> dict:
    """
    Delete every order and order item. Irreversible.

    Precondition (trusted, not checked here): the caller obtained an explicit
    double confirmation from the operator before invoking this.
    """
    count = db.execute(select(func.count(Order.id))).scalar_one()
    db.execute(delete(OrderItem))
    db.execute(delete(Order))
    db.flush()
    logger.warning("All orders deleted (%d)", count)
    return {"deleted_orders": int(count)}


# ---------- QUERIES ----------
def list_orders(
    db: Session,
    *,
    status: OrderStatus | None = None,
    order_date: date | None = None,
    branch_id: int | None = None,
    department_id: int | None = None,
    user_id: int | None = None,
) -> list[Order]:
    stmt = select(Order).order_by(Order.order_date.desc(), Order.created_at.desc(), Order.id.desc())
    if status is not None:
        stmt = stmt.where(Order.status == status)
    if order_date is not None:
        stmt = stmt.where(Order.order_date == order_date)
    if branch_id is not None:
        stmt = stmt.where(Order.branch_id == branch_id)
    if department_id is not None:
        stmt = stmt.where(Order.department_id == department_id)
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    return list(db.execute(stmt).scalars().all())


def list_user_orders(
    db: Session,
    user: User,
    *,
    status: OrderStatus | None = None,
    order_date: date | None = None,
) -> list[Order]:
    return list_orders(db, status=status, order_date=order_date, user_id=user.id)
