"""
Receiving reconciliation.

Requesters confirm what physically arrived, either per own order item
(scope "mine") or once per product for the whole branch (scope "branch").
A branch-level quantity is split back over the contributing order items
pro-rata to what each requested (rounded down, remainder on the last item),
so the split always adds up to the submitted quantity exactly.

Saving with is_received sets received_at, which locks the item; only an
explicit start_edit_item() unlocks it again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core.errors import (
    InvalidManualReceiptError,
    NotFoundError,
    ReceivingLockedError,
    ValidationError,
)
from backend.app.db.models.core_types import (
    PURCHASABLE_STATUSES,
    ManualReceiptReason,
    ReceiptOutcome,
    ReceivingScope,
)
from backend.app.db.models.models_v1 import (
    Branch,
    Department,
    ManualReceivingItem,
    Order,
    OrderItem,
    Product,
    ProductGroup,
    Unit,
    User,
)
from backend.services.aggregation import thai_sort_key
from backend.services.quantities import ZERO, apportion, to_qty

logger = logging.getLogger(__name__)

MANUAL_RECEIPT_REASONS = [r.value for r in ManualReceiptReason]


@dataclass(frozen=True)
class ReceivingUpdate:
    received_quantity: Decimal | None
    is_received: bool = True
    order_item_id: int | None = None
    product_id: int | None = None
    product_group_id: int | None = None
    order_date: date | None = None


def classify(received: Decimal | None, ordered: Decimal) -> tuple[Decimal | None, ReceiptOutcome | None]:
    """diff = received - ordered; <0 shortage, >0 surplus, 0 exact. Nothing received yet -> (None, None)."""
    if received is None:
        return None, None
    diff = to_qty(received) - to_qty(ordered)
    if diff < 0:
        return diff, ReceiptOutcome.shortage
    if diff > 0:
        return diff, ReceiptOutcome.surplus
    return diff, ReceiptOutcome.exact


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime | None) -> datetime:
    if dt is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _num(value) -> float | None:
    return float(value) if value is not None else None


def _scope_filter(stmt, user: User, scope: ReceivingScope):
    if scope == ReceivingScope.mine:
        return stmt.where(Order.user_id == user.id)
    if user.branch_id is None:
        raise ValidationError("User is not assigned to a branch", user_id=user.id)
    return stmt.where(Order.branch_id == user.branch_id)


def _item_query(user: User, scope: ReceivingScope):
    stmt = (
        select(OrderItem, Order, Product, Unit.abbreviation, ProductGroup.name, Department.name, User.name)
        .join(Order, Order.id == OrderItem.order_id)
        .join(Product, Product.id == OrderItem.product_id)
        .outerjoin(Unit, Unit.id == Product.unit_id)
        .outerjoin(ProductGroup, ProductGroup.id == Product.product_group_id)
        .outerjoin(Department, Department.id == Order.department_id)
        .outerjoin(User, User.id == Order.user_id)
        .where(Order.status.in_(PURCHASABLE_STATUSES))
        .order_by(OrderItem.id)
    )
    return _scope_filter(stmt, user, scope)


def _manual_query(user: User, scope: ReceivingScope):
    stmt = (
        select(ManualReceivingItem, Product, Unit.abbreviation, ProductGroup.name)
        .join(Product, Product.id == ManualReceivingItem.product_id)
        .outerjoin(Unit, Unit.id == Product.unit_id)
        .outerjoin(ProductGroup, ProductGroup.id == Product.product_group_id)
        .order_by(ManualReceivingItem.id)
    )
    if scope == ReceivingScope.mine:
        return stmt.where(ManualReceivingItem.user_id == user.id)
    return stmt.where(ManualReceivingItem.branch_id == user.branch_id)


def _manual_row(m: ManualReceivingItem, product: Product, unit_abbr, group_name) -> dict:
    diff, outcome = classify(m.received_quantity, ZERO)
    return {
        "is_manual": True,
        "manual_item_id": m.id,
        "order_item_ids": [],
        "date": m.receive_date,
        "product_id": product.id,
        "product_name": product.name,
        "unit_abbr": unit_abbr,
        "product_group_id": product.product_group_id,
        "product_group_name": group_name,
        "ordered_quantity": 0.0,
        "actual_quantity": None,
        "received_quantity": _num(m.received_quantity),
        "is_received": True,
        "received_at": m.received_at,
        "is_locked": True,
        "diff": _num(diff),
        "outcome": outcome.value,
        "purchase_reasons": [],
        "receive_notes": m.receive_notes,
    }


def list_receiving_items(db: Session, user: User, order_date: date, scope: ReceivingScope) -> list[dict]:
    scope = ReceivingScope(scope)
    rows = db.execute(_item_query(user, scope).where(Order.order_date == order_date)).all()

    result = []
    if scope == ReceivingScope.mine:
        for item, order, product, unit_abbr, group_name, dept_name, _ in rows:
            diff, outcome = classify(item.received_quantity, item.quantity)
            result.append(
                {
                    "is_manual": False,
                    "order_item_id": item.id,
                    "order_item_ids": [item.id],
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "date": order.order_date,
                    "product_id": product.id,
                    "product_name": product.name,
                    "unit_abbr": unit_abbr,
                    "product_group_id": product.product_group_id,
                    "product_group_name": group_name,
                    "department_name": dept_name,
                    "ordered_quantity": _num(item.quantity),
                    "actual_quantity": _num(item.actual_quantity),
                    "received_quantity": _num(item.received_quantity),
                    "is_received": item.is_received,
                    "received_at": item.received_at,
                    "is_locked": item.received_at is not None,
                    "diff": _num(diff),
                    "outcome": outcome.value if outcome else None,
                    "purchase_reasons": [item.purchase_reason] if item.purchase_reason else [],
                }
            )
    else:
        consolidated: dict[tuple, dict] = {}
        for item, order, product, unit_abbr, group_name, dept_name, user_name in rows:
            key = (product.id, product.product_group_id)
            row = consolidated.get(key)
            if row is None:
                row = consolidated[key] = {
                    "is_manual": False,
                    "order_item_ids": [],
                    "date": order.order_date,
                    "product_id": product.id,
                    "product_name": product.name,
                    "unit_abbr": unit_abbr,
                    "product_group_id": product.product_group_id,
                    "product_group_name": group_name,
                    "_items": [],
                    "requesters": [],
                }
            row["order_item_ids"].append(item.id)
            row["_items"].append(item)
            row["requesters"].append(
                {"department_name": dept_name, "user_name": user_name, "quantity": _num(item.quantity)}
            )

        for row in consolidated.values():
            items: list[OrderItem] = row.pop("_items")
            ordered = sum((to_qty(i.quantity) for i in items), ZERO)
            received_values = [to_qty(i.received_quantity) for i in items if i.received_quantity is not None]
            received = sum(received_values, ZERO) if received_values else None
            actual_values = [to_qty(i.actual_quantity) for i in items if i.actual_quantity is not None]
            stamps = [i.received_at for i in items if i.received_at is not None]
            diff, outcome = classify(received, ordered)
            row.update(
                {
                    "ordered_quantity": _num(ordered),
                    "actual_quantity": _num(sum(actual_values, ZERO)) if actual_values else None,
                    "received_quantity": _num(received),
                    "is_received": all(i.is_received for i in items),
                    "received_at": max(stamps, key=_aware) if stamps else None,
                    "is_locked": bool(stamps),
                    "diff": _num(diff),
                    "outcome": outcome.value if outcome else None,
                    "purchase_reasons": sorted({i.purchase_reason for i in items if i.purchase_reason}),
                }
            )
            result.append(row)

    result.sort(key=lambda r: (thai_sort_key(r["product_group_name"]), thai_sort_key(r["product_name"]), r["product_id"]))

    manual = db.execute(_manual_query(user, scope).where(ManualReceivingItem.receive_date == order_date)).all()
    result.extend(_manual_row(*m) for m in manual)
    return result


# ---------- UPDATES ----------
def _received_value(update: ReceivingUpdate) -> Decimal | None:
    qty = to_qty(update.received_quantity)
    if qty is not None and qty < 0:
        raise ValidationError("received_quantity must be >= 0", field="received_quantity")
    if update.is_received and qty is None:
        raise ValidationError("received_quantity is required when marking received", field="received_quantity")
    return qty


def _mark(item: OrderItem, qty: Decimal | None, is_received: bool, now: datetime) -> None:
    item.received_quantity = qty
    item.is_received = bool(is_received)
    item.received_at = now if is_received else None


def _locked_branch_items(db: Session, user: User, update: ReceivingUpdate, order_date: date | None) -> list[OrderItem]:
    day = update.order_date or order_date
    if day is None or update.product_id is None:
        raise ValidationError("order_date and product_id are required for branch receiving")

    stmt = (
        select(OrderItem)
        .join(Order, Order.id == OrderItem.order_id)
        .join(Product, Product.id == OrderItem.product_id)
        .where(Order.order_date == day)
        .where(Order.status.in_(PURCHASABLE_STATUSES))
        .where(OrderItem.product_id == update.product_id)
        .order_by(OrderItem.id)
        .with_for_update(of=OrderItem)
    )
    if update.product_group_id is not None:
        stmt = stmt.where(Product.product_group_id == update.product_group_id)
    items = db.execute(_scope_filter(stmt, user, ReceivingScope.branch)).scalars().all()
    if not items:
        raise NotFoundError("Order items", f"product {update.product_id} on {day}")
    return list(items)


def _locked_own_item(db: Session, user: User, order_item_id: int | None) -> OrderItem:
    if order_item_id is None:
        raise ValidationError("order_item_id is required for own receiving")
    stmt = (
        select(OrderItem)
        .join(Order, Order.id == OrderItem.order_id)
        .where(OrderItem.id == order_item_id)
        .where(Order.status.in_(PURCHASABLE_STATUSES))
        .with_for_update(of=OrderItem)
    )
    item = db.execute(_scope_filter(stmt, user, ReceivingScope.mine)).scalar_one_or_none()
    if item is None:
        raise NotFoundError("Order item", order_item_id)
    return item


def update_receiving_items(
    db: Session,
    user: User,
    updates: Sequence[ReceivingUpdate],
    scope: ReceivingScope,
    order_date: date | None = None,
) -> dict:
    """
    Save received quantities. All entries are validated (including the lock
    check) before anything is written, so a refused call changes nothing.
    """
    scope = ReceivingScope(scope)
    plan: list[tuple[list[OrderItem], list[Decimal | None], bool]] = []
    locked: list[int] = []

    for update in updates:
        qty = _received_value(update)
        if scope == ReceivingScope.mine:
            items = [_locked_own_item(db, user, update.order_item_id)]
            shares = [qty]
        else:
            items = _locked_branch_items(db, user, update, order_date)
            shares = apportion(qty, [to_qty(i.quantity) for i in items]) if qty is not None else [None] * len(items)
        locked.extend(i.id for i in items if i.received_at is not None)
        plan.append((items, shares, update.is_received))

    if locked:
        raise ReceivingLockedError(sorted(set(locked)))

    now = _now()
    touched = 0
    for items, shares, is_received in plan:
        for item, share in zip(items, shares):
            _mark(item, share, is_received, now)
            touched += 1
    db.flush()
    logger.info("Receiving saved by user=%s scope=%s (%d items)", user.id, scope.value, touched)
    return {"updated": touched}


def start_edit_item(
    db: Session,
    user: User,
    scope: ReceivingScope,
    *,
    order_item_id: int | None = None,
    order_date: date | None = None,
    product_id: int | None = None,
    product_group_id: int | None = None,
) -> dict:
    """Explicitly unlock saved receiving so it can be changed again."""
    scope = ReceivingScope(scope)
    if scope == ReceivingScope.mine:
        items = [_locked_own_item(db, user, order_item_id)]
    else:
        update = ReceivingUpdate(
            received_quantity=None,
            product_id=product_id,
            product_group_id=product_group_id,
            order_date=order_date,
        )
        items = _locked_branch_items(db, user, update, order_date)

    for item in items:
        item.received_at = None
    db.flush()
    logger.info("Receiving unlocked by user=%s items=%s", user.id, [i.id for i in items])
    return {"unlocked": [i.id for i in items]}


# ---------- OFF-ORDER RECEIPTS ----------
def create_manual_receiving_item(
    db: Session,
    user: User,
    receive_date: date,
    product_id: int,
    received_quantity,
    receive_notes: str | None,
) -> ManualReceivingItem:
    qty = to_qty(received_quantity)
    if qty is None or qty <= 0:
        raise InvalidManualReceiptError("received_quantity must be greater than 0", field="received_quantity")
    notes = (receive_notes or "").strip()
    if not notes:
        raise InvalidManualReceiptError("receive_notes is required", field="receive_notes")
    if user.branch_id is None or user.department_id is None:
        raise ValidationError("User is not assigned to a branch/department", user_id=user.id)
    if db.get(Product, product_id) is None:
        raise NotFoundError("Product", product_id)

    m = ManualReceivingItem(
        receive_date=receive_date,
        branch_id=user.branch_id,
        department_id=user.department_id,
        user_id=user.id,
        product_id=product_id,
        received_quantity=qty,
        receive_notes=notes,
        received_at=_now(),
    )
    db.add(m)
    db.flush()
    logger.info("Manual receipt %s: product=%s qty=%s by user=%s", m.id, product_id, qty, user.id)
    return m


def receiving_history(
    db: Session,
    user: User,
    scope: ReceivingScope,
    *,
    from_date: date | None = None,
    to_date: date | None = None,
    limit: int = 200,
) -> list[dict]:
    """Saved receipts (order items and off-order receipts), newest first."""
    scope = ReceivingScope(scope)
    stmt = _item_query(user, scope).where(OrderItem.received_at.is_not(None))
    manual_stmt = _manual_query(user, scope)
    if from_date is not None:
        stmt = stmt.where(Order.order_date >= from_date)
        manual_stmt = manual_stmt.where(ManualReceivingItem.receive_date >= from_date)
    if to_date is not None:
        stmt = stmt.where(Order.order_date <= to_date)
        manual_stmt = manual_stmt.where(ManualReceivingItem.receive_date <= to_date)

    history = []
    for item, order, product, unit_abbr, group_name, dept_name, user_name in db.execute(stmt).all():
        diff, outcome = classify(item.received_quantity, item.quantity)
        history.append(
            {
                "is_manual": False,
                "order_item_id": item.id,
                "order_number": order.order_number,
                "date": order.order_date,
                "product_id": product.id,
                "product_name": product.name,
                "unit_abbr": unit_abbr,
                "product_group_name": group_name,
                "department_name": dept_name,
                "user_name": user_name,
                "ordered_quantity": _num(item.quantity),
                "received_quantity": _num(item.received_quantity),
                "received_at": item.received_at,
                "diff": _num(diff),
                "outcome": outcome.value if outcome else None,
                "purchase_reasons": [item.purchase_reason] if item.purchase_reason else [],
            }
        )
    history.extend(_manual_row(*m) for m in db.execute(manual_stmt).all())

    history.sort(key=lambda r: (_aware(r["received_at"]), r["date"]), reverse=True)
    return history[:limit]


# ---------- ADMIN ----------
def receiving_report(db: Session, order_date: date, *, branch_id: int | None = None) -> dict:
    """
    Receiving of one day across branches, for the admin.

    One row per order item plus every off-order receipt of the day (is_manual).
    Totals cover order items only; off-order receipts are summed apart since
    nothing was ordered for them.
    """
    stmt = (
        select(OrderItem, Order, Product, Unit.abbreviation, ProductGroup.name, Branch.name, Department.name)
        .join(Order, Order.id == OrderItem.order_id)
        .join(Product, Product.id == OrderItem.product_id)
        .outerjoin(Unit, Unit.id == Product.unit_id)
        .outerjoin(ProductGroup, ProductGroup.id == Product.product_group_id)
        .outerjoin(Branch, Branch.id == Order.branch_id)
        .outerjoin(Department, Department.id == Order.department_id)
        .where(Order.order_date == order_date)
        .where(Order.status.in_(PURCHASABLE_STATUSES))
        .order_by(OrderItem.id)
    )
    manual_stmt = (
        select(ManualReceivingItem, Product, Unit.abbreviation, ProductGroup.name, Branch.name, Department.name)
        .join(Product, Product.id == ManualReceivingItem.product_id)
        .outerjoin(Unit, Unit.id == Product.unit_id)
        .outerjoin(ProductGroup, ProductGroup.id == Product.product_group_id)
        .outerjoin(Branch, Branch.id == ManualReceivingItem.branch_id)
        .outerjoin(Department, Department.id == ManualReceivingItem.department_id)
        .where(ManualReceivingItem.receive_date == order_date)
        .order_by(ManualReceivingItem.id)
    )
    if branch_id is not None:
        stmt = stmt.where(Order.branch_id == branch_id)
        manual_stmt = manual_stmt.where(ManualReceivingItem.branch_id == branch_id)

    rows = []
    ordered_total = ZERO
    received_total = ZERO
    for item, order, product, unit_abbr, group_name, branch_name, dept_name in db.execute(stmt).all():
        diff, outcome = classify(item.received_quantity, item.quantity)
        ordered_total += to_qty(item.quantity)
        if item.received_quantity is not None:
            received_total += to_qty(item.received_quantity)
        rows.append(
            {
                "is_manual": False,
                "order_item_id": item.id,
                "order_number": order.order_number,
                "branch_id": order.branch_id,
                "branch_name": branch_name,
                "department_name": dept_name,
                "date": order.order_date,
                "product_id": product.id,
                "product_name": product.name,
                "unit_abbr": unit_abbr,
                "product_group_id": product.product_group_id,
                "product_group_name": group_name,
                "ordered_quantity": _num(item.quantity),
                "actual_quantity": _num(item.actual_quantity),
                "received_quantity": _num(item.received_quantity),
                "received_at": item.received_at,
                "diff": _num(diff),
                "outcome": outcome.value if outcome else None,
                "purchase_reasons": [item.purchase_reason] if item.purchase_reason else [],
            }
        )
    rows.sort(
        key=lambda r: (
            thai_sort_key(r["branch_name"]),
            thai_sort_key(r["product_group_name"]),
            thai_sort_key(r["product_name"]),
            r["order_item_id"],
        )
    )

    manual_total = ZERO
    for m, product, unit_abbr, group_name, branch_name, dept_name in db.execute(manual_stmt).all():
        manual_total += to_qty(m.received_quantity)
        row = _manual_row(m, product, unit_abbr, group_name)
        row.update({"branch_id": m.branch_id, "branch_name": branch_name, "department_name": dept_name})
        rows.append(row)

    return {
        "order_date": order_date,
        "branch_id": branch_id,
        "ordered_quantity": _num(ordered_total),
        "received_quantity": _num(received_total),
        "manual_received_quantity": _num(manual_total),
        "manual_count": sum(1 for r in rows if r["is_manual"]),
        "items": rows,
    }
