from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from backend.app.core.errors import (
    EmptyOrderError,
    InvalidTransitionError,
    NotFoundError,
    OrderLockedError,
    ValidationError,
)
from backend.app.db.models.core_types import OrderStatus
from backend.app.db.models.models_v1 import Order, OrderItem
from backend.services import order_day_gate, orders, purchasing
from backend.services.orders import ItemInput, plan_item_changes


def _existing(product_id, quantity, price=None, notes=None):
    return SimpleNamespace(
        product_id=product_id,
        quantity=Decimal(str(quantity)),
        requested_price=Decimal(str(price)) if price is not None else None,
        notes=notes,
    )


# ---------- change set (pure) ----------
def test_plan_item_changes_classifies_by_product():
    existing = [_existing(1, 2), _existing(2, 5), _existing(3, 1)]
    incoming = [
        ItemInput(1, Decimal("2.000")),  # unchanged
        ItemInput(2, Decimal("7.000")),  # modified
        ItemInput(3, Decimal("0")),  # zero quantity removes
        ItemInput(4, Decimal("1.000")),  # added
    ]
    plan = plan_item_changes(existing, incoming)

    assert [o.product_id for o in plan.unchanged] == [1]
    assert [(o.product_id, n.quantity) for o, n in plan.modified] == [(2, Decimal("7.000"))]
    assert [o.product_id for o in plan.removed] == [3]
    assert [n.product_id for n in plan.added] == [4]
    assert plan.remaining_count == 3


def test_plan_item_changes_omitted_product_is_removed():
    plan = plan_item_changes([_existing(1, 2), _existing(2, 2)], [ItemInput(2, Decimal("2.000"))])
    assert [o.product_id for o in plan.removed] == [1]


def test_plan_item_changes_rejects_duplicates():
    with pytest.raises(ValidationError):
        plan_item_changes([], [ItemInput(1, Decimal("1")), ItemInput(1, Decimal("2"))])


# ---------- create ----------
def test_create_order_needs_open_day(db_session, world, order_date):
    with pytest.raises(OrderLockedError) as exc:
        orders.create_order(db_session, world["cook"], order_date, [ItemInput(world["pork"].id, Decimal("1"))])
    assert exc.value.reason == OrderLockedError.DAY_CLOSED


def test_create_order_as_draft_with_defaults(db_session, world, open_day):
    order = orders.create_order(
        db_session,
        world["cook"],
        open_day,
        [
            ItemInput(world["pork"].id, Decimal("2")),
            ItemInput(world["egg"].id, Decimal("10"), requested_price=Decimal("5")),
            ItemInput(999, Decimal("0")),  # dropped before the product lookup
        ],
    )
    assert order.status == OrderStatus.draft
    assert order.order_number == f"ORD-{open_day:%Y%m%d}-{order.id:06d}"
    assert order.branch_id == world["branch"].id
    assert order.department_id == world["kitchen"].id

    by_product = {it.product_id: it for it in order.items}
    assert set(by_product) == {world["pork"].id, world["egg"].id}
    # requested price falls back to the product default
    assert by_product[world["pork"].id].requested_price == Decimal("120.00")
    assert order.total_amount == Decimal("290.00")


def test_create_order_requires_a_positive_item(db_session, world, open_day):
    with pytest.raises(EmptyOrderError):
        orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("0"))])


def test_create_order_unknown_product(db_session, world, open_day):
    with pytest.raises(NotFoundError):
        orders.create_order(db_session, world["cook"], open_day, [ItemInput(12345, Decimal("1"))])


# ---------- edit ----------
def test_update_order_applies_change_set(db_session, world, open_day, make):
    rice = make.product("ข้าวสาร", world["group"])
    order = orders.create_order(
        db_session,
        world["cook"],
        open_day,
        [ItemInput(world["pork"].id, Decimal("2")), ItemInput(world["egg"].id, Decimal("10"))],
    )
    orders.update_order(
        db_session,
        order.id,
        [ItemInput(world["pork"].id, Decimal("3")), ItemInput(rice.id, Decimal("5"))],
    )
    db_session.refresh(order)

    assert {it.product_id: it.quantity for it in order.items} == {
        world["pork"].id: Decimal("3.000"),
        rice.id: Decimal("5.000"),
    }
    # edited item keeps its price
    assert order.items[0].requested_price == Decimal("120.00")


def test_update_order_cannot_remove_everything(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    with pytest.raises(EmptyOrderError):
        orders.update_order(db_session, order.id, [])


def test_edit_refused_once_in_processing(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.submit_order(db_session, order.id)
    purchasing.record_purchase_by_product(db_session, open_day, world["pork"].id, actual_price=Decimal("110"))
    purchasing.complete_purchases_by_product_group(db_session, open_day, world["group"].id)
    assert order.status == OrderStatus.completed

    with pytest.raises(OrderLockedError) as exc:
        orders.update_order(db_session, order.id, [ItemInput(world["pork"].id, Decimal("1"))])
    assert exc.value.reason == OrderLockedError.STATUS
    with pytest.raises(OrderLockedError):
        orders.delete_order(db_session, order.id)


def test_submitted_order_still_editable_while_open(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.submit_order(db_session, order.id)
    orders.update_order(db_session, order.id, [ItemInput(world["pork"].id, Decimal("4"))])
    assert order.items[0].quantity == Decimal("4.000")
    assert order.status == OrderStatus.submitted


def test_quantity_edit_clears_recorded_purchase(db_session, world, open_day):
    pork = world["pork"]
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(pork.id, Decimal("10"))])
    orders.submit_order(db_session, order.id)
    purchasing.record_purchase_by_product(
        db_session, open_day, pork.id, actual_price=Decimal("110"), actual_quantity=Decimal("10")
    )

    orders.update_order(db_session, order.id, [ItemInput(pork.id, Decimal("20"))])

    item = order.items[0]
    assert item.quantity == Decimal("20.000")
    assert (item.actual_price, item.actual_quantity, item.is_purchased, item.purchase_reason) == (
        None,
        None,
        False,
        None,
    )


def test_note_edit_keeps_recorded_purchase(db_session, world, open_day):
    pork = world["pork"]
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(pork.id, Decimal("10"))])
    orders.submit_order(db_session, order.id)
    purchasing.record_purchase_by_product(db_session, open_day, pork.id, actual_price=Decimal("110"))

    orders.update_order(db_session, order.id, [ItemInput(pork.id, Decimal("10"), notes="ไม่เอามัน")])

    item = order.items[0]
    assert item.notes == "ไม่เอามัน"
    assert item.is_purchased is True
    assert item.actual_quantity == Decimal("10.000")


def test_gate_is_rechecked_at_call_time(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    order_day_gate.close_day(db_session, open_day)
    with pytest.raises(OrderLockedError):
        orders.submit_order(db_session, order.id)
    with pytest.raises(OrderLockedError):
        orders.delete_order(db_session, order.id)


# ---------- transitions ----------
def test_submit_only_from_draft(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.submit_order(db_session, order.id)
    assert order.submitted_at is not None
    with pytest.raises(InvalidTransitionError):
        orders.submit_order(db_session, order.id)


def test_cancel_then_cannot_cancel_again(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.cancel_order(db_session, order.id)
    assert order.status == OrderStatus.cancelled
    with pytest.raises(InvalidTransitionError):
        orders.cancel_order(db_session, order.id)


def test_delete_order_removes_items(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.delete_order(db_session, order.id)
    assert db_session.execute(select(func.count(OrderItem.id))).scalar_one() == 0
    with pytest.raises(NotFoundError):
        orders.get_order(db_session, order.id)


# ---------- admin ----------
def test_reset_order_clears_purchase_and_receiving(db_session, world, open_day):
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.submit_order(db_session, order.id)
    purchasing.record_purchase_by_product(db_session, open_day, world["pork"].id, actual_price=Decimal("110"))

    orders.reset_order(db_session, order.id)

    item = order.items[0]
    assert order.status == OrderStatus.draft
    assert order.submitted_at is None
    assert (item.actual_price, item.actual_quantity, item.is_purchased, item.purchase_reason) == (
        None,
        None,
        False,
        None,
    )
    assert item.received_at is None


def test_reset_order_day_skips_cancelled(db_session, world, open_day):
    a = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    b = orders.create_order(db_session, world["barista"], open_day, [ItemInput(world["egg"].id, Decimal("6"))])
    orders.submit_order(db_session, a.id)
    orders.cancel_order(db_session, b.id)

    result = orders.reset_order_day(db_session, open_day)

    assert result["orders_reset"] == 1
    assert a.status == OrderStatus.draft
    assert b.status == OrderStatus.cancelled
    # the gate is not touched
    assert order_day_gate.is_open(db_session, open_day)


def test_reset_all_orders_deletes_everything(db_session, world, open_day):
    orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.create_order(db_session, world["barista"], open_day, [ItemInput(world["egg"].id, Decimal("6"))])

    assert orders.reset_all_orders(db_session) == {"deleted_orders": 2}
    db_session.expire_all()
    assert db_session.execute(select(func.count(Order.id))).scalar_one() == 0
    assert db_session.execute(select(func.count(OrderItem.id))).scalar_one() == 0


def test_transfer_order_records_origin(db_session, world, open_day, make):
    other = make.branch("สาขาสอง")
    other_dept = make.department(other, "ครัว")
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])

    orders.transfer_order(db_session, order.id, other.id, other_dept.id)

    assert order.branch_id == other.id
    assert order.department_id == other_dept.id
    assert order.transferred_from_branch_id == world["branch"].id


def test_transfer_order_department_must_match_branch(db_session, world, open_day, make):
    other = make.branch("สาขาสอง")
    order = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    with pytest.raises(ValidationError):
        orders.transfer_order(db_session, order.id, other.id, world["bar"].id)


def test_list_user_orders_only_returns_own(db_session, world, open_day):
    mine = orders.create_order(db_session, world["cook"], open_day, [ItemInput(world["pork"].id, Decimal("2"))])
    orders.create_order(db_session, world["barista"], open_day, [ItemInput(world["egg"].id, Decimal("6"))])
    assert [o.id for o in orders.list_user_orders(db_session, world["cook"])] == [mine.id]
