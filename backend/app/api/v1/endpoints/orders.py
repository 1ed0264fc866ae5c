from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db
from backend.app.core.config import local_today
from backend.app.core.errors import NotFoundError
from backend.app.db.models.core_types import OrderStatus, Role
from backend.app.db.models.models_v1 import Order, User
from backend.app.schemas.orders import OrderRead
from backend.services import order_day_gate, orders as order_service

router = APIRouter(prefix="/orders")


# ---------- Schemas ----------
class OrderItemIn(BaseModel):
    product_id: int
    quantity: Decimal  # <= 0 means "not ordered" and is dropped
    requested_price: Decimal | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=1000)


class OrderCreate(BaseModel):
    order_date: date
    items: list[OrderItemIn] = Field(default_factory=list)


class OrderUpdate(BaseModel):
    items: list[OrderItemIn] = Field(default_factory=list)


# ---------- Helpers ----------
def to_item_inputs(items: list[OrderItemIn]) -> list[order_service.ItemInput]:
    return [
        order_service.ItemInput(
            product_id=it.product_id,
            quantity=it.quantity,
            requested_price=it.requested_price,
            notes=it.notes,
        )
        for it in items
    ]


def order_out(db: Session, order: Order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "order_date": order.order_date,
        "status": order.status.value,
        "branch_id": order.branch_id,
        "department_id": order.department_id,
        "user_id": order.user_id,
        "total_amount": float(order.total_amount or 0),
        "transferred_from_branch_id": order.transferred_from_branch_id,
        "submitted_at": order.submitted_at,
        "created_at": order.created_at,
        "is_open": order_day_gate.is_open(db, order.order_date, order.branch_id),
        "items": [
            {
                "id": it.id,
                "product_id": it.product_id,
                "product_name": it.product.name if it.product else None,
                "quantity": float(it.quantity),
                "requested_price": float(it.requested_price) if it.requested_price is not None else None,
                "notes": it.notes,
                "actual_price": float(it.actual_price) if it.actual_price is not None else None,
                "actual_quantity": float(it.actual_quantity) if it.actual_quantity is not None else None,
                "is_purchased": it.is_purchased,
                "purchase_reason": it.purchase_reason,
                "received_quantity": float(it.received_quantity) if it.received_quantity is not None else None,
                "is_received": it.is_received,
                "received_at": it.received_at,
            }
            for it in order.items
        ],
    }


def _own_order(db: Session, order_id: int, user: User) -> Order:
    order = order_service.get_order(db, order_id)
    # other requesters' orders are invisible to staff
    if user.role != Role.admin and order.user_id != user.id:
        raise NotFoundError("Order", order_id)
    return order


# ---------- Endpoints ----------
@router.get("/status")
def get_status(
    order_date: date | None = Query(default=None, alias="date"),
    branch_id: int | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    day = order_date or local_today()
    return order_day_gate.get_day_status(db, day, branch_id if branch_id is not None else user.branch_id)


@router.get("/my-orders", response_model=list[OrderRead])
def my_orders(
    status: OrderStatus | None = None,
    order_date: date | None = Query(default=None, alias="date"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = order_service.list_user_orders(db, user, status=status, order_date=order_date)
    return [order_out(db, o) for o in rows]


@router.post("", response_model=OrderRead)
def create_order(
    payload: OrderCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    order = order_service.create_order(db, user, payload.order_date, to_item_inputs(payload.items))
    db.commit()
    db.refresh(order)
    return order_out(db, order)


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return order_out(db, _own_order(db, order_id, user))


@router.put("/{order_id}", response_model=OrderRead)
def update_order(
    order_id: int,
    payload: OrderUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _own_order(db, order_id, user)
    order = order_service.update_order(db, order_id, to_item_inputs(payload.items))
    db.commit()
    db.refresh(order)
    return order_out(db, order)


@router.delete("/{order_id}")
def delete_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _own_order(db, order_id, user)
    result = order_service.delete_order(db, order_id)
    db.commit()
    return result


@router.post("/{order_id}/submit", response_model=OrderRead)
def submit_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _own_order(db, order_id, user)
    order = order_service.submit_order(db, order_id)
    db.commit()
    db.refresh(order)
    return order_out(db, order)


@router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _own_order(db, order_id, user)
    order = order_service.cancel_order(db, order_id)
    db.commit()
    db.refresh(order)
    return order_out(db, order)
