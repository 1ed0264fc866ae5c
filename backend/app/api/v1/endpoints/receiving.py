from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db
from backend.app.core.config import local_today
from backend.app.db.models.core_types import ReceivingScope
from backend.app.db.models.models_v1 import User
from backend.services import receiving as receiving_service

router = APIRouter(prefix="/orders/receiving")


# ---------- Schemas ----------
class ReceivingItemIn(BaseModel):
    # scope=mine: order_item_id; scope=branch: product_id (+ product_group_id)
    order_item_id: int | None = None
    product_id: int | None = None
    product_group_id: int | None = None
    order_date: date | None = None
    received_quantity: Decimal | None = None
    is_received: bool = True


class ReceivingUpdate(BaseModel):
    order_date: date | None = None
    items: list[ReceivingItemIn] = Field(default_factory=list)


class ManualReceivingCreate(BaseModel):
    receive_date: date | None = None
    product_id: int
    received_quantity: Decimal
    receive_notes: str = Field(default="", max_length=255)


class ReceivingEdit(BaseModel):
    order_item_id: int | None = None
    order_date: date | None = None
    product_id: int | None = None
    product_group_id: int | None = None


# ---------- Endpoints ----------
@router.get("")
def list_receiving(
    order_date: date | None = Query(default=None, alias="date"),
    scope: ReceivingScope = ReceivingScope.mine,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return receiving_service.list_receiving_items(db, user, order_date or local_today(), scope)


@router.put("")
def update_receiving(
    payload: ReceivingUpdate,
    scope: ReceivingScope = ReceivingScope.mine,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updates = [
        receiving_service.ReceivingUpdate(
            received_quantity=it.received_quantity,
            is_received=it.is_received,
            order_item_id=it.order_item_id,
            product_id=it.product_id,
            product_group_id=it.product_group_id,
            order_date=it.order_date,
        )
        for it in payload.items
    ]
    result = receiving_service.update_receiving_items(db, user, updates, scope, payload.order_date)
    db.commit()
    return result


@router.post("/manual")
def create_manual_receiving(
    payload: ManualReceivingCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    m = receiving_service.create_manual_receiving_item(
        db,
        user,
        payload.receive_date or local_today(),
        payload.product_id,
        payload.received_quantity,
        payload.receive_notes,
    )
    db.commit()
    db.refresh(m)
    return {
        "id": m.id,
        "receive_date": m.receive_date,
        "product_id": m.product_id,
        "received_quantity": float(m.received_quantity),
        "receive_notes": m.receive_notes,
        "received_at": m.received_at,
    }


@router.post("/edit")
def start_edit(
    payload: ReceivingEdit,
    scope: ReceivingScope = ReceivingScope.mine,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = receiving_service.start_edit_item(
        db,
        user,
        scope,
        order_item_id=payload.order_item_id,
        order_date=payload.order_date,
        product_id=payload.product_id,
        product_group_id=payload.product_group_id,
    )
    db.commit()
    return result


@router.get("/history")
def history(
    scope: ReceivingScope = ReceivingScope.mine,
    from_date: date | None = None,
    to_date: date | None = None,
    limit: int = Query(default=200, ge=1, le=1000),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return receiving_service.receiving_history(
        db, user, scope, from_date=from_date, to_date=to_date, limit=limit
    )
