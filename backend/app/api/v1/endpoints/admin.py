from __future__ import annotations

from dataclasses import asdict
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db, require_admin
from backend.app.api.v1.endpoints.orders import order_out
from backend.app.core.errors import ValidationError
from backend.app.db.models.core_types import Dimension, OrderStatus
from backend.app.schemas.orders import OrderRead
from backend.services import aggregation, order_day_gate, orders as order_service, purchasing, receiving

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


# ---------- Schemas ----------
class DayGateIn(BaseModel):
    order_date: date
    branch_id: int | None = None


class DayIn(BaseModel):
    order_date: date


class ResetAllIn(BaseModel):
    confirm: bool = False
    confirm_again: bool = False


class TransferIn(BaseModel):
    branch_id: int
    department_id: int


class PurchaseIn(BaseModel):
    actual_price: Decimal | None = None
    actual_quantity: Decimal | None = None
    is_purchased: bool = True
    purchase_reason: str | None = Field(default=None, max_length=255)


class ProductPurchaseIn(PurchaseIn):
    order_date: date
    product_id: int


class GroupCompleteIn(BaseModel):
    order_date: date
    product_group_id: int | None = None  # None = products without a group


def _row_out(row: aggregation.ItemRow) -> dict:
    data = asdict(row)
    for k in ("quantity", "requested_price", "actual_price", "actual_quantity"):
        if data[k] is not None:
            data[k] = float(data[k])
    return data


# ---------- Orders ----------
@router.get("/orders", response_model=list[OrderRead])
def list_orders(
    status: OrderStatus | None = None,
    order_date: date | None = Query(default=None, alias="date"),
    branch_id: int | None = None,
    department_id: int | None = None,
    db: Session = Depends(get_db),
):
    rows = order_service.list_orders(
        db,
        status=status,
        order_date=order_date,
        branch_id=branch_id,
        department_id=department_id,
    )
    return [order_out(db, o) for o in rows]


@router.get("/orders/items")
def list_order_items(
    order_date: date = Query(alias="date"),
    status: list[OrderStatus] | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return [_row_out(r) for r in purchasing.load_item_rows(db, order_date, status)]


@router.get("/orders/aggregate")
def aggregate_orders(
    order_date: date = Query(alias="date"),
    dimension: Dimension = Dimension.product_group,
    rollup: bool = False,
    purchasing_view: bool = False,
    db: Session = Depends(get_db),
):
    """
    Consolidated view of a day.
    - rollup=false: dimension -> product
    - rollup=true:  dimension (branch/department, or "all" for product_group) -> product group -> product
    """
    rows = purchasing.load_item_rows(db, order_date)
    last_prices = purchasing.SqlLastPriceLookup(db, before=order_date)

    if rollup:
        outer = None if dimension == Dimension.product_group else dimension
        try:
            groups = aggregation.aggregate_rollup(rows, outer, last_prices=last_prices)
        except ValueError as e:
            raise ValidationError(str(e), field="dimension") from e
    else:
        groups = aggregation.aggregate(rows, dimension, last_prices=last_prices, purchasing_view=purchasing_view)

    return {
        "order_date": order_date,
        "dimension": dimension.value,
        "rollup": rollup,
        "groups": [aggregation.group_to_dict(g) for g in groups],
    }


@router.post("/orders/open")
def open_day(payload: DayGateIn, db: Session = Depends(get_db)):
    result = order_day_gate.open_day(db, payload.order_date, payload.branch_id)
    db.commit()
    return result


@router.post("/orders/close")
def close_day(payload: DayGateIn, db: Session = Depends(get_db)):
    result = order_day_gate.close_day(db, payload.order_date, payload.branch_id)
    db.commit()
    return result


@router.post("/orders/reset")
def reset_day(payload: DayIn, db: Session = Depends(get_db)):
    result = order_service.reset_order_day(db, payload.order_date)
    db.commit()
    return result


@router.post("/orders/reset-all")
def reset_all(payload: ResetAllIn, db: Session = Depends(get_db)):
    if not (payload.confirm and payload.confirm_again):
        raise ValidationError("Deleting every order needs confirm and confirm_again", field="confirm")
    result = order_service.reset_all_orders(db)
    db.commit()
    return result


@router.post("/orders/{order_id}/reset", response_model=OrderRead)
def reset_order(order_id: int, db: Session = Depends(get_db)):
    order = order_service.reset_order(db, order_id)
    db.commit()
    db.refresh(order)
    return order_out(db, order)


@router.put("/orders/{order_id}/transfer", response_model=OrderRead)
def transfer_order(order_id: int, payload: TransferIn, db: Session = Depends(get_db)):
    order = order_service.transfer_order(db, order_id, payload.branch_id, payload.department_id)
    db.commit()
    db.refresh(order)
    return order_out(db, order)


# ---------- Purchasing ----------
@router.put("/order-items/{item_id}/purchase")
def record_item_purchase(item_id: int, payload: PurchaseIn, db: Session = Depends(get_db)):
    result = purchasing.record_purchase(
        db,
        item_id,
        actual_price=payload.actual_price,
        actual_quantity=payload.actual_quantity,
        is_purchased=payload.is_purchased,
        purchase_reason=payload.purchase_reason,
    )
    db.commit()
    return result


@router.put("/purchases/by-product")
def record_product_purchase(payload: ProductPurchaseIn, db: Session = Depends(get_db)):
    result = purchasing.record_purchase_by_product(
        db,
        payload.order_date,
        payload.product_id,
        actual_price=payload.actual_price,
        actual_quantity=payload.actual_quantity,
        is_purchased=payload.is_purchased,
        purchase_reason=payload.purchase_reason,
    )
    db.commit()
    return result


@router.get("/purchases/reasons")
def reasons():
    return {
        "purchase_reasons": purchasing.PURCHASE_REASONS,
        "manual_receipt_reasons": receiving.MANUAL_RECEIPT_REASONS,
    }


@router.post("/purchases/complete")
def complete_day(payload: DayIn, db: Session = Depends(get_db)):
    result = purchasing.complete_purchases_by_date(db, payload.order_date)
    db.commit()
    return result


@router.post("/purchases/complete-by-product-group")
def complete_group(payload: GroupCompleteIn, db: Session = Depends(get_db)):
    result = purchasing.complete_purchases_by_product_group(db, payload.order_date, payload.product_group_id)
    db.commit()
    return result


# ---------- Receiving ----------
@router.get("/receiving")
def receiving_report(
    order_date: date = Query(alias="date"),
    branch_id: int | None = None,
    db: Session = Depends(get_db),
):
    return receiving.receiving_report(db, order_date, branch_id=branch_id)
