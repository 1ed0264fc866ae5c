"""
Order day gate.

One open/closed flag per (order_date, branch). A branch-specific record
overrides the global record (branch_id NULL); with neither, the day is closed.
Open/close are idempotent toggles, nothing else is remembered.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.core.config import ORDER_WINDOW_DAYS, local_today
from backend.app.core.errors import OutOfWindowError
from backend.app.db.models.models_v1 import OrderDayStatus

logger = logging.getLogger(__name__)


def _find(db: Session, order_date: date, branch_id: int | None) -> OrderDayStatus | None:
    stmt = select(OrderDayStatus).where(OrderDayStatus.order_date == order_date)
    if branch_id is None:
        stmt = stmt.where(OrderDayStatus.branch_id.is_(None))
    else:
        stmt = stmt.where(OrderDayStatus.branch_id == branch_id)
    return db.execute(stmt).scalar_one_or_none()


def is_open(db: Session, order_date: date, branch_id: int | None = None) -> bool:
    if branch_id is not None:
        row = _find(db, order_date, branch_id)
        if row is not None:
            return bool(row.is_open)
    row = _find(db, order_date, None)
    return bool(row.is_open) if row is not None else False


def get_day_status(db: Session, order_date: date, branch_id: int | None = None) -> dict:
    return {
        "order_date": order_date,
        "branch_id": branch_id,
        "is_open": is_open(db, order_date, branch_id),
    }


def open_window(today: date | None = None) -> tuple[date, date]:
    first = today or local_today()
    return first, first + timedelta(days=ORDER_WINDOW_DAYS)


def _set(db: Session, order_date: date, branch_id: int | None, value: bool) -> OrderDayStatus:
    row = _find(db, order_date, branch_id)
    if row is None:
        try:
            with db.begin_nested():
                row = OrderDayStatus(order_date=order_date, branch_id=branch_id, is_open=value)
                db.add(row)
            return row
        except IntegrityError:
            # a concurrent open/close inserted the record first
            logger.info("Order day record for %s/%s already created, updating it", order_date, branch_id)
            row = _find(db, order_date, branch_id)
    row.is_open = value
    db.flush()
    return row


def open_day(
    db: Session,
    order_date: date,
    branch_id: int | None = None,
    *,
    today: date | None = None,
) -> dict:
    first, last = open_window(today)
    if not (first <= order_date <= last):
        raise OutOfWindowError(order_date, first, last)

    _set(db, order_date, branch_id, True)
    logger.info("Order day opened: date=%s branch=%s", order_date, branch_id or "all")
    return {"order_date": order_date, "branch_id": branch_id, "is_open": True}


def close_day(db: Session, order_date: date, branch_id: int | None = None) -> dict:
    """
    Close ordering for a date. Any date is accepted (corrections of past days).
    Existing orders and items are left untouched; only further
    create/edit/submit/delete calls are refused.
    """
    _set(db, order_date, branch_id, False)
    logger.info("Order day closed: date=%s branch=%s", order_date, branch_id or "all")
    return {"order_date": order_date, "branch_id": branch_id, "is_open": False}
