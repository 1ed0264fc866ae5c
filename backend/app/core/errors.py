"""
Business-rule errors raised by the procurement core.

Every error is user-facing and carries a stable ``code`` plus enough
structure (ids, fields, offending items) for the caller to build a specific
message. Infrastructure failures are NOT modelled here: they surface as
SQLAlchemy exceptions and are handled separately at the HTTP boundary.
"""

from __future__ import annotations

from typing import Any


class ProcurementError(Exception):
    code = "procurement_error"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.extra}


# ---------- VALIDATION ----------
class ValidationError(ProcurementError):
    code = "validation_error"


class EmptyOrderError(ValidationError):
    code = "empty_order"

    def __init__(self, message: str = "At least one item with quantity > 0 is required"):
        super().__init__(message)


class ReasonRequiredError(ValidationError):
    code = "reason_required"

    def __init__(self, product_id: int, ordered, actual, allowed_reasons: list[str]):
        super().__init__(
            f"Purchased quantity {actual} is below ordered {ordered}; a shortage reason is required",
            product_id=product_id,
            ordered_quantity=str(ordered),
            actual_quantity=str(actual),
            allowed_reasons=allowed_reasons,
        )


class InvalidManualReceiptError(ValidationError):
    code = "invalid_manual_receipt"

    def __init__(self, message: str, field: str):
        super().__init__(message, field=field)


class OutOfWindowError(ProcurementError):
    code = "out_of_window"

    def __init__(self, order_date, first_allowed, last_allowed):
        super().__init__(
            f"Order date must be between {first_allowed} and {last_allowed}",
            order_date=str(order_date),
            first_allowed=str(first_allowed),
            last_allowed=str(last_allowed),
        )


# ---------- STATE ----------
class StateConflictError(ProcurementError):
    code = "state_conflict"
    status_code = 409


class OrderLockedError(StateConflictError):
    """
    Edit/delete refused.

    reason == "day_closed": admin closed ordering for the order date
    reason == "status":     order already in processing (not draft/submitted)
    """

    code = "order_locked"
    DAY_CLOSED = "day_closed"
    STATUS = "status"

    def __init__(self, order_id: int | None, reason: str, status: str | None = None):
        if reason == self.DAY_CLOSED:
            message = "Order receiving is closed for this date"
        else:
            message = "Order is already in processing"
        super().__init__(message, order_id=order_id, reason=reason, status=status)
        self.reason = reason


class InvalidTransitionError(StateConflictError):
    code = "invalid_transition"

    def __init__(self, order_id: int, from_status: str, to_status: str):
        super().__init__(
            f"Cannot move order from {from_status} to {to_status}",
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
        )


class ReceivingLockedError(StateConflictError):
    code = "receiving_locked"

    def __init__(self, order_item_ids: list[int]):
        super().__init__(
            "Receiving already saved for these items; start an edit first",
            order_item_ids=order_item_ids,
        )


class IncompletePurchaseError(ProcurementError):
    code = "incomplete_purchase"
    status_code = 409

    def __init__(self, items: list[dict[str, Any]]):
        names = ", ".join(sorted({str(i.get("product_name") or i["product_id"]) for i in items}))
        super().__init__(f"Still missing: {names}", items=items)
        self.items = items


class NotFoundError(ProcurementError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found", entity=entity, id=entity_id)
