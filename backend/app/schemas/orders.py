from datetime import date, datetime

from pydantic import BaseModel


class OrderItemRead(BaseModel):
    id: int
    product_id: int
    product_name: str | None = None
    quantity: float
    requested_price: float | None = None
    notes: str | None = None

    actual_price: float | None = None
    actual_quantity: float | None = None
    is_purchased: bool
    purchase_reason: str | None = None

    received_quantity: float | None = None
    is_received: bool
    received_at: datetime | None = None

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    order_number: str
    order_date: date
    status: str
    branch_id: int
    department_id: int
    user_id: int
    total_amount: float
    transferred_from_branch_id: int | None = None
    submitted_at: datetime | None = None
    created_at: datetime
    is_open: bool  # computed from the order day gate, never stored
    items: list[OrderItemRead] = []

    class Config:
        from_attributes = True
