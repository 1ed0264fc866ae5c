import enum


class Role(str, enum.Enum):
    admin = "admin"
    staff = "staff"


class OrderStatus(str, enum.Enum):
    draft = "draft"
    submitted = "submitted"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


# Orders whose items count toward purchasing / receiving for a day
PURCHASABLE_STATUSES = (
    OrderStatus.submitted,
    OrderStatus.confirmed,
    OrderStatus.completed,
)

EDITABLE_STATUSES = (OrderStatus.draft, OrderStatus.submitted)


class ReceivingScope(str, enum.Enum):
    mine = "mine"
    branch = "branch"


class Dimension(str, enum.Enum):
    product_group = "product_group"
    branch = "branch"
    department = "department"
    product = "product"


class ReceiptOutcome(str, enum.Enum):
    shortage = "shortage"
    surplus = "surplus"
    exact = "exact"


class PurchaseReason(str, enum.Enum):
    expensive = "สินค้าแพง"
    out_of_stock = "สินค้าขาดตลาด"
    buy_later = "มาซื้ออีกครั้ง"


class ManualReceiptReason(str, enum.Enum):
    wrong_purchase = "ไม่ได้สั่งแต่ซื้อผิด"
    off_cycle = "สั่งนอกรอบ"
    other = "อื่นๆ"
