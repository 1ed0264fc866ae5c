"""
Aggregation engine.

Pure functions that regroup flat order-item rows into nested views by
product group, branch, department or product, with per-product and
per-group totals. No database access: historical "last known price" comes
through an injected ``LastPriceLookup``.

Output is deterministic and independent of input order; inputs are never
mutated (rows are frozen dataclasses).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Protocol, Sequence, Union

from backend.app.db.models.core_types import Dimension
from backend.services.quantities import ZERO, to_money, to_qty


# ---------- GROUP KEYS ----------
@dataclass(frozen=True, order=True)
class Identified:
    id: int


@dataclass(frozen=True)
class Unattributed:
    """Rows whose dimension value is missing (e.g. product without a group)."""


UNATTRIBUTED = Unattributed()
GroupKey = Union[Identified, Unattributed]


@dataclass(frozen=True)
class AllGroups:
    """Synthetic key of the single top-level roll-up group."""


ALL = AllGroups()

UNATTRIBUTED_LABELS = {
    Dimension.product_group: "ไม่ระบุกลุ่มสินค้า",
    Dimension.branch: "ไม่ระบุสาขา",
    Dimension.department: "ไม่ระบุแผนก",
    Dimension.product: "ไม่ระบุสินค้า",
}
ALL_LABEL = "ทั้งหมด"


def key_id(key) -> int | None:
    return key.id if isinstance(key, Identified) else None


# ---------- INPUT ----------
@dataclass(frozen=True)
class ItemRow:
    order_item_id: int
    order_id: int
    product_id: int
    product_name: str
    quantity: Decimal
    requested_price: Decimal | None = None
    actual_price: Decimal | None = None
    actual_quantity: Decimal | None = None
    is_purchased: bool = False
    purchase_reason: str | None = None
    product_code: str | None = None
    unit_abbr: str | None = None
    product_group_id: int | None = None
    product_group_name: str | None = None
    branch_id: int | None = None
    branch_name: str | None = None
    department_id: int | None = None
    department_name: str | None = None
    user_id: int | None = None
    user_name: str | None = None
    order_date: date | None = None
    status: str | None = None
    purchase_sort_order: int | None = None


class LastPriceLookup(Protocol):
    def last_actual_price(self, product_id: int) -> Decimal | None: ...


class MappingPriceLookup:
    """LastPriceLookup over a plain {product_id: price} mapping."""

    def __init__(self, prices: Mapping[int, Decimal | None]):
        self._prices = dict(prices)

    def last_actual_price(self, product_id: int) -> Decimal | None:
        return self._prices.get(product_id)


# ---------- OUTPUT ----------
@dataclass
class ProductLine:
    product_id: int
    product_name: str
    product_code: str | None
    unit_abbr: str | None
    total_quantity: Decimal
    unit_price: Decimal | None
    price_source: str | None
    total_amount: Decimal | None
    avg_requested_price: Decimal | None
    actual_quantity: Decimal | None
    is_purchased: bool
    purchase_reasons: list[str]
    item_count: int
    requester_count: int
    order_item_ids: list[int]
    purchase_sort_order: int | None = None


@dataclass
class AggregatedGroup:
    key: object
    name: str
    dimension: str | None
    products: list[ProductLine] = field(default_factory=list)
    subgroups: list["AggregatedGroup"] = field(default_factory=list)
    total_quantity: Decimal = ZERO
    total_amount: Decimal = ZERO
    unpriced_product_count: int = 0
    product_count: int = 0
    item_count: int = 0

    @property
    def group_id(self) -> int | None:
        return key_id(self.key)


# ---------- ORDERING ----------
_THAI_LEADING_VOWELS = frozenset("เแโใไ")


def thai_sort_key(name: str | None) -> str:
    """
    Dictionary order for Thai names: a leading vowel (เ แ โ ใ ไ) is written
    before its consonant but sorts after it, so swap the pair. Latin text is
    casefolded.
    """
    text = (name or "").strip().casefold()
    chars = list(text)
    i = 0
    while i < len(chars) - 1:
        if chars[i] in _THAI_LEADING_VOWELS:
            chars[i], chars[i + 1] = chars[i + 1], chars[i]
            i += 2
        else:
            i += 1
    return "".join(chars)


def _group_sort_key(group: AggregatedGroup):
    # unattributed last among equal names; ids make ties deterministic
    return (thai_sort_key(group.name), isinstance(group.key, Unattributed), key_id(group.key) or 0)


def _product_sort_key(line: ProductLine):
    return (thai_sort_key(line.product_name), line.product_id)


def _purchasing_sort_key(line: ProductLine):
    return (line.is_purchased,) + _product_sort_key(line)


# ---------- CORE ----------
def _dimension_of(row: ItemRow, dimension: Dimension) -> tuple[GroupKey, str]:
    if dimension == Dimension.product_group:
        value, name = row.product_group_id, row.product_group_name
    elif dimension == Dimension.branch:
        value, name = row.branch_id, row.branch_name
    elif dimension == Dimension.department:
        value, name = row.department_id, row.department_name
    elif dimension == Dimension.product:
        value, name = row.product_id, row.product_name
    else:
        raise ValueError(f"Unknown dimension {dimension!r}")

    if value is None:
        return UNATTRIBUTED, UNATTRIBUTED_LABELS[dimension]
    return Identified(int(value)), name or str(value)


def _first(values: Iterable[Decimal | None]) -> Decimal | None:
    for v in values:
        if v is not None:
            return v
    return None


def build_product_line(rows: Sequence[ItemRow], last_prices: LastPriceLookup | None = None) -> ProductLine:
    """
    Collapse rows of one product.

    unit price priority: actual_price (already bought) -> requested_price ->
    last known actual price. total_amount stays None when no price resolves.
    """
    rows = sorted(rows, key=lambda r: r.order_item_id)
    head = rows[0]

    total_qty = sum((to_qty(r.quantity) for r in rows), ZERO)

    unit_price, source = _first(r.actual_price for r in rows), "actual"
    if unit_price is None:
        unit_price, source = _first(r.requested_price for r in rows), "requested"
    if unit_price is None and last_prices is not None:
        unit_price, source = last_prices.last_actual_price(head.product_id), "last_actual"
    if unit_price is None:
        source = None
    unit_price = to_money(unit_price)

    requested = [Decimal(r.requested_price) for r in rows if r.requested_price is not None]
    avg_requested = to_money(sum(requested, ZERO) / len(requested)) if requested else None

    actual = [to_qty(r.actual_quantity) for r in rows if r.actual_quantity is not None]

    return ProductLine(
        product_id=head.product_id,
        product_name=head.product_name,
        product_code=head.product_code,
        unit_abbr=head.unit_abbr,
        total_quantity=total_qty,
        unit_price=unit_price,
        price_source=source,
        total_amount=to_money(total_qty * unit_price) if unit_price is not None else None,
        avg_requested_price=avg_requested,
        actual_quantity=to_qty(sum(actual, ZERO)) if actual else None,
        is_purchased=all(r.is_purchased for r in rows),
        purchase_reasons=sorted({r.purchase_reason for r in rows if r.purchase_reason}),
        item_count=len(rows),
        requester_count=len({r.user_id for r in rows}),
        order_item_ids=[r.order_item_id for r in rows],
        purchase_sort_order=head.purchase_sort_order,
    )


def _finish(group: AggregatedGroup, purchasing_view: bool) -> AggregatedGroup:
    group.products.sort(key=_purchasing_sort_key if purchasing_view else _product_sort_key)
    if group.subgroups:
        group.total_quantity = sum((s.total_quantity for s in group.subgroups), ZERO)
        group.total_amount = sum((s.total_amount for s in group.subgroups), ZERO)
        group.unpriced_product_count = sum(s.unpriced_product_count for s in group.subgroups)
        group.product_count = sum(s.product_count for s in group.subgroups)
        group.item_count = sum(s.item_count for s in group.subgroups)
    else:
        group.total_quantity = sum((p.total_quantity for p in group.products), ZERO)
        group.total_amount = sum((p.total_amount for p in group.products if p.total_amount is not None), ZERO)
        group.unpriced_product_count = sum(1 for p in group.products if p.total_amount is None)
        group.product_count = len(group.products)
        group.item_count = sum(p.item_count for p in group.products)
    return group


def aggregate(
    rows: Iterable[ItemRow],
    dimension: Dimension,
    *,
    last_prices: LastPriceLookup | None = None,
    purchasing_view: bool = False,
) -> list[AggregatedGroup]:
    """
    Partition rows by ``dimension`` then by product.

    purchasing_view: inside each group, not-yet-purchased products come before
    purchased ones, alphabetical within each bucket.
    """
    dimension = Dimension(dimension)
    buckets: dict[GroupKey, tuple[str, dict[int, list[ItemRow]]]] = {}
    for row in rows:
        key, name = _dimension_of(row, dimension)
        _, by_product = buckets.setdefault(key, (name, {}))
        by_product.setdefault(row.product_id, []).append(row)

    groups = []
    for key, (_, by_product) in buckets.items():
        # the name comes from the lowest order_item_id so input order never matters
        first_row = min((r for rs in by_product.values() for r in rs), key=lambda r: r.order_item_id)
        _, name = _dimension_of(first_row, dimension)
        group = AggregatedGroup(key=key, name=name, dimension=dimension.value)
        group.products = [build_product_line(rs, last_prices) for rs in by_product.values()]
        groups.append(_finish(group, purchasing_view))

    groups.sort(key=_group_sort_key)
    return groups


def aggregate_rollup(
    rows: Iterable[ItemRow],
    outer: Dimension | None = None,
    *,
    last_prices: LastPriceLookup | None = None,
) -> list[AggregatedGroup]:
    """
    Two-level view with product groups nested under a parent.

    outer=None: one synthetic "all" group -> product group -> product.
    outer=branch/department: outer -> product group -> product.
    """
    rows = list(rows)
    if outer is None:
        top = AggregatedGroup(key=ALL, name=ALL_LABEL, dimension=None)
        top.subgroups = aggregate(rows, Dimension.product_group, last_prices=last_prices)
        return [_finish(top, False)]

    outer = Dimension(outer)
    if outer in (Dimension.product_group, Dimension.product):
        raise ValueError(f"Roll-up parent must be branch or department, not {outer.value}")

    parents = []
    for parent in aggregate(rows, outer, last_prices=last_prices):
        members = [r for r in rows if _dimension_of(r, outer)[0] == parent.key]
        nested = AggregatedGroup(key=parent.key, name=parent.name, dimension=outer.value)
        nested.subgroups = aggregate(members, Dimension.product_group, last_prices=last_prices)
        parents.append(_finish(nested, False))
    return parents


# ---------- SERIALIZATION ----------
def _num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def product_line_to_dict(line: ProductLine) -> dict:
    return {
        "product_id": line.product_id,
        "product_name": line.product_name,
        "product_code": line.product_code,
        "unit_abbr": line.unit_abbr,
        "total_quantity": _num(line.total_quantity),
        "unit_price": _num(line.unit_price),
        "price_source": line.price_source,
        "total_amount": _num(line.total_amount),
        "avg_requested_price": _num(line.avg_requested_price),
        "actual_quantity": _num(line.actual_quantity),
        "is_purchased": line.is_purchased,
        "purchase_reasons": line.purchase_reasons,
        "item_count": line.item_count,
        "requester_count": line.requester_count,
        "order_item_ids": line.order_item_ids,
    }


def group_to_dict(group: AggregatedGroup) -> dict:
    return {
        "group_id": group.group_id,
        "unattributed": isinstance(group.key, Unattributed),
        "group_name": group.name,
        "dimension": group.dimension,
        "products": [product_line_to_dict(p) for p in group.products],
        "subgroups": [group_to_dict(s) for s in group.subgroups],
        "totals": {
            "total_quantity": _num(group.total_quantity),
            "total_amount": _num(group.total_amount),
            "unpriced_product_count": group.unpriced_product_count,
            "product_count": group.product_count,
            "item_count": group.item_count,
        },
    }
