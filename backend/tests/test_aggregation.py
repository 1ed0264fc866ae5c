import random
from dataclasses import replace
from decimal import Decimal

import pytest

from backend.app.db.models.core_types import Dimension
from backend.services.aggregation import (
    ALL,
    UNATTRIBUTED,
    Identified,
    ItemRow,
    MappingPriceLookup,
    aggregate,
    aggregate_rollup,
    build_product_line,
    group_to_dict,
    thai_sort_key,
)

D = Decimal


def _row(item_id, product_id, qty, **kw):
    base = dict(
        order_item_id=item_id,
        order_id=kw.pop("order_id", item_id),
        product_id=product_id,
        product_name=kw.pop("product_name", f"สินค้า {product_id}"),
        quantity=D(str(qty)),
    )
    base.update(kw)
    return ItemRow(**base)


def _random_rows(seed: int, n: int = 40) -> list[ItemRow]:
    rnd = random.Random(seed)
    rows = []
    for i in range(1, n + 1):
        group = rnd.choice([1, 2, 3, None])
        branch = rnd.choice([10, 20, None])
        price = rnd.choice([None, D("12.50"), D("22.00"), D("3.75")])
        rows.append(
            _row(
                i,
                rnd.randint(1, 8),
                D(rnd.randint(1, 5000)) / 1000,
                requested_price=price,
                product_group_id=group,
                product_group_name=f"กลุ่ม {group}" if group else None,
                branch_id=branch,
                branch_name=f"สาขา {branch}" if branch else None,
                department_id=rnd.choice([100, 200]),
                department_name="ครัว",
                user_id=rnd.randint(1, 4),
            )
        )
    return rows


def _snapshot(groups):
    return [group_to_dict(g) for g in groups]


# ---------- properties ----------
@pytest.mark.parametrize("seed", range(5))
@pytest.mark.parametrize("dimension", list(Dimension))
def test_aggregate_is_idempotent_and_order_independent(seed, dimension):
    rows = _random_rows(seed)
    first = _snapshot(aggregate(rows, dimension))
    assert _snapshot(aggregate(rows, dimension)) == first

    shuffled = list(rows)
    random.Random(seed + 100).shuffle(shuffled)
    assert _snapshot(aggregate(shuffled, dimension)) == first


@pytest.mark.parametrize("seed", range(5))
@pytest.mark.parametrize("dimension", list(Dimension))
def test_aggregate_conserves_quantity(seed, dimension):
    rows = _random_rows(seed)
    groups = aggregate(rows, dimension)
    assert sum((g.total_quantity for g in groups), D(0)) == sum((r.quantity for r in rows), D(0))
    assert sum(g.item_count for g in groups) == len(rows)


def test_aggregate_does_not_mutate_input():
    rows = _random_rows(1)
    before = list(rows)
    aggregate(rows, Dimension.branch)
    assert rows == before


# ---------- pricing ----------
def test_price_priority_actual_then_requested_then_last_known():
    bought = [_row(1, 1, 2, requested_price=D("10"), actual_price=D("11"))]
    requested = [_row(2, 2, 2, requested_price=D("10"))]
    historic = [_row(3, 3, 2)]
    unknown = [_row(4, 4, 2)]
    lookup = MappingPriceLookup({3: D("7.25")})

    assert build_product_line(bought, lookup).unit_price == D("11.00")
    assert build_product_line(bought, lookup).price_source == "actual"
    assert build_product_line(requested, lookup).price_source == "requested"

    line = build_product_line(historic, lookup)
    assert (line.unit_price, line.price_source, line.total_amount) == (D("7.25"), "last_actual", D("14.50"))

    line = build_product_line(unknown, lookup)
    assert line.unit_price is None
    assert line.total_amount is None


def test_unpriced_products_are_counted_not_summed():
    rows = [
        _row(1, 1, 2, requested_price=D("5"), product_group_id=1, product_group_name="ผัก"),
        _row(2, 2, 3, product_group_id=1, product_group_name="ผัก"),
    ]
    (group,) = aggregate(rows, Dimension.product_group)
    assert group.total_amount == D("10.00")
    assert group.unpriced_product_count == 1
    assert group.product_count == 2


def test_product_line_totals():
    rows = [
        _row(1, 1, "1.5", requested_price=D("10"), user_id=1, actual_quantity=D("1.2"), is_purchased=True),
        _row(2, 1, "2.5", requested_price=D("20"), user_id=2, actual_quantity=D("2.0"), is_purchased=True),
        _row(3, 1, "1", requested_price=D("30"), user_id=2, is_purchased=False),
    ]
    line = build_product_line(rows)
    assert line.total_quantity == D("5.000")
    assert line.avg_requested_price == D("20.00")
    assert line.actual_quantity == D("3.200")
    assert line.requester_count == 2
    assert line.item_count == 3
    assert line.is_purchased is False


# ---------- grouping ----------
def test_missing_dimension_goes_to_unattributed_group():
    rows = [
        _row(1, 1, 1, product_group_id=5, product_group_name="ตลาดสด"),
        _row(2, 2, 1),
    ]
    groups = aggregate(rows, Dimension.product_group)
    keys = {g.key for g in groups}
    assert keys == {Identified(5), UNATTRIBUTED}
    unattributed = next(g for g in groups if g.key == UNATTRIBUTED)
    assert unattributed.name == "ไม่ระบุกลุ่มสินค้า"
    assert group_to_dict(unattributed)["group_id"] is None


def test_groups_sorted_in_thai_order():
    names = ["ไก่", "ขนม", "เนื้อ", "กุ้ง"]
    rows = [_row(i + 1, i + 1, 1, product_group_id=i + 1, product_group_name=n) for i, n in enumerate(names)]
    ordered = [g.name for g in aggregate(rows, Dimension.product_group)]
    # leading vowels sort by the consonant after them: ก ข ก(ไ) น(เ)
    assert ordered == ["กุ้ง", "ไก่", "ขนม", "เนื้อ"]


def test_thai_sort_key_swaps_leading_vowel():
    assert thai_sort_key("เนื้อ") == "นเื้อ"
    assert thai_sort_key("Beef") == "beef"
    assert thai_sort_key(None) == ""


def test_purchasing_view_lists_unpurchased_first():
    rows = [
        _row(1, 1, 1, product_name="กะหล่ำ", is_purchased=True),
        _row(2, 2, 1, product_name="ผักชี"),
        _row(3, 3, 1, product_name="ขิง"),
    ]
    (group,) = aggregate(rows, Dimension.product_group, purchasing_view=True)
    assert [p.product_name for p in group.products] == ["ขิง", "ผักชี", "กะหล่ำ"]


# ---------- roll-up ----------
def test_rollup_all_nests_product_groups():
    rows = _random_rows(3)
    (top,) = aggregate_rollup(rows)
    assert top.key == ALL
    assert top.name == "ทั้งหมด"
    assert [s.key for s in top.subgroups] == [g.key for g in aggregate(rows, Dimension.product_group)]
    assert top.total_quantity == sum((r.quantity for r in rows), D(0))


def test_rollup_by_branch():
    rows = _random_rows(4)
    parents = aggregate_rollup(rows, Dimension.branch)
    assert {p.key for p in parents} == {g.key for g in aggregate(rows, Dimension.branch)}
    for parent in parents:
        assert all(s.dimension == Dimension.product_group.value for s in parent.subgroups)
        assert parent.total_quantity == sum((s.total_quantity for s in parent.subgroups), D(0))


def test_rollup_rejects_product_parent():
    with pytest.raises(ValueError):
        aggregate_rollup(_random_rows(1), Dimension.product)


def test_group_name_taken_from_lowest_item_id():
    rows = [
        _row(2, 1, 1, branch_id=1, branch_name="ชื่อใหม่"),
        _row(1, 2, 1, branch_id=1, branch_name="ชื่อเดิม"),
    ]
    (group,) = aggregate(rows, Dimension.branch)
    assert group.name == "ชื่อเดิม"
    assert aggregate(list(reversed(rows)), Dimension.branch)[0].name == "ชื่อเดิม"


def test_unattributed_label_per_dimension():
    row = replace(_row(1, 1, 1), department_id=None)
    (group,) = aggregate([row], Dimension.department)
    assert group.name == "ไม่ระบุแผนก"
