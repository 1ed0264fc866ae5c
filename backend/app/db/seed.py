from __future__ import annotations

from sqlalchemy import select

from backend.app.db.session import SessionLocal
from backend.app.db.models.models_v1 import Branch, Department, Product, ProductGroup, Unit, User
from backend.app.db.models.core_types import Role


def _get_or_add(db, model, **fields):
    obj = db.scalar(select(model).filter_by(**fields))
    if not obj:
        obj = model(**fields)
        db.add(obj)
        db.flush()
    return obj


def run_seed():
    """Minimal master data for a local run: one branch, two departments, an admin, a few products."""
    db = SessionLocal()
    try:
        branch = _get_or_add(db, Branch, name="สาขาหลัก")
        kitchen = _get_or_add(db, Department, branch_id=branch.id, name="ครัว")
        bar = _get_or_add(db, Department, branch_id=branch.id, name="บาร์")

        _get_or_add(db, User, name="ADMIN", role=Role.admin, branch_id=branch.id, department_id=kitchen.id)
        _get_or_add(db, User, name="staff-kitchen", role=Role.staff, branch_id=branch.id, department_id=kitchen.id)
        _get_or_add(db, User, name="staff-bar", role=Role.staff, branch_id=branch.id, department_id=bar.id)

        kg = _get_or_add(db, Unit, name="กิโลกรัม", abbreviation="กก.")
        piece = _get_or_add(db, Unit, name="ชิ้น", abbreviation="ชิ้น")
        market = _get_or_add(db, ProductGroup, name="ตลาดสด")
        drinks = _get_or_add(db, ProductGroup, name="เครื่องดื่ม")

        for code, name, unit, group in (
            ("P001", "หมูสับ", kg, market),
            ("P002", "ไข่ไก่", piece, market),
            ("P003", "โซดา", piece, drinks),
        ):
            if not db.scalar(select(Product).where(Product.code == code)):
                db.add(Product(code=code, name=name, unit_id=unit.id, product_group_id=group.id))

        db.commit()
        print("SEED OK: branch, departments, users, products")
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
