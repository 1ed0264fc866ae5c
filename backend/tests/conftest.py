import os
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db
from backend.app.db.base import Base
from backend.app.db.models import models_v1  # noqa: F401  (register tables)
from backend.app.db.models.core_types import Role
from backend.app.db.models.models_v1 import Branch, Department, Product, ProductGroup, Unit, User
from backend.app.db.session import make_engine
from backend.app.main import app
from backend.services import order_day_gate

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    One database session per test.

    SQLite (default): a fresh in-memory database per test.
    PostgreSQL (TEST_DATABASE_URL): outer transaction + SAVEPOINT, everything
    is rolled back at the end of the test, even after commit().
    """
    engine = make_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    if engine.dialect.name == "sqlite":
        session = Session(bind=engine, autoflush=False)
        try:
            yield session
        finally:
            session.close()
            engine.dispose()
        return

    connection = engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, autoflush=False, join_transaction_mode="create_savepoint")
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()
        engine.dispose()


class Factory:
    """Master data builders; every object is flushed so it has an id."""

    def __init__(self, db: Session):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _add(self, obj):
        self.db.add(obj)
        self.db.flush()
        return obj

    def branch(self, name: str | None = None) -> Branch:
        return self._add(Branch(name=name or f"สาขา {self._next()}"))

    def department(self, branch: Branch, name: str | None = None) -> Department:
        return self._add(Department(branch_id=branch.id, name=name or f"แผนก {self._next()}"))

    def user(self, department: Department | None = None, role: Role = Role.staff, name: str | None = None) -> User:
        return self._add(
            User(
                name=name or f"user-{self._next()}",
                role=role,
                branch_id=department.branch_id if department else None,
                department_id=department.id if department else None,
            )
        )

    def unit(self, name: str = "กิโลกรัม", abbreviation: str = "กก.") -> Unit:
        return self._add(Unit(name=name, abbreviation=abbreviation))

    def group(self, name: str | None = None) -> ProductGroup:
        return self._add(ProductGroup(name=name or f"กลุ่ม {self._next()}"))

    def product(
        self,
        name: str | None = None,
        group: ProductGroup | None = None,
        default_price=None,
        unit: Unit | None = None,
    ) -> Product:
        n = self._next()
        return self._add(
            Product(
                code=f"P{n:04d}",
                name=name or f"สินค้า {n}",
                product_group_id=group.id if group else None,
                unit_id=unit.id if unit else None,
                default_price=Decimal(str(default_price)) if default_price is not None else None,
            )
        )


@pytest.fixture
def make(db_session) -> Factory:
    return Factory(db_session)


@pytest.fixture
def world(make):
    """One branch with two departments, a requester in each, an admin and a product group."""
    branch = make.branch("สาขาหลัก")
    kitchen = make.department(branch, "ครัว")
    bar = make.department(branch, "บาร์")
    group = make.group("ตลาดสด")
    return {
        "branch": branch,
        "kitchen": kitchen,
        "bar": bar,
        "cook": make.user(kitchen, name="cook"),
        "barista": make.user(bar, name="barista"),
        "admin": make.user(kitchen, role=Role.admin, name="admin"),
        "group": group,
        "pork": make.product("หมูสับ", group, default_price="120.00"),
        "egg": make.product("ไข่ไก่", group, default_price="4.50"),
    }


@pytest.fixture
def order_date() -> date:
    return date(2026, 3, 2)


@pytest.fixture
def open_day(db_session, order_date):
    order_day_gate.open_day(db_session, order_date, today=order_date)
    return order_date


@pytest.fixture
def client(db_session):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
