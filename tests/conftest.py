import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("PAYMENT_GATEWAY", "fake")
os.environ.setdefault("ENVIRONMENT", "test")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from storefront.cart import CartManager  # noqa: E402
from storefront.database import Base, make_engine, make_session_factory  # noqa: E402
from storefront.gateway import FakeGateway, reset_gateway, set_gateway  # noqa: E402
from storefront.models import Product  # noqa: E402
from storefront.orders import OrderWorkflow  # noqa: E402
from storefront.payments import PaymentReconciler  # noqa: E402
from storefront.stock import StockLedger  # noqa: E402

CUSTOMER_ID = 1


@pytest.fixture
def engine(tmp_path):
    # File-backed so that several threads can open their own connections.
    engine = make_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture
def ledger():
    return StockLedger()


@pytest.fixture
def carts(session_factory, ledger):
    return CartManager(session_factory, ledger)


@pytest.fixture
def orders(session_factory, ledger, carts):
    return OrderWorkflow(session_factory, ledger, carts)


@pytest.fixture
def payments(session_factory, gateway, orders):
    return PaymentReconciler(session_factory, gateway, orders)


@pytest.fixture
def make_product(session_factory):
    counter = iter(range(1, 10_000))

    def _make(name=None, price="5.00", stock=10, active=True):
        n = next(counter)
        with session_factory.begin() as db:
            product = Product(
                name=name or f"Product {n}",
                sku=f"SKU-{n:04d}",
                price=Decimal(price),
                stock_qty=stock,
                is_active=active,
            )
            db.add(product)
        return product

    return _make


@pytest.fixture
def stock_of(session_factory):
    def _stock(product_id):
        with session_factory() as db:
            return db.get(Product, product_id).stock_qty

    return _stock


@pytest.fixture
def client(monkeypatch, session_factory, gateway):
    from fastapi.testclient import TestClient

    import storefront.auth
    from storefront.main import app as fastapi_app

    monkeypatch.setattr("storefront.routes.SessionLocal", session_factory)
    monkeypatch.setattr("storefront.main.SessionLocal", session_factory)
    fastapi_app.dependency_overrides[storefront.auth.verify_token] = lambda: CUSTOMER_ID
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
