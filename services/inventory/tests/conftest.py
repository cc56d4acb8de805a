import os
from decimal import Decimal

# Point the service at an in-memory database with caching and webhooks off
# before any khopos_inventory module reads its configuration.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["WEBHOOK_URLS"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from jose import jwt

from khopos_inventory import config, database, models
from khopos_inventory.alerts import LowStockAlertTrigger
from khopos_inventory.ledger import StockLedger


@pytest.fixture(autouse=True)
def reset_db():
    database.Base.metadata.drop_all(bind=database.engine)
    database.Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def alerts():
    return LowStockAlertTrigger(database.SessionLocal)


@pytest.fixture
def ledger(db, alerts):
    return StockLedger(db, alerts=alerts, retry_backoff=0)


@pytest.fixture
def make_product(db):
    def _make(stock=10, min_stock=5, name=None, cost_price=Decimal("2.50"), price=Decimal("4.00"), category_id=None):
        product = models.Product(
            name=name or f"Product {stock}/{min_stock}",
            price=price,
            cost_price=cost_price,
            stock=stock,
            min_stock=min_stock,
            category_id=category_id,
        )
        db.add(product)
        db.commit()
        return product.id
    return _make


@pytest.fixture
def make_token():
    def _token(role="admin", user_id=1, email=None):
        claims = {"sub": str(user_id), "email": email or f"user{user_id}@khopos.test", "role": role}
        return jwt.encode(claims, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return _token


@pytest.fixture
def auth_headers(make_token):
    def _headers(role="admin", user_id=1):
        return {"Authorization": f"Bearer {make_token(role=role, user_id=user_id)}"}
    return _headers


def stock_of(db, product_id):
    db.expire_all()
    return db.get(models.Product, product_id).stock


def movements_of(db, product_id):
    db.expire_all()
    return (
        db.query(models.InventoryMovement)
        .filter(models.InventoryMovement.product_id == product_id)
        .order_by(models.InventoryMovement.id)
        .all()
    )


def alert_logs(db, product_id=None):
    db.expire_all()
    query = db.query(models.ActivityLog).filter(models.ActivityLog.action == "low_stock_alert")
    if product_id is not None:
        query = query.filter(models.ActivityLog.entity_id == product_id)
    return query.order_by(models.ActivityLog.id).all()


class FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        return [key for key in self.store if key.startswith(prefix)]

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)
