import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import uuid
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from order_engine import inventory, models, schemas
from order_engine.database import Base, make_engine

NOW = datetime(2026, 6, 15, 12, 0, 0)

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_line_1": "12 Analytical Row",
    "city": "London",
    "state": "LDN",
    "postal_code": "N1 9GU",
    "country": "GB",
}


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def seed_catalog(db):
    """Seed a small catalog and return the ids, committed."""
    ids = SimpleNamespace(
        user=uuid.uuid4(),
        other_user=uuid.uuid4(),
        apparel=uuid.uuid4(),
        gear=uuid.uuid4(),
        acme=uuid.uuid4(),
        widget=uuid.uuid4(),
        gadget=uuid.uuid4(),
        tshirt=uuid.uuid4(),
        tshirt_red=uuid.uuid4(),
    )
    db.add_all([
        models.User(id=ids.user, email="ada@example.com"),
        models.User(id=ids.other_user, email="grace@example.com"),
        models.Category(id=ids.apparel, name="Apparel", slug="apparel"),
        models.Category(id=ids.gear, name="Gear", slug="gear"),
        models.Brand(id=ids.acme, name="Acme"),
    ])
    db.add_all([
        models.Product(id=ids.widget, sku="WID-1", name="Widget", price=Decimal("100.00"),
                       category_id=ids.gear, brand_id=ids.acme, low_stock_threshold=10),
        models.Product(id=ids.gadget, sku="GAD-1", name="Gadget", price=Decimal("25.50"),
                       category_id=ids.gear, low_stock_threshold=10),
        models.Product(id=ids.tshirt, sku="TEE-1", name="T-Shirt", price=Decimal("18.00"),
                       category_id=ids.apparel),
    ])
    db.add(models.ProductVariant(id=ids.tshirt_red, product_id=ids.tshirt, sku="TEE-1-RED-L",
                                 title="Red / L", price=Decimal("20.00"), options={"color": "red", "size": "L"}))
    db.flush()

    inventory.restock(db, ids.widget, 50, notes="opening stock")
    inventory.restock(db, ids.gadget, 5, notes="opening stock")
    inventory.restock(db, ids.tshirt, 8, variant_id=ids.tshirt_red, notes="opening stock")

    db.add_all([
        models.Coupon(code="SAVE10", type="percentage", value=Decimal("10"), minimum_amount=Decimal("50")),
        models.Coupon(code="FLAT30", type="fixed_amount", value=Decimal("30")),
        models.Coupon(code="FREESHIP", type="free_shipping", value=Decimal("0")),
        models.Coupon(code="EXPIRED", type="percentage", value=Decimal("20"),
                      expires_at=datetime(2026, 1, 1)),
        models.Coupon(code="MAXED", type="fixed_amount", value=Decimal("5"), usage_limit=1, usage_count=1),
        models.Coupon(code="ONCE", type="fixed_amount", value=Decimal("5"), usage_limit=1),
    ])
    db.commit()
    return ids


@pytest.fixture
def ids(db):
    return seed_catalog(db)


def make_request(user_id, *lines, coupon=None, billing=None):
    return schemas.OrderRequest(
        user_id=user_id,
        items=[schemas.OrderLine(**line) for line in lines],
        shipping_address=ADDRESS,
        billing_address=billing,
        coupon_code=coupon,
    )


@pytest.fixture
def order_request():
    return make_request


@pytest.fixture
def paid_order(db):
    """Insert a paid historical order directly, bypassing stock."""
    def _paid_order(user_id, lines, created_at=NOW, total=None):
        order_id = uuid.uuid4()
        subtotal = sum((price * qty for _, qty, price in lines), Decimal("0.00"))
        db.add(models.Order(
            id=order_id,
            order_number=f"ORD-HIST-{order_id.hex[:8]}",
            user_id=user_id,
            status="delivered",
            payment_status="paid",
            subtotal=subtotal,
            tax_amount=Decimal("0.00"),
            shipping_amount=Decimal("0.00"),
            discount_amount=Decimal("0.00"),
            total_amount=total if total is not None else subtotal,
            shipping_address=ADDRESS,
            billing_address=ADDRESS,
            created_at=created_at,
        ))
        for position, (product_id, qty, price) in enumerate(lines):
            db.add(models.OrderItem(
                order_id=order_id, position=position, product_id=product_id, quantity=qty,
                unit_price=price, total_price=price * qty, product_name="historical", product_sku="HIST",
            ))
        db.commit()
        return order_id
    return _paid_order
