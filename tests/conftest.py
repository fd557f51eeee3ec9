"""
Shared fixtures: an in-memory Mongo per test, an API client, and factories
for users, catalog entries and orders.
"""

import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
import security
from catalog import effective_price
from schemas import Category, Order, OrderItem, Product, ShippingAddress, User

PASSWORD = "secret123"
PASSWORD_HASH = security.hash_password(PASSWORD)

_counter = itertools.count(1)


@pytest.fixture(autouse=True)
def db():
    previous = database.db
    mock_db = mongomock.MongoClient()["sweetshop_test"]
    database.init_db(mock_db)
    yield mock_db
    database.init_db(previous)


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def auth():
    def _headers(user: dict) -> dict:
        return {"Authorization": f"Bearer {security.create_access_token(user['_id'])}"}

    return _headers


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_user():
    def _make(role="user", **extra):
        n = next(_counter)
        data = {
            "username": f"user{n}",
            "email": f"user{n}@mithai.in",
            "password_hash": PASSWORD_HASH,
            "role": role,
            "is_admin": role == "admin",
        }
        data.update(extra)
        user_id = database.create_document("user", User(**data))
        return database.get_document_by_id("user", user_id)

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def partner(make_user):
    return make_user(role="delivery")


@pytest.fixture
def make_category():
    def _make(name=None, **extra):
        category = Category(name=name or f"Category {next(_counter)}", **extra)
        return database.get_document_by_id("category", database.create_document("category", category))

    return _make


@pytest.fixture
def make_product(make_category):
    def _make(name=None, original_price=150, category=None, **extra):
        category = category or make_category()
        product = Product(
            name=name or f"Product {next(_counter)}",
            original_price=original_price,
            category_id=category["_id"],
            **extra,
        )
        product.effective_price = effective_price(product.model_dump())
        return database.get_document_by_id("product", database.create_document("product", product))

    return _make


@pytest.fixture
def make_order(customer):
    def _make(user=None, status="placed", total_price=150, **extra):
        order = Order(
            user_id=(user or customer)["_id"],
            order_items=[OrderItem(product_id=database.new_id(), name="Kaju Katli", price=150, qty=1)],
            shipping_address=ShippingAddress(address="12 MG Road", city="Pune", postal_code="411001"),
            payment_method="COD",
            items_price=150,
            total_price=total_price,
            status=status,
            **extra,
        )
        return database.get_document_by_id("order", database.create_document("order", order))

    return _make


@pytest.fixture
def store_settings():
    settings = {
        "price_per_km": 10,
        "base_charge": 50,
        "free_delivery_threshold": 500,
        "gst_percentage": 5,
        "store_locations": [
            {
                "store_id": "store-1",
                "name": "Shivajinagar",
                "contact_number": "9800000001",
                "address": "1 FC Road",
                "city": "Pune",
                "latitude": 18.5308,
                "longitude": 73.8475,
                "is_active": True,
            },
            {
                "store_id": "store-2",
                "name": "Kothrud",
                "contact_number": "9800000002",
                "address": "5 Paud Road",
                "city": "Pune",
                "latitude": 18.5074,
                "longitude": 73.8077,
                "is_active": False,
            },
        ],
    }
    database.create_document("deliverysettings", settings)
    return settings
