import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_token
from database import ensure_indexes, get_db, utcnow


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(role="user", email=None, is_active=True):
        doc = {
            "name": f"{role.title()} User",
            "email": email or f"{role}@shop.com.bd",
            "phone": None,
            "passwordHash": "not-used",
            "role": role,
            "isActive": is_active,
            "createdAt": utcnow(),
        }
        db["user"].insert_one(doc)
        return doc
    return _make


@pytest.fixture
def headers_for():
    def _headers(user):
        return {"Authorization": f"Bearer {create_token(user)}"}
    return _headers


@pytest.fixture
def admin_headers(make_user, headers_for):
    return headers_for(make_user("admin"))


@pytest.fixture
def staff_headers(make_user, headers_for):
    return headers_for(make_user("moderator"))


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        doc = {
            "title": "Cotton Panjabi",
            "slug": f"cotton-panjabi-{db['product'].count_documents({}) + 1}",
            "prices": [{"currency": "BDT", "amount": 1200}],
            "mainImage": "https://cdn.example.net/panjabi.jpg",
            "description": "Handloom cotton panjabi",
            "productType": "Own",
            "brand": "Aarong",
            "category": "menswear",
            "quantity": 5,
            "availability": "InStock",
            "sizeRequirement": "Optional",
            "sizes": [],
            "createdAt": utcnow(),
        }
        doc.update(overrides)
        db["product"].insert_one(doc)
        return str(doc["_id"])
    return _make


@pytest.fixture
def order_payload():
    def _payload(*lines, **overrides):
        payload = {
            "orderId": "ORD-1001",
            "products": [
                {"productId": pid, "title": "Cotton Panjabi", "quantity": qty, "price": 1200, "size": size}
                for pid, qty, size in lines
            ],
            "customerInfo": {
                "name": "Rahim Uddin",
                "email": "rahim@mail.com",
                "phone": "01712345678",
                "address": "House 12, Road 5",
                "city": "Dhaka",
                "country": "Bangladesh",
                "district": "Dhaka",
                "thana": "Dhanmondi",
            },
            "paymentMethod": "cod",
            "total": 1300,
            "shippingCharge": 100,
        }
        payload.update(overrides)
        return payload
    return _payload
