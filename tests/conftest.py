import base64
import json
from datetime import datetime, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from jose import jwt
from svix.webhooks import Webhook

import main
from database import create_document, ensure_indexes, get_db

JWT_KEY = "test-session-key"
WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"crafters-webhook-test-secret").decode()


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("CLERK_JWT_KEY", JWT_KEY)
    monkeypatch.setenv("CLERK_JWT_ALGORITHM", "HS256")
    monkeypatch.setenv("CLERK_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setenv("DELIVERY_FEE", "3.50")


@pytest.fixture
def db():
    database = mongomock.MongoClient()["crafters_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    with TestClient(main.app, raise_server_exceptions=False) as c:
        yield c
    main.app.dependency_overrides.clear()


def make_token(clerk_id):
    return jwt.encode({"sub": clerk_id}, JWT_KEY, algorithm="HS256")


def auth_header(clerk_id):
    return {"Authorization": f"Bearer {make_token(clerk_id)}"}


def add_user(db, clerk_id, role="customer", **extra):
    doc = {"clerk_id": clerk_id, "email": f"{clerk_id}@makers.co.uk", "role": role, "onboarding_complete": True}
    doc.update(extra)
    create_document(db, "user", doc)
    return db["user"].find_one({"clerk_id": clerk_id})


def add_crafter(db, name="Harbour Pottery", verified=True, **extra):
    doc = {
        "name": name,
        "specialty": "Stoneware",
        "location": "Dymchurch",
        "bio": "Wheel-thrown pots.",
        "verified": verified,
        "products_count": 0,
    }
    doc.update(extra)
    return create_document(db, "crafter", doc)


def add_product(db, crafter_id, name="Sea Glaze Mug", price=18.0, category="Pottery", **extra):
    crafter = db["crafter"].find_one({"_id": ObjectId(crafter_id)})
    doc = {
        "name": name,
        "price": price,
        "crafter_id": crafter_id,
        "crafter_name": crafter["name"] if crafter else "Unknown",
        "category": category,
        "description": "A glazed stoneware mug.",
        "materials": "Stoneware clay",
        "in_stock": True,
        "featured": False,
        "images": [],
    }
    doc.update(extra)
    return create_document(db, "product", doc)


def signed_webhook(event, secret=WEBHOOK_SECRET, msg_id="msg_test_1"):
    body = json.dumps(event)
    now = datetime.now(timezone.utc)
    signature = Webhook(secret).sign(msg_id, now, body)
    headers = {
        "svix-id": msg_id,
        "svix-timestamp": str(int(now.timestamp())),
        "svix-signature": signature,
        "content-type": "application/json",
    }
    return body, headers
