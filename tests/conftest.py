import hashlib
import hmac
import itertools
import json
import time

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from kickstreet import create_app, emails
from kickstreet.accounts import hash_password, session_claims
from kickstreet.catalog import slugify_product_name
from kickstreet.utils import utcnow

WEBHOOK_SECRET = "whsec_test"
ADMIN_EMAIL = "boss@kickstreet.store"


@pytest.fixture
def db():
    return mongomock.MongoClient()["kickstreet_test"]


@pytest.fixture
def app(db, tmp_path):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "kickstreet-test-secret-key-0123456789abcdef",
            "BCRYPT_ROUNDS": 4,
            "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "RESEND_API_KEY": "",
            "ADMIN_EMAILS": ADMIN_EMAIL,
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "PUBLIC_BASE_URL": "http://testserver/",
            "FRONTEND_URL": "http://shop.test",
        },
        database=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(payload):
        sent.append(payload)
        return True, None

    monkeypatch.setattr(emails, "send_email_via_resend", fake_send)
    return sent


@pytest.fixture
def make_user(db):
    phones = itertools.count(9000000001)

    def _make(email="shopper@example.com", password="secret123", role="user", verified=True, **extra):
        now = utcnow()
        user = {
            "name": "Test Shopper",
            "email": email,
            "phone": str(next(phones)),
            "password": hash_password(password, 4),
            "role": role,
            "is_verified": verified,
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        user["_id"] = db.users.insert_one(user).inserted_id
        return user

    return _make


@pytest.fixture
def make_product(db):
    names = itertools.count(1)

    def _make(name=None, price=1000, stock=5, category="Men", **extra):
        name = name or f"Street Runner {next(names)}"
        now = utcnow()
        product = {
            "name": name,
            "slug": slugify_product_name(name),
            "description": "Everyday sneaker.",
            "price": price,
            "category": category,
            "brand": "KickStreet",
            "sizes": ["8", "9", "10"],
            "colors": ["Black"],
            "stock": stock,
            "images": [f"https://cdn.example.com/{slugify_product_name(name)}.png"],
            "ratings": 0.0,
            "num_of_reviews": 0,
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        product["_id"] = db.products.insert_one(product).inserted_id
        return product

    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(user):
        with app.app_context():
            token = create_access_token(
                identity=str(user["_id"]), additional_claims=session_claims(user)
            )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def admin_headers(make_user, auth_headers):
    return auth_headers(make_user(email=ADMIN_EMAIL, role="admin"))


def sign_webhook(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


@pytest.fixture
def post_webhook(client):
    def _post(event, secret=WEBHOOK_SECRET, path="/api/webhooks/payment"):
        payload = json.dumps(event)
        return client.post(path, data=payload, headers=sign_webhook(payload, secret))

    return _post
