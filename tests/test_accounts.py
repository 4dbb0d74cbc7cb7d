from datetime import datetime, timedelta

import bcrypt
import pytest
from flask_jwt_extended import decode_token

from kickstreet import emails
from kickstreet.accounts import authorize, is_route_allowed, required_role_for
from kickstreet.errors import Forbidden, Unauthorized
from kickstreet.otp import otp_is_valid
from kickstreet.utils import utcnow

REGISTRATION = {
    "name": "Asha Rao",
    "email": "Asha@Example.com",
    "phone": "9876543210",
    "password": "sneakers4life",
}


def register(client, **overrides):
    return client.post("/api/auth/register", json={**REGISTRATION, **overrides})


def test_register_stores_unverified_user_with_hashed_password(client, db, outbox):
    response = register(client)

    assert response.status_code == 201
    user = db.users.find_one({"email": "asha@example.com"})
    assert user["is_verified"] is False
    assert user["role"] == "user"
    assert user["password"] != REGISTRATION["password"].encode("utf-8")
    assert bcrypt.checkpw(REGISTRATION["password"].encode("utf-8"), user["password"])
    assert len(user["otp"]) == 6 and user["otp"].isdigit()
    assert user["otp_expires"] > user["created_at"]
    assert outbox[0]["to"] == ["asha@example.com"]
    assert user["otp"] in outbox[0]["text"]


def test_register_rejects_missing_fields(client, outbox):
    response = register(client, phone="")

    assert response.status_code == 400
    assert outbox == []


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"email": "ASHA@example.com", "phone": "1111111111"}, "Email already registered. Try logging in."),
        ({"email": "other@example.com"}, "Phone already registered. Try logging in."),
    ],
)
def test_register_duplicate_names_the_clashing_field(client, outbox, overrides, message):
    assert register(client).status_code == 201

    response = register(client, **overrides)

    assert response.status_code == 400
    assert response.get_json()["message"] == message


def test_register_aborts_when_email_cannot_be_sent(client, db, monkeypatch):
    monkeypatch.setattr(emails, "send_email_via_resend", lambda payload: (False, "provider down"))

    response = register(client)

    assert response.status_code == 500
    assert response.get_json()["error"] == "upstream_failure"
    assert db.users.count_documents({}) == 0


def test_register_grants_admin_role_to_configured_emails(client, db, outbox):
    register(client, email="BOSS@kickstreet.store")

    assert db.users.find_one({"email": "boss@kickstreet.store"})["role"] == "admin"


def test_verify_otp_flips_flag_and_clears_code(client, db, outbox):
    register(client)
    otp = db.users.find_one({"email": "asha@example.com"})["otp"]

    response = client.post("/api/auth/verify-otp", json={"email": "asha@example.com", "otp": otp})

    assert response.status_code == 200
    user = db.users.find_one({"email": "asha@example.com"})
    assert user["is_verified"] is True
    assert "otp" not in user and "otp_expires" not in user


def test_verify_otp_wrong_code_keeps_stored_code(client, db, outbox):
    register(client)
    stored = db.users.find_one({"email": "asha@example.com"})["otp"]
    wrong = "000000" if stored != "000000" else "111111"

    response = client.post("/api/auth/verify-otp", json={"email": "asha@example.com", "otp": wrong})

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_or_expired_code"
    assert db.users.find_one({"email": "asha@example.com"})["otp"] == stored


def test_verify_otp_expired_code_is_rejected(client, db, outbox):
    register(client)
    user = db.users.find_one({"email": "asha@example.com"})
    db.users.update_one(
        {"_id": user["_id"]}, {"$set": {"otp_expires": utcnow() - timedelta(seconds=1)}}
    )

    response = client.post(
        "/api/auth/verify-otp", json={"email": "asha@example.com", "otp": user["otp"]}
    )

    assert response.status_code == 400
    assert db.users.find_one({"_id": user["_id"]})["is_verified"] is False


def test_verify_otp_on_verified_account(client, make_user):
    make_user(email="done@example.com")

    response = client.post("/api/auth/verify-otp", json={"email": "done@example.com", "otp": "123456"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "already_verified"


def test_verify_otp_unknown_user(client):
    response = client.post("/api/auth/verify-otp", json={"email": "ghost@example.com", "otp": "123456"})

    assert response.status_code == 404


def test_otp_validity_boundaries():
    expires_at = datetime(2024, 5, 1, 12, 5, 0)

    assert otp_is_valid("482910", expires_at, "482910", expires_at - timedelta(seconds=1))
    assert not otp_is_valid("482910", expires_at, "482910", expires_at + timedelta(seconds=1))
    assert not otp_is_valid("482910", expires_at, "482911", expires_at - timedelta(seconds=1))
    assert not otp_is_valid(None, expires_at, "482910", expires_at - timedelta(seconds=1))


def test_resend_otp_replaces_code(client, db, outbox):
    register(client)
    first = db.users.find_one({"email": "asha@example.com"})["otp_expires"]

    response = client.post("/api/auth/resend-otp", json={"email": "asha@example.com"})

    assert response.status_code == 200
    assert len(outbox) == 2
    assert db.users.find_one({"email": "asha@example.com"})["otp_expires"] >= first


def test_login_requires_verification(client, make_user):
    make_user(email="pending@example.com", verified=False)

    response = client.post(
        "/api/auth/login", json={"email": "pending@example.com", "password": "secret123"}
    )

    assert response.status_code == 403
    assert response.get_json()["requires_verification"] is True


def test_login_rejects_bad_password(client, make_user):
    make_user()

    response = client.post(
        "/api/auth/login", json={"email": "shopper@example.com", "password": "nope"}
    )

    assert response.status_code == 401
    assert response.get_json()["message"] == "Invalid credentials"


def test_login_issues_token_with_role_claims(app, client, make_user):
    user = make_user()

    response = client.post(
        "/api/auth/login", json={"email": "SHOPPER@example.com", "password": "secret123"}
    )

    assert response.status_code == 200
    body = response.get_json()
    with app.app_context():
        claims = decode_token(body["access_token"])
    assert claims["sub"] == str(user["_id"])
    assert claims["role"] == "user"
    assert claims["phone"] == user["phone"]
    assert claims["exp"] - claims["iat"] == 7 * 24 * 3600
    assert body["user"]["email"] == "shopper@example.com"


def test_forgot_password_does_not_leak_unknown_accounts(client, outbox):
    response = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

    assert response.status_code == 200
    assert outbox == []


def test_password_reset_flow(client, db, make_user, outbox):
    user = make_user()
    client.post("/api/auth/forgot-password", json={"email": "shopper@example.com"})
    otp = db.users.find_one({"_id": user["_id"]})["otp"]

    response = client.post(
        "/api/auth/reset-password",
        json={"email": "shopper@example.com", "otp": otp, "newPassword": "fresh-pass"},
    )

    assert response.status_code == 200
    stored = db.users.find_one({"_id": user["_id"]})
    assert stored["is_verified"] is True
    assert "otp" not in stored
    login = client.post(
        "/api/auth/login", json={"email": "shopper@example.com", "password": "fresh-pass"}
    )
    assert login.status_code == 200


def test_password_reset_with_wrong_code(client, db, make_user, outbox):
    make_user()
    client.post("/api/auth/forgot-password", json={"email": "shopper@example.com"})

    response = client.post(
        "/api/auth/reset-password",
        json={"email": "shopper@example.com", "otp": "abcdef", "new_password": "fresh-pass"},
    )

    assert response.status_code == 400


def test_profile_read_and_update(client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    response = client.put(
        "/api/auth/profile",
        json={"name": "New Name", "shippingAddress": {"line1": "12 MG Road", "city": "Pune"}},
        headers=headers,
    )

    assert response.status_code == 200
    profile = response.get_json()["user"]
    assert profile["name"] == "New Name"
    assert profile["shipping_address"]["city"] == "Pune"
    assert profile["shipping_address"]["country"] == "IN"


def test_profile_rejects_phone_of_another_account(client, make_user, auth_headers):
    other = make_user(email="other@example.com")
    user = make_user()

    response = client.put(
        "/api/auth/profile", json={"phone": other["phone"]}, headers=auth_headers(user)
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Phone number already in use."


def test_profile_requires_session(client):
    assert client.get("/api/auth/profile").status_code == 401


def test_check_role(client, make_user, auth_headers):
    assert client.get("/api/auth/check-role").status_code == 401

    response = client.get("/api/auth/check-role", headers=auth_headers(make_user()))

    assert response.get_json() == {"role": "user"}


@pytest.mark.parametrize(
    "path, required",
    [
        ("/admin", "admin"),
        ("/admin/products", "admin"),
        ("/orders", "user"),
        ("/checkout/review", "user"),
        ("/success", "user"),
        ("/administrator", None),
        ("/products/nike", None),
        ("/api/admin/stats", "admin"),
        ("/api/orders/me", "user"),
        ("/api/orders/verify-session", None),
    ],
)
def test_required_role_for(path, required):
    assert required_role_for(path) == required


def test_authorize_policy():
    authorize(None, None)
    authorize("user", "user")
    authorize("admin", "user")
    authorize("admin", "admin")
    with pytest.raises(Unauthorized):
        authorize(None, "user")
    with pytest.raises(Forbidden):
        authorize("user", "admin")
    assert not is_route_allowed("user", "/admin/orders")
    assert is_route_allowed(None, "/shop")


def test_admin_routes_are_guarded(client, make_user, auth_headers, admin_headers):
    assert client.get("/api/admin/stats").status_code == 401

    forbidden = client.get("/api/admin/stats", headers=auth_headers(make_user()))
    assert forbidden.status_code == 403
    assert forbidden.get_json()["message"] == "Access denied. Admins only."

    assert client.get("/api/admin/stats", headers=admin_headers).status_code == 200


def test_check_access(client, make_user, auth_headers):
    anonymous = client.get("/api/auth/check-access?path=/checkout").get_json()
    assert anonymous["allowed"] is False
    assert anonymous["required_role"] == "user"

    shopper = client.get(
        "/api/auth/check-access?path=/admin/orders", headers=auth_headers(make_user())
    ).get_json()
    assert shopper["allowed"] is False
    assert shopper["role"] == "user"

    public = client.get("/api/auth/check-access?path=/shop").get_json()
    assert public["allowed"] is True
