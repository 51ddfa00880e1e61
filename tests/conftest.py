import re

import mongomock
import pytest
import resend

from app import create_app

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
    "BCRYPT_LOG_ROUNDS": 4,
    "RESEND_API_KEY": "re_test_key",
    "DEFAULT_ADMIN_EMAIL": "",
    "PASSWORD_RESET_URL": "http://localhost:3000/resetpassword",
}

RESET_TOKEN_PATTERN = re.compile(r"/resetpassword/([0-9a-f]{40})")


@pytest.fixture
def database():
    return mongomock.MongoClient()["proshop_test"]


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send(payload):
        sent.append(payload)
        return {"id": f"email-{len(sent)}"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return sent


@pytest.fixture
def app(database, sent_emails):
    return create_app(dict(TEST_CONFIG), database=database)


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def extract_reset_token(email_payload):
    match = RESET_TOKEN_PATTERN.search(email_payload["text"])
    assert match, "reset link missing from email body"
    return match.group(1)


@pytest.fixture
def register(client):
    def _register(name="John Doe", email="john@example.com", password="secret123"):
        response = client.post(
            "/api/users", json={"name": name, "email": email, "password": password}
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return _register


@pytest.fixture
def user(register):
    return register()


@pytest.fixture
def user_headers(user):
    return bearer(user["token"])


@pytest.fixture
def admin(register, database):
    created = register(name="Admin User", email="admin@example.com", password="adminpass")
    database.users.update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return created


@pytest.fixture
def admin_headers(admin):
    return bearer(admin["token"])


@pytest.fixture
def make_product(client, admin_headers):
    def _make_product(**fields):
        response = client.post("/api/products", json=fields, headers=admin_headers)
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return _make_product
