import importlib

import pytest

ADMIN_EMAIL = "admin@library.com"
PASSWORD = "password123"


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    # Per-test database; the app builds its engine at import, so reload it
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'library_test.db'}")
    monkeypatch.setenv("JWT_SECRET", "test-secret-long-enough-for-hs256-signing")

    from library_service import config as config_module
    importlib.reload(config_module)
    from library_service import app as app_module
    app_module = importlib.reload(app_module)
    app_module.app.config["TESTING"] = True

    yield app_module

    app_module.engine.dispose()


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture
def admin_token(app_module, client):
    from library_service.users import UserService

    session = app_module.SessionLocal()
    try:
        outcome = UserService(session).register("Admin User", ADMIN_EMAIL, PASSWORD, role="admin")
        assert outcome.ok
    finally:
        session.close()
    return login(client, ADMIN_EMAIL)


def login(client, email, password=PASSWORD):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["token"]


def register(client, name="John Doe", email="john@library.com", password=PASSWORD):
    resp = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "password": password},
    )
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def create_book(client, admin_token, **overrides):
    payload = {
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "category": "Technology",
        "isbn": "978-0132350884",
        "totalCopies": 2,
    }
    payload.update(overrides)
    resp = client.post("/api/books", json=payload, headers=bearer(admin_token))
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["book"]
