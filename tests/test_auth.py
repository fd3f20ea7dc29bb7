import os
import uuid

from library_portal.settings import get_settings, settings
from main import app

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]


def test_register_and_sign_in_as_student(client):
    email = f"new.{uuid.uuid4().hex[:8]}@school.test"
    register = client.post("/register", json={
        "full_name": "New Student",
        "email": email,
        "password": "secret1",
    })
    assert register.status_code == 200
    assert register.json()["role"] == "student"
    assert "password" not in register.json()
    assert "hashed_password" not in register.json()

    token = client.post("/token", data={"username": email.upper(), "password": "secret1"})
    assert token.status_code == 200
    assert token.json()["role"] == "student"
    assert token.json()["redirect_to"] == "/student"

    me = client.get("/me", headers={"Authorization": f"Bearer {token.json()['access_token']}"})
    assert me.json()["email"] == email


def test_duplicate_email(client, make_student):
    _, student = make_student()

    response = client.post("/register", json={
        "full_name": "Copy",
        "email": student["email"],
        "password": "secret1",
    })

    assert response.status_code == 400
    assert response.json()["detail"] == "This email is already registered. Please sign in."


def test_short_password(client):
    response = client.post("/register", json={
        "full_name": "Short",
        "email": "short@school.test",
        "password": "12345",
    })

    assert response.status_code == 422


def test_wrong_password(client, make_student):
    _, student = make_student()

    response = client.post("/token", data={"username": student["email"], "password": "nope"})

    assert response.status_code == 401


def test_configured_admin_is_bootstrapped(client):
    response = client.post("/token", data={"username": ADMIN_EMAIL, "password": ADMIN_PASSWORD})

    assert response.status_code == 200
    assert response.json()["role"] == "admin"
    assert response.json()["redirect_to"] == "/admin"


def test_sign_in_without_secret_key(client):
    app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"secret_key": ""})
    try:
        response = client.post("/token", data={"username": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    finally:
        app.dependency_overrides.pop(get_settings, None)

    assert response.status_code == 503
    assert "SECRET_KEY" in response.json()["detail"]


def test_protected_routes_need_a_token(client):
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_admin_routes_are_gated(client, make_student, admin_headers):
    headers, _ = make_student()

    for path in ("/admin/stats", "/admin/users", "/admin/borrowed", "/admin/requests"):
        assert client.get(path, headers=headers).status_code == 403
        assert client.get(path, headers=admin_headers).status_code == 200


def test_feedback(client):
    response = client.post("/feedback", json={
        "name": "Visitor",
        "email": "visitor@example.test",
        "message": "Lovely catalog",
        "rating": 5,
    })
    assert response.status_code == 200

    assert client.post("/feedback", json={
        "name": "Visitor",
        "email": "visitor@example.test",
        "message": "No stars",
        "rating": 0,
    }).status_code == 422
