import os
import shutil
import sys
import tempfile
import uuid

TEST_DIR = tempfile.mkdtemp(prefix="library_portal_tests_")
TEST_DB = os.path.join(TEST_DIR, "test_library_portal.db")

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_EMAIL"] = "admin@library.test"
os.environ["ADMIN_PASSWORD"] = "admin-pass"
os.environ["RESEND_API_KEY"] = ""

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest
from fastapi.testclient import TestClient

from main import app

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]


@pytest.fixture(scope="session")
def client():
    return TestClient(app)


def login(client, email, password):
    response = client.post("/token", data={"username": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture(scope="session")
def admin_headers(client):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def make_student(client):
    """Register a fresh student and return (headers, profile)."""
    def _make(name="Student"):
        email = f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:8]}@school.test"
        response = client.post("/register", json={
            "full_name": name,
            "email": email,
            "password": "studentpass",
        })
        assert response.status_code == 200, response.text
        return login(client, email, "studentpass"), response.json()
    return _make


@pytest.fixture
def make_book(client, admin_headers):
    def _make(total_copies=2, title=None, **extra):
        response = client.post("/books", json={
            "title": title or f"Test Book {uuid.uuid4().hex[:8]}",
            "author": "Test Author",
            "isbn": "978-0000000000",
            "total_copies": total_copies,
            **extra,
        }, headers=admin_headers)
        assert response.status_code == 200, response.text
        return response.json()
    return _make


@pytest.fixture
def borrow(client, admin_headers):
    """Request a book as the student and approve it; returns the loan."""
    def _borrow(student_headers, book_id, due_date=None):
        request = client.post("/requests", json={"book_id": book_id}, headers=student_headers)
        assert request.status_code == 200, request.text
        body = {"due_date": due_date} if due_date else None
        approved = client.post(
            f"/admin/requests/{request.json()['id']}/approve",
            json=body,
            headers=admin_headers,
        )
        assert approved.status_code == 200, approved.text
        return approved.json()
    return _borrow


def pytest_sessionfinish(session, exitstatus):
    from library_portal.database import engine

    engine.dispose()
    shutil.rmtree(TEST_DIR, ignore_errors=True)
