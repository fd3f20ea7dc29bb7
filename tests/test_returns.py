from datetime import datetime, timedelta, timezone
from decimal import Decimal


def _days_ago(days, hours=1):
    return (datetime.now(timezone.utc) - timedelta(days=days, hours=hours)).isoformat()


def test_late_return_freezes_fine(client, admin_headers, make_student, make_book, borrow):
    headers, _ = make_student("Late Reader")
    book = make_book(total_copies=1)
    loan = borrow(headers, book["id"], due_date=_days_ago(4))
    assert loan["is_overdue"] is True
    assert Decimal(loan["current_fine"]) == 40
    assert client.get(f"/books/{book['id']}").json()["status"] == "Unavailable"

    request = client.post(f"/loans/{loan['id']}/return-request", headers=headers)
    assert request.status_code == 200
    assert request.json()["status"] == "Pending"

    approved = client.post(f"/admin/return-requests/{request.json()['id']}/approve", headers=admin_headers)
    assert approved.status_code == 200
    body = approved.json()
    assert body["status"] == "Approved"
    assert body["processed_at"] is not None
    returned = body["borrowed_book"]
    assert returned["return_date"] is not None
    assert Decimal(returned["total_fine"]) == 40
    assert Decimal(returned["due_fee"]) == 40
    assert returned["fee_paid"] is False

    assert client.get("/loans/me", headers=headers).json() == []
    history = client.get("/loans/me/history", headers=headers).json()
    assert Decimal(history[0]["current_fine"]) == 40

    listed = client.get(f"/books/{book['id']}").json()
    assert listed["available_copies"] == 1
    assert listed["status"] == "Available"


def test_on_time_return_is_paid(client, admin_headers, make_student, make_book, borrow):
    headers, _ = make_student()
    loan = borrow(headers, make_book()["id"])

    request = client.post(f"/loans/{loan['id']}/return-request", headers=headers).json()
    returned = client.post(
        f"/admin/return-requests/{request['id']}/approve", headers=admin_headers
    ).json()["borrowed_book"]

    assert Decimal(returned["total_fine"]) == 0
    assert returned["fee_paid"] is True


def test_declined_return_keeps_loan_active(client, admin_headers, make_student, make_book, borrow):
    headers, _ = make_student()
    loan = borrow(headers, make_book()["id"])
    request = client.post(f"/loans/{loan['id']}/return-request", headers=headers).json()

    declined = client.post(f"/admin/return-requests/{request['id']}/decline", headers=admin_headers)

    assert declined.status_code == 200
    assert declined.json()["status"] == "Declined"
    assert [item["id"] for item in client.get("/loans/me", headers=headers).json()] == [loan["id"]]
    assert client.post(
        f"/admin/return-requests/{request['id']}/approve", headers=admin_headers
    ).status_code == 409

    again = client.post(f"/loans/{loan['id']}/return-request", headers=headers)
    assert again.status_code == 200


def test_one_pending_return_per_loan(client, make_student, make_book, borrow):
    headers, _ = make_student()
    loan = borrow(headers, make_book()["id"])

    assert client.post(f"/loans/{loan['id']}/return-request", headers=headers).status_code == 200
    response = client.post(f"/loans/{loan['id']}/return-request", headers=headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Return request already pending for this book"

    mine = client.get("/return-requests/me", headers=headers).json()
    assert len(mine) == 1
    assert mine[0]["borrowed_book"]["book"]["id"] == loan["book_id"]


def test_cannot_return_someone_elses_loan(client, make_student, make_book, borrow):
    owner_headers, _ = make_student("Owner")
    other_headers, _ = make_student("Other")
    loan = borrow(owner_headers, make_book()["id"])

    response = client.post(f"/loans/{loan['id']}/return-request", headers=other_headers)

    assert response.status_code == 403


def test_cannot_return_twice(client, admin_headers, make_student, make_book, borrow):
    headers, _ = make_student()
    loan = borrow(headers, make_book()["id"])
    request = client.post(f"/loans/{loan['id']}/return-request", headers=headers).json()
    client.post(f"/admin/return-requests/{request['id']}/approve", headers=admin_headers)

    response = client.post(f"/loans/{loan['id']}/return-request", headers=headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Book already returned"


def test_admin_lists_pending_returns_with_requester(client, admin_headers, make_student, make_book, borrow):
    headers, student = make_student("Listed")
    loan = borrow(headers, make_book()["id"])
    request = client.post(f"/loans/{loan['id']}/return-request", headers=headers).json()

    pending = client.get("/admin/return-requests", headers=admin_headers).json()
    match = [item for item in pending if item["id"] == request["id"]]

    assert len(match) == 1
    assert match[0]["user"]["email"] == student["email"]


def test_refresh_fines_writes_current_fine(client, admin_headers, make_student, make_book, borrow):
    headers, _ = make_student()
    loan = borrow(headers, make_book()["id"], due_date=_days_ago(2))

    response = client.post("/admin/fines/refresh", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["updated"] >= 1

    borrowed = client.get("/admin/borrowed", headers=admin_headers).json()
    stored = next(item for item in borrowed if item["id"] == loan["id"])
    assert Decimal(stored["total_fine"]) == 20
    assert Decimal(stored["due_fee"]) == 20
    assert stored["last_fine_update"] is not None

    overdue = client.get("/admin/overdue", headers=admin_headers).json()
    assert loan["id"] in [item["id"] for item in overdue]
