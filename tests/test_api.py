from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from fiscal import current_fiscal_year
from main import app


def make_client() -> TestClient:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def seed_category(client: TestClient, name: str = "Operations") -> dict:
    response = client.post(
        "/categories",
        json={
            "name": name,
            "year": current_fiscal_year(),
            "allocated_cents": 1_000_000,
        },
    )
    assert response.status_code == 200
    return response.json()


def create_request(client: TestClient, **overrides) -> dict:
    payload = {
        "project": "Sports day",
        "category": "Operations",
        "requester": "somchai",
        "amount_cents": 100_000,
    }
    payload.update(overrides)
    response = client.post("/requests", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


def test_insufficient_budget_reports_remaining_balance() -> None:
    client = make_client()
    category = seed_category(client)
    sub = client.post(
        "/sub-activities",
        json={
            "category_id": category["id"],
            "name": "Events",
            "allocated_cents": 30_000,
        },
    ).json()
    assert sub["remaining_cents"] == 30_000

    response = client.post(
        "/requests",
        json={
            "project": "Sports day",
            "category": "Operations",
            "sub_activity_id": sub["id"],
            "requester": "somchai",
            "amount_cents": 30_100,
        },
    )
    assert response.status_code == 400
    body = response.json()
    assert body["remaining_cents"] == 30_000
    assert body["requested_cents"] == 30_100
    assert body["detail"].startswith('Insufficient budget for sub-activity "Events"')


def test_lifecycle_over_http() -> None:
    client = make_client()
    category = seed_category(client)
    request = create_request(
        client,
        expense_items=[
            {"description": "Medals", "quantity": 4, "unit_price_cents": 25_000}
        ],
    )
    assert request["status"] == "pending"
    item_id = request["expense_items"][0]["id"]

    approved = client.put(
        f"/requests/{request['id']}/approve", json={"approver_id": "director"}
    )
    assert approved.json()["status"] == "approved"

    submitted = client.put(
        f"/requests/{request['id']}/submit-expense",
        json={
            "expense_items": [{"id": item_id, "actual_amount_cents": 90_000}],
            "actual_total_cents": 90_000,
            "return_amount_cents": 10_000,
        },
    )
    assert submitted.json()["status"] == "waiting_verification"

    completed = client.put(f"/requests/{request['id']}/complete")
    assert completed.json()["status"] == "completed"

    [refreshed] = client.get("/categories").json()
    assert refreshed["used_cents"] == 90_000
    assert refreshed["remaining_cents"] == 910_000

    logs = client.get(f"/categories/{category['id']}/logs").json()
    assert [(log["type"], log["amount_cents"]) for log in logs] == [("REDUCE", 10_000)]
    expenses = client.get(f"/categories/{category['id']}/expenses").json()
    assert [e["description"] for e in expenses] == ["[Sports day] Medals"]

    activity = client.get("/activity-logs", params={"limit": 2}).json()
    assert len(activity) == 2
    assert activity[0]["action"] == "VERIFY_AND_COMPLETE_REQUEST"
    assert activity[0]["details"]["request_id"] == request["id"]

    reverted = client.put(f"/requests/{request['id']}/revert-complete")
    assert reverted.json()["status"] == "waiting_verification"
    assert client.get("/categories").json()[0]["used_cents"] == 100_000

    summary = client.get("/summary").json()
    assert summary["year"] == current_fiscal_year()
    assert summary["refund_pending_cents"] == 10_000


def test_missing_request_is_404() -> None:
    client = make_client()
    response = client.put("/requests/404/approve", json={"approver_id": "director"})
    assert response.status_code == 404
    assert response.json() == {"detail": "Request not found"}
    assert client.get("/requests/404").status_code == 404


def test_revert_of_non_completed_request_is_400() -> None:
    client = make_client()
    seed_category(client)
    request = create_request(client)

    response = client.put(f"/requests/{request['id']}/revert-complete")
    assert response.status_code == 400
    assert response.json() == {"detail": "Request is not completed"}


def test_delete_request_returns_success() -> None:
    client = make_client()
    seed_category(client)
    request = create_request(client)

    response = client.delete(f"/requests/{request['id']}")
    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert client.get("/requests").json() == []


def test_invalid_payloads_are_400() -> None:
    client = make_client()
    seed_category(client)

    missing = client.post(
        "/requests",
        json={"project": "Sports day", "category": "Operations", "amount_cents": 100},
    )
    assert missing.status_code == 400

    zero = client.post(
        "/requests",
        json={
            "project": "Sports day",
            "category": "Operations",
            "requester": "somchai",
            "amount_cents": 0,
        },
    )
    assert zero.status_code == 400
    assert zero.json() == {"detail": "Amount must be greater than zero"}


def test_status_override_and_list_filter() -> None:
    client = make_client()
    seed_category(client)
    first = create_request(client)
    create_request(client, project="Book fair")

    response = client.put(
        f"/requests/{first['id']}/status", json={"status": "rejected"}
    )
    assert response.json()["status"] == "rejected"
    rejected = client.get("/requests", params={"status": "rejected"}).json()
    assert [r["id"] for r in rejected] == [first["id"]]


def test_budget_plan_upsert_accepts_post_and_put() -> None:
    client = make_client()
    category = seed_category(client)
    sub = client.post(
        "/sub-activities", json={"category_id": category["id"], "name": "Events"}
    ).json()
    plan = {"sub_activity_id": sub["id"], "year": 2568, "month": 3}

    created = client.post("/budget-plans", json={**plan, "amount_cents": 1_000})
    assert created.status_code == 200
    updated = client.put("/budget-plans", json={**plan, "amount_cents": 2_500})
    assert updated.json()["id"] == created.json()["id"]

    plans = client.get("/budget-plans", params={"year": 2568}).json()
    assert [p["amount_cents"] for p in plans] == [2_500]
