import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from main import app, get_db


@pytest.fixture()
def client(engine):
    testing_session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = testing_session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _setup(client):
    prop = client.post("/api/properties", json={"nickname": "Maple"}).json()
    rent = client.post("/api/categories", json={"name": "Rent", "type": "income"}).json()
    mortgage = client.post(
        "/api/categories", json={"name": "Mortgage", "type": "expense"}
    ).json()
    return prop, rent, mortgage


def test_category_cycle_is_a_bad_request(client):
    parent = client.post("/api/categories", json={"name": "A", "type": "expense"}).json()
    child = client.post(
        "/api/categories", json={"name": "B", "type": "expense", "parent_id": parent["id"]}
    ).json()

    resp = client.put(
        f"/api/categories/{parent['id']}",
        json={"name": "A", "type": "expense", "parent_id": child["id"]},
    )

    assert resp.status_code == 400
    tree = client.get("/api/categories").json()
    assert [(c["name"], c["depth"]) for c in tree] == [("A", 0), ("B", 1)]


def test_unknown_property_is_not_found(client):
    resp = client.post("/api/properties/999/recurring/post", json={"target_month": "2024-01"})
    assert resp.status_code == 404


def test_recurring_post_and_profit_loss(client):
    prop, rent, mortgage = _setup(client)
    client.post(
        f"/api/properties/{prop['id']}/recurring",
        json={
            "category_id": rent["id"],
            "amount_cents": 200000,
            "day_of_month": 1,
            "start_month": "2024-01",
        },
    )
    client.post(
        f"/api/properties/{prop['id']}/recurring",
        json={
            "category_id": mortgage["id"],
            "amount_cents": 120000,
            "day_of_month": 31,
            "start_month": "2024-01",
        },
    )

    summary = client.post(
        f"/api/properties/{prop['id']}/recurring/post", json={"target_month": "2024-03"}
    ).json()
    again = client.post(
        f"/api/properties/{prop['id']}/recurring/post", json={"target_month": "2024-03"}
    ).json()

    assert summary["posted_count"] == 6
    assert summary["months_processed"] == ["2024-01", "2024-02", "2024-03"]
    assert again["posted_count"] == 0

    report = client.get(
        "/api/reports/profit-loss", params={"start": "2024-01-01", "end": "2024-12-31"}
    ).json()
    assert report["kind"] == "profit_loss"
    assert report["totals"]["net_total"] == 3 * (200000 - 120000)

    export = client.get(
        "/api/reports/profit-loss",
        params={"start": "2024-01-01", "end": "2024-12-31", "export": "true"},
    )
    assert export.headers["content-type"].startswith("text/csv")
    assert "6000.00" in export.text
    assert "-3600.00" in export.text


def test_invalid_month_is_a_bad_request(client):
    prop, _rent, _mortgage = _setup(client)
    resp = client.get(
        f"/api/properties/{prop['id']}/recurring/scheduled", params={"month": "2024-13"}
    )
    assert resp.status_code == 400


def test_roe_report_serializes_null_for_zero_equity(client):
    prop = client.post(
        "/api/properties",
        json={"nickname": "Flat", "zillow_estimated_value_cents": 100000},
    ).json()
    client.post(
        f"/api/properties/{prop['id']}/loans",
        json={"as_of_date": "2024-01-01", "balance_cents": 100000},
    )

    report = client.get("/api/reports/roe", params={"year": 2024}).json()

    assert report["rows"][0]["equity"] == 0
    assert report["rows"][0]["roe_pct"] is None


def test_malformed_payload_is_a_bad_request(client):
    prop, rent, _mortgage = _setup(client)
    resp = client.post(
        f"/api/properties/{prop['id']}/recurring",
        json={"category_id": rent["id"], "amount_cents": 100, "start_month": "24-1"},
    )
    assert resp.status_code == 400


def test_recurring_expenses_report(client):
    prop, _rent, mortgage = _setup(client)
    client.post(
        f"/api/properties/{prop['id']}/recurring",
        json={
            "category_id": mortgage["id"],
            "amount_cents": 120000,
            "start_month": "2024-01",
        },
    )
    client.post(
        f"/api/properties/{prop['id']}/recurring/post", json={"target_month": "2024-01"}
    )

    report = client.get(
        "/api/reports/recurring-expenses",
        params={"start": "2024-01-01", "end": "2024-02-29"},
    ).json()

    assert report["kind"] == "recurring_expenses_overview"
    assert report["rows"][0]["missing_months"] == ["2024-02"]
    assert report["totals"]["variance"] == 120000

    by_month = client.get(
        "/api/reports/profit-loss-by-month",
        params={"start": "2024-01-01", "end": "2024-02-29", "export": "true"},
    )
    assert by_month.headers["content-type"].startswith("text/csv")
    assert "-1200.00" in by_month.text


def test_roe_report_rejects_bad_year(client):
    resp = client.get("/api/reports/roe", params={"year": "soon"})
    assert resp.status_code == 400
