from datetime import date, timedelta
from types import SimpleNamespace

from isp_crm.expiration import evaluate_expiration

TODAY = date(2025, 3, 10)


def _account(status="active", next_billing_date=None):
    return SimpleNamespace(
        id=1,
        account_number="ACC-1001",
        customer_name="Peter Kamau",
        status=status,
        next_billing_date=next_billing_date,
    )


def test_expired_past_grace_should_be_suspended() -> None:
    check = evaluate_expiration(_account(next_billing_date=TODAY - timedelta(days=5)), 3, today=TODAY)
    assert check.is_expired is True
    assert check.days_overdue == 5
    assert check.should_be_suspended is True


def test_expired_within_grace_is_not_suspended() -> None:
    check = evaluate_expiration(_account(next_billing_date=TODAY - timedelta(days=5)), 10, today=TODAY)
    assert check.is_expired is True
    assert check.should_be_suspended is False


def test_grace_boundary_and_future_dates() -> None:
    on_boundary = evaluate_expiration(_account(next_billing_date=TODAY - timedelta(days=3)), 3, today=TODAY)
    assert on_boundary.should_be_suspended is False

    due_today = evaluate_expiration(_account(next_billing_date=TODAY), 0, today=TODAY)
    assert due_today.is_expired is False

    future = evaluate_expiration(_account(next_billing_date=TODAY + timedelta(days=7)), 3, today=TODAY)
    assert future.is_expired is False
    assert future.days_overdue == 0

    no_date = evaluate_expiration(_account(), 3, today=TODAY)
    assert no_date.is_expired is False


def test_only_active_accounts_are_suspended() -> None:
    check = evaluate_expiration(_account(status="suspended", next_billing_date=TODAY - timedelta(days=30)), 3, today=TODAY)
    assert check.is_expired is True
    assert check.currently_active is False
    assert check.should_be_suspended is False


def _accounts(client):
    client.get("/api/mikrotik/plans")
    ids = []
    for phone in ("0712000001", "0712000002"):
        resp = client.post("/api/mikrotik/accounts", json={"customer_name": "Sub", "customer_phone": phone, "plan_id": 1})
        ids.append(resp.json()["account"]["id"])
    overdue = (date.today() - timedelta(days=5)).isoformat()
    client.put(f"/api/mikrotik/accounts/{ids[0]}", json={"next_billing_date": overdue})
    return ids


def test_check_status_is_read_only(client) -> None:
    _accounts(client)
    resp = client.post("/api/mikrotik/expiration/check-status", json={"grace_period_days": 3})
    assert resp.status_code == 200
    body = resp.json()
    assert body["grace_period_days"] == 3
    assert body["summary"] == {"total_accounts": 2, "expired_accounts": 1, "active_expired": 1, "pending_suspension": 1}
    assert [c["should_be_suspended"] for c in body["checks"]] == [True, False]
    assert client.get("/api/mikrotik/expiration/logs").json()["logs"] == []


def test_process_suspends_and_renew_resumes(client) -> None:
    overdue_id, current_id = _accounts(client)

    result = client.post("/api/mikrotik/expiration/process", json={"grace_period_days": 3}).json()
    assert result["processed_count"] == 1
    assert result["suspended_count"] == 1
    assert result["failed_count"] == 0
    assert result["skipped_count"] == 1
    assert client.get(f"/api/mikrotik/accounts/{overdue_id}").json()["account"]["status"] == "suspended"
    assert client.get(f"/api/mikrotik/accounts/{current_id}").json()["account"]["status"] == "active"

    again = client.post("/api/mikrotik/expiration/process", json={"grace_period_days": 3}).json()
    assert again["processed_count"] == 0

    new_date = (date.today() + timedelta(days=30)).isoformat()
    renewed = client.post("/api/mikrotik/expiration/renew", json={"account_id": overdue_id, "new_next_billing_date": new_date})
    assert renewed.status_code == 200
    assert renewed.json()["resumed"] is True
    assert renewed.json()["account"]["status"] == "active"
    assert renewed.json()["account"]["next_billing_date"] == new_date

    actions = [entry["action"] for entry in client.get("/api/mikrotik/expiration/logs", params={"account_id": overdue_id}).json()["logs"]]
    assert actions == ["AUTO_RESUMED", "RENEWAL_DETECTED", "AUTO_SUSPENDED"]

    status = client.get("/api/mikrotik/expiration/status").json()
    assert status["summary"]["expired_accounts"] == 0
    assert status["last_action"]["action"] == "AUTO_RESUMED"


def test_process_without_auto_suspend_only_logs(client) -> None:
    overdue_id, _ = _accounts(client)
    result = client.post("/api/mikrotik/expiration/process", json={"grace_period_days": 3, "auto_suspend": False}).json()
    assert result["processed_count"] == 1
    assert result["suspended_count"] == 0
    assert client.get(f"/api/mikrotik/accounts/{overdue_id}").json()["account"]["status"] == "active"
    logs = client.get("/api/mikrotik/expiration/logs").json()["logs"]
    assert [entry["action"] for entry in logs] == ["EXPIRATION_DETECTED"]


def test_renewing_an_active_account_does_not_resume(client) -> None:
    _, current_id = _accounts(client)
    new_date = (date.today() + timedelta(days=60)).isoformat()
    body = client.post("/api/mikrotik/expiration/renew", json={"account_id": current_id, "new_next_billing_date": new_date}).json()
    assert body["resumed"] is False
    assert client.post("/api/mikrotik/expiration/renew", json={"account_id": 999, "new_next_billing_date": new_date}).status_code == 404
