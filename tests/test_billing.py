from datetime import date, timedelta
from decimal import Decimal

from isp_crm import billing
from isp_crm.models import MikrotikAccount, MikrotikPlan


def _account(client, plan_id=1, phone="0712000999", **extra):
    client.get("/api/mikrotik/plans")
    resp = client.post(
        "/api/mikrotik/accounts",
        json={"customer_name": "Peter Kamau", "customer_phone": phone, "plan_id": plan_id, **extra},
    )
    assert resp.status_code == 201
    return resp.json()["account"]


def _invoice(client, account_id):
    resp = client.post("/api/mikrotik/invoices/generate", json={"account_id": account_id})
    assert resp.status_code == 201
    return resp.json()


def test_invoice_totals() -> None:
    assert billing.invoice_totals(1500, 0) == (Decimal("1500.00"), Decimal("0.00"), Decimal("240.00"), Decimal("1740.00"))
    assert billing.invoice_totals(5000, 5) == (Decimal("5000.00"), Decimal("250.00"), Decimal("760.00"), Decimal("5510.00"))
    assert billing.invoice_totals(999.99, 0)[2] == Decimal("160.00")


def test_generate_credentials() -> None:
    creds = billing.generate_credentials("ACC-1001")
    assert creds["pppoe_username"] == "ACC-1001"
    assert creds["hotspot_username"] == "hs_ACC-1001"
    for key in ("pppoe_password", "hotspot_password"):
        assert len(creds[key]) == billing.PASSWORD_LENGTH
        assert creds[key].isalnum()


def test_default_plans_are_seeded_once(client) -> None:
    plans = client.get("/api/mikrotik/plans").json()["plans"]
    assert [p["plan_name"] for p in plans] == ["Basic Residential", "Premium Business", "Quota Prepaid"]
    assert plans[2]["data_quota"] == 10
    assert len(client.get("/api/mikrotik/plans").json()["plans"]) == 3

    quota = client.post("/api/mikrotik/plans", json={"plan_name": "Quota Lite", "plan_type": "quota-based", "monthly_fee": 300})
    assert quota.status_code == 201
    assert quota.json()["plan"]["data_quota"] == 10


def test_account_creation(client) -> None:
    account = _account(client)
    assert account["account_number"] == "ACC-1001"
    assert account["status"] == "active"
    assert account["pppoe_username"] == "ACC-1001"
    assert account["hotspot_username"] == "hs_ACC-1001"
    assert account["monthly_fee"] == 1500.0
    assert account["outstanding_balance"] == 2000.0
    assert account["next_billing_date"] == (date.today() + timedelta(days=30)).isoformat()

    assert _account(client, phone="0712000998")["account_number"] == "ACC-1002"
    assert _account(client, phone="0712000997", prefix="BIZ")["account_number"] == "BIZ-1003"
    assert client.post(
        "/api/mikrotik/accounts", json={"customer_name": "X", "customer_phone": "07", "plan_id": 99}
    ).status_code == 404


def test_plan_change_updates_fee(client) -> None:
    account = _account(client)
    updated = client.put(f"/api/mikrotik/accounts/{account['id']}", json={"plan_id": 3})
    assert updated.json()["account"]["monthly_fee"] == 500.0
    assert updated.json()["account"]["data_quota"] == 10


def test_invoice_generation(client) -> None:
    account = _account(client)
    body = _invoice(client, account["id"])
    invoice = body["invoice"]
    assert invoice["invoice_number"] == "INV-1001"
    assert invoice["amount"] == 1500.0
    assert invoice["tax"] == 240.0
    assert invoice["total"] == 1740.0
    assert invoice["status"] == "issued"
    assert body["account"]["outstanding_balance"] == 3740.0
    assert body["account"]["last_billing_date"] == date.today().isoformat()

    premium = _account(client, plan_id=2, phone="0712000111")
    premium_invoice = _invoice(client, premium["id"])["invoice"]
    assert premium_invoice["discount"] == 250.0
    assert premium_invoice["total"] == 5510.0


def test_completed_payment_settles_invoice(client) -> None:
    account = _account(client)
    invoice = _invoice(client, account["id"])["invoice"]

    resp = client.post(
        "/api/payments",
        json={"account_id": account["id"], "invoice_id": invoice["id"], "amount": 1740, "payment_method": "mpesa", "status": "completed"},
    )
    assert resp.status_code == 201
    payment = resp.json()["payment"]
    assert payment["applied"] is True

    settled = client.get(f"/api/mikrotik/accounts/{account['id']}/invoices").json()["invoices"][0]
    assert settled["status"] == "paid"
    assert settled["amount_paid"] == 1740.0
    refreshed = client.get(f"/api/mikrotik/accounts/{account['id']}").json()["account"]
    assert refreshed["outstanding_balance"] == 2000.0
    assert refreshed["total_paid"] == 1740.0

    assert client.put(f"/api/payments/{payment['id']}", json={"amount": 10}).status_code == 409
    assert client.delete(f"/api/payments/{payment['id']}").status_code == 409
    assert len(client.get(f"/api/payments/invoice/{invoice['id']}").json()["payments"]) == 1


def test_applied_payment_status_is_locked(client) -> None:
    account = _account(client)
    invoice = _invoice(client, account["id"])["invoice"]
    payment = client.post(
        "/api/payments",
        json={"account_id": account["id"], "invoice_id": invoice["id"], "amount": 1000, "status": "completed"},
    ).json()["payment"]

    for status in ("refunded", "failed", "pending"):
        resp = client.put(f"/api/payments/{payment['id']}", json={"status": status})
        assert resp.status_code == 409
    assert client.put(f"/api/payments/{payment['id']}", json={"status": "completed", "payment_method": "cash"}).status_code == 200

    assert client.get(f"/api/payments/{payment['id']}").json()["payment"]["status"] == "completed"
    refreshed = client.get(f"/api/mikrotik/accounts/{account['id']}").json()["account"]
    assert refreshed["total_paid"] == 1000.0
    assert refreshed["outstanding_balance"] == 2740.0


def test_pending_payment_applies_when_completed(client) -> None:
    account = _account(client)
    invoice = _invoice(client, account["id"])["invoice"]

    pending = client.post("/api/payments", json={"account_id": account["id"], "amount": 1000}).json()["payment"]
    assert pending["applied"] is False
    assert client.get(f"/api/mikrotik/accounts/{account['id']}").json()["account"]["total_paid"] == 0.0

    completed = client.put(f"/api/payments/{pending['id']}", json={"status": "completed"}).json()["payment"]
    assert completed["applied"] is True
    assert completed["invoice_id"] == invoice["id"]
    partial = client.get(f"/api/mikrotik/accounts/{account['id']}/invoices").json()["invoices"][0]
    assert partial["status"] == "partially_paid"
    assert partial["amount_paid"] == 1000.0

    unapplied = client.post("/api/payments", json={"account_id": account["id"], "amount": 50}).json()["payment"]
    assert client.delete(f"/api/payments/{unapplied['id']}").status_code == 200


def test_payment_validation(client) -> None:
    account = _account(client)
    assert client.post("/api/payments", json={"account_id": account["id"], "amount": 0}).status_code == 400
    assert client.post("/api/payments", json={"amount": 100}).status_code == 400
    assert client.post("/api/payments", json={"account_id": 999, "amount": 100}).status_code == 404
    assert client.post("/api/payments", json={"account_id": account["id"], "amount": 100, "invoice_id": 999}).status_code == 404


def test_overpayment_becomes_credit_for_next_invoice(client) -> None:
    account = _account(client)
    resp = client.post("/api/mikrotik/payments", json={"account_id": account["id"], "amount": 2500, "payment_method": "cash"})
    assert resp.status_code == 201
    after_payment = resp.json()["account"]
    assert after_payment["outstanding_balance"] == 0.0
    assert after_payment["balance"] == 500.0
    assert after_payment["total_paid"] == 2500.0

    body = _invoice(client, account["id"])
    assert body["invoice"]["amount_paid"] == 500.0
    assert body["invoice"]["status"] == "partially_paid"
    assert body["account"]["balance"] == 0.0
    assert body["account"]["outstanding_balance"] == 1240.0


def test_usage_and_stats(client) -> None:
    account = _account(client)
    for upload, download in ((256, 768), (0, 1024)):
        resp = client.post("/api/mikrotik/usage", json={"account_id": account["id"], "upload_mb": upload, "download_mb": download})
        assert resp.status_code == 201
    usage = client.get(f"/api/mikrotik/accounts/{account['id']}/usage").json()
    assert usage["total_mb"] == 2048.0
    assert usage["total_gb"] == 2.0

    _invoice(client, account["id"])
    stats = client.get("/api/mikrotik/stats").json()["stats"]
    assert stats["total_accounts"] == 1
    assert stats["accounts_by_status"]["active"] == 1
    assert stats["monthly_recurring_revenue"] == 1500.0
    assert stats["invoices_by_status"] == {"issued": 1}


def test_regenerate_credentials_keeps_usernames(client) -> None:
    account = _account(client)
    fresh = client.post(f"/api/mikrotik/accounts/{account['id']}/regenerate-credentials").json()["account"]
    assert fresh["pppoe_username"] == account["pppoe_username"]
    assert fresh["hotspot_username"] == account["hotspot_username"]
    assert (fresh["pppoe_password"], fresh["hotspot_password"]) != (account["pppoe_password"], account["hotspot_password"])


def test_delete_account_removes_billing_rows(client) -> None:
    account = _account(client)
    _invoice(client, account["id"])
    client.post("/api/mikrotik/payments", json={"account_id": account["id"], "amount": 100})
    assert client.delete(f"/api/mikrotik/accounts/{account['id']}").status_code == 200
    assert client.get("/api/mikrotik/invoices").json()["invoices"] == []
    assert client.get("/api/payments").json()["payments"] == []


def _db_account(db, plan):
    account = MikrotikAccount(
        account_number="ACC-2001",
        customer_name="Unit Test",
        customer_phone="0700000000",
        account_type="residential",
        plan_id=plan.id,
        monthly_fee=plan.monthly_fee,
        outstanding_balance=Decimal("0"),
        balance=Decimal("0"),
        total_paid=Decimal("0"),
        registration_date=date(2025, 1, 1),
        **billing.generate_credentials("ACC-2001"),
    )
    db.add(account)
    db.flush()
    return account


def test_overdue_invoices_and_fifo_allocation(db_session) -> None:
    billing.ensure_default_plans(db_session, "default")
    plan = db_session.query(MikrotikPlan).filter(MikrotikPlan.plan_name == "Basic Residential").one()
    account = _db_account(db_session, plan)

    january = billing.generate_invoice(db_session, account, plan, "2025-01", today=date(2025, 1, 1))
    february = billing.generate_invoice(db_session, account, plan, "2025-02", today=date(2025, 2, 1))
    assert january.due_date == date(2025, 1, 31)
    assert account.outstanding_balance == Decimal("3480.00")

    assert billing.process_overdue_invoices(db_session, today=date(2025, 2, 5)) == 1
    assert january.status == "overdue"
    assert february.status == "issued"

    settled = billing.apply_payment(db_session, account, Decimal("2000"), payment_method="mpesa")
    assert settled == [january, february]
    assert january.status == "paid"
    assert february.status == "partially_paid"
    assert february.amount_paid == Decimal("260.00")
    assert account.outstanding_balance == Decimal("1480.00")
    assert account.balance == Decimal("0")
