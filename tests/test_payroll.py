from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from isp_crm import payroll


def _config(**overrides):
    return {**payroll.DEFAULT_DEDUCTION_SETTINGS, "enabled": True, **overrides}


def test_time_to_minutes() -> None:
    assert payroll.time_to_minutes("08:45") == 525
    assert payroll.time_to_minutes("1:05 PM") == 785
    assert payroll.time_to_minutes("12:10 AM") == 10
    assert payroll.time_to_minutes("12:30 pm") == 750
    assert payroll.time_to_minutes("late") is None
    assert payroll.time_to_minutes(None) is None


def test_deduction_kinds() -> None:
    daily = payroll.daily_salary(30000)
    assert daily == Decimal("1000")

    assert payroll.calculate_deduction(20, daily, _config()) == Decimal("50.00")
    assert payroll.calculate_deduction(20, daily, _config(deduction_type="percentage")) == Decimal("20.00")

    scaled = _config(deduction_type="scaled")
    assert payroll.calculate_deduction(45, daily, scaled) == Decimal("60.00")
    assert payroll.calculate_deduction(150, daily, scaled) == Decimal("150.00")
    assert payroll.calculate_deduction(1500, daily, scaled) == Decimal("150.00")


def test_no_deduction_below_threshold_or_when_disabled() -> None:
    daily = Decimal("1000")
    assert payroll.calculate_deduction(10, daily, _config()) == 0
    assert payroll.calculate_deduction(90, daily, {**payroll.DEFAULT_DEDUCTION_SETTINGS}) == 0


def test_monthly_deductions_respect_apply_after_days_and_exclusions() -> None:
    employees = [SimpleNamespace(id=1, salary=30000), SimpleNamespace(id=2, salary=30000)]
    attendance = [
        SimpleNamespace(employee_id=1, date=date(2025, 1, 6), check_in_time="08:50", status="late"),
        SimpleNamespace(employee_id=1, date=date(2025, 1, 7), check_in_time="08:40", status="present"),
        SimpleNamespace(employee_id=1, date=date(2025, 1, 8), check_in_time="09:45", status="late"),
        SimpleNamespace(employee_id=1, date=date(2025, 1, 9), check_in_time="10:00", status="absent"),
        SimpleNamespace(employee_id=2, date=date(2025, 1, 6), check_in_time="09:00", status="late"),
    ]

    results = payroll.calculate_monthly_deductions(employees, attendance, _config())
    first = results[1]
    assert first["late_days"] == 2
    assert first["total_late_minutes"] == 95
    assert first["deduction_amount"] == Decimal("100.00")
    assert [item["date"] for item in first["breakdown"]] == ["2025-01-06", "2025-01-08"]
    assert results[2]["late_days"] == 1

    strict = payroll.calculate_monthly_deductions(employees, attendance, _config(apply_after_days=2, exclude_employee_ids=[]))
    assert set(strict) == {1}

    excluded = payroll.calculate_monthly_deductions(employees, attendance, _config(exclude_employee_ids=[1]))
    assert set(excluded) == {2}


def test_net_salary() -> None:
    assert payroll.net_salary(45000, 5000, 1000, 250, 3200.5) == Decimal("47549.50")


def _employee(client, email, salary):
    resp = client.post(
        "/api/employees",
        json={"first_name": "Emp", "last_name": email.split("@")[0], "email": email, "phone": "0700111222", "salary": salary},
    )
    return resp.json()["employee"]["id"]


def test_deduction_settings_api(client) -> None:
    defaults = client.get("/api/payroll/deduction-settings").json()["settings"]
    assert defaults["enabled"] is False
    assert defaults["late_threshold_minutes"] == 15

    saved = client.put("/api/payroll/deduction-settings", json={"enabled": True, "deduction_type": "percentage"})
    assert saved.status_code == 200
    stored = client.get("/api/payroll/deduction-settings").json()["settings"]
    assert stored["enabled"] is True
    assert stored["deduction_type"] == "percentage"
    assert stored["official_check_in_time"] == "08:30"

    assert client.put("/api/payroll/deduction-settings", json={"deduction_type": "random"}).status_code == 400


def test_out_of_range_deduction_settings_are_rejected(client) -> None:
    for body in (
        {"late_threshold_minutes": -5},
        {"official_check_in_time": "bad"},
        {"percentage_deduction": 150},
        {"apply_after_days": 0},
    ):
        resp = client.put("/api/payroll/deduction-settings", json=body)
        assert resp.status_code == 400
        assert resp.json()["success"] is False
    assert client.get("/api/payroll/deduction-settings").json()["settings"]["late_threshold_minutes"] == 15


def test_generate_payroll_applies_late_deductions(client) -> None:
    late_id = _employee(client, "late@example.com", 30000)
    punctual_id = _employee(client, "punctual@example.com", 20000)
    client.put("/api/payroll/deduction-settings", json={"enabled": True, "deduction_type": "fixed", "fixed_deduction_amount": 50})
    for day, check_in, status in (("2025-01-06", "08:50", "late"), ("2025-01-07", "08:40", "present"), ("2025-01-08", "09:45", "late")):
        client.post("/api/attendance", json={"employee_id": late_id, "date": day, "check_in_time": check_in, "status": status})
    client.post("/api/attendance", json={"employee_id": late_id, "date": "2025-02-03", "check_in_time": "11:00", "status": "late"})

    resp = client.post("/api/payroll/generate", json={"period": "2025-01"})
    assert resp.status_code == 200
    body = resp.json()
    summary = body["summary"]
    assert summary["employees_processed"] == 2
    assert summary["employees_with_deductions"] == 1
    assert summary["total_late_days"] == 2
    assert summary["total_deductions"] == 100.0
    assert summary["total_net_salary"] == 49900.0

    records = {r["employee_id"]: r for r in body["payroll"]}
    assert records[late_id]["deductions"] == 100.0
    assert records[late_id]["net_salary"] == 29900.0
    assert records[late_id]["metadata"]["late_deductions"]["late_days"] == 2
    assert records[punctual_id]["net_salary"] == 20000.0

    paid = client.post(f"/api/payroll/{records[late_id]['id']}/mark-paid")
    assert paid.json()["payroll"]["status"] == "paid"
    assert client.post(f"/api/payroll/{records[late_id]['id']}/mark-paid").status_code == 409

    rerun = client.post("/api/payroll/generate", json={"period": "2025-01"}).json()["summary"]
    assert rerun["employees_processed"] == 1
    assert rerun["employees_skipped"] == 1


def test_manual_payroll_record(client) -> None:
    employee_id = _employee(client, "manual@example.com", 45000)
    resp = client.post("/api/payroll", json={"employee_id": employee_id, "period": "2025-01", "allowances": 5000, "tax": 3200})
    assert resp.status_code == 201
    record = resp.json()["payroll"]
    assert record["base_salary"] == 45000.0
    assert record["net_salary"] == 46800.0

    updated = client.put(f"/api/payroll/{record['id']}", json={"bonus": 1000})
    assert updated.json()["payroll"]["net_salary"] == 47800.0

    assert client.post("/api/payroll", json={"employee_id": employee_id, "period": "2025-13"}).status_code == 400
