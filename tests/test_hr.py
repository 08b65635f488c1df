from datetime import datetime, timezone

from sqlalchemy import update

from isp_crm.models import Employee


def _create_employee(client, email="mary@example.com", salary=30000, **extra):
    payload = {
        "first_name": "Mary",
        "last_name": "Akinyi",
        "email": email,
        "phone": "0711222333",
        "position": "Field Technician",
        "department": "Technical",
        "salary": salary,
        **extra,
    }
    resp = client.post("/api/employees", json=payload)
    assert resp.status_code == 201
    return resp.json()["employee"]


def test_employee_crud(client) -> None:
    employee = _create_employee(client)
    assert employee["status"] == "active"
    assert employee["salary"] == 30000.0

    listed = client.get("/api/employees", params={"department": "Technical"}).json()["employees"]
    assert [e["id"] for e in listed] == [employee["id"]]

    updated = client.put(f"/api/employees/{employee['id']}", json={"position": "Team Lead"})
    assert updated.json()["employee"]["position"] == "Team Lead"

    assert client.delete(f"/api/employees/{employee['id']}").status_code == 200
    assert client.get(f"/api/employees/{employee['id']}").status_code == 404


def test_empty_or_unknown_employee_update_only_touches_updated_at(client, db_session) -> None:
    employee = _create_employee(client)
    stale = datetime(2020, 1, 1, tzinfo=timezone.utc)
    db_session.execute(update(Employee).where(Employee.id == employee["id"]).values(updated_at=stale))
    db_session.commit()
    assert client.get(f"/api/employees/{employee['id']}").json()["employee"]["updated_at"].startswith("2020-01-01")

    empty = client.put(f"/api/employees/{employee['id']}", json={})
    assert empty.status_code == 200
    assert not empty.json()["employee"]["updated_at"].startswith("2020-01-01")
    db_session.execute(update(Employee).where(Employee.id == employee["id"]).values(updated_at=stale))
    db_session.commit()
    unknown = client.put(f"/api/employees/{employee['id']}", json={"favourite_colour": "blue"})
    assert unknown.status_code == 200

    after = unknown.json()["employee"]
    for field in ("first_name", "last_name", "email", "phone", "position", "department", "salary", "status"):
        assert after[field] == employee[field]
    assert not after["updated_at"].startswith("2020-01-01")


def test_departments_and_teams(client) -> None:
    department = client.post("/api/departments", json={"name": "Technical"})
    assert department.status_code == 201
    department_id = department.json()["department"]["id"]
    assert client.post("/api/departments", json={"name": "Technical"}).status_code == 409

    group = client.post("/api/team-groups", json={"name": "Fibre Crew", "department_id": department_id})
    assert group.status_code == 201
    group_id = group.json()["team_group"]["id"]
    assert client.post("/api/team-groups", json={"name": "Ghost", "department_id": 999}).status_code == 404

    employee = _create_employee(client)
    member = client.post(
        "/api/team-members", json={"employee_id": employee["id"], "department_id": department_id, "team_group_id": group_id}
    )
    assert member.status_code == 201
    assert member.json()["team_member"]["role"] == "Member"

    memberships = client.get(f"/api/team-members/employee/{employee['id']}").json()["team_members"]
    assert len(memberships) == 1

    assert client.delete(f"/api/departments/{department_id}").status_code == 200
    remaining = client.get("/api/team-members").json()["team_members"]
    assert remaining[0]["department_id"] is None


def test_attendance_records(client) -> None:
    employee = _create_employee(client)
    for day, check_in, status in (("2025-01-06", "08:47", "late"), ("2025-01-07", "08:20", "present")):
        resp = client.post(
            "/api/attendance",
            json={"employee_id": employee["id"], "date": day, "check_in_time": check_in, "status": status},
        )
        assert resp.status_code == 201

    bad_status = client.post("/api/attendance", json={"employee_id": employee["id"], "date": "2025-01-08", "status": "asleep"})
    assert bad_status.status_code == 400
    bad_time = client.post(
        "/api/attendance", json={"employee_id": employee["id"], "date": "2025-01-08", "check_in_time": "late", "status": "late"}
    )
    assert bad_time.status_code == 400

    window = client.get("/api/attendance", params={"start_date": "2025-01-07", "end_date": "2025-01-31"}).json()["attendance"]
    assert [r["date"] for r in window] == ["2025-01-07"]


def test_leave_request_lifecycle(client) -> None:
    employee = _create_employee(client)
    backwards = client.post(
        "/api/leave",
        json={"employee_id": employee["id"], "leave_type": "annual", "start_date": "2025-02-07", "end_date": "2025-02-03"},
    )
    assert backwards.status_code == 400

    created = client.post(
        "/api/leave",
        json={"employee_id": employee["id"], "leave_type": "annual", "start_date": "2025-02-03", "end_date": "2025-02-07"},
    )
    assert created.status_code == 201
    leave = created.json()["leave"]
    assert leave["days"] == 5
    assert leave["status"] == "pending"

    approved = client.post(f"/api/leave/{leave['id']}/approve", json={"reviewed_by": "HR"})
    assert approved.json()["leave"]["status"] == "approved"
    assert approved.json()["leave"]["reviewed_at"] is not None

    assert client.post(f"/api/leave/{leave['id']}/reject").status_code == 409


def test_performance_review_rating_bounds(client) -> None:
    employee = _create_employee(client)
    too_high = client.post("/api/performance", json={"employee_id": employee["id"], "review_period": "2024-Q4", "rating": 6})
    assert too_high.status_code == 400

    review = client.post("/api/performance", json={"employee_id": employee["id"], "review_period": "2024-Q4", "rating": 4.5})
    assert review.status_code == 201
    assert review.json()["review"]["rating"] == 4.5
    assert review.json()["review"]["status"] == "draft"
