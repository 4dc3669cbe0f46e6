from datetime import date, datetime
from decimal import Decimal

from fastapi.testclient import TestClient

from Background.task import create_app, run_scheduled_recalculation
from models.rules import DEFAULT_RULES
from models.schema import AttendanceRecord, Employee
from utils.config import Settings
from utils.helper import AttendanceStore, EmployeeDirectory

DAY = date(2025, 7, 21)

store = None
client = None


def setup_function():
    global store, client
    store = AttendanceStore()
    directory = EmployeeDirectory([
        Employee(id=1, badge_id="123456", department="Production"),
        Employee(id=2, badge_id="654321", department="Admin"),
    ])
    client = TestClient(create_app(store, directory, Settings(max_workers=1)))


def test_punches_are_reconciled_in_background():
    response = client.post("/punches", json=[
        {"employee_external_id": "123456", "timestamp": "2025-07-21T08:05:00"},
        {"employee_external_id": "123456", "timestamp": "2025-07-21T17:16:00"},
    ])

    assert response.status_code == 202
    assert response.json()["count"] == 2
    assert store.get(1, DAY).hours_worked == Decimal("8.92")


def test_list_attendance_by_department():
    client.post("/punches", json=[
        {"employee_external_id": "123456", "timestamp": "2025-07-21T08:00:00"},
        {"employee_external_id": "123456", "timestamp": "2025-07-21T17:00:00"},
        {"employee_external_id": "654321", "timestamp": "2025-07-21T08:00:00"},
    ])

    response = client.get("/attendance", params={"department": "Production"})

    assert response.status_code == 200
    body = response.json()
    assert len(body) == 1
    assert body[0]["employee_id"] == 1
    assert Decimal(str(body[0]["hours_worked"])) == Decimal("9")


def test_manual_entry_endpoint():
    payload = {"employee_id": 1, "attendance_date": "2025-07-21", "time_in": "08:12", "time_out": "17:30",
               "break_out": "12:00", "break_in": "13:00"}

    response = client.post("/attendance/manual", json=payload)

    assert response.status_code == 200
    assert Decimal(str(response.json()["hours_worked"])) == Decimal("7.8")
    assert response.json()["source"] == "manual"

    duplicate = client.post("/attendance/manual", json=payload)

    assert duplicate.status_code == 422
    assert "already exists" in duplicate.json()["detail"]


def test_manual_entry_validation_error():
    response = client.post("/attendance/manual", json={
        "employee_id": 1, "attendance_date": "2025-07-21", "time_in": "17:00", "time_out": "08:00"})

    assert response.status_code == 422
    assert response.json()["detail"] == "Time Out must be after Time In for regular shifts"


def test_recalculate_endpoint():
    store.put(AttendanceRecord(employee_id=1, attendance_date=DAY, time_in=datetime(2025, 7, 21, 8, 0),
                               time_out=datetime(2025, 7, 21, 15, 0)))

    response = client.post("/attendance/recalculate", json={"start_date": "2025-07-21", "end_date": "2025-07-21"})

    assert response.status_code == 200
    assert response.json()["recalculated"] == 1
    assert response.json()["skipped"] == 0
    assert store.get(1, DAY).undertime_minutes == Decimal("120")


def test_recalculate_rejects_inverted_range():
    response = client.post("/attendance/recalculate", json={"start_date": "2025-07-22", "end_date": "2025-07-21"})
    assert response.status_code == 422


def test_problems_endpoint():
    store.put(AttendanceRecord(employee_id=1, attendance_date=DAY, time_in=datetime(2025, 7, 21, 8, 0)))

    response = client.get("/attendance/problems")

    assert response.status_code == 200
    summary = response.json()["summary"]
    assert summary["problem_records"] == 1
    assert summary["problems"]["missing_time_out"] == 1


def test_scheduled_recalculation_window():
    store.put(AttendanceRecord(employee_id=1, attendance_date=DAY, time_in=datetime(2025, 7, 21, 8, 0),
                               time_out=datetime(2025, 7, 21, 17, 0)))
    store.put(AttendanceRecord(employee_id=2, attendance_date=date(2025, 7, 1),
                               time_in=datetime(2025, 7, 1, 8, 0), time_out=datetime(2025, 7, 1, 17, 0)))

    report = run_scheduled_recalculation(store, DEFAULT_RULES, today=date(2025, 7, 23), window_days=7)

    assert report.recalculated == 1
    assert store.get(2, date(2025, 7, 1)).hours_worked == Decimal("0")


def test_settings_build_rules(monkeypatch):
    monkeypatch.setenv("PUNCH_MINIMUM_WORK_HOURS", "8")
    monkeypatch.setenv("PUNCH_MAX_WORKERS", "2")

    settings = Settings()

    assert settings.max_workers == 2
    assert settings.to_rules().minimum_work_minutes == 480
    assert settings.to_rules().workday_start == DEFAULT_RULES.workday_start
