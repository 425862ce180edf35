from __future__ import annotations

import os
import unittest
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from io import BytesIO
from unittest.mock import patch

from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from attendtrack.db import Base, get_db
from attendtrack.main import app
from attendtrack.models import AccountRole, WorkMode
from attendtrack.security import issue_session_token
from attendtrack.services.attendance import check_in, check_out, day_key
from attendtrack.services.credentials import create_account
from attendtrack.services.statistics import clear_statistics_cache
from attendtrack.settings import get_settings


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _override_get_db(session_factory):
    def _override() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _override


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class _EndpointTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, {"BCRYPT_ROUNDS": "4", "ENVIRONMENT": "test"}, clear=False)
        self._env.start()
        get_settings.cache_clear()
        clear_statistics_cache()
        self.session_factory = _make_session_factory()
        app.dependency_overrides[get_db] = _override_get_db(self.session_factory)
        self.client = TestClient(app)
        self.db = self.session_factory()
        created_at = datetime.now(timezone.utc) - timedelta(hours=1)
        self.admin = create_account(
            self.db,
            name="Admin",
            email="admin@example.com",
            password="secret1",
            role=AccountRole.ADMIN,
            now=created_at,
        )
        self.employee = create_account(
            self.db,
            name="Ali Yilmaz",
            email="ali@example.com",
            password="secret1",
            employee_id="EMP-7",
            department="Sales",
            now=created_at,
        )
        self.other = create_account(
            self.db,
            name="Elif Sahin",
            email="elif@example.com",
            password="secret1",
            department="Finance",
            now=created_at,
        )
        self.admin_headers = _auth(issue_session_token(self.admin.id)[0])
        self.employee_headers = _auth(issue_session_token(self.employee.id)[0])
        self.other_headers = _auth(issue_session_token(self.other.id)[0])

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()
        clear_statistics_cache()
        self._env.stop()
        get_settings.cache_clear()


class LeaveEndpointTests(_EndpointTestCase):
    def _request_leave(self, start: str, end: str, headers: dict[str, str] | None = None):
        return self.client.post(
            "/api/leave/request",
            json={"startDate": start, "endDate": end, "reason": "Family visit", "leaveType": "vacation"},
            headers=headers or self.employee_headers,
        )

    def test_request_and_list_own_leaves(self) -> None:
        created = self._request_leave("2026-04-01", "2026-04-03")
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["status"], "pending")
        self.assertEqual(created.json()["leaveType"], "vacation")

        mine = self.client.get("/api/leave/my-requests", headers=self.employee_headers).json()
        self.assertEqual([item["id"] for item in mine], [created.json()["id"]])
        self.assertEqual(self.client.get("/api/leave/my-requests", headers=self.other_headers).json(), [])

    def test_end_before_start_is_rejected(self) -> None:
        response = self._request_leave("2026-04-05", "2026-04-01")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_DATE_RANGE")

    def test_overlapping_request_conflicts(self) -> None:
        first = self._request_leave("2026-04-01", "2026-04-03").json()
        response = self._request_leave("2026-04-03", "2026-04-06")
        self.assertEqual(response.status_code, 409)
        error = response.json()["error"]
        self.assertEqual(error["code"], "LEAVE_OVERLAP")
        self.assertEqual(error["details"]["conflictingIds"], [first["id"]])

        # Another account's leave never conflicts.
        self.assertEqual(self._request_leave("2026-04-01", "2026-04-03", self.other_headers).status_code, 201)

    def test_cancel_is_owner_only_and_pending_only(self) -> None:
        leave_id = self._request_leave("2026-04-01", "2026-04-01").json()["id"]
        foreign = self.client.delete(f"/api/leave/request/{leave_id}", headers=self.other_headers)
        self.assertEqual(foreign.status_code, 404)

        self.client.put(
            f"/api/admin/leave-requests/{leave_id}",
            json={"status": "approved"},
            headers=self.admin_headers,
        )
        processed = self.client.delete(f"/api/leave/request/{leave_id}", headers=self.employee_headers)
        self.assertEqual(processed.status_code, 400)
        self.assertEqual(processed.json()["error"]["code"], "ALREADY_PROCESSED")

    def test_cancel_pending_request(self) -> None:
        leave_id = self._request_leave("2026-04-01", "2026-04-01").json()["id"]
        response = self.client.delete(f"/api/leave/request/{leave_id}", headers=self.employee_headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/api/leave/my-requests", headers=self.employee_headers).json(), [])

    def test_admin_decides_once(self) -> None:
        leave_id = self._request_leave("2026-04-01", "2026-04-02").json()["id"]

        invalid = self.client.put(
            f"/api/admin/leave-requests/{leave_id}",
            json={"status": "maybe"},
            headers=self.admin_headers,
        )
        self.assertEqual(invalid.json()["error"]["code"], "INVALID_STATUS")

        approved = self.client.put(
            f"/api/admin/leave-requests/{leave_id}",
            json={"status": "approved", "adminComment": "Enjoy"},
            headers=self.admin_headers,
        )
        self.assertEqual(approved.status_code, 200)
        body = approved.json()
        self.assertEqual(body["status"], "approved")
        self.assertEqual(body["approvedById"], self.admin.id)
        self.assertEqual(body["adminComment"], "Enjoy")
        self.assertEqual(body["employeeName"], "Ali Yilmaz")

        again = self.client.put(
            f"/api/admin/leave-requests/{leave_id}",
            json={"status": "rejected"},
            headers=self.admin_headers,
        )
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["error"]["code"], "ALREADY_PROCESSED")

        missing = self.client.put(
            "/api/admin/leave-requests/9999",
            json={"status": "approved"},
            headers=self.admin_headers,
        )
        self.assertEqual(missing.status_code, 404)

    def test_admin_lists_with_status_filter(self) -> None:
        self._request_leave("2026-04-01", "2026-04-01")
        self._request_leave("2026-05-01", "2026-05-01", self.other_headers)
        response = self.client.get(
            "/api/admin/leave-requests",
            params={"status": "pending", "userId": self.other.id},
            headers=self.admin_headers,
        )
        body = response.json()
        self.assertEqual(body["pagination"]["total"], 1)
        self.assertEqual(body["requests"][0]["employeeEmail"], "elif@example.com")


class AdminEndpointTests(_EndpointTestCase):
    def test_create_employee_validation_codes(self) -> None:
        missing = self.client.post("/api/admin/employees", json={"name": "X"}, headers=self.admin_headers)
        self.assertEqual(missing.json()["error"]["code"], "MISSING_FIELDS")

        bad_email = self.client.post(
            "/api/admin/employees",
            json={"name": "X", "email": "not-an-email", "password": "secret1"},
            headers=self.admin_headers,
        )
        self.assertEqual(bad_email.json()["error"]["code"], "INVALID_EMAIL")

        duplicate = self.client.post(
            "/api/admin/employees",
            json={"name": "X", "email": "ALI@example.com", "password": "secret1"},
            headers=self.admin_headers,
        )
        self.assertEqual(duplicate.json()["error"]["code"], "EMAIL_EXISTS")

        weak = self.client.post(
            "/api/admin/employees",
            json={"name": "X", "email": "x@example.com", "password": "123"},
            headers=self.admin_headers,
        )
        self.assertEqual(weak.json()["error"]["code"], "WEAK_PASSWORD")

    def test_list_and_search_employees(self) -> None:
        response = self.client.get(
            "/api/admin/employees",
            params={"search": "emp-7"},
            headers=self.admin_headers,
        )
        body = response.json()
        self.assertEqual(body["pagination"]["total"], 1)
        self.assertEqual(body["employees"][0]["email"], "ali@example.com")

        everyone = self.client.get("/api/admin/employees", headers=self.admin_headers).json()
        self.assertEqual({item["email"] for item in everyone["employees"]}, {"ali@example.com", "elif@example.com"})

    def test_employee_detail_includes_recent_attendance(self) -> None:
        now = datetime.now(timezone.utc)
        check_in(self.db, account_id=self.employee.id, lat=1.0, lon=1.0, work_mode=WorkMode.WFH, now=now)
        check_out(self.db, account_id=self.employee.id, lat=1.0, lon=1.0, now=now + timedelta(hours=3))

        response = self.client.get(f"/api/admin/employees/{self.employee.id}", headers=self.admin_headers)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["statistics"]["totalDays"], 1)
        self.assertEqual(body["statistics"]["wfhDays"], 1)
        self.assertEqual(len(body["recentAttendance"]), 1)

        self.assertEqual(
            self.client.get("/api/admin/employees/9999", headers=self.admin_headers).status_code,
            404,
        )

    def test_toggle_status_rules(self) -> None:
        response = self.client.put(
            f"/api/admin/employees/{self.employee.id}/toggle-status",
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["isActive"])

        blocked = self.client.get("/api/auth/profile", headers=self.employee_headers)
        self.assertEqual(blocked.json()["error"]["code"], "ACCOUNT_INACTIVE")

        on_admin = self.client.put(
            f"/api/admin/employees/{self.admin.id}/toggle-status",
            headers=self.admin_headers,
        )
        self.assertEqual(on_admin.status_code, 403)
        self.assertEqual(on_admin.json()["error"]["code"], "CANNOT_MODIFY_ADMIN")

    def test_office_location_admin(self) -> None:
        missing = self.client.get("/api/admin/office-location", headers=self.admin_headers)
        self.assertEqual(missing.status_code, 404)

        no_coordinates = self.client.put(
            "/api/admin/office-location",
            json={"name": "HQ"},
            headers=self.admin_headers,
        )
        self.assertEqual(no_coordinates.json()["error"]["code"], "MISSING_COORDINATES")

        bad_radius = self.client.put(
            "/api/admin/office-location",
            json={"latitude": 41.0, "longitude": 29.0, "radius": 5},
            headers=self.admin_headers,
        )
        self.assertEqual(bad_radius.status_code, 400)
        self.assertEqual(bad_radius.json()["error"]["code"], "INVALID_RADIUS")

        created = self.client.put(
            "/api/admin/office-location",
            json={"name": "HQ", "latitude": 41.0, "longitude": 29.0},
            headers=self.admin_headers,
        )
        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["radius"], 50)

        updated = self.client.put(
            "/api/admin/office-location",
            json={"latitude": 41.001, "longitude": 29.0, "radius": 200},
            headers=self.admin_headers,
        )
        self.assertEqual(updated.json()["id"], created.json()["id"])
        self.assertEqual(updated.json()["radius"], 200)
        self.assertEqual(updated.json()["name"], "HQ")

        seen_by_employee = self.client.get("/api/attendance/office-location", headers=self.employee_headers)
        self.assertEqual(seen_by_employee.json()["latitude"], 41.001)

    def test_attendance_endpoints_map_outcomes_to_status_codes(self) -> None:
        no_office = self.client.post(
            "/api/attendance/checkin",
            json={"latitude": 41.0, "longitude": 29.0, "workMode": "Office"},
            headers=self.employee_headers,
        )
        self.assertEqual(no_office.status_code, 404)
        self.assertEqual(no_office.json()["error"]["code"], "OFFICE_NOT_CONFIGURED")

        not_in = self.client.post(
            "/api/attendance/checkout",
            json={"latitude": 41.0, "longitude": 29.0},
            headers=self.employee_headers,
        )
        self.assertEqual(not_in.status_code, 400)
        self.assertEqual(not_in.json()["error"]["code"], "NOT_CHECKED_IN")

        opened = self.client.post(
            "/api/attendance/checkin",
            json={"latitude": 41.0, "longitude": 29.0, "workMode": "WFH"},
            headers=self.employee_headers,
        )
        self.assertEqual(opened.status_code, 201)
        self.assertEqual(opened.json()["record"]["wfhCheckoutRadiusM"], 100)

        duplicate = self.client.post(
            "/api/attendance/checkin",
            json={"latitude": 41.0, "longitude": 29.0, "workMode": "WFH"},
            headers=self.employee_headers,
        )
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"]["code"], "ALREADY_CHECKED_IN")

        far = self.client.post(
            "/api/attendance/checkout",
            json={"latitude": 41.01, "longitude": 29.0},
            headers=self.employee_headers,
        )
        self.assertEqual(far.status_code, 400)
        self.assertEqual(far.json()["error"]["code"], "OUT_OF_WFH_RADIUS")
        self.assertEqual(far.json()["error"]["details"]["allowedRadius"], 100)

        closed = self.client.post(
            "/api/attendance/checkout",
            json={"latitude": 41.0, "longitude": 29.0},
            headers=self.employee_headers,
        )
        self.assertEqual(closed.status_code, 200)
        self.assertEqual(closed.json()["record"]["status"], "checked-out")

        today = self.client.get("/api/attendance/today", headers=self.employee_headers).json()
        self.assertTrue(today["hasCheckedIn"])
        self.assertTrue(today["hasCheckedOut"])

        history = self.client.get("/api/attendance/history", params={"period": "day"}, headers=self.employee_headers)
        self.assertEqual(history.json()["statistics"]["totalDays"], 1)

        listed = self.client.get(
            "/api/admin/attendance",
            params={"workMode": "WFH", "date": day_key(datetime.now(timezone.utc))},
            headers=self.admin_headers,
        ).json()
        self.assertEqual(listed["pagination"]["total"], 1)
        self.assertEqual(listed["records"][0]["employeeEmail"], "ali@example.com")

    def test_invalid_coordinates_fail_validation(self) -> None:
        response = self.client.post(
            "/api/attendance/checkin",
            json={"latitude": 120.0, "longitude": 29.0, "workMode": "Office"},
            headers=self.employee_headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_statistics_snapshot(self) -> None:
        now = datetime.now(timezone.utc)
        check_in(self.db, account_id=self.employee.id, lat=1.0, lon=1.0, work_mode=WorkMode.WFH, now=now)

        body = self.client.get("/api/admin/statistics", headers=self.admin_headers).json()
        self.assertEqual(body["today"]["totalEmployees"], 2)
        self.assertEqual(body["today"]["present"], 1)
        self.assertEqual(body["today"]["absent"], 1)
        self.assertEqual(body["today"]["wfh"], 1)
        self.assertFalse(body["cached"])

        check_in(self.db, account_id=self.other.id, lat=1.0, lon=1.0, work_mode=WorkMode.WFH, now=now)
        cached = self.client.get("/api/admin/statistics", headers=self.admin_headers).json()
        self.assertTrue(cached["cached"])
        self.assertEqual(cached["today"]["present"], 1)

    def test_export_returns_workbook(self) -> None:
        now = datetime.now(timezone.utc)
        check_in(self.db, account_id=self.employee.id, lat=1.0, lon=1.0, work_mode=WorkMode.WFH, now=now)
        today = day_key(now)

        response = self.client.get(
            "/api/admin/export",
            params={"startDate": today, "endDate": today},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertIn("spreadsheetml", response.headers["content-type"])
        self.assertIn("attachment", response.headers["content-disposition"])

        workbook = load_workbook(BytesIO(response.content))
        sheet = workbook["Attendance"]
        values = [cell for row in sheet.iter_rows(values_only=True) for cell in row]
        self.assertIn("Ali Yilmaz", values)
        self.assertIn("EMP-7", values)

    def test_export_rejects_inverted_range(self) -> None:
        response = self.client.get(
            "/api/admin/export",
            params={"startDate": "2026-03-05", "endDate": "2026-03-01"},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_DATE_RANGE")


if __name__ == "__main__":
    unittest.main()
