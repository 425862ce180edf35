from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from attendtrack.db import Base
from attendtrack.services.schema_guard import REQUIRED_TABLE_COLUMNS, verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_table_names(self):  # type: ignore[no-untyped-def]
        return list(self._columns_by_table)

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._columns_by_table[table_name]]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


def _complete_columns() -> dict[str, set[str]]:
    columns = {name: set(required) for name, required in REQUIRED_TABLE_COLUMNS.items()}
    columns["alembic_version"] = {"version_num"}
    return columns


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_complete_columns(),
            enums=[
                {"name": "attendance_status", "labels": ["CHECKED_IN", "CHECKED_OUT"]},
                {"name": "work_mode", "labels": ["OFFICE", "WFH"]},
            ],
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("attendtrack.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.to_dict()["issue_count"], 0)

    def test_verify_runtime_schema_reports_missing_pieces(self) -> None:
        columns = _complete_columns()
        columns["accounts"].discard("lock_until")
        columns["attendance_records"].discard("wfh_checkout_radius_m")
        del columns["leave_requests"]
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            enums=[{"name": "work_mode", "labels": ["OFFICE"]}],
        )
        fake_engine = _FakeEngine("")

        with patch("attendtrack.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:accounts:lock_until", result.issues)
        self.assertIn("MISSING_COLUMNS:attendance_records:wfh_checkout_radius_m", result.issues)
        self.assertIn("MISSING_TABLE:leave_requests", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:work_mode:WFH", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)
        self.assertIn("ENUM_NOT_FOUND:attendance_status", result.warnings)

    def test_metadata_tables_satisfy_guard(self) -> None:
        engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(engine)

        result = verify_runtime_schema(engine, require_alembic=False)

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.warnings, ["ALEMBIC_VERSION_NOT_CHECKED"])


if __name__ == "__main__":
    unittest.main()
