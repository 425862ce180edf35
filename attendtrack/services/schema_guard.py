from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "accounts": {
        "id",
        "email",
        "password_hash",
        "password_changed_at",
        "failed_login_attempts",
        "lock_until",
        "reset_token_hash",
        "reset_token_expires_at",
    },
    "account_devices": {"id", "account_id", "device_id", "last_used_at"},
    "attendance_records": {"id", "account_id", "date", "status", "wfh_checkout_radius_m"},
    "office_locations": {"id", "latitude", "longitude", "radius_m", "is_active"},
    "leave_requests": {"id", "account_id", "status"},
    "audit_logs": {"id", "action", "details"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_status": {"CHECKED_IN", "CHECKED_OUT"},
    "work_mode": {"OFFICE", "WFH"},
}


def verify_runtime_schema(engine: Engine, *, require_alembic: bool = True) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    table_names = set(inspector.get_table_names())

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_name not in table_names:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    # Native enum types only exist on PostgreSQL.
    get_enums = getattr(inspector, "get_enums", None)
    enums = get_enums() if get_enums is not None else []
    enum_values_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        labels = enum_item.get("labels")
        if name and isinstance(labels, list):
            enum_values_by_name[name] = {str(label) for label in labels}

    if enum_values_by_name:
        for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
            if enum_name not in enum_values_by_name:
                warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
                continue
            missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
            if missing_values:
                issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    if require_alembic:
        if "alembic_version" not in table_names:
            issues.append("MISSING_TABLE:alembic_version")
        else:
            with engine.connect() as connection:
                row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            if not (str(row).strip() if row is not None else ""):
                issues.append("ALEMBIC_VERSION_EMPTY")
    else:
        warnings.append("ALEMBIC_VERSION_NOT_CHECKED")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
