"""Dashboard aggregates.

The snapshot is read-only and carries no correctness invariant, so it is
served from a short process-local TTL cache.
"""
from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from attendtrack.models import (
    Account,
    AccountRole,
    AttendanceRecord,
    AttendanceStatus,
    LeaveRequest,
    LeaveStatus,
    WorkMode,
)
from attendtrack.services.attendance import local_day, summarize_records
from attendtrack.settings import get_settings

_CACHE_LOCK = threading.Lock()
_CACHE: dict[str, tuple[float, dict[str, Any]]] = {}


def clear_statistics_cache() -> None:
    with _CACHE_LOCK:
        _CACHE.clear()


def _count_leaves(db: Session, status: LeaveStatus) -> int:
    return int(db.scalar(select(func.count(LeaveRequest.id)).where(LeaveRequest.status == status)) or 0)


def compute_statistics(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    today = local_day(now or datetime.now(timezone.utc))
    today_key = today.isoformat()
    month_start = today.replace(day=1).isoformat()

    today_records = list(db.scalars(select(AttendanceRecord).where(AttendanceRecord.date == today_key)).all())
    total_employees = int(
        db.scalar(
            select(func.count(Account.id)).where(
                Account.role == AccountRole.EMPLOYEE,
                Account.is_active.is_(True),
            )
        )
        or 0
    )
    month_records = list(db.scalars(select(AttendanceRecord).where(AttendanceRecord.date >= month_start)).all())
    month_summary = summarize_records(month_records)

    return {
        "date": today_key,
        "today": {
            "totalEmployees": total_employees,
            "present": len(today_records),
            "absent": max(0, total_employees - len(today_records)),
            "checkedIn": sum(1 for r in today_records if r.status == AttendanceStatus.CHECKED_IN),
            "checkedOut": sum(1 for r in today_records if r.status == AttendanceStatus.CHECKED_OUT),
            "inOffice": sum(1 for r in today_records if r.work_mode == WorkMode.OFFICE),
            "wfh": sum(1 for r in today_records if r.work_mode == WorkMode.WFH),
        },
        "thisMonth": {
            "totalAttendanceDays": month_summary.total_days,
            "officeDays": month_summary.office_days,
            "wfhDays": month_summary.wfh_days,
            "totalHours": month_summary.total_hours,
            "avgHoursPerDay": month_summary.avg_hours,
        },
        "leaves": {
            "pending": _count_leaves(db, LeaveStatus.PENDING),
            "approved": _count_leaves(db, LeaveStatus.APPROVED),
        },
    }


def get_statistics(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    ttl_seconds = max(0, int(get_settings().stats_cache_seconds))
    cache_key = local_day(now or datetime.now(timezone.utc)).isoformat()
    current = time.monotonic()

    with _CACHE_LOCK:
        cached = _CACHE.get(cache_key)
        if cached is not None and current - cached[0] < ttl_seconds:
            return {**cached[1], "cached": True}

    snapshot = compute_statistics(db, now=now)
    with _CACHE_LOCK:
        _CACHE.clear()
        _CACHE[cache_key] = (current, snapshot)
    return {**snapshot, "cached": False}
