from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendtrack.errors import ApiError
from attendtrack.models import Account, AttendanceRecord, AttendanceStatus, OfficeLocation, WorkMode, as_utc
from attendtrack.services.location import GeofenceCheck, check_geofence
from attendtrack.services.offices import get_active_office
from attendtrack.settings import get_settings

logger = logging.getLogger("attendtrack.attendance")

HISTORY_LIMIT = 100
HISTORY_PERIOD_DAYS = {"week": 7, "month": 30}


@dataclass(frozen=True, slots=True)
class AttendanceOutcome:
    ok: bool
    code: str | None = None
    message: str | None = None
    record: AttendanceRecord | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, record: AttendanceRecord, message: str) -> AttendanceOutcome:
        return cls(ok=True, record=record, message=message)

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        *,
        record: AttendanceRecord | None = None,
        details: dict[str, Any] | None = None,
    ) -> AttendanceOutcome:
        return cls(ok=False, code=code, message=message, record=record, details=details or {})


@dataclass(frozen=True, slots=True)
class AttendanceSummary:
    total_days: int
    total_hours: float
    avg_hours: float
    office_days: int
    wfh_days: int


@lru_cache
def _attendance_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("attendance_timezone_invalid", extra={"timezone": name})
        return ZoneInfo("UTC")


def local_day(now: datetime) -> date:
    tz = _attendance_timezone((get_settings().attendance_timezone or "").strip() or "UTC")
    return now.astimezone(tz).date()


def day_key(now: datetime) -> str:
    return local_day(now).isoformat()


def working_hours_between(check_in_at: datetime, check_out_at: datetime) -> float:
    elapsed = (check_out_at - check_in_at).total_seconds()
    return round(elapsed / 3600, 2)


def get_record(db: Session, *, account_id: int, day: str) -> AttendanceRecord | None:
    return db.scalar(
        select(AttendanceRecord).where(
            AttendanceRecord.account_id == account_id,
            AttendanceRecord.date == day,
        )
    )


def _office_geofence(office: OfficeLocation, lat: float, lon: float) -> GeofenceCheck:
    return check_geofence(
        anchor_lat=office.latitude,
        anchor_lon=office.longitude,
        lat=lat,
        lon=lon,
        radius_m=office.radius_m,
    )


def _office_not_configured() -> AttendanceOutcome:
    return AttendanceOutcome.failure("OFFICE_NOT_CONFIGURED", "Office location not configured.")


def _out_of_office(check: GeofenceCheck) -> AttendanceOutcome:
    details = check.to_details()
    return AttendanceOutcome.failure(
        "OUT_OF_OFFICE_RADIUS",
        f"You are {details['distance']}m away from office. "
        f"Please be within {details['allowedRadius']}m radius.",
        details=details,
    )


def _already_checked_in(record: AttendanceRecord) -> AttendanceOutcome:
    checked_out = record.status == AttendanceStatus.CHECKED_OUT
    message = (
        "Attendance for today is already complete (checked out)."
        if checked_out
        else "Already checked in today."
    )
    return AttendanceOutcome.failure(
        "ALREADY_CHECKED_IN",
        message,
        record=record,
        details={"recordId": record.id, "status": record.status.value, "checkedOut": checked_out},
    )


def check_in(
    db: Session,
    *,
    account_id: int,
    lat: float,
    lon: float,
    work_mode: WorkMode,
    day: str | None = None,
    now: datetime | None = None,
) -> AttendanceOutcome:
    checked_in_at = now or datetime.now(timezone.utc)
    record_day = day or day_key(checked_in_at)

    existing = get_record(db, account_id=account_id, day=record_day)
    if existing is not None:
        return _already_checked_in(existing)

    wfh_radius: int | None = None
    if work_mode == WorkMode.OFFICE:
        office = get_active_office(db)
        if office is None:
            return _office_not_configured()
        geofence = _office_geofence(office, lat, lon)
        if not geofence.within:
            return _out_of_office(geofence)
    else:
        # Captured now so later config changes cannot move an open day's geofence.
        wfh_radius = int(get_settings().wfh_checkout_radius_m)

    record = AttendanceRecord(
        account_id=account_id,
        date=record_day,
        work_mode=work_mode,
        status=AttendanceStatus.CHECKED_IN,
        check_in_at=checked_in_at,
        check_in_lat=lat,
        check_in_lon=lon,
        working_hours=0.0,
        wfh_checkout_radius_m=wfh_radius,
        created_at=checked_in_at,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # The (account, date) unique key rejected a concurrent duplicate check-in.
        db.rollback()
        existing = get_record(db, account_id=account_id, day=record_day)
        if existing is None:
            raise
        return _already_checked_in(existing)

    db.refresh(record)
    logger.info(
        "attendance_checked_in",
        extra={"account_id": account_id, "date": record_day, "work_mode": work_mode.value},
    )
    return AttendanceOutcome.success(record, "Checked in successfully.")


def check_out(
    db: Session,
    *,
    account_id: int,
    lat: float,
    lon: float,
    day: str | None = None,
    now: datetime | None = None,
) -> AttendanceOutcome:
    checked_out_at = now or datetime.now(timezone.utc)
    record_day = day or day_key(checked_out_at)

    record = get_record(db, account_id=account_id, day=record_day)
    if record is None:
        return AttendanceOutcome.failure("NOT_CHECKED_IN", "No check-in record found for today.")
    if record.status == AttendanceStatus.CHECKED_OUT:
        return AttendanceOutcome.failure(
            "ALREADY_CHECKED_OUT",
            "Already checked out today.",
            record=record,
            details={"recordId": record.id},
        )

    if record.work_mode == WorkMode.OFFICE:
        office = get_active_office(db)
        if office is None:
            return _office_not_configured()
        geofence = _office_geofence(office, lat, lon)
        if not geofence.within:
            return _out_of_office(geofence)
    else:
        radius = record.wfh_checkout_radius_m
        if radius is None:
            radius = int(get_settings().wfh_checkout_radius_m)
        geofence = check_geofence(
            anchor_lat=record.check_in_lat,
            anchor_lon=record.check_in_lon,
            lat=lat,
            lon=lon,
            radius_m=radius,
        )
        if not geofence.within:
            details = geofence.to_details()
            return AttendanceOutcome.failure(
                "OUT_OF_WFH_RADIUS",
                f"You are {details['distance']}m away from your check-in location. "
                f"Please be within {details['allowedRadius']}m to check out.",
                details=details,
            )

    hours = working_hours_between(as_utc(record.check_in_at), checked_out_at)
    stmt = (
        update(AttendanceRecord)
        .where(
            AttendanceRecord.id == record.id,
            AttendanceRecord.status == AttendanceStatus.CHECKED_IN,
        )
        .values(
            check_out_at=checked_out_at,
            check_out_lat=lat,
            check_out_lon=lon,
            working_hours=hours,
            status=AttendanceStatus.CHECKED_OUT,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    db.refresh(record)

    if result.rowcount == 0:
        return AttendanceOutcome.failure(
            "ALREADY_CHECKED_OUT",
            "Already checked out today.",
            record=record,
            details={"recordId": record.id},
        )

    logger.info(
        "attendance_checked_out",
        extra={"account_id": account_id, "date": record_day, "working_hours": hours},
    )
    return AttendanceOutcome.success(record, "Checked out successfully.")


def resolve_history_range(
    *,
    period: str | None,
    start_date: date | None,
    end_date: date | None,
    now: datetime | None = None,
) -> tuple[str | None, str | None]:
    if start_date is not None and end_date is not None:
        if end_date < start_date:
            raise ApiError(
                status_code=400,
                code="INVALID_DATE_RANGE",
                message="endDate must be on or after startDate.",
            )
        return start_date.isoformat(), end_date.isoformat()

    today = local_day(now or datetime.now(timezone.utc))
    normalized = (period or "week").strip().lower()
    if normalized == "day":
        return today.isoformat(), today.isoformat()
    if normalized in HISTORY_PERIOD_DAYS:
        return (today - timedelta(days=HISTORY_PERIOD_DAYS[normalized])).isoformat(), None
    raise ApiError(
        status_code=400,
        code="INVALID_PERIOD",
        message="period must be one of day, week, month.",
    )


def summarize_records(records: list[AttendanceRecord]) -> AttendanceSummary:
    total_days = len(records)
    total_hours = round(sum(record.working_hours or 0.0 for record in records), 2)
    avg_hours = round(total_hours / total_days, 2) if total_days else 0.0
    office_days = sum(1 for record in records if record.work_mode == WorkMode.OFFICE)
    return AttendanceSummary(
        total_days=total_days,
        total_hours=total_hours,
        avg_hours=avg_hours,
        office_days=office_days,
        wfh_days=total_days - office_days,
    )


def get_history(
    db: Session,
    *,
    account_id: int,
    start_day: str | None,
    end_day: str | None,
    limit: int = HISTORY_LIMIT,
) -> tuple[list[AttendanceRecord], AttendanceSummary]:
    stmt = select(AttendanceRecord).where(AttendanceRecord.account_id == account_id)
    if start_day is not None:
        stmt = stmt.where(AttendanceRecord.date >= start_day)
    if end_day is not None:
        stmt = stmt.where(AttendanceRecord.date <= end_day)
    stmt = stmt.order_by(AttendanceRecord.check_in_at.desc()).limit(limit)
    records = list(db.scalars(stmt).all())
    return records, summarize_records(records)


def list_attendance(
    db: Session,
    *,
    start_day: str | None = None,
    end_day: str | None = None,
    account_id: int | None = None,
    status: AttendanceStatus | None = None,
    work_mode: WorkMode | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[tuple[AttendanceRecord, Account]], int]:
    filters = []
    if start_day is not None:
        filters.append(AttendanceRecord.date >= start_day)
    if end_day is not None:
        filters.append(AttendanceRecord.date <= end_day)
    if account_id is not None:
        filters.append(AttendanceRecord.account_id == account_id)
    if status is not None:
        filters.append(AttendanceRecord.status == status)
    if work_mode is not None:
        filters.append(AttendanceRecord.work_mode == work_mode)

    total = db.scalar(select(func.count(AttendanceRecord.id)).where(*filters)) or 0
    stmt = (
        select(AttendanceRecord, Account)
        .join(Account, Account.id == AttendanceRecord.account_id)
        .where(*filters)
        .order_by(AttendanceRecord.check_in_at.desc(), AttendanceRecord.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = [(record, account) for record, account in db.execute(stmt).all()]
    return rows, int(total)
