from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from attendtrack.audit import log_request_audit
from attendtrack.db import get_db
from attendtrack.errors import ApiError
from attendtrack.models import Account, AttendanceStatus
from attendtrack.schemas import (
    AttendanceActionResponse,
    AttendanceRecordRead,
    AttendanceStatistics,
    CheckInRequest,
    CheckOutRequest,
    HistoryResponse,
    OfficeLocationRead,
    TodayResponse,
)
from attendtrack.security import require_account
from attendtrack.services.attendance import (
    AttendanceOutcome,
    check_in,
    check_out,
    day_key,
    get_history,
    get_record,
    resolve_history_range,
)
from attendtrack.services.offices import get_active_office

router = APIRouter(tags=["attendance"])

OUTCOME_STATUS_CODES = {
    "ALREADY_CHECKED_IN": 409,
    "ALREADY_CHECKED_OUT": 409,
    "NOT_CHECKED_IN": 400,
    "OUT_OF_OFFICE_RADIUS": 400,
    "OUT_OF_WFH_RADIUS": 400,
    "OFFICE_NOT_CONFIGURED": 404,
}


def _raise_for_outcome(
    db: Session,
    request: Request,
    *,
    account: Account,
    action: str,
    outcome: AttendanceOutcome,
) -> None:
    details = dict(outcome.details)
    if outcome.record is not None and outcome.code == "ALREADY_CHECKED_OUT":
        details["record"] = AttendanceRecordRead.model_validate(outcome.record).model_dump(mode="json", by_alias=True)
    log_request_audit(
        db,
        request,
        action=action,
        success=False,
        actor_id=str(account.id),
        entity_type="attendance_record",
        entity_id=str(outcome.record.id) if outcome.record is not None else None,
        details={"reason": outcome.code, **outcome.details},
    )
    raise ApiError(
        status_code=OUTCOME_STATUS_CODES.get(outcome.code or "", 400),
        code=outcome.code or "ATTENDANCE_REJECTED",
        message=outcome.message or "Attendance request rejected.",
        details=details or None,
    )


@router.post("/api/attendance/checkin", response_model=AttendanceActionResponse, status_code=201)
def checkin(
    payload: CheckInRequest,
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    outcome = check_in(
        db,
        account_id=account.id,
        lat=payload.latitude,
        lon=payload.longitude,
        work_mode=payload.work_mode,
    )
    if not outcome.ok or outcome.record is None:
        _raise_for_outcome(db, request, account=account, action="ATTENDANCE_CHECK_IN", outcome=outcome)

    record = outcome.record
    log_request_audit(
        db,
        request,
        action="ATTENDANCE_CHECK_IN",
        success=True,
        actor_id=str(account.id),
        entity_type="attendance_record",
        entity_id=str(record.id),
        details={"work_mode": record.work_mode.value, "date": record.date},
    )
    return AttendanceActionResponse(
        message=outcome.message or "Checked in successfully.",
        record=AttendanceRecordRead.model_validate(record),
    )


@router.post("/api/attendance/checkout", response_model=AttendanceActionResponse)
def checkout(
    payload: CheckOutRequest,
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    outcome = check_out(
        db,
        account_id=account.id,
        lat=payload.latitude,
        lon=payload.longitude,
    )
    if not outcome.ok or outcome.record is None:
        _raise_for_outcome(db, request, account=account, action="ATTENDANCE_CHECK_OUT", outcome=outcome)

    record = outcome.record
    log_request_audit(
        db,
        request,
        action="ATTENDANCE_CHECK_OUT",
        success=True,
        actor_id=str(account.id),
        entity_type="attendance_record",
        entity_id=str(record.id),
        details={"working_hours": record.working_hours, "date": record.date},
    )
    return AttendanceActionResponse(
        message=outcome.message or "Checked out successfully.",
        record=AttendanceRecordRead.model_validate(record),
    )


@router.get("/api/attendance/today", response_model=TodayResponse)
def today(
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> TodayResponse:
    today_key = day_key(datetime.now(timezone.utc))
    record = get_record(db, account_id=account.id, day=today_key)
    return TodayResponse(
        date=today_key,
        record=AttendanceRecordRead.model_validate(record) if record is not None else None,
        has_checked_in=record is not None,
        has_checked_out=record is not None and record.status == AttendanceStatus.CHECKED_OUT,
    )


@router.get("/api/attendance/history", response_model=HistoryResponse)
def history(
    period: str | None = Query(default=None),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> HistoryResponse:
    start_day, end_day = resolve_history_range(period=period, start_date=start_date, end_date=end_date)
    records, summary = get_history(db, account_id=account.id, start_day=start_day, end_day=end_day)
    return HistoryResponse(
        start_date=start_day,
        end_date=end_day,
        records=[AttendanceRecordRead.model_validate(item) for item in records],
        statistics=AttendanceStatistics.model_validate(summary),
    )


@router.get("/api/attendance/office-location", response_model=OfficeLocationRead)
def office_location(
    _account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> OfficeLocationRead:
    office = get_active_office(db)
    if office is None:
        raise ApiError(status_code=404, code="OFFICE_NOT_CONFIGURED", message="Office location not configured.")
    return OfficeLocationRead.from_office(office)
