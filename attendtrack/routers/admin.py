from datetime import date

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from attendtrack.audit import log_request_audit
from attendtrack.db import get_db
from attendtrack.errors import ApiError
from attendtrack.models import Account, AttendanceStatus, LeaveStatus, WorkMode
from attendtrack.schemas import (
    AccountSummary,
    AdminAttendanceListResponse,
    AdminAttendanceRead,
    AdminLeaveRead,
    AttendanceRecordRead,
    AttendanceStatistics,
    DeviceRead,
    EmployeeCreate,
    EmployeeDetailResponse,
    EmployeeListResponse,
    LeaveDecision,
    LeaveListResponse,
    LeaveRead,
    OfficeLocationRead,
    OfficeLocationUpdate,
    Pagination,
    StatisticsResponse,
)
from attendtrack.security import require_admin, require_manager
from attendtrack.services.accounts import (
    get_account_or_404,
    list_accounts,
    recent_attendance,
    toggle_account_status,
)
from attendtrack.services.attendance import list_attendance, summarize_records
from attendtrack.services.credentials import create_account
from attendtrack.services.exports import build_attendance_range_xlsx_bytes
from attendtrack.services.leaves import decide_leave_request, list_leave_requests
from attendtrack.services.offices import DEFAULT_OFFICE_RADIUS_M, get_active_office, upsert_active_office
from attendtrack.services.statistics import clear_statistics_cache, get_statistics

router = APIRouter(tags=["admin"])
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
MAX_PAGE_SIZE = 100


def _admin_audit(
    db: Session,
    request: Request,
    admin: Account,
    *,
    action: str,
    entity_type: str,
    entity_id: str | None,
    details: dict | None = None,
) -> None:
    log_request_audit(
        db,
        request,
        action=action,
        success=True,
        actor_id=str(admin.id),
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )


# ---------------------------------------------------------------------------
# Employees
# ---------------------------------------------------------------------------


@router.post("/api/admin/employees", response_model=AccountSummary, status_code=201)
def create_employee(
    payload: EmployeeCreate,
    request: Request,
    admin: Account = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AccountSummary:
    if not payload.name.strip() or not payload.email.strip() or not payload.password:
        raise ApiError(
            status_code=400,
            code="MISSING_FIELDS",
            message="Please provide name, email and password.",
        )
    account = create_account(
        db,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        role=payload.role,
        employee_id=payload.employee_id,
        department=payload.department,
        phone_number=payload.phone_number,
    )
    _admin_audit(
        db,
        request,
        admin,
        action="EMPLOYEE_CREATED",
        entity_type="account",
        entity_id=str(account.id),
        details={"role": account.role.value},
    )
    clear_statistics_cache()
    return AccountSummary.model_validate(account)


@router.get("/api/admin/employees", response_model=EmployeeListResponse)
def get_employees(
    search: str | None = Query(default=None),
    department: str | None = Query(default=None),
    is_active: bool | None = Query(default=None, alias="isActive"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    _manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> EmployeeListResponse:
    accounts, total = list_accounts(
        db,
        search=search,
        department=department,
        is_active=is_active,
        page=page,
        limit=limit,
    )
    return EmployeeListResponse(
        employees=[AccountSummary.model_validate(item) for item in accounts],
        pagination=Pagination.build(total=total, page=page, limit=limit),
    )


@router.get("/api/admin/employees/{account_id}", response_model=EmployeeDetailResponse)
def get_employee(
    account_id: int,
    _manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> EmployeeDetailResponse:
    account = get_account_or_404(db, account_id)
    records = recent_attendance(db, account_id=account.id)
    return EmployeeDetailResponse(
        employee=AccountSummary.model_validate(account),
        devices=[DeviceRead.model_validate(item) for item in account.devices],
        recent_attendance=[AttendanceRecordRead.model_validate(item) for item in records],
        statistics=AttendanceStatistics.model_validate(summarize_records(records)),
    )


@router.put("/api/admin/employees/{account_id}/toggle-status", response_model=AccountSummary)
def toggle_employee_status(
    account_id: int,
    request: Request,
    admin: Account = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AccountSummary:
    account = toggle_account_status(db, account_id=account_id, acting=admin)
    _admin_audit(
        db,
        request,
        admin,
        action="EMPLOYEE_STATUS_TOGGLED",
        entity_type="account",
        entity_id=str(account.id),
        details={"is_active": account.is_active},
    )
    clear_statistics_cache()
    return AccountSummary.model_validate(account)


# ---------------------------------------------------------------------------
# Attendance, statistics, export
# ---------------------------------------------------------------------------


@router.get("/api/admin/attendance", response_model=AdminAttendanceListResponse)
def get_attendance(
    day: date | None = Query(default=None, alias="date"),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    user_id: int | None = Query(default=None, alias="userId"),
    status: AttendanceStatus | None = Query(default=None),
    work_mode: WorkMode | None = Query(default=None, alias="workMode"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    _manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> AdminAttendanceListResponse:
    if day is not None:
        start_day = end_day = day.isoformat()
    else:
        start_day = start_date.isoformat() if start_date is not None else None
        end_day = end_date.isoformat() if end_date is not None else None
    if start_day and end_day and end_day < start_day:
        raise ApiError(
            status_code=400,
            code="INVALID_DATE_RANGE",
            message="endDate must be on or after startDate.",
        )

    rows, total = list_attendance(
        db,
        start_day=start_day,
        end_day=end_day,
        account_id=user_id,
        status=status,
        work_mode=work_mode,
        page=page,
        limit=limit,
    )
    records = [
        AdminAttendanceRead(
            **AttendanceRecordRead.model_validate(record).model_dump(),
            employee_name=account.name,
            employee_email=account.email,
            employee_code=account.employee_id,
            department=account.department,
        )
        for record, account in rows
    ]
    return AdminAttendanceListResponse(
        records=records,
        pagination=Pagination.build(total=total, page=page, limit=limit),
    )


@router.get("/api/admin/statistics", response_model=StatisticsResponse)
def statistics(
    _manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> StatisticsResponse:
    return StatisticsResponse.model_validate(get_statistics(db))


@router.get("/api/admin/export")
def export_attendance(
    request: Request,
    start_date: date = Query(alias="startDate"),
    end_date: date = Query(alias="endDate"),
    user_id: int | None = Query(default=None, alias="userId"),
    work_mode: WorkMode | None = Query(default=None, alias="workMode"),
    manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> Response:
    payload = build_attendance_range_xlsx_bytes(
        db,
        start_date=start_date,
        end_date=end_date,
        account_id=user_id,
        work_mode=work_mode,
    )
    _admin_audit(
        db,
        request,
        manager,
        action="ATTENDANCE_EXPORT_XLSX",
        entity_type="export",
        entity_id="date_range",
        details={
            "start": start_date.isoformat(),
            "end": end_date.isoformat(),
            "user_id": user_id,
            "work_mode": work_mode.value if work_mode is not None else None,
        },
    )
    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={
            "Content-Disposition": (
                f'attachment; filename="attendance-{start_date.isoformat()}-{end_date.isoformat()}.xlsx"'
            ),
        },
    )


# ---------------------------------------------------------------------------
# Office location
# ---------------------------------------------------------------------------


@router.get("/api/admin/office-location", response_model=OfficeLocationRead)
def get_office_location(
    _manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> OfficeLocationRead:
    office = get_active_office(db)
    if office is None:
        raise ApiError(
            status_code=404,
            code="OFFICE_NOT_CONFIGURED",
            message="Office location not configured.",
            details={"defaultRadius": DEFAULT_OFFICE_RADIUS_M},
        )
    return OfficeLocationRead.from_office(office)


@router.put("/api/admin/office-location", response_model=OfficeLocationRead)
def put_office_location(
    payload: OfficeLocationUpdate,
    request: Request,
    admin: Account = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OfficeLocationRead:
    office = upsert_active_office(
        db,
        latitude=payload.latitude,
        longitude=payload.longitude,
        radius_m=payload.radius,
        name=payload.name,
        address=payload.address,
    )
    _admin_audit(
        db,
        request,
        admin,
        action="OFFICE_LOCATION_UPDATED",
        entity_type="office_location",
        entity_id=str(office.id),
        details={
            "latitude": office.latitude,
            "longitude": office.longitude,
            "radius_m": office.radius_m,
        },
    )
    return OfficeLocationRead.from_office(office)


# ---------------------------------------------------------------------------
# Leave approvals
# ---------------------------------------------------------------------------


def _admin_leave_read(leave) -> AdminLeaveRead:
    return AdminLeaveRead(
        **LeaveRead.model_validate(leave).model_dump(),
        employee_name=leave.account.name,
        employee_email=leave.account.email,
    )


@router.get("/api/admin/leave-requests", response_model=LeaveListResponse)
def get_leave_requests(
    status: str | None = Query(default=None),
    user_id: int | None = Query(default=None, alias="userId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    _manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> LeaveListResponse:
    status_filter: LeaveStatus | None = None
    if status:
        try:
            status_filter = LeaveStatus(status.strip().lower())
        except ValueError as exc:
            raise ApiError(
                status_code=400,
                code="INVALID_STATUS",
                message="status must be one of pending, approved, rejected.",
            ) from exc

    leaves, total = list_leave_requests(
        db,
        status=status_filter,
        account_id=user_id,
        page=page,
        limit=limit,
    )
    return LeaveListResponse(
        requests=[_admin_leave_read(item) for item in leaves],
        pagination=Pagination.build(total=total, page=page, limit=limit),
    )


@router.put("/api/admin/leave-requests/{leave_id}", response_model=AdminLeaveRead)
def decide_leave(
    leave_id: int,
    payload: LeaveDecision,
    request: Request,
    manager: Account = Depends(require_manager),
    db: Session = Depends(get_db),
) -> AdminLeaveRead:
    try:
        decision = LeaveStatus(payload.status.strip().lower())
    except ValueError as exc:
        raise ApiError(
            status_code=400,
            code="INVALID_STATUS",
            message="Status must be approved or rejected.",
        ) from exc

    leave = decide_leave_request(
        db,
        leave_id=leave_id,
        decided_by=manager,
        status=decision,
        admin_comment=payload.admin_comment,
    )
    _admin_audit(
        db,
        request,
        manager,
        action="LEAVE_DECIDED",
        entity_type="leave_request",
        entity_id=str(leave.id),
        details={"status": leave.status.value},
    )
    clear_statistics_cache()
    return _admin_leave_read(leave)
