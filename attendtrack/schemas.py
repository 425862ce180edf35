from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from attendtrack.models import (
    AccountRole,
    AttendanceStatus,
    LeaveStatus,
    LeaveType,
    OfficeLocation,
    WorkMode,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class Pagination(ApiModel):
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def build(cls, *, total: int, page: int, limit: int) -> Pagination:
        return cls(total=total, page=page, limit=limit, total_pages=(total + limit - 1) // limit if limit else 0)


class MessageResponse(ApiModel):
    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class DeviceInfo(ApiModel):
    device_id: str | None = Field(default=None, max_length=255)
    device_name: str | None = Field(default=None, max_length=255)
    platform: str | None = Field(default=None, max_length=100)


class GeoPoint(ApiModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class LoginRequest(ApiModel):
    email: str = ""
    password: str = ""
    device_info: DeviceInfo | None = None
    location: GeoPoint | None = None


class DeviceRead(ApiModel):
    device_id: str
    device_name: str
    platform: str
    added_at: datetime
    last_used_at: datetime


class AccountSummary(ApiModel):
    id: int
    name: str
    email: str
    employee_id: str | None = None
    role: AccountRole
    department: str
    phone_number: str
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime


class LoginResponse(ApiModel):
    token: str
    expires_at: datetime
    account: AccountSummary
    device: DeviceRead | None = None


class LogoutRequest(ApiModel):
    device_id: str | None = Field(default=None, max_length=255)


class ProfileResponse(ApiModel):
    account: AccountSummary
    devices: list[DeviceRead]


class ProfileUpdateRequest(ApiModel):
    name: str | None = Field(default=None, max_length=50)
    phone_number: str | None = Field(default=None, max_length=32)
    department: str | None = Field(default=None, max_length=100)
    current_password: str | None = None
    new_password: str | None = None


class ProfileUpdateResponse(ApiModel):
    message: str
    account: AccountSummary
    token: str | None = None


class ForgotPasswordRequest(ApiModel):
    email: str = ""


class ForgotPasswordResponse(ApiModel):
    message: str
    reset_token: str | None = None


class ResetPasswordRequest(ApiModel):
    token: str = ""
    password: str = ""


class ResetPasswordResponse(ApiModel):
    message: str
    token: str
    account: AccountSummary


class DeviceListResponse(ApiModel):
    devices: list[DeviceRead]
    max_devices: int


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------


class CheckInRequest(GeoPoint):
    work_mode: WorkMode = WorkMode.OFFICE


class CheckOutRequest(GeoPoint):
    pass


class AttendanceRecordRead(ApiModel):
    id: int
    account_id: int
    date: str
    work_mode: WorkMode
    status: AttendanceStatus
    check_in_at: datetime
    check_in_lat: float
    check_in_lon: float
    check_out_at: datetime | None = None
    check_out_lat: float | None = None
    check_out_lon: float | None = None
    working_hours: float
    wfh_checkout_radius_m: int | None = None


class AttendanceActionResponse(ApiModel):
    message: str
    record: AttendanceRecordRead


class TodayResponse(ApiModel):
    date: str
    record: AttendanceRecordRead | None = None
    has_checked_in: bool
    has_checked_out: bool


class AttendanceStatistics(ApiModel):
    total_days: int
    total_hours: float
    avg_hours: float
    office_days: int
    wfh_days: int


class HistoryResponse(ApiModel):
    start_date: str | None = None
    end_date: str | None = None
    records: list[AttendanceRecordRead]
    statistics: AttendanceStatistics


class OfficeLocationRead(ApiModel):
    id: int
    name: str
    latitude: float
    longitude: float
    radius: int
    address: str
    is_active: bool
    updated_at: datetime

    @classmethod
    def from_office(cls, office: OfficeLocation) -> OfficeLocationRead:
        return cls(
            id=office.id,
            name=office.name,
            latitude=office.latitude,
            longitude=office.longitude,
            radius=office.radius_m,
            address=office.address,
            is_active=office.is_active,
            updated_at=office.updated_at,
        )


class OfficeLocationUpdate(ApiModel):
    name: str | None = Field(default=None, max_length=255)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    radius: int | None = None
    address: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Admin directory
# ---------------------------------------------------------------------------


class EmployeeCreate(ApiModel):
    name: str = ""
    email: str = ""
    password: str = ""
    employee_id: str | None = Field(default=None, max_length=64)
    department: str = Field(default="", max_length=100)
    phone_number: str = Field(default="", max_length=32)
    role: AccountRole = AccountRole.EMPLOYEE


class EmployeeListResponse(ApiModel):
    employees: list[AccountSummary]
    pagination: Pagination


class EmployeeDetailResponse(ApiModel):
    employee: AccountSummary
    devices: list[DeviceRead]
    recent_attendance: list[AttendanceRecordRead]
    statistics: AttendanceStatistics


class AdminAttendanceRead(AttendanceRecordRead):
    employee_name: str
    employee_email: str
    employee_code: str | None = None
    department: str = ""


class AdminAttendanceListResponse(ApiModel):
    records: list[AdminAttendanceRead]
    pagination: Pagination


class StatisticsResponse(ApiModel):
    date: str
    today: dict[str, int]
    this_month: dict[str, Any]
    leaves: dict[str, int]
    cached: bool = False


# ---------------------------------------------------------------------------
# Leave
# ---------------------------------------------------------------------------


class LeaveCreate(ApiModel):
    start_date: date
    end_date: date
    reason: str = Field(default="", max_length=1000)
    leave_type: LeaveType = LeaveType.CASUAL


class LeaveRead(ApiModel):
    id: int
    account_id: int
    start_date: date
    end_date: date
    reason: str
    leave_type: LeaveType
    status: LeaveStatus
    approved_by_id: int | None = None
    approval_date: datetime | None = None
    admin_comment: str
    created_at: datetime


class AdminLeaveRead(LeaveRead):
    employee_name: str
    employee_email: str


class LeaveListResponse(ApiModel):
    requests: list[AdminLeaveRead]
    pagination: Pagination


class LeaveDecision(ApiModel):
    status: str
    admin_comment: str | None = Field(default=None, max_length=1000)
