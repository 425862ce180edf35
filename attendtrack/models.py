from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendtrack.db import Base


def as_utc(value: datetime | None) -> datetime | None:
    # Some backends hand back naive datetimes for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccountRole(str, enum.Enum):
    EMPLOYEE = "employee"
    ADMIN = "admin"
    MANAGER = "manager"


class WorkMode(str, enum.Enum):
    OFFICE = "Office"
    WFH = "WFH"


class AttendanceStatus(str, enum.Enum):
    CHECKED_IN = "checked-in"
    CHECKED_OUT = "checked-out"


class LeaveType(str, enum.Enum):
    SICK = "sick"
    CASUAL = "casual"
    VACATION = "vacation"
    OTHER = "other"


class LeaveStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditActorType(str, enum.Enum):
    ACCOUNT = "ACCOUNT"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True, slots=True)
class DeviceRegistration:
    is_new: bool
    limit_reached: bool
    device: AccountDevice | None = None


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    employee_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    password_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    role: Mapped[AccountRole] = mapped_column(
        Enum(AccountRole, name="account_role"),
        nullable=False,
        default=AccountRole.EMPLOYEE,
    )
    department: Mapped[str] = mapped_column(String(100), nullable=False, default="", server_default=text("''"))
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, default="", server_default=text("''"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    failed_login_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    lock_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reset_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reset_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    devices: Mapped[list[AccountDevice]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="AccountDevice.added_at",
    )
    attendance_records: Mapped[list[AttendanceRecord]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
    )
    leave_requests: Mapped[list[LeaveRequest]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        foreign_keys="LeaveRequest.account_id",
    )

    @property
    def is_elevated(self) -> bool:
        return self.role in {AccountRole.ADMIN, AccountRole.MANAGER}

    def is_locked_at(self, now: datetime) -> bool:
        lock_until = as_utc(self.lock_until)
        return lock_until is not None and lock_until > now

    def lock_remaining_minutes(self, now: datetime) -> int:
        lock_until = as_utc(self.lock_until)
        if lock_until is None or lock_until <= now:
            return 0
        remaining_seconds = (lock_until - now).total_seconds()
        return max(1, int(-(-remaining_seconds // 60)))

    def find_device(self, device_id: str) -> AccountDevice | None:
        for device in self.devices:
            if device.device_id == device_id:
                return device
        return None

    def register_device(
        self,
        *,
        device_id: str | None,
        device_name: str | None,
        platform: str | None,
        now: datetime,
        max_devices: int,
    ) -> DeviceRegistration:
        normalized_id = (device_id or "").strip()
        if not normalized_id:
            return DeviceRegistration(is_new=False, limit_reached=False)

        existing = self.find_device(normalized_id)
        if existing is not None:
            existing.last_used_at = now
            return DeviceRegistration(is_new=False, limit_reached=False, device=existing)

        if len(self.devices) >= max_devices:
            return DeviceRegistration(is_new=True, limit_reached=True)

        device = AccountDevice(
            device_id=normalized_id,
            device_name=(device_name or "").strip() or "Unknown device",
            platform=(platform or "").strip() or "unknown",
            added_at=now,
            last_used_at=now,
        )
        self.devices.append(device)
        return DeviceRegistration(is_new=True, limit_reached=False, device=device)

    def remove_device(self, device_id: str) -> bool:
        device = self.find_device(device_id)
        if device is None:
            return False
        self.devices.remove(device)
        return True

    @staticmethod
    def password_change_values(password_hash: str, *, now: datetime) -> dict[str, Any]:
        """Every field a password change touches, applied together."""
        return {
            "password_hash": password_hash,
            "password_changed_at": now,
            "reset_token_hash": None,
            "reset_token_expires_at": None,
            "failed_login_attempts": 0,
            "lock_until": None,
        }

    def change_password_hash(self, password_hash: str, *, now: datetime) -> None:
        for key, value in self.password_change_values(password_hash, now=now).items():
            setattr(self, key, value)


class AccountDevice(Base):
    __tablename__ = "account_devices"
    __table_args__ = (UniqueConstraint("account_id", "device_id", name="uq_account_devices_account_device"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    device_name: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(100), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    account: Mapped[Account] = relationship(back_populates="devices")


class OfficeLocation(Base):
    __tablename__ = "office_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="Main Office")
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[int] = mapped_column(Integer, nullable=False, default=50, server_default=text("50"))
    address: Mapped[str] = mapped_column(String(500), nullable=False, default="", server_default=text("''"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("account_id", "date", name="uq_attendance_records_account_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    work_mode: Mapped[WorkMode] = mapped_column(Enum(WorkMode, name="work_mode"), nullable=False)
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status"),
        nullable=False,
        default=AttendanceStatus.CHECKED_IN,
    )
    check_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    check_in_lat: Mapped[float] = mapped_column(Float, nullable=False)
    check_in_lon: Mapped[float] = mapped_column(Float, nullable=False)
    check_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_out_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    working_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    wfh_checkout_radius_m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    account: Mapped[Account] = relationship(back_populates="attendance_records")


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    leave_type: Mapped[LeaveType] = mapped_column(
        Enum(LeaveType, name="leave_type"),
        nullable=False,
        default=LeaveType.CASUAL,
    )
    status: Mapped[LeaveStatus] = mapped_column(
        Enum(LeaveStatus, name="leave_status"),
        nullable=False,
        default=LeaveStatus.PENDING,
    )
    approved_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
    )
    approval_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_comment: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default=text("''"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    account: Mapped[Account] = relationship(back_populates="leave_requests", foreign_keys=[account_id])
    approved_by: Mapped[Account | None] = relationship(foreign_keys=[approved_by_id])


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
