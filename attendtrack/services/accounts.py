from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from attendtrack.errors import ApiError
from attendtrack.models import Account, AccountRole, AttendanceRecord
from attendtrack.security import hash_password
from attendtrack.services.credentials import validate_new_password


def get_account_or_404(db: Session, account_id: int) -> Account:
    account = db.get(Account, account_id)
    if account is None:
        raise ApiError(status_code=404, code="NOT_FOUND", message="Employee not found.")
    return account


def list_accounts(
    db: Session,
    *,
    search: str | None = None,
    department: str | None = None,
    is_active: bool | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Account], int]:
    filters = [Account.role == AccountRole.EMPLOYEE]
    term = (search or "").strip().lower()
    if term:
        pattern = f"%{term}%"
        filters.append(
            or_(
                func.lower(Account.name).like(pattern),
                func.lower(Account.email).like(pattern),
                func.lower(func.coalesce(Account.employee_id, "")).like(pattern),
            )
        )
    if department and department.strip():
        filters.append(Account.department == department.strip())
    if is_active is not None:
        filters.append(Account.is_active.is_(is_active))

    total = db.scalar(select(func.count(Account.id)).where(*filters)) or 0
    stmt = (
        select(Account)
        .where(*filters)
        .order_by(Account.created_at.desc(), Account.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(db.scalars(stmt).all()), int(total)


def recent_attendance(db: Session, *, account_id: int, limit: int = 30) -> list[AttendanceRecord]:
    stmt = (
        select(AttendanceRecord)
        .where(AttendanceRecord.account_id == account_id)
        .order_by(AttendanceRecord.date.desc())
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def toggle_account_status(db: Session, *, account_id: int, acting: Account) -> Account:
    account = get_account_or_404(db, account_id)
    if account.role == AccountRole.ADMIN:
        raise ApiError(
            status_code=403,
            code="CANNOT_MODIFY_ADMIN",
            message="Admin accounts cannot be deactivated.",
        )
    if account.id == acting.id:
        raise ApiError(
            status_code=400,
            code="CANNOT_MODIFY_SELF",
            message="You cannot change the status of your own account.",
        )
    account.is_active = not account.is_active
    db.commit()
    db.refresh(account)
    return account


def update_profile(
    db: Session,
    account: Account,
    *,
    name: str | None = None,
    phone_number: str | None = None,
    department: str | None = None,
    new_password: str | None = None,
    now: datetime | None = None,
) -> Account:
    """Apply profile edits and an optional password change in one commit.

    Every field is validated before the account is touched, so a rejected
    request leaves both the profile and the password as they were.
    """
    cleaned_name: str | None = None
    if name is not None:
        cleaned_name = name.strip()
        if not cleaned_name:
            raise ApiError(status_code=400, code="MISSING_FIELDS", message="Name cannot be empty.")
    if new_password is not None:
        validate_new_password(new_password)

    if cleaned_name is not None:
        account.name = cleaned_name
    if phone_number is not None:
        account.phone_number = phone_number.strip()
    if department is not None:
        account.department = department.strip()
    if new_password is not None:
        account.change_password_hash(hash_password(new_password), now=now or datetime.now(timezone.utc))
    db.commit()
    db.refresh(account)
    return account
