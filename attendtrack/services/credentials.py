"""Credential store: password lifecycle, lockout, device registry and reset tokens.

Counter and lock updates are issued as single conditional UPDATE statements so
that concurrent logins for the same account cannot lose increments.
"""
from __future__ import annotations

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendtrack.errors import ApiError
from attendtrack.models import Account, AccountRole, DeviceRegistration, as_utc
from attendtrack.security import hash_password, verify_password
from attendtrack.settings import get_settings

logger = logging.getLogger("attendtrack.credentials")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True, slots=True)
class CredentialCheck:
    matched: bool
    locked: bool = False
    failed_attempts: int = 0
    lock_until: datetime | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def validate_new_password(password: str | None) -> str:
    min_length = get_settings().min_password_length
    if password is None or len(password) < min_length:
        raise ApiError(
            status_code=400,
            code="WEAK_PASSWORD",
            message=f"Password must be at least {min_length} characters.",
        )
    return password


def _not_locked_clause(now: datetime):
    return or_(Account.lock_until.is_(None), Account.lock_until <= now)


def find_account_by_email(db: Session, email: str) -> Account | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.scalar(select(Account).where(Account.email == normalized))


def create_account(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: AccountRole = AccountRole.EMPLOYEE,
    employee_id: str | None = None,
    department: str = "",
    phone_number: str = "",
    now: datetime | None = None,
) -> Account:
    validate_new_password(password)
    normalized_email = normalize_email(email)
    if not EMAIL_PATTERN.match(normalized_email):
        raise ApiError(status_code=400, code="INVALID_EMAIL", message="Please provide a valid email address.")

    normalized_employee_id = (employee_id or "").strip() or None
    if find_account_by_email(db, normalized_email) is not None:
        raise ApiError(
            status_code=400,
            code="EMAIL_EXISTS",
            message="An account with this email already exists.",
        )
    if normalized_employee_id is not None and db.scalar(
        select(Account.id).where(Account.employee_id == normalized_employee_id)
    ) is not None:
        raise ApiError(
            status_code=400,
            code="EMPLOYEE_ID_EXISTS",
            message="An account with this Employee ID already exists.",
        )

    created_at = now or _utc_now()
    account = Account(
        name=name.strip(),
        email=normalized_email,
        employee_id=normalized_employee_id,
        password_hash=hash_password(password),
        password_changed_at=created_at,
        role=role,
        department=(department or "").strip(),
        phone_number=(phone_number or "").strip(),
        is_active=True,
        failed_login_attempts=0,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(account)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="ACCOUNT_CONFLICT",
            message="An account with this email or Employee ID already exists.",
        ) from exc
    db.refresh(account)
    return account


def is_locked(account: Account, *, now: datetime | None = None) -> bool:
    return account.is_locked_at(now or _utc_now())


def _locked_check(account: Account) -> CredentialCheck:
    return CredentialCheck(
        matched=False,
        locked=True,
        failed_attempts=account.failed_login_attempts,
        lock_until=as_utc(account.lock_until),
    )


def record_successful_login(db: Session, account: Account, *, now: datetime | None = None) -> bool:
    """Reset the failure counter and stamp last login; False when the account got locked meanwhile."""
    logged_in_at = now or _utc_now()
    stmt = (
        update(Account)
        .where(Account.id == account.id, _not_locked_clause(logged_in_at))
        .values(failed_login_attempts=0, lock_until=None, last_login_at=logged_in_at)
        .returning(Account.id)
        .execution_options(synchronize_session=False)
    )
    row = db.execute(stmt).first()
    db.commit()
    db.refresh(account)
    return row is not None


def record_failed_login(db: Session, account: Account, *, now: datetime | None = None) -> CredentialCheck:
    settings = get_settings()
    failed_at = now or _utc_now()
    lock_expired = Account.lock_until.is_not(None) & (Account.lock_until <= failed_at)
    next_count = case((lock_expired, 1), else_=Account.failed_login_attempts + 1)
    lock_until = failed_at + timedelta(minutes=settings.lockout_minutes)
    stmt = (
        update(Account)
        .where(Account.id == account.id, _not_locked_clause(failed_at))
        .values(
            failed_login_attempts=next_count,
            lock_until=case((next_count >= settings.max_failed_logins, lock_until), else_=None),
        )
        .returning(Account.failed_login_attempts, Account.lock_until)
        .execution_options(synchronize_session=False)
    )
    row = db.execute(stmt).first()
    db.commit()
    db.refresh(account)

    if row is None:
        return _locked_check(account)

    failed_attempts, stored_lock_until = row
    stored_lock_until = as_utc(stored_lock_until)
    if stored_lock_until is not None:
        logger.warning(
            "account_locked",
            extra={"account_id": account.id, "failed_attempts": failed_attempts},
        )
    return CredentialCheck(
        matched=False,
        locked=stored_lock_until is not None,
        failed_attempts=int(failed_attempts),
        lock_until=stored_lock_until,
    )


def verify_credentials(
    db: Session,
    account: Account,
    password: str,
    *,
    now: datetime | None = None,
    record_success: bool = True,
) -> CredentialCheck:
    """Check a password against the stored hash and update the lockout counters.

    With ``record_success=False`` a match leaves the counters untouched so the
    caller can finish its own checks first and then call
    :func:`record_successful_login`.
    """
    checked_at = now or _utc_now()

    if account.is_locked_at(checked_at):
        return _locked_check(account)

    if not verify_password(password, account.password_hash):
        return record_failed_login(db, account, now=checked_at)

    if record_success and not record_successful_login(db, account, now=checked_at):
        return _locked_check(account)
    return CredentialCheck(matched=True)


def register_device(
    db: Session,
    account: Account,
    *,
    device_id: str | None,
    device_name: str | None = None,
    platform: str | None = None,
    now: datetime | None = None,
) -> DeviceRegistration:
    if not (device_id or "").strip():
        return DeviceRegistration(is_new=False, limit_reached=False)

    used_at = now or _utc_now()
    # Row lock keeps two first-time devices from both taking the last free slot.
    db.refresh(account, with_for_update=True)
    registration = account.register_device(
        device_id=device_id,
        device_name=device_name,
        platform=platform,
        now=used_at,
        max_devices=get_settings().max_devices_per_account,
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        db.refresh(account)
        existing = account.find_device((device_id or "").strip())
        if existing is None:
            raise
        return DeviceRegistration(is_new=False, limit_reached=False, device=existing)
    return registration


def remove_device(db: Session, account: Account, device_id: str) -> bool:
    normalized = (device_id or "").strip()
    if not normalized:
        return False
    db.refresh(account, with_for_update=True)
    removed = account.remove_device(normalized)
    db.commit()
    return removed


def change_password(
    db: Session,
    account: Account,
    new_password: str,
    *,
    now: datetime | None = None,
) -> None:
    validate_new_password(new_password)
    account.change_password_hash(hash_password(new_password), now=now or _utc_now())
    db.commit()
    db.refresh(account)


def create_reset_token(db: Session, account: Account, *, now: datetime | None = None) -> str:
    issued_at = now or _utc_now()
    raw_token = secrets.token_hex(32)
    account.reset_token_hash = hash_reset_token(raw_token)
    account.reset_token_expires_at = issued_at + timedelta(minutes=get_settings().reset_token_minutes)
    db.commit()
    return raw_token


def consume_reset_token(
    db: Session,
    raw_token: str,
    new_password: str,
    *,
    now: datetime | None = None,
) -> Account | None:
    validate_new_password(new_password)
    if not (raw_token or "").strip():
        return None

    consumed_at = now or _utc_now()
    token_hash = hash_reset_token(raw_token.strip())
    account = db.scalar(
        select(Account).where(
            Account.reset_token_hash == token_hash,
            Account.reset_token_expires_at > consumed_at,
        )
    )
    if account is None:
        return None

    values = Account.password_change_values(hash_password(new_password), now=consumed_at)
    stmt = (
        update(Account)
        .where(
            Account.id == account.id,
            Account.reset_token_hash == token_hash,
            Account.reset_token_expires_at > consumed_at,
        )
        .values(**values)
        .returning(Account.id)
        .execution_options(synchronize_session=False)
    )
    row = db.execute(stmt).first()
    db.commit()
    if row is None:
        return None
    db.refresh(account)
    return account
