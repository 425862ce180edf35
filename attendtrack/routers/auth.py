from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from attendtrack.audit import client_ip, log_auth_failure, log_request_audit
from attendtrack.db import get_db
from attendtrack.errors import ApiError
from attendtrack.models import Account
from attendtrack.schemas import (
    AccountSummary,
    DeviceListResponse,
    DeviceRead,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
)
from attendtrack.security import (
    burn_password_check,
    ensure_login_attempt_allowed,
    issue_session_token,
    register_login_failure,
    register_login_success,
    require_account,
)
from attendtrack.services.accounts import update_profile
from attendtrack.services.credentials import (
    consume_reset_token,
    create_reset_token,
    find_account_by_email,
    record_successful_login,
    register_device,
    remove_device,
    verify_credentials,
)
from attendtrack.services.mailer import send_password_reset
from attendtrack.settings import get_settings, is_production

router = APIRouter(tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a reset link has been sent."


def _login_failure(
    db: Session,
    request: Request,
    *,
    ip: str,
    code: str,
    message: str,
    status_code: int = 401,
    actor_id: str | None = None,
    details: dict | None = None,
) -> ApiError:
    register_login_failure(ip)
    log_auth_failure(db, request, reason=code, actor_id=actor_id, details=details)
    return ApiError(status_code=status_code, code=code, message=message, details=details)


def _locked_error(db: Session, request: Request, account: Account, *, ip: str, now: datetime) -> ApiError:
    remaining = account.lock_remaining_minutes(now)
    return _login_failure(
        db,
        request,
        ip=ip,
        code="ACCOUNT_LOCKED",
        message=f"Account is temporarily locked due to too many failed attempts. Try again in {remaining} minute(s).",
        actor_id=str(account.id),
        details={"remainingMinutes": remaining},
    )


@router.post("/api/auth/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> LoginResponse:
    ip = client_ip(request) or "unknown"
    try:
        ensure_login_attempt_allowed(ip)
    except ApiError:
        log_auth_failure(db, request, reason="TOO_MANY_ATTEMPTS")
        raise

    if not payload.email.strip() or not payload.password:
        raise ApiError(
            status_code=400,
            code="MISSING_CREDENTIALS",
            message="Please provide email and password.",
        )

    now = datetime.now(timezone.utc)
    account = find_account_by_email(db, payload.email)
    if account is None:
        burn_password_check(payload.password)
        raise _login_failure(
            db,
            request,
            ip=ip,
            code="INVALID_CREDENTIALS",
            message="Invalid email or password.",
        )

    if account.is_locked_at(now):
        raise _locked_error(db, request, account, ip=ip, now=now)

    # Counters and last login are only recorded once the device check below passes.
    check = verify_credentials(db, account, payload.password, now=now, record_success=False)
    if not check.matched:
        if check.locked:
            raise _locked_error(db, request, account, ip=ip, now=now)
        remaining_attempts = max(0, get_settings().max_failed_logins - check.failed_attempts)
        raise _login_failure(
            db,
            request,
            ip=ip,
            code="INVALID_CREDENTIALS",
            message="Invalid email or password.",
            actor_id=str(account.id),
            details={"attemptsRemaining": remaining_attempts},
        )

    if not account.is_active:
        raise _login_failure(
            db,
            request,
            ip=ip,
            code="ACCOUNT_INACTIVE",
            message="Your account has been deactivated. Please contact admin.",
            actor_id=str(account.id),
        )

    device_info = payload.device_info
    registration = register_device(
        db,
        account,
        device_id=device_info.device_id if device_info else None,
        device_name=device_info.device_name if device_info else None,
        platform=device_info.platform if device_info else None,
        now=now,
    )
    if registration.limit_reached:
        registered = [DeviceRead.model_validate(item).model_dump(mode="json", by_alias=True) for item in account.devices]
        log_auth_failure(
            db,
            request,
            reason="DEVICE_LIMIT_REACHED",
            actor_id=str(account.id),
            details={"deviceCount": len(registered)},
        )
        raise ApiError(
            status_code=403,
            code="DEVICE_LIMIT_REACHED",
            message=(
                f"Maximum {get_settings().max_devices_per_account} devices allowed. "
                "Remove a registered device to sign in from this one."
            ),
            details={"devices": registered},
        )

    if not record_successful_login(db, account, now=now):
        raise _locked_error(db, request, account, ip=ip, now=now)

    token, claims = issue_session_token(account.id, now=now)
    register_login_success(ip)
    request.state.actor = "account"
    request.state.actor_id = str(account.id)
    request.state.account_id = account.id
    log_request_audit(
        db,
        request,
        action="LOGIN_SUCCESS",
        success=True,
        actor_id=str(account.id),
        entity_type="account",
        entity_id=str(account.id),
        details={
            "newDevice": registration.is_new,
            "hasLocation": payload.location is not None,
        },
    )
    return LoginResponse(
        token=token,
        expires_at=datetime.fromtimestamp(claims.expires_at, tz=timezone.utc),
        account=AccountSummary.model_validate(account),
        device=DeviceRead.model_validate(registration.device) if registration.device is not None else None,
    )


@router.post("/api/auth/logout", response_model=MessageResponse)
def logout(
    payload: LogoutRequest,
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> MessageResponse:
    device_id = payload.device_id or request.headers.get("x-device-id")
    removed = remove_device(db, account, device_id or "")
    log_request_audit(
        db,
        request,
        action="LOGOUT",
        success=True,
        actor_id=str(account.id),
        entity_type="account",
        entity_id=str(account.id),
        details={"deviceRemoved": removed},
    )
    return MessageResponse(message="Logged out successfully.")


@router.get("/api/auth/profile", response_model=ProfileResponse)
def get_profile(account: Account = Depends(require_account)) -> ProfileResponse:
    return ProfileResponse(
        account=AccountSummary.model_validate(account),
        devices=[DeviceRead.model_validate(item) for item in account.devices],
    )


@router.put("/api/auth/profile", response_model=ProfileUpdateResponse)
def put_profile(
    payload: ProfileUpdateRequest,
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> ProfileUpdateResponse:
    now = datetime.now(timezone.utc)
    if payload.new_password:
        check = verify_credentials(db, account, payload.current_password or "", now=now, record_success=False)
        if not check.matched:
            if check.locked:
                remaining = account.lock_remaining_minutes(now)
                details = {"remainingMinutes": remaining}
                log_auth_failure(db, request, reason="ACCOUNT_LOCKED", actor_id=str(account.id), details=details)
                raise ApiError(
                    status_code=401,
                    code="ACCOUNT_LOCKED",
                    message=f"Account is temporarily locked. Try again in {remaining} minute(s).",
                    details=details,
                )
            details = {"attemptsRemaining": max(0, get_settings().max_failed_logins - check.failed_attempts)}
            log_auth_failure(db, request, reason="INVALID_CREDENTIALS", actor_id=str(account.id), details=details)
            raise ApiError(
                status_code=401,
                code="INVALID_CREDENTIALS",
                message="Current password is incorrect.",
                details=details,
            )

    update_profile(
        db,
        account,
        name=payload.name,
        phone_number=payload.phone_number,
        department=payload.department,
        new_password=payload.new_password or None,
        now=now,
    )

    new_token: str | None = None
    if payload.new_password:
        new_token, _claims = issue_session_token(account.id, now=now)
        log_request_audit(
            db,
            request,
            action="PASSWORD_CHANGED",
            success=True,
            actor_id=str(account.id),
            entity_type="account",
            entity_id=str(account.id),
        )
    return ProfileUpdateResponse(
        message="Profile updated successfully.",
        account=AccountSummary.model_validate(account),
        token=new_token,
    )


@router.get("/api/auth/devices", response_model=DeviceListResponse)
def list_devices(account: Account = Depends(require_account)) -> DeviceListResponse:
    return DeviceListResponse(
        devices=[DeviceRead.model_validate(item) for item in account.devices],
        max_devices=get_settings().max_devices_per_account,
    )


@router.delete("/api/auth/devices/{device_id}", response_model=MessageResponse)
def delete_device(
    device_id: str,
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> MessageResponse:
    if not remove_device(db, account, device_id):
        raise ApiError(status_code=404, code="NOT_FOUND", message="Device not found.")
    log_request_audit(
        db,
        request,
        action="DEVICE_REMOVED",
        success=True,
        actor_id=str(account.id),
        entity_type="account_device",
        entity_id=device_id,
    )
    return MessageResponse(message="Device removed successfully.")


@router.post("/api/auth/forgot-password", response_model=ForgotPasswordResponse)
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ForgotPasswordResponse:
    if not payload.email.strip():
        raise ApiError(status_code=400, code="MISSING_FIELDS", message="Please provide an email address.")

    account = find_account_by_email(db, payload.email)
    if account is None or not account.is_active:
        log_request_audit(
            db,
            request,
            action="PASSWORD_RESET_REQUESTED",
            success=False,
            details={"reason": "UNKNOWN_OR_INACTIVE_ACCOUNT"},
        )
        return ForgotPasswordResponse(message=FORGOT_PASSWORD_MESSAGE)

    raw_token = create_reset_token(db, account)
    delivery = send_password_reset(
        email=account.email,
        name=account.name,
        raw_token=raw_token,
        expires_minutes=get_settings().reset_token_minutes,
    )
    log_request_audit(
        db,
        request,
        action="PASSWORD_RESET_REQUESTED",
        success=True,
        actor_id=str(account.id),
        entity_type="account",
        entity_id=str(account.id),
        details={"delivery": delivery.get("mode")},
    )
    return ForgotPasswordResponse(
        message=FORGOT_PASSWORD_MESSAGE,
        reset_token=None if is_production() else raw_token,
    )


@router.post("/api/auth/reset-password", response_model=ResetPasswordResponse)
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ResetPasswordResponse:
    if not payload.token.strip() or not payload.password:
        raise ApiError(status_code=400, code="MISSING_FIELDS", message="Token and new password are required.")

    now = datetime.now(timezone.utc)
    account = consume_reset_token(db, payload.token, payload.password, now=now)
    if account is None:
        log_request_audit(
            db,
            request,
            action="PASSWORD_RESET_COMPLETED",
            success=False,
            details={"reason": "INVALID_OR_EXPIRED_TOKEN"},
        )
        raise ApiError(
            status_code=400,
            code="INVALID_OR_EXPIRED_TOKEN",
            message="Reset token is invalid or has expired.",
        )

    token, _claims = issue_session_token(account.id, now=now)
    log_request_audit(
        db,
        request,
        action="PASSWORD_RESET_COMPLETED",
        success=True,
        actor_id=str(account.id),
        entity_type="account",
        entity_id=str(account.id),
    )
    return ResetPasswordResponse(
        message="Password has been reset successfully.",
        token=token,
        account=AccountSummary.model_validate(account),
    )
