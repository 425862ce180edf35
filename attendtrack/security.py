from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from passlib.context import CryptContext
from passlib.exc import UnknownHashError
from sqlalchemy.orm import Session

from attendtrack.audit import log_auth_failure, log_request_audit
from attendtrack.db import get_db
from attendtrack.errors import ApiError
from attendtrack.models import Account, AccountRole, as_utc
from attendtrack.settings import DEV_SESSION_SECRET, get_settings, is_production

logger = logging.getLogger("attendtrack.security")

bearer_scheme = HTTPBearer(auto_error=False)

SESSION_TOKEN_TYPE = "session"
_JWT_ALGORITHM = "HS256"

_LOCK = threading.Lock()
_FAILED_ATTEMPTS: dict[str, deque[datetime]] = defaultdict(deque)
_DEV_SECRET_WARNED = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


@lru_cache
def _password_context(rounds: int) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def _current_password_context() -> CryptContext:
    return _password_context(max(4, int(get_settings().bcrypt_rounds)))


@lru_cache
def _dummy_password_hash() -> str:
    return _current_password_context().hash(uuid4().hex)


def hash_password(password: str) -> str:
    return _current_password_context().hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return _current_password_context().verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        # Invalid/legacy hash values should not crash auth flow.
        return False


def burn_password_check(password: str) -> None:
    """Spend one hash comparison so unknown emails cost the same as wrong passwords."""
    verify_password(password, _dummy_password_hash())


# ---------------------------------------------------------------------------
# Per-IP login throttle
# ---------------------------------------------------------------------------


def _attempt_window() -> timedelta:
    return timedelta(minutes=get_settings().login_rate_limit_window_minutes)


def _cleanup_attempts(ip: str, now: datetime) -> None:
    queue = _FAILED_ATTEMPTS[ip]
    threshold = now - _attempt_window()
    while queue and queue[0] < threshold:
        queue.popleft()
    if not queue:
        _FAILED_ATTEMPTS.pop(ip, None)


def ensure_login_attempt_allowed(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        queue = _FAILED_ATTEMPTS.get(ip, deque())
        if len(queue) >= get_settings().login_rate_limit_attempts:
            raise ApiError(
                status_code=429,
                code="TOO_MANY_ATTEMPTS",
                message="Too many failed login attempts. Please try again later.",
            )


def register_login_failure(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        _FAILED_ATTEMPTS[ip].append(now)


def register_login_success(ip: str) -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.pop(ip, None)


def reset_login_throttle() -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.clear()


# ---------------------------------------------------------------------------
# Session issuer
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SessionClaims:
    account_id: int
    issued_at: int
    expires_at: int
    jti: str

    def predates_password_change(self, password_changed_at: datetime | None) -> bool:
        changed_at = as_utc(password_changed_at)
        if changed_at is None:
            return False
        # iat has second precision, so compare at the same precision.
        return self.issued_at < int(changed_at.timestamp())


def ensure_session_secret_configured() -> None:
    if is_production() and not (get_settings().jwt_secret or "").strip():
        raise RuntimeError("JWT_SECRET must be set when ENVIRONMENT=production")


def _session_secret() -> str:
    global _DEV_SECRET_WARNED
    secret = (get_settings().jwt_secret or "").strip()
    if secret:
        return secret
    if is_production():
        logger.error("session_secret_missing_in_production")
        raise ApiError(
            status_code=500,
            code="SERVER_MISCONFIGURED",
            message="Server authentication is not configured.",
        )
    if not _DEV_SECRET_WARNED:
        logger.warning("session_secret_using_development_default")
        _DEV_SECRET_WARNED = True
    return DEV_SESSION_SECRET


def issue_session_token(account_id: int, *, now: datetime | None = None) -> tuple[str, SessionClaims]:
    settings = get_settings()
    issued = now or _utcnow()
    expires = issued + timedelta(days=settings.session_token_days)
    claims = SessionClaims(
        account_id=account_id,
        issued_at=int(issued.timestamp()),
        expires_at=int(expires.timestamp()),
        jti=str(uuid4()),
    )
    payload = {
        "sub": str(account_id),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": claims.issued_at,
        "exp": claims.expires_at,
        "jti": claims.jti,
        "typ": SESSION_TOKEN_TYPE,
    }
    token = jwt.encode(payload, _session_secret(), algorithm=_JWT_ALGORITHM)
    return token, claims


def decode_session_token(token: str) -> SessionClaims:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            _session_secret(),
            algorithms=[_JWT_ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except ExpiredSignatureError as exc:
        raise ApiError(status_code=401, code="TOKEN_EXPIRED", message="Session has expired.") from exc
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != SESSION_TOKEN_TYPE:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    try:
        account_id = int(subject)
    except (TypeError, ValueError) as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.") from exc

    return SessionClaims(
        account_id=account_id,
        issued_at=int(payload["iat"]),
        expires_at=int(payload["exp"]),
        jti=str(payload.get("jti") or ""),
    )


# ---------------------------------------------------------------------------
# Authorization gate
# ---------------------------------------------------------------------------


def _reject(
    db: Session,
    request: Request,
    *,
    code: str,
    message: str,
    actor_id: str | None = None,
    details: dict | None = None,
) -> ApiError:
    log_auth_failure(db, request, reason=code, actor_id=actor_id, details=details)
    return ApiError(status_code=401, code=code, message=message, details=details)


def require_account(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Account:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise _reject(db, request, code="NO_TOKEN", message="Not authorized, no token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ApiError as exc:
        if exc.status_code == 401:
            log_auth_failure(db, request, reason=exc.code)
        raise

    account = db.get(Account, claims.account_id)
    if account is None:
        raise _reject(
            db,
            request,
            code="USER_NOT_FOUND",
            message="Not authorized, user not found.",
            actor_id=str(claims.account_id),
        )

    actor_id = str(account.id)
    if not account.is_active:
        raise _reject(db, request, code="ACCOUNT_INACTIVE", message="Account is deactivated.", actor_id=actor_id)

    now = _utcnow()
    if account.is_locked_at(now):
        remaining = account.lock_remaining_minutes(now)
        raise _reject(
            db,
            request,
            code="ACCOUNT_LOCKED",
            message=f"Account is temporarily locked. Try again in {remaining} minute(s).",
            actor_id=actor_id,
            details={"remainingMinutes": remaining},
        )

    if claims.predates_password_change(account.password_changed_at):
        raise _reject(
            db,
            request,
            code="PASSWORD_CHANGED",
            message="Token invalid, password was changed.",
            actor_id=actor_id,
        )

    request.state.actor = "account"
    request.state.actor_id = actor_id
    request.state.account_id = account.id
    request.state.session_claims = claims
    return account


def _deny_role(db: Session, request: Request, account: Account, required: str) -> ApiError:
    log_request_audit(
        db,
        request,
        action="PRIVILEGE_ESCALATION_ATTEMPT",
        success=False,
        actor_id=str(account.id),
        details={
            "reason": "INSUFFICIENT_PERMISSIONS",
            "role": account.role.value,
            "required": required,
            "path": request.url.path,
        },
    )
    return ApiError(status_code=403, code="INSUFFICIENT_PERMISSIONS", message=f"Not authorized as {required}.")


def require_admin(
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> Account:
    if account.role != AccountRole.ADMIN:
        raise _deny_role(db, request, account, "admin")
    return account


def require_manager(
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> Account:
    if account.role not in {AccountRole.ADMIN, AccountRole.MANAGER}:
        raise _deny_role(db, request, account, "manager")
    return account
