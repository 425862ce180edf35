from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendtrack.models import AuditActorType, AuditLog

logger = logging.getLogger("attendtrack.audit")


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Persist one audit row and mirror it to the log stream.

    A failed write is rolled back and reported; it never fails the caller.
    """
    fields: dict[str, Any] = {
        "actor_type": actor_type,
        "actor_id": actor_id,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "ip": ip,
        "user_agent": user_agent,
        "success": success,
        "details": dict(details or {}),
    }
    db.add(AuditLog(ts_utc=datetime.now(timezone.utc), **fields))
    log_fields = {**fields, "actor_type": actor_type.value, "request_id": request_id}
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=log_fields)
        return

    if success:
        logger.info("audit_event", extra=log_fields)
    else:
        logger.warning("audit_event", extra=log_fields)


def log_request_audit(
    db: Session,
    request: Request,
    *,
    action: str,
    success: bool,
    actor_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    account_id = actor_id or getattr(request.state, "actor_id", None)
    log_audit(
        db,
        actor_type=(
            AuditActorType.SYSTEM
            if account_id in {None, "system", "unknown"}
            else AuditActorType.ACCOUNT
        ),
        actor_id=str(account_id or "unknown"),
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=client_ip(request),
        user_agent=user_agent(request),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )


def log_auth_failure(
    db: Session,
    request: Request,
    *,
    reason: str,
    actor_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    payload = {"reason": reason}
    if details:
        payload.update(details)
    log_request_audit(
        db,
        request,
        action="AUTH_FAILURE",
        success=False,
        actor_id=actor_id or "unknown",
        details=payload,
    )
