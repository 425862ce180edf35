from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from attendtrack.audit import log_request_audit
from attendtrack.db import get_db
from attendtrack.models import Account
from attendtrack.schemas import LeaveCreate, LeaveRead, MessageResponse
from attendtrack.security import require_account
from attendtrack.services.leaves import cancel_leave_request, list_account_requests, submit_leave_request

router = APIRouter(tags=["leave"])


@router.post("/api/leave/request", response_model=LeaveRead, status_code=201)
def create_leave_request(
    payload: LeaveCreate,
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> LeaveRead:
    leave = submit_leave_request(
        db,
        account_id=account.id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
        leave_type=payload.leave_type,
    )
    log_request_audit(
        db,
        request,
        action="LEAVE_REQUESTED",
        success=True,
        actor_id=str(account.id),
        entity_type="leave_request",
        entity_id=str(leave.id),
        details={
            "start_date": leave.start_date.isoformat(),
            "end_date": leave.end_date.isoformat(),
            "leave_type": leave.leave_type.value,
        },
    )
    return LeaveRead.model_validate(leave)


@router.get("/api/leave/my-requests", response_model=list[LeaveRead])
def my_requests(
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> list[LeaveRead]:
    return [LeaveRead.model_validate(item) for item in list_account_requests(db, account_id=account.id)]


@router.delete("/api/leave/request/{leave_id}", response_model=MessageResponse)
def cancel_request(
    leave_id: int,
    request: Request,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> MessageResponse:
    cancel_leave_request(db, account_id=account.id, leave_id=leave_id)
    log_request_audit(
        db,
        request,
        action="LEAVE_CANCELLED",
        success=True,
        actor_id=str(account.id),
        entity_type="leave_request",
        entity_id=str(leave_id),
    )
    return MessageResponse(message="Leave request cancelled.")
