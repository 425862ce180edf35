from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from attendtrack.errors import ApiError
from attendtrack.models import Account, LeaveRequest, LeaveStatus, LeaveType

BLOCKING_STATUSES = (LeaveStatus.PENDING, LeaveStatus.APPROVED)


def find_overlapping_requests(
    db: Session,
    *,
    account_id: int,
    start_date: date,
    end_date: date,
) -> list[LeaveRequest]:
    stmt = (
        select(LeaveRequest)
        .where(
            LeaveRequest.account_id == account_id,
            LeaveRequest.status.in_(BLOCKING_STATUSES),
            LeaveRequest.start_date <= end_date,
            LeaveRequest.end_date >= start_date,
        )
        .order_by(LeaveRequest.start_date.asc(), LeaveRequest.id.asc())
    )
    return list(db.scalars(stmt).all())


def submit_leave_request(
    db: Session,
    *,
    account_id: int,
    start_date: date,
    end_date: date,
    reason: str,
    leave_type: LeaveType = LeaveType.CASUAL,
) -> LeaveRequest:
    if end_date < start_date:
        raise ApiError(
            status_code=400,
            code="INVALID_DATE_RANGE",
            message="endDate must be on or after startDate.",
        )
    cleaned_reason = (reason or "").strip()
    if not cleaned_reason:
        raise ApiError(status_code=400, code="MISSING_FIELDS", message="A reason is required.")

    overlapping = find_overlapping_requests(db, account_id=account_id, start_date=start_date, end_date=end_date)
    if overlapping:
        raise ApiError(
            status_code=409,
            code="LEAVE_OVERLAP",
            message="Leave request overlaps an existing pending or approved request.",
            details={"conflictingIds": [item.id for item in overlapping]},
        )

    leave = LeaveRequest(
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        reason=cleaned_reason,
        leave_type=leave_type,
        status=LeaveStatus.PENDING,
    )
    db.add(leave)
    db.commit()
    db.refresh(leave)
    return leave


def list_account_requests(db: Session, *, account_id: int) -> list[LeaveRequest]:
    stmt = (
        select(LeaveRequest)
        .options(selectinload(LeaveRequest.approved_by))
        .where(LeaveRequest.account_id == account_id)
        .order_by(LeaveRequest.created_at.desc(), LeaveRequest.id.desc())
    )
    return list(db.scalars(stmt).all())


def cancel_leave_request(db: Session, *, account_id: int, leave_id: int) -> None:
    leave = db.get(LeaveRequest, leave_id)
    if leave is None or leave.account_id != account_id:
        raise ApiError(status_code=404, code="NOT_FOUND", message="Leave request not found.")
    if leave.status != LeaveStatus.PENDING:
        raise ApiError(
            status_code=400,
            code="ALREADY_PROCESSED",
            message="Only pending leave requests can be cancelled.",
        )
    db.delete(leave)
    db.commit()


def list_leave_requests(
    db: Session,
    *,
    status: LeaveStatus | None = None,
    account_id: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[LeaveRequest], int]:
    filters = []
    if status is not None:
        filters.append(LeaveRequest.status == status)
    if account_id is not None:
        filters.append(LeaveRequest.account_id == account_id)

    total = db.scalar(select(func.count(LeaveRequest.id)).where(*filters)) or 0
    stmt = (
        select(LeaveRequest)
        .options(selectinload(LeaveRequest.account), selectinload(LeaveRequest.approved_by))
        .where(*filters)
        .order_by(LeaveRequest.created_at.desc(), LeaveRequest.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(db.scalars(stmt).all()), int(total)


def decide_leave_request(
    db: Session,
    *,
    leave_id: int,
    decided_by: Account,
    status: LeaveStatus,
    admin_comment: str | None = None,
    now: datetime | None = None,
) -> LeaveRequest:
    if status not in {LeaveStatus.APPROVED, LeaveStatus.REJECTED}:
        raise ApiError(
            status_code=400,
            code="INVALID_STATUS",
            message="Status must be approved or rejected.",
        )

    leave = db.get(LeaveRequest, leave_id)
    if leave is None:
        raise ApiError(status_code=404, code="NOT_FOUND", message="Leave request not found.")

    stmt = (
        update(LeaveRequest)
        .where(LeaveRequest.id == leave_id, LeaveRequest.status == LeaveStatus.PENDING)
        .values(
            status=status,
            approved_by_id=decided_by.id,
            approval_date=now or datetime.now(timezone.utc),
            admin_comment=(admin_comment or "").strip(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    db.refresh(leave)
    if result.rowcount == 0:
        raise ApiError(
            status_code=400,
            code="ALREADY_PROCESSED",
            message="Leave request has already been processed.",
            details={"status": leave.status.value},
        )
    return leave
