from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendtrack.errors import ApiError
from attendtrack.models import OfficeLocation

MIN_OFFICE_RADIUS_M = 10
MAX_OFFICE_RADIUS_M = 5000
DEFAULT_OFFICE_RADIUS_M = 50


def get_active_office(db: Session) -> OfficeLocation | None:
    return db.scalar(
        select(OfficeLocation)
        .where(OfficeLocation.is_active.is_(True))
        .order_by(OfficeLocation.updated_at.desc(), OfficeLocation.id.desc())
        .limit(1)
    )


def upsert_active_office(
    db: Session,
    *,
    latitude: float | None,
    longitude: float | None,
    radius_m: int | None = None,
    name: str | None = None,
    address: str | None = None,
) -> OfficeLocation:
    if latitude is None or longitude is None:
        raise ApiError(
            status_code=400,
            code="MISSING_COORDINATES",
            message="latitude and longitude are required.",
        )
    if radius_m is not None and not (MIN_OFFICE_RADIUS_M <= radius_m <= MAX_OFFICE_RADIUS_M):
        raise ApiError(
            status_code=400,
            code="INVALID_RADIUS",
            message=f"radius must be a number between {MIN_OFFICE_RADIUS_M} and {MAX_OFFICE_RADIUS_M} metres.",
            details={"min": MIN_OFFICE_RADIUS_M, "max": MAX_OFFICE_RADIUS_M},
        )

    office = get_active_office(db)
    if office is None:
        office = OfficeLocation(
            name=(name or "").strip() or "Main Office",
            latitude=latitude,
            longitude=longitude,
            radius_m=radius_m if radius_m is not None else DEFAULT_OFFICE_RADIUS_M,
            address=(address or "").strip(),
            is_active=True,
        )
        db.add(office)
    else:
        office.latitude = latitude
        office.longitude = longitude
        if radius_m is not None:
            office.radius_m = radius_m
        if name and name.strip():
            office.name = name.strip()
        if address and address.strip():
            office.address = address.strip()

    db.commit()
    db.refresh(office)
    return office
