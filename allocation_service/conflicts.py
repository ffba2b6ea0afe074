import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models
from .intervals import Interval, overlaps

logger = logging.getLogger("allocation_service")


def find_conflict(db: Session, resource_kind: models.ResourceKind, resource_id: int,
                  interval: Interval, exclude_booking_id: Optional[int] = None) -> Optional[models.Booking]:
    """
    Returns the first live booking on the resource that overlaps the interval.

    The booking named by exclude_booking_id is skipped, so a booking being
    approved or rescheduled is never counted against itself.
    The resource is assumed to have been validated by the caller.
    """
    for booking in crud.fetch_live_bookings(db, resource_kind, resource_id):
        if exclude_booking_id is not None and booking.id == exclude_booking_id:
            continue
        if overlaps(interval, Interval.of(booking)):
            logger.info(
                f"{resource_kind.value} {resource_id}: {interval.start}-{interval.end} "
                f"overlaps booking {booking.id} ({booking.start_time}-{booking.end_time})"
            )
            return booking
    return None


def has_conflict(db: Session, resource_kind: models.ResourceKind, resource_id: int,
                 interval: Interval, exclude_booking_id: Optional[int] = None) -> bool:
    """
    Checks if the interval conflicts with any live booking on the resource.

    Returns True if a conflict exists, False otherwise.
    """
    return find_conflict(db, resource_kind, resource_id, interval, exclude_booking_id) is not None
