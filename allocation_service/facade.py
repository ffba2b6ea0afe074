"""
Entry point for the table, hall and staff modules.

Each module gets one AllocationFacade bound to its ResourceKind. The façade
validates the resource and module-specific fields, then delegates to the
lifecycle and assignment gate. Lock contention is retried here a bounded
number of times before it reaches the caller.
"""
import datetime
import logging
import time
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models
from .assignments import AssignmentGate
from .config import Settings, settings as default_settings
from .conflicts import has_conflict
from .exceptions import (
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidIntervalError,
    NoResourceAvailableError,
    SchedulingConflictError,
    UnknownResourceError,
)
from .intervals import Interval
from .lifecycle import BookingLifecycle
from .locking import ResourceLockManager

logger = logging.getLogger("allocation_service")

# Tables and halls are sized by guests; staff members are not
CAPACITY_KINDS = (models.ResourceKind.TABLE, models.ResourceKind.HALL)


class AllocationFacade:

    def __init__(self, resource_kind: models.ResourceKind, lock_manager: ResourceLockManager,
                 settings: Optional[Settings] = None):
        self.resource_kind = resource_kind
        self.settings = settings or default_settings
        self.lifecycle = BookingLifecycle(lock_manager, resource_kind)
        self.assignments = AssignmentGate(self.lifecycle)

    # --- Retry ---

    def _with_retry(self, db: Session, description: str, operation):
        """
        Runs operation, retrying ConcurrencyConflictError with exponential backoff.
        """
        max_attempts = max(1, self.settings.ALLOCATION_MAX_ATTEMPTS)
        delay = self.settings.ALLOCATION_RETRY_BACKOFF_SECONDS
        for attempt in range(1, max_attempts + 1):
            try:
                return operation()
            except ConcurrencyConflictError as e:
                if attempt >= max_attempts:
                    logger.error(f"{description} failed after {max_attempts} attempts: {e}")
                    raise
                logger.warning(
                    f"{description} attempt {attempt}/{max_attempts} hit contention: {e}. "
                    f"Retrying in {delay} seconds..."
                )
                db.rollback()
                time.sleep(delay)
                delay *= 2

    # --- Validation ---

    def _require_resource(self, db: Session, resource_id: int) -> models.Resource:
        resource = crud.get_resource(db, self.resource_kind, resource_id)
        if resource is None:
            raise UnknownResourceError(self.resource_kind, resource_id)
        return resource

    def _check_party_size(self, resource: models.Resource, party_size: Optional[int]):
        if self.resource_kind not in CAPACITY_KINDS:
            return
        if party_size is None or party_size < 1:
            raise CapacityExceededError(self.resource_kind, resource.id, resource.capacity, party_size)
        if resource.capacity is not None and party_size > resource.capacity:
            raise CapacityExceededError(self.resource_kind, resource.id, resource.capacity, party_size)

    # --- Availability ---

    def check_availability(self, db: Session, resource_id: int, interval: Interval) -> bool:
        self._require_resource(db, resource_id)
        return not has_conflict(db, self.resource_kind, resource_id, interval)

    def find_available_resource(self, db: Session, interval: Interval, party_size: Optional[int] = None,
                                exclude_resource_ids=()) -> Optional[models.Resource]:
        """
        Smallest active resource that fits the party and is free for the interval.
        """
        min_capacity = party_size if self.resource_kind in CAPACITY_KINDS else None
        for resource in crud.list_active_resources(db, self.resource_kind, min_capacity):
            if resource.id in exclude_resource_ids:
                continue
            if not has_conflict(db, self.resource_kind, resource.id, interval):
                return resource
        return None

    def available_slots(self, db: Session, resource_id: int, day: datetime.date,
                        slot_length: datetime.timedelta = datetime.timedelta(hours=1)) -> list[Interval]:
        """
        Free slots of slot_length on one resource during opening hours,
        back to back from opening time.
        """
        if slot_length <= datetime.timedelta(0):
            raise InvalidIntervalError(f"Slot length must be positive, got {slot_length}")
        self._require_resource(db, resource_id)

        midnight = datetime.datetime.combine(day, datetime.time(0))
        day_start = midnight + datetime.timedelta(hours=self.settings.SLOT_DAY_START_HOUR)
        day_end = midnight + datetime.timedelta(hours=self.settings.SLOT_DAY_END_HOUR)
        slots = []
        start = day_start
        while start + slot_length <= day_end:
            candidate = Interval(start, start + slot_length)
            if not has_conflict(db, self.resource_kind, resource_id, candidate):
                slots.append(candidate)
            start += slot_length
        return slots

    # --- Lifecycle ---

    def create(self, db: Session, resource_id: Optional[int], interval: Interval,
               party_size: Optional[int] = None, booked_by: Optional[int] = None,
               notes: Optional[str] = None) -> models.Booking:
        """
        Books resource_id for the interval. With resource_id=None the
        smallest free resource that fits the party is picked.
        """
        if resource_id is None:
            return self._create_auto_assigned(db, interval, party_size, booked_by, notes)
        resource = self._require_resource(db, resource_id)
        return self._create_on(db, resource, interval, party_size, booked_by, notes)

    def _create_on(self, db: Session, resource: models.Resource, interval: Interval,
                   party_size: Optional[int], booked_by: Optional[int], notes: Optional[str]) -> models.Booking:
        self._check_party_size(resource, party_size)
        if self.resource_kind not in CAPACITY_KINDS:
            party_size = None

        target_id = resource.id
        return self._with_retry(
            db, f"Create {self.resource_kind.value} {target_id}",
            lambda: self.lifecycle.create(
                db, self.resource_kind, target_id, interval,
                party_size=party_size, booked_by=booked_by, notes=notes,
            ),
        )

    def _create_auto_assigned(self, db: Session, interval: Interval, party_size: Optional[int],
                              booked_by: Optional[int], notes: Optional[str]) -> models.Booking:
        if self.resource_kind in CAPACITY_KINDS and (party_size is None or party_size < 1):
            raise CapacityExceededError(self.resource_kind, None, None, party_size)

        # The pick is made without the lock, so a resource taken in the
        # meantime is skipped and the next candidate tried
        taken = set()
        while True:
            resource = self.find_available_resource(db, interval, party_size, exclude_resource_ids=taken)
            if resource is None:
                raise NoResourceAvailableError(self.resource_kind, party_size)
            logger.info(f"Auto-assigned {self.resource_kind.value} {resource.id} for party of {party_size}")
            try:
                return self._create_on(db, resource, interval, party_size, booked_by, notes)
            except SchedulingConflictError as e:
                logger.warning(f"{self.resource_kind.value} {resource.id} was taken during auto-assignment: {e}")
                taken.add(resource.id)

    def approve(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._with_retry(db, f"Approve booking {booking_id}",
                                lambda: self.lifecycle.approve(db, booking_id, changed_by))

    def reject(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._with_retry(db, f"Reject booking {booking_id}",
                                lambda: self.lifecycle.reject(db, booking_id, changed_by))

    def cancel(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._with_retry(db, f"Cancel booking {booking_id}",
                                lambda: self.lifecycle.cancel(db, booking_id, changed_by))

    def complete(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._with_retry(db, f"Complete booking {booking_id}",
                                lambda: self.lifecycle.complete(db, booking_id, changed_by))

    def mark_no_show(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._with_retry(db, f"No-show booking {booking_id}",
                                lambda: self.lifecycle.mark_no_show(db, booking_id, changed_by))

    def reschedule(self, db: Session, booking_id: int, new_interval: Interval,
                   changed_by: Optional[int] = None) -> models.Booking:
        return self._with_retry(db, f"Reschedule booking {booking_id}",
                                lambda: self.lifecycle.reschedule(db, booking_id, new_interval, changed_by))

    def delete(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> Optional[models.Booking]:
        return self._with_retry(db, f"Delete booking {booking_id}",
                                lambda: self.lifecycle.delete(db, booking_id, changed_by))

    # --- Assignments ---

    def assign(self, db: Session, booking_id: int, assignment_kind: models.AssignmentKind,
               detail: str, quantity: int = 1) -> models.ResourceAssignment:
        return self._with_retry(db, f"Assign to booking {booking_id}",
                                lambda: self.assignments.assign(db, booking_id, assignment_kind, detail, quantity))

    def unassign(self, db: Session, booking_id: int, assignment_id: int) -> bool:
        return self._with_retry(db, f"Unassign {assignment_id} from booking {booking_id}",
                                lambda: self.assignments.unassign(db, booking_id, assignment_id))

    def clear(self, db: Session, booking_id: int) -> int:
        return self._with_retry(db, f"Clear booking {booking_id}",
                                lambda: self.assignments.clear(db, booking_id))

    def list_assignments(self, db: Session, booking_id: int) -> list[models.ResourceAssignment]:
        return self.assignments.list_for_booking(db, booking_id)

    def advance_assignment(self, db: Session, booking_id: int, assignment_id: int,
                           status: models.AssignmentStatus) -> models.ResourceAssignment:
        return self._with_retry(db, f"Advance assignment {assignment_id}",
                                lambda: self.assignments.advance(db, booking_id, assignment_id, status))

    # --- Queries ---

    def get_booking(self, db: Session, booking_id: int) -> models.Booking:
        return self.lifecycle.get(db, booking_id)

    def list_bookings(self, db: Session, resource_id: Optional[int] = None,
                      status: Optional[models.BookingStatus] = None, booked_by: Optional[int] = None,
                      start_from: Optional[datetime.datetime] = None,
                      end_before: Optional[datetime.datetime] = None, skip: int = 0, limit: int = 100):
        return crud.list_bookings(db, self.resource_kind, resource_id=resource_id, status=status,
                                  booked_by=booked_by, start_from=start_from, end_before=end_before,
                                  skip=skip, limit=limit)

    def list_for_user(self, db: Session, user_id: int, skip: int = 0, limit: int = 100):
        return crud.list_bookings(db, self.resource_kind, booked_by=user_id, skip=skip, limit=limit)

    def list_pending(self, db: Session):
        return crud.list_bookings(db, self.resource_kind, status=models.BookingStatus.PENDING)

    def list_upcoming(self, db: Session, now: Optional[datetime.datetime] = None):
        now = now or models.utcnow()
        return crud.list_upcoming_bookings(db, self.resource_kind, now)

    def history(self, db: Session, booking_id: int) -> list[dict]:
        self.lifecycle.get(db, booking_id)
        return crud.get_booking_history(db, booking_id)


def build_facades(settings: Optional[Settings] = None) -> dict:
    """
    One façade per resource kind, sharing a single lock manager.
    Built once per process.
    """
    settings = settings or default_settings
    lock_manager = ResourceLockManager(timeout_seconds=settings.LOCK_TIMEOUT_SECONDS)
    return {
        kind: AllocationFacade(kind, lock_manager, settings)
        for kind in models.ResourceKind
    }
