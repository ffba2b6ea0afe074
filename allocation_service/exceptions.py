"""
Errors raised by the allocation engine.

Every error is surfaced to the caller unchanged. The only one the façade
retries on its own is ConcurrencyConflictError.
"""


class AllocationError(Exception):
    """Base class for all allocation errors."""


class InvalidIntervalError(AllocationError, ValueError):
    pass


class UnknownResourceError(AllocationError):
    def __init__(self, resource_kind, resource_id):
        self.resource_kind = resource_kind
        self.resource_id = resource_id
        super().__init__(f"Unknown or inactive {resource_kind.value.lower()} resource: {resource_id}")


class SchedulingConflictError(AllocationError):
    """
    Raised when the requested interval overlaps a live booking.

    Carries the conflicting booking so the caller can suggest another slot.
    """

    def __init__(self, resource_kind, resource_id, conflicting_booking_id, conflicting_interval):
        self.resource_kind = resource_kind
        self.resource_id = resource_id
        self.conflicting_booking_id = conflicting_booking_id
        self.conflicting_interval = conflicting_interval
        super().__init__(
            f"Scheduling conflict: {resource_kind.value.lower()} {resource_id} is already booked "
            f"from {conflicting_interval.start.isoformat()} to {conflicting_interval.end.isoformat()} "
            f"(booking {conflicting_booking_id})"
        )


class InvalidTransitionError(AllocationError):
    def __init__(self, booking_id, current_status, attempted, entity="booking"):
        self.booking_id = booking_id
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity} {booking_id}: current status is {current_status.value}"
        )


class NotFoundError(AllocationError):
    def __init__(self, entity, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found with id: {entity_id}")


class NotApprovedError(AllocationError):
    def __init__(self, booking_id, current_status):
        self.booking_id = booking_id
        self.current_status = current_status
        super().__init__(
            f"Can only assign resources to approved bookings "
            f"(booking {booking_id} is {current_status.value})"
        )


class ConcurrencyConflictError(AllocationError):
    """Another request holds the resource. Safe to retry."""

    retryable = True

    def __init__(self, resource_kind, resource_id):
        self.resource_kind = resource_kind
        self.resource_id = resource_id
        super().__init__(
            f"{resource_kind.value.capitalize()} {resource_id} is being modified by another request, please retry"
        )


class CapacityExceededError(AllocationError):
    def __init__(self, resource_kind, resource_id, capacity, party_size):
        self.resource_kind = resource_kind
        self.resource_id = resource_id
        self.capacity = capacity
        self.party_size = party_size
        if party_size is None or party_size < 1:
            message = f"A party size of at least 1 is required to book a {resource_kind.value.lower()}"
        else:
            message = (
                f"{resource_kind.value.capitalize()} {resource_id} seats {capacity}, "
                f"cannot take a party of {party_size}"
            )
        super().__init__(message)


class NoResourceAvailableError(AllocationError):
    def __init__(self, resource_kind, party_size):
        self.resource_kind = resource_kind
        self.party_size = party_size
        wanted = f"for {party_size} guests" if party_size else "for the requested time"
        super().__init__(f"No suitable {resource_kind.value.lower()} available {wanted}")


class InvalidAssignmentError(AllocationError, ValueError):
    pass
