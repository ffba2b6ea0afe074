import datetime
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session
from typing import List, Annotated, Optional
from jose import jwt, JWTError
from fastapi.security import APIKeyHeader

from .. import schemas, models
from ..database import get_db
from ..config import settings
from ..exceptions import (
    AllocationError,
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidAssignmentError,
    InvalidIntervalError,
    InvalidTransitionError,
    NoResourceAvailableError,
    NotApprovedError,
    NotFoundError,
    SchedulingConflictError,
    UnknownResourceError,
)
from ..facade import AllocationFacade
from ..intervals import Interval

from fastapi_limiter.depends import RateLimiter


api_key_header = APIKeyHeader(name="Authorization")


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return request.client.host  # Fallback to IP

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return request.client.host


def rate_limit(times: int, minutes: int):
    """
    RateLimiter dependency, or a no-op when rate limiting is switched off.
    """
    if not settings.RATE_LIMIT_ENABLED:
        async def no_limit():
            return None
        return no_limit
    return RateLimiter(times=times, minutes=minutes, identifier=get_key_by_user_id_or_ip)


async def get_current_user_id_from_token(
        token: Annotated[str, Depends(api_key_header)]
):
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header to get the user ID.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            raise credentials_exception
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = int(payload.get("sub"))
        if user_id is None:
            raise credentials_exception
        return user_id
    except (JWTError, ValueError, AttributeError, TypeError):
        raise credentials_exception


def to_http_exception(exc: AllocationError) -> HTTPException:
    """
    Maps allocation errors onto HTTP responses. Conflict and transition
    errors carry enough detail for the UI to suggest an alternative.
    """
    if isinstance(exc, SchedulingConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "conflicting_booking_id": exc.conflicting_booking_id,
                "conflicting_start_time": exc.conflicting_interval.start.isoformat(),
                "conflicting_end_time": exc.conflicting_interval.end.isoformat(),
            },
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "current_status": exc.current_status.value,
                "attempted": exc.attempted,
            },
        )
    if isinstance(exc, (NotApprovedError, NoResourceAvailableError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (NotFoundError, UnknownResourceError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidIntervalError, CapacityExceededError, InvalidAssignmentError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, ConcurrencyConflictError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
            headers={"Retry-After": "1"},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _call(operation, *args, **kwargs):
    try:
        return operation(*args, **kwargs)
    except AllocationError as e:
        raise to_http_exception(e) from e


def _interval(start_time: datetime.datetime, end_time: datetime.datetime) -> Interval:
    return _call(Interval, start_time, end_time)


def facade_dependency(kind: models.ResourceKind):
    def get_facade(request: Request) -> AllocationFacade:
        facades = getattr(request.app.state, "facades", None)
        if facades is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Allocation service is not initialized",
            )
        return facades[kind]
    return get_facade


def build_booking_router(kind: models.ResourceKind, prefix: str, tags: list) -> APIRouter:
    """
    The same set of booking endpoints, bound to one resource kind.
    """
    router = APIRouter(prefix=prefix, tags=tags)
    get_facade = facade_dependency(kind)

    @router.post("/", response_model=schemas.BookingRead, status_code=status.HTTP_201_CREATED)
    def create_booking(
            booking: schemas.BookingCreate,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
            limit: None = Depends(rate_limit(times=30, minutes=1))
    ):
        """
        Create a new PENDING booking for the authenticated user.
        """
        interval = _interval(booking.start_time, booking.end_time)
        return _call(
            facade.create, db, booking.resource_id, interval,
            party_size=booking.party_size, booked_by=user_id, notes=booking.notes,
        )

    @router.get("/", response_model=List[schemas.BookingRead])
    def read_bookings(
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
            resource_id: Optional[int] = None,
            booking_status: Optional[models.BookingStatus] = None,
            booked_by: Optional[int] = None,
            start_from: Optional[datetime.datetime] = None,
            end_before: Optional[datetime.datetime] = None,
            skip: int = 0,
            limit: int = 100,
    ):
        """
        All bookings of this kind, optionally narrowed to one resource, status,
        user or date window.
        """
        return facade.list_bookings(
            db, resource_id=resource_id, status=booking_status, booked_by=booked_by,
            start_from=start_from, end_before=end_before, skip=skip, limit=limit,
        )

    @router.get("/mine", response_model=List[schemas.BookingRead])
    def read_user_bookings(
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
            skip: int = 0,
            limit: int = 100,
            limit2: None = Depends(rate_limit(times=5, minutes=1))
    ):
        """
        Get all bookings for the authenticated user.
        """
        return facade.list_for_user(db, user_id, skip=skip, limit=limit)

    @router.get("/availability", response_model=schemas.AvailabilityRead)
    def check_availability(
            resource_id: int,
            start_time: datetime.datetime,
            end_time: datetime.datetime,
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
            limit: None = Depends(rate_limit(times=60, minutes=1))
    ):
        interval = _interval(start_time, end_time)
        available = _call(facade.check_availability, db, resource_id, interval)
        return schemas.AvailabilityRead(
            resource_kind=kind,
            resource_id=resource_id,
            start_time=interval.start,
            end_time=interval.end,
            available=available,
        )

    @router.get("/slots", response_model=List[schemas.SlotRead])
    def read_available_slots(
            resource_id: int,
            day: datetime.date,
            slot_minutes: int = 60,
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
            limit: None = Depends(rate_limit(times=60, minutes=1))
    ):
        """
        Free slots on one resource for a day, to offer alternatives after a conflict.
        """
        slots = _call(facade.available_slots, db, resource_id, day, datetime.timedelta(minutes=slot_minutes))
        return [schemas.SlotRead(start_time=s.start, end_time=s.end) for s in slots]

    @router.get("/pending", response_model=List[schemas.BookingRead])
    def read_pending(
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        return facade.list_pending(db)

    @router.get("/upcoming", response_model=List[schemas.BookingRead])
    def read_upcoming(
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        return facade.list_upcoming(db)

    @router.get("/{booking_id}", response_model=schemas.BookingRead)
    def read_booking(
            booking_id: int,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        return _call(facade.get_booking, db, booking_id)

    @router.get("/{booking_id}/history")
    def read_booking_history(
            booking_id: int,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        return _call(facade.history, db, booking_id)

    def _register_transition(path: str, method_name: str):
        @router.post(f"/{{booking_id}}/{path}", response_model=schemas.BookingRead,
                     name=f"{method_name}_{kind.value.lower()}_booking")
        def transition(
                booking_id: int,
                user_id: Annotated[int, Depends(get_current_user_id_from_token)],
                db: Session = Depends(get_db),
                facade: AllocationFacade = Depends(get_facade),
        ):
            return _call(getattr(facade, method_name), db, booking_id, changed_by=user_id)

    _register_transition("approve", "approve")
    _register_transition("reject", "reject")
    _register_transition("cancel", "cancel")
    _register_transition("complete", "complete")
    _register_transition("no-show", "mark_no_show")

    @router.put("/{booking_id}/interval", response_model=schemas.BookingRead)
    def reschedule_booking(
            booking_id: int,
            request: schemas.RescheduleRequest,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        interval = _interval(request.start_time, request.end_time)
        return _call(facade.reschedule, db, booking_id, interval, changed_by=user_id)

    @router.delete("/{booking_id}", response_model=None)
    def delete_booking(
            booking_id: int,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        """
        Pending bookings are deleted (204). Anything else is cancelled
        instead and the cancelled booking is returned.
        """
        booking = _call(facade.delete, db, booking_id, changed_by=user_id)
        if booking is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return schemas.BookingRead.model_validate(booking)

    # --- Assignments ---

    @router.post("/{booking_id}/assignments", response_model=schemas.AssignmentRead,
                 status_code=status.HTTP_201_CREATED)
    def create_assignment(
            booking_id: int,
            assignment: schemas.AssignmentCreate,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        return _call(
            facade.assign, db, booking_id, assignment.assignment_kind,
            assignment.detail, assignment.quantity,
        )

    @router.get("/{booking_id}/assignments", response_model=List[schemas.AssignmentRead])
    def read_assignments(
            booking_id: int,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        return _call(facade.list_assignments, db, booking_id)

    @router.put("/{booking_id}/assignments/{assignment_id}/status", response_model=schemas.AssignmentRead)
    def update_assignment_status(
            booking_id: int,
            assignment_id: int,
            update: schemas.AssignmentStatusUpdate,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        return _call(facade.advance_assignment, db, booking_id, assignment_id, update.status)

    @router.delete("/{booking_id}/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_assignment(
            booking_id: int,
            assignment_id: int,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        _call(facade.unassign, db, booking_id, assignment_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.delete("/{booking_id}/assignments", response_model=schemas.ClearedRead)
    def clear_assignments(
            booking_id: int,
            user_id: Annotated[int, Depends(get_current_user_id_from_token)],
            db: Session = Depends(get_db),
            facade: AllocationFacade = Depends(get_facade),
    ):
        cancelled = _call(facade.clear, db, booking_id)
        return schemas.ClearedRead(booking_id=booking_id, cancelled=cancelled)

    return router


table_router = build_booking_router(models.ResourceKind.TABLE, "/tables/reservations", ["Table Reservations"])
hall_router = build_booking_router(models.ResourceKind.HALL, "/halls/events", ["Hall Events"])
staff_router = build_booking_router(models.ResourceKind.STAFF, "/staff/shifts", ["Staff Shifts"])
