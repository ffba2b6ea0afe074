import datetime
import threading
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from allocation_service import crud, models
from allocation_service.config import settings
from allocation_service.database import Base
from allocation_service.exceptions import (
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidIntervalError,
    NoResourceAvailableError,
    NotFoundError,
    SchedulingConflictError,
    UnknownResourceError,
)
from allocation_service.facade import AllocationFacade, build_facades
from allocation_service.locking import ResourceLockManager
from allocation_service.models import BookingStatus, ResourceKind

from conftest import DAY, at, slot


# --- Resource and field validation ---

def test_unknown_resource_is_refused(db_session, table_facade):
    with pytest.raises(UnknownResourceError):
        table_facade.create(db_session, 404, slot(10, 11), party_size=2)


def test_inactive_resource_is_refused(db_session, table_facade):
    retired = crud.create_resource(db_session, ResourceKind.TABLE, "Patio 3", capacity=4, is_active=False)
    with pytest.raises(UnknownResourceError):
        table_facade.create(db_session, retired.id, slot(10, 11), party_size=2)


def test_resource_of_another_kind_is_refused(db_session, table_facade, hall):
    with pytest.raises(UnknownResourceError):
        table_facade.create(db_session, hall.id, slot(10, 11), party_size=2)


def test_party_larger_than_table_is_refused(db_session, table_facade, table):
    with pytest.raises(CapacityExceededError) as exc_info:
        table_facade.create(db_session, table.id, slot(10, 11), party_size=6)
    assert exc_info.value.capacity == 4


def test_table_booking_needs_a_party_size(db_session, table_facade, table):
    with pytest.raises(CapacityExceededError):
        table_facade.create(db_session, table.id, slot(10, 11))


def test_staff_shift_ignores_party_size(db_session, staff_facade, waiter):
    shift = staff_facade.create(db_session, waiter.id, slot(9, 17), party_size=40)
    assert shift.resource_kind == ResourceKind.STAFF
    assert shift.party_size is None


def test_hall_event_within_capacity(db_session, hall_facade, hall):
    event = hall_facade.create(db_session, hall.id, slot(18, 23), party_size=150, notes="Wedding")
    assert event.resource_kind == ResourceKind.HALL
    assert event.notes == "Wedding"


# --- Availability and auto-assignment ---

def test_check_availability(db_session, table_facade, table):
    booking = table_facade.create(db_session, table.id, slot(18, 20), party_size=2)

    assert table_facade.check_availability(db_session, table.id, slot(19, 21)) is False
    assert table_facade.check_availability(db_session, table.id, slot(20, 22)) is True

    table_facade.cancel(db_session, booking.id)
    assert table_facade.check_availability(db_session, table.id, slot(19, 21)) is True


def test_check_availability_of_unknown_resource(db_session, table_facade):
    with pytest.raises(UnknownResourceError):
        table_facade.check_availability(db_session, 77, slot(10, 11))


def test_auto_assign_picks_smallest_free_table(db_session, table_facade):
    big = crud.create_resource(db_session, ResourceKind.TABLE, "Window 8", capacity=8)
    small = crud.create_resource(db_session, ResourceKind.TABLE, "Corner 2", capacity=2)
    medium = crud.create_resource(db_session, ResourceKind.TABLE, "Centre 4", capacity=4)

    first = table_facade.create(db_session, None, slot(19, 21), party_size=2)
    second = table_facade.create(db_session, None, slot(19, 21), party_size=2)
    third = table_facade.create(db_session, None, slot(19, 21), party_size=5)

    assert first.resource_id == small.id
    assert second.resource_id == medium.id
    assert third.resource_id == big.id


def test_auto_assign_with_nothing_free(db_session, table_facade, table):
    table_facade.create(db_session, table.id, slot(19, 21), party_size=2)

    with pytest.raises(NoResourceAvailableError):
        table_facade.create(db_session, None, slot(20, 22), party_size=2)


def test_auto_assign_moves_on_when_the_pick_is_taken(db_session, table_facade, mocker):
    small = crud.create_resource(db_session, ResourceKind.TABLE, "T1", capacity=2)
    medium = crud.create_resource(db_session, ResourceKind.TABLE, "T2", capacity=4)
    real_find = table_facade.find_available_resource
    raced = []

    def find_then_lose_it(db, interval, party_size=None, exclude_resource_ids=()):
        chosen = real_find(db, interval, party_size, exclude_resource_ids=exclude_resource_ids)
        if chosen is not None and chosen.id == small.id and not raced:
            # Another request books the same table right after it was picked
            raced.append(table_facade.lifecycle.create(db, ResourceKind.TABLE, small.id, interval, party_size=2))
        return chosen

    mocker.patch.object(table_facade, "find_available_resource", side_effect=find_then_lose_it)

    booking = table_facade.create(db_session, None, slot(10, 12), party_size=2)

    assert booking.resource_id == medium.id
    assert raced[0].resource_id == small.id


def test_auto_assign_gives_up_when_every_pick_is_taken(db_session, table_facade, table, mocker):
    real_find = table_facade.find_available_resource

    def find_then_lose_it(db, interval, party_size=None, exclude_resource_ids=()):
        chosen = real_find(db, interval, party_size, exclude_resource_ids=exclude_resource_ids)
        if chosen is not None:
            table_facade.lifecycle.create(db, ResourceKind.TABLE, chosen.id, interval, party_size=2)
        return chosen

    mocker.patch.object(table_facade, "find_available_resource", side_effect=find_then_lose_it)

    with pytest.raises(NoResourceAvailableError):
        table_facade.create(db_session, None, slot(10, 12), party_size=2)


# --- Queries ---

def test_pending_and_upcoming_lists(db_session, table_facade, table):
    pending = table_facade.create(db_session, table.id, slot(10, 11), party_size=2)
    approved = table_facade.create(db_session, table.id, slot(12, 13), party_size=2)
    table_facade.approve(db_session, approved.id)

    assert [b.id for b in table_facade.list_pending(db_session)] == [pending.id]
    assert [b.id for b in table_facade.list_upcoming(db_session, now=at(0))] == [approved.id]
    assert table_facade.list_upcoming(db_session, now=at(12, 30)) == []
    assert [b.id for b in table_facade.list_bookings(db_session, status=BookingStatus.APPROVED)] == [approved.id]


def test_list_bookings_by_user_and_window(db_session, table_facade, table):
    morning = table_facade.create(db_session, table.id, slot(9, 10), party_size=2, booked_by=1)
    noon = table_facade.create(db_session, table.id, slot(12, 13), party_size=2, booked_by=2)
    evening = table_facade.create(db_session, table.id, slot(19, 21), party_size=2, booked_by=1)

    assert [b.id for b in table_facade.list_for_user(db_session, 1)] == [morning.id, evening.id]
    assert [b.id for b in table_facade.list_bookings(db_session, booked_by=2)] == [noon.id]
    assert [b.id for b in table_facade.list_bookings(db_session, start_from=at(11))] == [noon.id, evening.id]
    assert [b.id for b in table_facade.list_bookings(db_session, end_before=at(13))] == [morning.id, noon.id]
    # A booking that runs past the window is left out
    assert table_facade.list_bookings(db_session, start_from=at(18), end_before=at(20)) == []


def test_available_slots_skip_booked_hours(db_session, table_facade, table):
    table_facade.create(db_session, table.id, slot(12, 14), party_size=2)
    cancelled = table_facade.create(db_session, table.id, slot(16, 17), party_size=2)
    table_facade.cancel(db_session, cancelled.id)

    slots = table_facade.available_slots(db_session, table.id, DAY.date())

    starts = [s.start.hour for s in slots]
    assert starts == [9, 10, 11, 14, 15, 16, 17, 18, 19, 20, 21]
    assert all(s.duration == datetime.timedelta(hours=1) for s in slots)


def test_available_slots_with_custom_length(db_session, table_facade, table):
    table_facade.create(db_session, table.id, slot(10, 11), party_size=2)
    facade = AllocationFacade(
        ResourceKind.TABLE, table_facade.lifecycle.lock_manager,
        settings.model_copy(update={"SLOT_DAY_START_HOUR": 9, "SLOT_DAY_END_HOUR": 12}),
    )

    slots = facade.available_slots(db_session, table.id, DAY.date(), datetime.timedelta(minutes=90))

    # 9:00-10:30 overlaps the booking, 10:30-12:00 does too
    assert slots == []
    assert facade.available_slots(db_session, table.id, DAY.date(), datetime.timedelta(minutes=30))[0].start == at(9)


def test_available_slots_validation(db_session, table_facade, table):
    with pytest.raises(InvalidIntervalError):
        table_facade.available_slots(db_session, table.id, DAY.date(), datetime.timedelta(0))
    with pytest.raises(UnknownResourceError):
        table_facade.available_slots(db_session, 404, DAY.date())


def test_facades_only_see_their_own_kind(db_session, table_facade, hall_facade, table):
    booking = table_facade.create(db_session, table.id, slot(10, 11), party_size=2)
    with pytest.raises(NotFoundError):
        hall_facade.get_booking(db_session, booking.id)
    assert hall_facade.list_bookings(db_session) == []


def test_build_facades_shares_one_lock_manager():
    facades = build_facades(settings)
    assert set(facades) == set(ResourceKind)
    managers = {id(f.lifecycle.lock_manager) for f in facades.values()}
    assert len(managers) == 1


# --- Retry on contention ---

def test_contention_is_retried_then_succeeds(db_session, table_facade, table, mocker):
    sleep = mocker.patch("allocation_service.facade.time.sleep")
    real_create = table_facade.lifecycle.create
    calls = {"count": 0}

    def flaky_create(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConcurrencyConflictError(ResourceKind.TABLE, table.id)
        return real_create(*args, **kwargs)

    mocker.patch.object(table_facade.lifecycle, "create", side_effect=flaky_create)

    booking = table_facade.create(db_session, table.id, slot(10, 11), party_size=2)

    assert booking.status == BookingStatus.PENDING
    assert calls["count"] == 2
    sleep.assert_called_once()


def test_contention_surfaces_after_max_attempts(db_session, table, mocker):
    sleep = mocker.patch("allocation_service.facade.time.sleep")
    facade = AllocationFacade(
        ResourceKind.TABLE, ResourceLockManager(timeout_seconds=1),
        settings.model_copy(update={"ALLOCATION_MAX_ATTEMPTS": 3, "ALLOCATION_RETRY_BACKOFF_SECONDS": 0.1}),
    )
    approve = mocker.patch.object(
        facade.lifecycle, "approve",
        side_effect=ConcurrencyConflictError(ResourceKind.TABLE, table.id),
    )

    with pytest.raises(ConcurrencyConflictError):
        facade.approve(db_session, 1)

    assert approve.call_count == 3
    # Exponential backoff between attempts
    assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2]


def test_business_errors_are_not_retried(db_session, table_facade, table, mocker):
    table_facade.create(db_session, table.id, slot(10, 12), party_size=2)
    spy = mocker.spy(table_facade.lifecycle, "create")

    with pytest.raises(SchedulingConflictError):
        table_facade.create(db_session, table.id, slot(11, 13), party_size=2)
    assert spy.call_count == 1


# --- Concurrent requests ---

@pytest.fixture
def file_session_factory(tmp_path):
    """Separate connections per thread need a file-backed database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _race(session_factory, facade, resource_id, intervals):
    barrier = threading.Barrier(len(intervals))
    results = []
    results_lock = threading.Lock()

    def worker(interval):
        db = session_factory()
        try:
            barrier.wait(timeout=5)
            facade.create(db, resource_id, interval, party_size=2)
            outcome = "ok"
        except SchedulingConflictError:
            outcome = "conflict"
        finally:
            db.close()
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in intervals]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return sorted(results)


def test_concurrent_overlapping_creates_have_one_winner(file_session_factory):
    with file_session_factory() as db:
        table_id = crud.create_resource(db, ResourceKind.TABLE, "Race table", capacity=4).id
    facade = AllocationFacade(ResourceKind.TABLE, ResourceLockManager(timeout_seconds=5), settings)

    results = _race(file_session_factory, facade, table_id, [slot(18, 20), slot(19, 21)])

    assert results == ["conflict", "ok"]
    with file_session_factory() as db:
        assert len(crud.fetch_live_bookings(db, ResourceKind.TABLE, table_id)) == 1


def test_concurrent_disjoint_creates_both_succeed(file_session_factory):
    with file_session_factory() as db:
        table_id = crud.create_resource(db, ResourceKind.TABLE, "Race table", capacity=4).id
    facade = AllocationFacade(ResourceKind.TABLE, ResourceLockManager(timeout_seconds=5), settings)

    results = _race(file_session_factory, facade, table_id, [slot(18, 20), slot(20, 22)])

    assert results == ["ok", "ok"]
