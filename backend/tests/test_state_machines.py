"""
Queue entry and purchase session state machines, and the guarded
compare-and-swap that persists their transitions.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from ticketqueue.core.exceptions import InvalidTransition, MaxExtensionsReached, SessionExpired, SessionNotActive
from ticketqueue.db.base import utcnow
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import QueueEntry, format_wait
from ticketqueue.services.state import extend_session, transition_entry, transition_session


def make_entry(status="waiting", **overrides) -> QueueEntry:
    now = utcnow()
    values = dict(
        id=1,
        event_id=1,
        user_id=1,
        session_id="abc",
        position=1,
        is_priority=False,
        status=status,
        entered_at=now - timedelta(minutes=5),
    )
    values.update(overrides)
    return QueueEntry(**values)


def make_session(status="active", **overrides) -> PurchaseSession:
    now = utcnow()
    values = dict(
        id=1,
        queue_entry_id=1,
        user_id=1,
        event_id=1,
        session_id="abc",
        status=status,
        started_at=now,
        expires_at=now + timedelta(minutes=8),
        extension_count=0,
        max_extensions=2,
        selected_tickets=[],
    )
    values.update(overrides)
    return PurchaseSession(**values)


# --- Queue entry planning -----------------------------------------------------

def test_start_processing_sets_window_and_wait_time():
    entry = make_entry()
    now = utcnow()
    values = entry.plan_transition("processing", now, window_minutes=8)

    assert values["status"] == "processing"
    assert values["processing_started_at"] == now
    assert values["processing_expires_at"] == now + timedelta(minutes=8)
    assert values["total_wait_time"] >= 300


def test_start_processing_only_from_waiting():
    entry = make_entry(status="processing")
    with pytest.raises(InvalidTransition):
        entry.plan_transition("processing")


def test_complete_records_processing_time():
    now = utcnow()
    entry = make_entry(status="processing", processing_started_at=now - timedelta(seconds=90))
    values = entry.plan_transition("completed", now)

    assert values["completed_at"] == now
    assert values["processing_time"] == 90


def test_complete_tolerated_from_waiting():
    values = make_entry(status="waiting").plan_transition("completed")
    assert values["status"] == "completed"
    assert "processing_time" not in values


@pytest.mark.parametrize("terminal", ["completed", "abandoned", "expired", "cancelled", "left"])
@pytest.mark.parametrize("target", ["completed", "abandoned", "expired", "cancelled"])
def test_terminal_entries_never_move(terminal, target):
    """Re-invoking a terminal operation is a silent no-op."""
    assert make_entry(status=terminal).plan_transition(target) is None


def test_terminal_entry_cannot_be_promoted():
    with pytest.raises(InvalidTransition):
        make_entry(status="expired").plan_transition("processing")


def test_unknown_target_rejected():
    with pytest.raises(InvalidTransition):
        make_entry().plan_transition("waiting_room")


def test_slot_holding_and_grace_queries():
    now = utcnow()
    assert make_entry(status="processing").holds_slot()
    assert make_entry(status="active").holds_slot()
    assert not make_entry(status="waiting").holds_slot()

    expired = make_entry(status="expired", processing_expires_at=now + timedelta(minutes=2))
    assert expired.in_grace_period(now)
    assert not expired.in_grace_period(now + timedelta(minutes=3))


def test_remaining_processing_time():
    now = utcnow()
    entry = make_entry(status="processing", processing_expires_at=now + timedelta(seconds=120))
    assert entry.remaining_processing_time(now) == 120
    assert make_entry(status="waiting").remaining_processing_time(now) == 0


def test_format_wait():
    assert format_wait(None) is None
    assert format_wait(45) == "45s"
    assert format_wait(125) == "2m 5s"


# --- Purchase session planning -------------------------------------------------

def test_session_is_expired_is_pure():
    now = utcnow()
    session = make_session(expires_at=now - timedelta(seconds=1))
    assert session.is_expired(now)
    assert session.status == "active"


def test_session_terminal_transition_is_noop():
    assert make_session(status="completed").plan_transition("expired") is None


def test_extension_moves_deadline_forward():
    session = make_session()
    values = session.plan_extension(2)
    assert values["expires_at"] == session.expires_at + timedelta(minutes=2)
    assert values["extension_count"] == 1


def test_extension_cap_and_inactive_are_distinct_errors():
    with pytest.raises(MaxExtensionsReached):
        make_session(extension_count=2).plan_extension(2)
    with pytest.raises(SessionNotActive):
        make_session(status="abandoned").plan_extension(2)


def test_extending_expired_session_is_gone():
    with pytest.raises(SessionExpired):
        make_session(status="expired").plan_extension(2)
    with pytest.raises(SessionExpired):
        make_session(expires_at=utcnow() - timedelta(seconds=1)).plan_extension(2)


def test_remaining_time_string():
    now = utcnow()
    session = make_session(expires_at=now + timedelta(seconds=125))
    assert session.remaining_time_string(now) == "2:05"
    assert make_session(status="expired").remaining_time(now) == 0


# --- Persisted transitions ----------------------------------------------------

@pytest.mark.asyncio
async def test_transition_entry_persists(db_session, test_event, test_user):
    entry = make_entry(id=None, event_id=test_event.id, user_id=test_user.id)
    db_session.add(entry)
    await db_session.commit()

    assert await transition_entry(db_session, entry, "processing")
    await db_session.commit()

    fresh = await db_session.get(QueueEntry, entry.id, populate_existing=True)
    assert fresh.status == "processing"
    assert fresh.processing_expires_at is not None


@pytest.mark.asyncio
async def test_lost_race_is_noop(db_session, test_event, test_user):
    """A writer that read a stale status loses the compare-and-swap quietly."""
    entry = make_entry(id=None, event_id=test_event.id, user_id=test_user.id, status="processing")
    db_session.add(entry)
    await db_session.commit()

    # Another path completes the entry behind this object's back
    await db_session.execute(
        update(QueueEntry).where(QueueEntry.id == entry.id).values(status="completed")
        .execution_options(synchronize_session=False)
    )

    assert await transition_entry(db_session, entry, "expired") is False
    assert entry.status == "completed"


@pytest.mark.asyncio
async def test_session_transition_runs_once(db_session, test_event, test_user):
    session = make_session(id=None, queue_entry_id=None, event_id=test_event.id, user_id=test_user.id)
    db_session.add(session)
    await db_session.commit()

    assert await transition_session(db_session, session, "expired", "reconciler")
    assert await transition_session(db_session, session, "expired", "lazy") is False
    assert await transition_session(db_session, session, "completed", "user") is False
    assert session.status == "expired"


@pytest.mark.asyncio
async def test_extend_session_guarded(db_session, test_event, test_user):
    session = make_session(id=None, queue_entry_id=None, event_id=test_event.id, user_id=test_user.id)
    db_session.add(session)
    await db_session.commit()
    original = session.expires_at

    await extend_session(db_session, session, 2)
    await extend_session(db_session, session, 2)
    assert session.extension_count == 2
    assert session.expires_at == original + timedelta(minutes=4)

    with pytest.raises(MaxExtensionsReached):
        await extend_session(db_session, session, 2)
    assert session.expires_at == original + timedelta(minutes=4)


@pytest.mark.asyncio
async def test_extend_losing_to_expiry_reports_gone(db_session, test_event, test_user):
    session = make_session(id=None, queue_entry_id=None, event_id=test_event.id, user_id=test_user.id)
    db_session.add(session)
    await db_session.commit()
    original = session.expires_at

    # The reconciler expires the row after this object was read
    await db_session.execute(
        update(PurchaseSession).where(PurchaseSession.id == session.id).values(status="expired")
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(SessionExpired):
        await extend_session(db_session, session, 2)
    assert session.status == "expired"
    assert session.expires_at == original
    assert session.extension_count == 0
