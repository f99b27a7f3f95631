import threading
import time as wall_time
from datetime import date, datetime, time, timedelta

import pytest

from therapy_booking.core.errors import TransientStorageFailure, ValidationFailed
from therapy_booking.models.booking import Booking
from therapy_booking.models.therapist import TherapistBlockedTime
from therapy_booking.services.booking_controller import BookingStep

SLOT_DATE = date(2026, 3, 3)
NINE = datetime(2026, 3, 3, 9, 0)
TEN = datetime(2026, 3, 3, 10, 0)

INTAKE = {
    'full_name': 'Sam Lee',
    'age': 29,
    'preferred_language': 'English',
    'reason_for_therapy': 'Stress',
    'currently_unsafe': False,
}


@pytest.fixture
def therapist(seed_therapist):
    return seed_therapist(session_minutes=30, windows=((time(9, 0), time(11, 0)),))


def _at_time_selection(controller, service_type: str = 'crisis'):
    controller.select_service(service_type)
    controller.select_therapist('therapist-1')
    controller.select_date(SLOT_DATE)
    return controller


def _codes(controller) -> list[str]:
    return [notice.code for notice in controller.pop_notices()]


def _block(session_factory, start: datetime, end: datetime) -> None:
    db = session_factory()
    try:
        db.add(TherapistBlockedTime(therapist_id='therapist-1', start_datetime=start, end_datetime=end))
        db.commit()
    finally:
        db.close()


def test_select_service_requires_known_service(make_controller) -> None:
    controller = make_controller()

    with pytest.raises(ValidationFailed):
        controller.select_service('massage')

    assert controller.step == BookingStep.SELECTING_SERVICE


def test_flow_requires_signed_in_user(make_controller) -> None:
    controller = make_controller(user_id=None)

    with pytest.raises(ValidationFailed) as exception_info:
        controller.select_service('crisis')

    assert exception_info.value.errors == ['Please log in to book an appointment.']


def test_questionnaire_is_asked_once_per_service(make_controller, therapist) -> None:
    controller = make_controller()

    assert controller.select_service('individual') == BookingStep.ANSWERING_QUESTIONNAIRE
    with pytest.raises(ValidationFailed):
        controller.select_therapist('therapist-1')
    assert controller.submit_questionnaire(INTAKE) == BookingStep.SELECTING_THERAPIST

    returning = make_controller()
    assert returning.select_service('individual') == BookingStep.SELECTING_THERAPIST


def test_questionnaire_is_skipped_when_not_required(make_controller) -> None:
    controller = make_controller()

    assert controller.select_service('consultation') == BookingStep.SELECTING_THERAPIST


def test_incomplete_questionnaire_keeps_client_on_step(make_controller) -> None:
    controller = make_controller()
    controller.select_service('individual')

    with pytest.raises(ValidationFailed):
        controller.submit_questionnaire({'full_name': 'Sam Lee'})

    assert controller.step == BookingStep.ANSWERING_QUESTIONNAIRE


def test_select_date_resolves_slots_and_subscribes(make_controller, therapist, notifier) -> None:
    controller = _at_time_selection(make_controller())

    assert controller.step == BookingStep.SELECTING_TIME
    assert [slot.start for slot in controller.slots] == [NINE, NINE + timedelta(minutes=30), TEN, TEN + timedelta(minutes=30)]
    assert notifier.subscriber_count('therapist-1', SLOT_DATE) == 1
    assert controller.available_dates()[0] == SLOT_DATE


def test_select_time_holds_the_slot(make_controller, therapist, lock_manager) -> None:
    controller = _at_time_selection(make_controller())

    assert controller.select_time(TEN)

    assert controller.selected_slot == TEN
    assert lock_manager.get_lock('therapist-1', TEN).locked_by == 'client-a'
    held = next(slot for slot in controller.slots if slot.start == TEN)
    assert held.available and held.held_by_requester


def test_changing_selection_releases_previous_lock(make_controller, therapist, lock_manager) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)

    assert controller.select_time(NINE)

    assert lock_manager.get_lock('therapist-1', TEN) is None
    assert lock_manager.get_lock('therapist-1', NINE).locked_by == 'client-a'


def test_contended_selection_is_reset_with_notice(make_controller, therapist) -> None:
    first = _at_time_selection(make_controller('client-a'))
    second = _at_time_selection(make_controller('client-b'))
    first.select_time(TEN)

    assert not second.select_time(TEN)

    assert second.selected_slot is None
    assert second.held is None
    assert second.step == BookingStep.SELECTING_TIME
    assert _codes(second) == ['SLOT_CONTENDED']
    assert not next(slot for slot in second.slots if slot.start == TEN).available


def test_select_time_rejects_times_not_offered(make_controller, therapist) -> None:
    controller = _at_time_selection(make_controller())

    with pytest.raises(ValidationFailed):
        controller.select_time(datetime(2026, 3, 3, 15, 0))


def test_deselect_time_releases_lock(make_controller, therapist, lock_manager) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)

    controller.deselect_time()

    assert controller.selected_slot is None
    assert lock_manager.get_lock('therapist-1', TEN) is None


def test_confirm_requires_a_held_slot(make_controller, therapist) -> None:
    controller = _at_time_selection(make_controller())

    with pytest.raises(ValidationFailed):
        controller.proceed_to_confirm()
    with pytest.raises(ValidationFailed):
        controller.confirm()


def test_confirm_completes_booking(make_controller, therapist, lock_manager, notifier) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)
    controller.proceed_to_confirm()

    booking = controller.confirm(notes='Video please')

    assert booking.status == 'confirmed'
    assert booking.scheduled_at == TEN
    assert booking.duration_minutes == 30
    assert controller.step == BookingStep.COMPLETED
    assert controller.held is None
    assert lock_manager.get_lock('therapist-1', TEN) is None
    assert notifier.subscriber_count('therapist-1', SLOT_DATE) == 0
    with pytest.raises(ValidationFailed):
        controller.select_time(NINE)


def test_confirm_after_slot_was_taken_returns_to_time_selection(make_controller, therapist, clock) -> None:
    first = _at_time_selection(make_controller('client-a'))
    second = _at_time_selection(make_controller('client-b'))
    first.select_time(TEN)
    first.proceed_to_confirm()

    clock.advance(minutes=6)
    assert second.select_time(TEN)
    second.proceed_to_confirm()
    assert second.confirm() is not None

    assert first.confirm() is None

    assert first.step == BookingStep.SELECTING_TIME
    assert first.selected_slot is None
    assert _codes(first) == ['SLOT_ALREADY_BOOKED']
    assert not next(slot for slot in first.slots if slot.start == TEN).available


def test_confirm_storage_failure_keeps_hold(make_controller, therapist, committer, monkeypatch) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)
    controller.proceed_to_confirm()

    def unavailable(request):
        raise TransientStorageFailure()

    monkeypatch.setattr(committer, 'commit_booking', unavailable)

    assert controller.confirm() is None
    assert controller.step == BookingStep.CONFIRMING
    assert controller.held.slot_datetime == TEN
    assert _codes(controller) == ['TRANSIENT_STORAGE_FAILURE']


def test_booked_event_for_selected_slot_forces_deselection(make_controller, therapist, clock) -> None:
    watcher = _at_time_selection(make_controller('client-a'))
    other = _at_time_selection(make_controller('client-b'))
    watcher.select_time(TEN)

    clock.advance(minutes=6)
    other.select_time(TEN)
    other.proceed_to_confirm()
    other.confirm()

    assert watcher.process_events() >= 2
    assert watcher.selected_slot is None
    assert _codes(watcher) == ['SLOT_TAKEN']
    assert not next(slot for slot in watcher.slots if slot.start == TEN).available


def test_other_clients_changes_refresh_slots(make_controller, therapist) -> None:
    watcher = _at_time_selection(make_controller('client-a'))
    other = _at_time_selection(make_controller('client-b'))

    other.select_time(NINE)
    watcher.process_events()

    assert not next(slot for slot in watcher.slots if slot.start == NINE).available

    other.deselect_time()
    watcher.process_events()

    assert next(slot for slot in watcher.slots if slot.start == NINE).available


def test_tick_renews_at_renewal_point(make_controller, therapist, lock_manager, clock) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)
    original_expiry = controller.held.expires_at

    clock.advance(seconds=239)
    assert not controller.tick()
    clock.advance(seconds=1)
    assert controller.tick()

    assert controller.held.expires_at == clock() + timedelta(seconds=300)
    assert controller.held.expires_at > original_expiry
    assert lock_manager.get_lock('therapist-1', TEN).expires_at == controller.held.expires_at


def test_renewal_after_takeover_forces_deselection(make_controller, therapist, clock) -> None:
    first = _at_time_selection(make_controller('client-a'))
    second = _at_time_selection(make_controller('client-b'))
    first.select_time(TEN)

    clock.advance(minutes=6)
    assert second.select_time(TEN)

    assert not first.tick()
    assert first.selected_slot is None
    assert _codes(first) == ['LOCK_LOST']


def test_renewal_storage_failure_warns_lock_at_risk(make_controller, therapist, lock_manager, clock, monkeypatch) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)
    attempts = []

    def unavailable(*args):
        attempts.append(args)
        raise TransientStorageFailure()

    monkeypatch.setattr(lock_manager, 'renew_lock', unavailable)
    clock.advance(seconds=240)

    assert not controller.tick()

    assert len(attempts) == 5
    notices = controller.pop_notices()
    assert [(notice.code, notice.level) for notice in notices] == [('LOCK_AT_RISK', 'warning')]
    assert controller.selected_slot == TEN


def test_refresh_storage_failure_shows_no_slots(make_controller, therapist, resolver, monkeypatch) -> None:
    controller = _at_time_selection(make_controller())

    def unavailable(*args, **kwargs):
        raise TransientStorageFailure()

    monkeypatch.setattr(resolver, 'resolve_slots', unavailable)

    assert controller.refresh_slots() == []
    assert _codes(controller) == ['TRANSIENT_STORAGE_FAILURE']


def test_subscription_failure_degrades_to_re_resolving(make_controller, therapist, notifier) -> None:
    controller = _at_time_selection(make_controller())

    notifier.close()
    controller.process_events()

    assert controller.realtime_degraded
    assert _codes(controller) == ['SUBSCRIPTION_ERROR']
    assert len(controller.slots) == 4

    controller.refresh_slots()

    assert not controller.realtime_degraded
    assert notifier.subscriber_count('therapist-1', SLOT_DATE) == 1


def test_go_back_from_time_selection_releases_lock(make_controller, therapist, lock_manager, notifier) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)

    assert controller.go_back() == BookingStep.SELECTING_DATE
    assert lock_manager.get_lock('therapist-1', TEN) is None
    assert notifier.subscriber_count('therapist-1', SLOT_DATE) == 0
    assert controller.go_back() == BookingStep.SELECTING_THERAPIST
    assert controller.go_back() == BookingStep.SELECTING_SERVICE


def test_dispose_session_releases_everything_once(make_controller, therapist, lock_manager, notifier) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)

    controller.dispose_session()
    controller.dispose_session()

    assert lock_manager.get_lock('therapist-1', TEN) is None
    assert notifier.subscriber_count('therapist-1', SLOT_DATE) == 0
    with pytest.raises(ValidationFailed):
        controller.select_time(TEN)


def test_context_manager_disposes_session(make_controller, therapist, lock_manager) -> None:
    with make_controller() as controller:
        _at_time_selection(controller)
        controller.select_time(TEN)

    assert controller.disposed
    assert lock_manager.get_lock('therapist-1', TEN) is None


def test_background_renewer_keeps_lock_alive(make_controller, therapist, lock_manager, clock) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)
    controller.start_auto_renew(poll_seconds=0.01)

    clock.advance(seconds=240)
    deadline = wall_time.monotonic() + 5
    while controller.held.expires_at != clock() + timedelta(seconds=300) and wall_time.monotonic() < deadline:
        wall_time.sleep(0.01)

    assert controller.held.expires_at == clock() + timedelta(seconds=300)
    controller.dispose_session()
    assert lock_manager.get_lock('therapist-1', TEN) is None


def test_slots_are_sized_by_the_selected_service(
    make_controller,
    therapist,
    intake_records,
    lock_manager,
    session_factory,
) -> None:
    _block(session_factory, TEN, TEN + timedelta(hours=1))
    intake_records.record('client-a', 'couple', INTAKE)
    controller = _at_time_selection(make_controller(), 'couple')
    half_past_nine = NINE + timedelta(minutes=30)

    assert [(slot.start, slot.duration_minutes, slot.available) for slot in controller.slots] == [
        (NINE, 60, True),
        (half_past_nine, 60, False),
        (TEN, 60, False),
    ]

    assert not controller.select_time(half_past_nine)
    assert controller.held is None
    assert lock_manager.get_lock('therapist-1', half_past_nine) is None
    assert _codes(controller) == ['SLOT_TAKEN']

    assert controller.select_time(NINE)
    controller.proceed_to_confirm()
    booking = controller.confirm()

    assert booking.duration_minutes == 60
    assert booking.scheduled_at + timedelta(minutes=60) <= TEN


def test_commit_refused_by_schedule_returns_to_time_selection(
    make_controller,
    therapist,
    lock_manager,
    session_factory,
) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)
    controller.proceed_to_confirm()
    _block(session_factory, TEN, TEN + timedelta(minutes=30))

    assert controller.confirm() is None

    assert controller.step == BookingStep.SELECTING_TIME
    assert controller.held is None
    assert lock_manager.get_lock('therapist-1', TEN) is None
    assert _codes(controller) == ['VALIDATION_FAILED']
    assert not next(slot for slot in controller.slots if slot.start == TEN).available


@pytest.mark.parametrize(
    ('jump_back', 'expected_step'),
    [
        (lambda controller: controller.select_service('crisis'), BookingStep.SELECTING_THERAPIST),
        (lambda controller: controller.select_therapist('therapist-1'), BookingStep.SELECTING_DATE),
    ],
)
def test_returning_to_an_earlier_step_releases_the_hold(
    make_controller,
    therapist,
    lock_manager,
    notifier,
    clock,
    jump_back,
    expected_step,
) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(NINE)
    controller.proceed_to_confirm()

    assert jump_back(controller) == expected_step

    assert controller.held is None
    assert controller.selected_slot is None
    assert lock_manager.get_lock('therapist-1', NINE) is None
    assert notifier.subscriber_count('therapist-1', SLOT_DATE) == 0

    clock.advance(seconds=250)
    assert not controller.tick()
    assert lock_manager.get_lock('therapist-1', NINE) is None


def test_concurrent_confirms_book_once(make_controller, therapist, session_factory) -> None:
    controller = _at_time_selection(make_controller())
    controller.select_time(TEN)
    controller.proceed_to_confirm()
    barrier = threading.Barrier(2)
    outcomes = []

    def submit() -> None:
        barrier.wait()
        try:
            outcomes.append(controller.confirm())
        except ValidationFailed as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    rejected = [outcome for outcome in outcomes if isinstance(outcome, ValidationFailed)]
    assert len(outcomes) == 2
    assert [error.errors for error in rejected] == [['This booking is already complete.']]
    assert controller.step == BookingStep.COMPLETED

    db = session_factory()
    try:
        assert db.query(Booking).count() == 1
    finally:
        db.close()
