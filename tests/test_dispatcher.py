import threading
import time

from notifications.dispatcher import FAILURE_WARNING, RECIPIENTS, NotificationDispatcher
from notifications.templates import COPY, TemplateRenderer
from persistence import crud
from persistence.models import NotificationLogModel
from conftest import create_booking


def snapshot(services, booking_id):
    with services.db.session() as session:
        return crud.model_to_pydantic(crud.get_booking_by_id(session, booking_id))


def log_rows(services, booking_id):
    with services.db.session() as session:
        rows = session.query(NotificationLogModel).filter_by(booking_id=booking_id).order_by(NotificationLogModel.id)
        return [(r.notification_type, r.recipient_role, r.status, r.attempts) for r in rows]


def make_dispatcher(services, email, **kwargs):
    options = {"max_workers": 1, "max_pending": 10, "max_attempts": 3, "backoff_seconds": 0}
    options.update(kwargs)
    return NotificationDispatcher(services.db, email, TemplateRenderer("jpy", "https://travel.example.com"),
                                  admin_email="ops@example.com", **options)


def test_send_renders_html_and_text_from_one_snapshot(services, email):
    created = create_booking(services)
    email.sent.clear()
    result = services.dispatcher.send(snapshot(services, created.booking_id), "booking_confirmed")
    assert result.ok and result.sent == ["customer"]

    message = email.sent[0]
    assert message.to == "hana@example.com"
    assert message.subject == f"Your booking is confirmed - {created.reference_code}"
    for body in (message.html, message.text):
        assert created.reference_code in body
        assert "Mt. Fuji Day Tour" in body
        assert "¥12,000" in body


def test_admin_copy_includes_customer_contact(services, email):
    created = create_booking(services)
    admin_mail = [m for m in email.sent if m.to == "ops@example.com"]
    assert len(admin_mail) == 1
    assert "hana@example.com" in admin_mail[0].text
    assert "Hana Sato" in admin_mail[0].subject


def test_transient_failures_are_retried(services, email):
    created = create_booking(services)
    dispatcher = make_dispatcher(services, email)
    email.fail_next(2, transient=True)
    result = dispatcher.send(snapshot(services, created.booking_id), "booking_confirmed", dedupe_key="k1")
    assert result.ok
    assert log_rows(services, created.booking_id)[-1] == ("booking_confirmed", "customer", "sent", 3)
    dispatcher.shutdown()


def test_permanent_failure_is_not_retried_and_is_surfaced(services, email):
    created = create_booking(services)
    dispatcher = make_dispatcher(services, email)
    email.fail_next(1)
    result = dispatcher.send(snapshot(services, created.booking_id), "booking_confirmed", dedupe_key="k2")
    assert not result.ok
    assert result.warning == FAILURE_WARNING
    assert log_rows(services, created.booking_id)[-1] == ("booking_confirmed", "customer", "failed", 1)
    dispatcher.shutdown()


def test_exhausted_retries_are_surfaced(services, email):
    created = create_booking(services)
    dispatcher = make_dispatcher(services, email, max_attempts=2)
    email.fail_next(5, transient=True)
    result = dispatcher.send(snapshot(services, created.booking_id), "booking_cancelled")
    assert result.warning == FAILURE_WARNING
    assert log_rows(services, created.booking_id)[-1] == ("booking_cancelled", "customer", "failed", 2)
    dispatcher.shutdown()


def test_dedupe_key_suppresses_repeat_send(services, email):
    created = create_booking(services)
    booking = snapshot(services, created.booking_id)
    email.sent.clear()
    services.dispatcher.send(booking, "payment_failed", dedupe_key="evt_1")
    again = services.dispatcher.send(booking, "payment_failed", dedupe_key="evt_1")
    assert len(email.sent) == 2  # customer + admin, once
    assert again.skipped


def test_disabled_type_is_skipped(services, email):
    created = create_booking(services)
    dispatcher = make_dispatcher(services, email, disabled={"review_request"})
    email.sent.clear()
    result = dispatcher.send(snapshot(services, created.booking_id), "review_request")
    assert result.ok and result.skipped
    assert email.sent == []
    assert log_rows(services, created.booking_id)[-1] == ("review_request", "customer", "skipped", 0)
    dispatcher.shutdown()


def test_unknown_type_is_reported_not_raised(services, email):
    created = create_booking(services)
    result = services.dispatcher.send(snapshot(services, created.booking_id), "party_invite")
    assert not result.ok
    assert "Invalid eventType" in result.warning


def test_dispatch_does_not_block_the_caller(services, email):
    created = create_booking(services)
    release = threading.Event()
    original_send = email.send

    def slow_send(message):
        release.wait(5)
        return original_send(message)

    email.send = slow_send
    dispatcher = make_dispatcher(services, email)
    handle = dispatcher.dispatch(snapshot(services, created.booking_id), "booking_confirmed")
    assert handle.warning(timeout=0.05) is None
    assert handle.result(timeout=0.05) is None

    release.set()
    assert handle.result(timeout=5).ok
    dispatcher.shutdown()


def test_full_queue_drops_with_warning(services, email):
    created = create_booking(services)
    release = threading.Event()
    email.send = lambda message: release.wait(5)
    dispatcher = make_dispatcher(services, email, max_pending=1)
    booking = snapshot(services, created.booking_id)

    first = dispatcher.dispatch(booking, "booking_confirmed")
    second = dispatcher.dispatch(booking, "booking_cancelled")
    assert second.warning() == FAILURE_WARNING

    release.set()
    assert first.result(timeout=5).ok
    dispatcher.shutdown()


def test_transition_commits_even_when_email_fails(services, email):
    created = create_booking(services)
    email.fail_next(1)
    result = services.transitions.confirm(created.booking_id)
    assert result.notification_warning(timeout=5) == FAILURE_WARNING
    assert snapshot(services, created.booking_id).booking_status == "confirmed"


def test_every_recipient_has_copy():
    for notification_type, roles in RECIPIENTS.items():
        for role in roles:
            assert (notification_type, role) in COPY


def test_concurrent_sends_with_same_dedupe_key_deliver_once(services, email):
    created = create_booking(services)
    booking = snapshot(services, created.booking_id)
    dispatcher = make_dispatcher(services, email, max_workers=4)
    email.sent.clear()
    original_send = email.send

    def slow_send(message):
        time.sleep(0.05)
        return original_send(message)

    email.send = slow_send
    barrier = threading.Barrier(4)
    results = []

    def run():
        barrier.wait()
        results.append(dispatcher.send(booking, "payment_failed", dedupe_key="evt_race"))

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(m.to for m in email.sent) == ["hana@example.com", "ops@example.com"]
    assert len(results) == 4 and all(r.ok for r in results)
    sent_rows = [row for row in log_rows(services, created.booking_id)
                 if row[0] == "payment_failed" and row[2] == "sent"]
    assert sorted(row[1] for row in sent_rows) == ["admin", "customer"]
    dispatcher.shutdown()
