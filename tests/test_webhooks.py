import json
import threading

from persistence import crud, ledger
from persistence.models import WebhookEventModel
from conftest import (
    assert_money,
    booking_payload,
    post_event,
    refund_event,
    session_event,
    sign,
)


def new_booking(client):
    return client.post("/bookings", json=booking_payload()).json()


def booking_state(services, booking_id):
    with services.db.session() as session:
        booking = crud.model_to_pydantic(crud.get_booking_by_id(session, booking_id))
        entries = [e.event_type for e in ledger.list_events(session, booking_id)]
    return booking, entries


def test_deposit_payment_is_applied(client, services, email):
    created = new_booking(client)
    response = post_event(client, session_event("evt_1", created["bookingId"], created["capabilityToken"], 3000))
    assert response.status_code == 200
    assert response.json()["status"] == "applied"

    booking, entries = booking_state(services, created["bookingId"])
    assert (booking.amount_paid, booking.remaining_amount, booking.payment_status) == (3000, 9000, "partial")
    assert entries[-1] == "payment_received"
    services.dispatcher.drain(5)
    assert f"Partial payment received - {created['referenceCode']}" in email.subjects("hana@example.com")


def test_replayed_event_is_applied_once(client, services, email):
    created = new_booking(client)
    event = session_event("evt_dup", created["bookingId"], created["capabilityToken"], 3000)

    first = post_event(client, event)
    services.dispatcher.drain(5)
    sent_after_first = len(email.sent)
    second = post_event(client, event)
    third = post_event(client, event)

    assert first.json()["duplicate"] is False
    assert second.status_code == third.status_code == 200
    assert second.json()["duplicate"] is True and third.json()["duplicate"] is True

    booking, entries = booking_state(services, created["bookingId"])
    assert booking.amount_paid == 3000
    assert entries.count("payment_received") == 1
    services.dispatcher.drain(5)
    assert len(email.sent) == sent_after_first


def test_invalid_signature_is_rejected_without_mutation(client, services):
    created = new_booking(client)
    event = session_event("evt_forged", created["bookingId"], created["capabilityToken"], 12000)

    response = post_event(client, event, secret="whsec_wrong")
    assert response.status_code == 400

    payload = json.dumps(event).encode("utf-8")
    response = client.post("/webhooks/payment", content=payload)
    assert response.status_code == 400

    booking, entries = booking_state(services, created["bookingId"])
    assert booking.amount_paid == 0
    assert entries == ["booking_created"]
    with services.db.session() as session:
        assert crud.get_webhook_event(session, "evt_forged") is None


def test_tampered_payload_fails_signature(client, services):
    created = new_booking(client)
    event = session_event("evt_tamper", created["bookingId"], created["capabilityToken"], 100)
    header = sign(json.dumps(event).encode("utf-8"))
    event["data"]["object"]["amount_total"] = 12000
    response = client.post("/webhooks/payment", content=json.dumps(event).encode("utf-8"),
                           headers={"stripe-signature": header})
    assert response.status_code == 400
    booking, _ = booking_state(services, created["bookingId"])
    assert booking.amount_paid == 0


def test_token_mismatch_is_recorded_unmatched(client, services):
    created = new_booking(client)
    response = post_event(client, session_event("evt_bad_token", created["bookingId"], "not-the-token", 3000))
    assert response.status_code == 200
    assert response.json()["status"] == "unmatched"
    booking, _ = booking_state(services, created["bookingId"])
    assert booking.amount_paid == 0
    with services.db.session() as session:
        assert crud.get_webhook_event(session, "evt_bad_token").status == "unmatched"


def test_unknown_booking_is_recorded_unmatched(client):
    response = post_event(client, session_event("evt_ghost", 4242, "whatever", 3000))
    assert response.status_code == 200
    assert response.json()["status"] == "unmatched"


def test_unhandled_event_type_is_recorded_and_ignored(client, services):
    event = {"id": "evt_other", "object": "event", "type": "customer.created", "data": {"object": {}}}
    response = post_event(client, event)
    assert response.status_code == 200
    assert response.json()["kind"] == "ignored"
    with services.db.session() as session:
        assert crud.get_webhook_event(session, "evt_other").status == "ignored"


def test_delayed_payment_pending_then_succeeded(client, services, email):
    created = new_booking(client)
    bid, token = created["bookingId"], created["capabilityToken"]

    response = post_event(client, session_event("evt_pending", bid, token, 3000, payment_status="unpaid"))
    assert response.json()["kind"] == "pending"
    booking, entries = booking_state(services, bid)
    assert (booking.amount_paid, booking.payment_status) == (0, "unpaid")
    assert entries[-1] == "payment_pending"
    services.dispatcher.drain(5)
    assert f"Payment pending - {created['referenceCode']}" in email.subjects("hana@example.com")
    assert f"Payment pending for {created['referenceCode']}" in email.subjects("ops@example.com")

    post_event(client, session_event("evt_settled", bid, token, 3000,
                                     event_type="checkout.session.async_payment_succeeded"))
    booking, entries = booking_state(services, bid)
    assert (booking.amount_paid, booking.payment_status) == (3000, "partial")
    assert entries[-1] == "payment_received"


def test_delayed_payment_failure_notifies_without_mutation(client, services, email):
    created = new_booking(client)
    response = post_event(client, session_event(
        "evt_failed", created["bookingId"], created["capabilityToken"], 3000,
        event_type="checkout.session.async_payment_failed", payment_status="unpaid",
    ))
    assert response.json()["kind"] == "failure"
    booking, entries = booking_state(services, created["bookingId"])
    assert (booking.amount_paid, booking.payment_status, booking.booking_status) == (0, "unpaid", "pending")
    assert entries[-1] == "payment_failed"
    services.dispatcher.drain(5)
    assert f"Payment failed - {created['referenceCode']}" in email.subjects("hana@example.com")
    assert f"Payment failed for {created['referenceCode']}" in email.subjects("ops@example.com")


def test_completed_booking_is_immune_to_payment_events(client, services):
    created = new_booking(client)
    bid = created["bookingId"]
    services.transitions.mark_paid(bid)
    services.transitions.complete(bid)
    before, before_entries = booking_state(services, bid)

    response = post_event(client, session_event("evt_late", bid, created["capabilityToken"], 3000))
    assert response.status_code == 200
    assert response.json()["status"] == "rejected"

    after, after_entries = booking_state(services, bid)
    assert after.model_dump() == before.model_dump()
    assert after_entries == before_entries
    with services.db.session() as session:
        row = crud.get_webhook_event(session, "evt_late")
        assert row.status == "rejected"
        assert row.detail["guard"] == "payment_requires_incomplete_booking"


def test_overpayment_is_clamped(client, services):
    created = new_booking(client)
    post_event(client, session_event("evt_big", created["bookingId"], created["capabilityToken"], 20000))
    booking, _ = booking_state(services, created["bookingId"])
    assert (booking.amount_paid, booking.remaining_amount, booking.payment_status) == (12000, 0, "paid")
    with services.db.session() as session:
        entry = ledger.list_events(session, created["bookingId"])[-1]
    assert entry.payload["integrity_warning"]["excess"] == 8000


def test_refund_reduces_amount_paid(client, services):
    created = new_booking(client)
    bid, token = created["bookingId"], created["capabilityToken"]
    post_event(client, session_event("evt_paid", bid, token, 3000, payment_intent="pi_refund_me"))

    response = post_event(client, refund_event("evt_refund_1", "pi_refund_me", 1000))
    assert response.json()["status"] == "applied"
    booking, entries = booking_state(services, bid)
    assert (booking.amount_paid, booking.refunded_amount, booking.payment_status) == (2000, 1000, "refunded")
    assert entries[-1] == "payment_refunded"
    assert_money(booking)

    # amount_refunded is cumulative on the charge
    post_event(client, refund_event("evt_refund_2", "pi_refund_me", 3000, previous_refunded=1000))
    booking, _ = booking_state(services, bid)
    assert (booking.amount_paid, booking.refunded_amount, booking.remaining_amount) == (0, 3000, 12000)


def test_refund_for_unknown_payment_is_unmatched(client):
    response = post_event(client, refund_event("evt_refund_x", "pi_unknown", 1000))
    assert response.json()["status"] == "unmatched"


def test_every_processed_event_is_recorded_once(client, services):
    created = new_booking(client)
    event = session_event("evt_once", created["bookingId"], created["capabilityToken"], 3000)
    post_event(client, event)
    post_event(client, event)
    with services.db.session() as session:
        rows = session.query(WebhookEventModel).filter_by(event_id="evt_once").all()
    assert len(rows) == 1
    assert rows[0].booking_id == created["bookingId"]


def test_concurrent_deliveries_of_one_event_apply_once(client, services):
    created = new_booking(client)
    event = session_event("evt_race", created["bookingId"], created["capabilityToken"], 3000)
    barrier = threading.Barrier(4)
    outcomes, errors = [], []

    def deliver():
        try:
            barrier.wait()
            outcomes.append(services.reconciler.reconcile(event))
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=deliver) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(o.duplicate for o in outcomes) == [False, True, True, True]
    booking, entries = booking_state(services, created["bookingId"])
    assert (booking.amount_paid, booking.remaining_amount) == (3000, 9000)
    assert entries.count("payment_received") == 1
    with services.db.session() as session:
        rows = session.query(WebhookEventModel).filter_by(event_id="evt_race").all()
    assert [r.status for r in rows] == ["applied"]
