import json
import time
from decimal import Decimal

import pytest

from booking_core import crud
from booking_core.crud import booking_transaction
from booking_core.models import (
    Booking,
    BookingKind,
    BookingStatus,
    OutboxEvent,
    PaymentRecord,
    PaymentRecordType,
    PaymentStatus,
    Provider,
)
from booking_core.schemas import BookingCreate
from booking_core.services.reconciler import ReconcileOutcome, reconcile_event
from booking_core.utils.errors import (
    AuthenticityError,
    ConflictError,
    ReferentialError,
    ValidationError,
)
from booking_core.utils.signatures import sign_payload

from conftest import at

SECRET = "whsec_test_secret"


def _event(event_type, data, event_id="evt_1", created=None):
    return {
        "id": event_id,
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": data,
    }


def _deliver(db, event, secret=SECRET, signature=None):
    raw = json.dumps(event).encode("utf-8")
    header = signature if signature is not None else sign_payload(secret, raw)
    return reconcile_event(db, raw, header)


def _settlement(catalog, transaction_id="pi_1", start="2030-01-07T09:00:00Z", **meta):
    metadata = {
        "providerId": str(catalog.standard),
        "serviceId": str(catalog.haircut),
        "date": start,
        "addonIds": f"{catalog.beard},{catalog.wash},{catalog.beard}",
        "clientId": str(catalog.client),
    }
    metadata.update(meta)
    return {"id": transaction_id, "amount": 338, "currency": "usd", "metadata": metadata}


def test_settlement_creates_confirmed_paid_booking(db, catalog):
    result = _deliver(db, _event("payment_intent.succeeded", _settlement(catalog)))
    assert result.outcome is ReconcileOutcome.CREATED

    booking = db.get(Booking, result.booking_id)
    assert booking.transaction_id == "pi_1"
    assert BookingKind(booking.kind) is BookingKind.PAID
    assert BookingStatus(booking.status) is BookingStatus.CONFIRMED
    assert PaymentStatus(booking.payment_status) is PaymentStatus.SUCCEEDED
    assert Decimal(booking.price) == Decimal("3.38")
    assert Decimal(booking.platform_fee) == Decimal("1.80")
    assert Decimal(booking.provider_payout) == Decimal("1.58")
    assert Decimal(booking.service_price) == Decimal("40.00")
    assert Decimal(booking.addon_total) == Decimal("15.50")
    assert booking.start_time == at(9)
    assert booking.end_time == at(9, 30)

    record = db.query(PaymentRecord).one()
    assert record.transaction_id == "pi_1"
    assert PaymentRecordType(record.record_type) is PaymentRecordType.CHARGE
    assert (record.amount, record.platform_fee, record.provider_payout) == (338, 180, 158)
    assert record.currency == "usd"


def test_duplicate_delivery_is_a_noop(db, catalog):
    event = _event("settlement.succeeded", _settlement(catalog))
    first = _deliver(db, event)
    second = _deliver(db, event)
    third = _deliver(db, dict(event, id="evt_redelivered"))

    assert first.outcome is ReconcileOutcome.CREATED
    assert second.outcome is ReconcileOutcome.NOOP
    assert third.outcome is ReconcileOutcome.NOOP
    assert second.booking_id == first.booking_id
    assert db.query(Booking).count() == 1
    assert db.query(PaymentRecord).count() == 1


def test_settlement_side_effects_are_queued_after_commit(db, catalog):
    _deliver(db, _event("settlement.succeeded", _settlement(catalog)))
    topics = sorted(row.topic for row in db.query(OutboxEvent))
    assert topics == ["booking.confirmed", "payment.analytics"]


def test_bad_signature_has_no_side_effects(db, catalog):
    event = _event("settlement.succeeded", _settlement(catalog))
    with pytest.raises(AuthenticityError):
        _deliver(db, event, secret="whsec_wrong")
    with pytest.raises(AuthenticityError):
        _deliver(db, event, signature="")
    assert db.query(Booking).count() == 0
    assert db.query(PaymentRecord).count() == 0


def test_tampered_body_is_rejected(db, catalog):
    raw = json.dumps(_event("settlement.succeeded", _settlement(catalog))).encode("utf-8")
    header = sign_payload(SECRET, raw)
    tampered = raw.replace(b"338", b"1")
    with pytest.raises(AuthenticityError):
        reconcile_event(db, tampered, header)


def test_old_signature_is_rejected(db, catalog):
    raw = json.dumps(_event("settlement.succeeded", _settlement(catalog))).encode("utf-8")
    header = sign_payload(SECRET, raw, timestamp=int(time.time()) - 3600)
    with pytest.raises(AuthenticityError):
        reconcile_event(db, raw, header)


def test_missing_metadata_is_a_validation_error(db, catalog):
    data = _settlement(catalog)
    del data["metadata"]["providerId"]
    with pytest.raises(ValidationError) as exc:
        _deliver(db, _event("settlement.succeeded", data))
    assert "provider_id" in exc.value.field_errors
    assert db.query(Booking).count() == 0


def test_metadata_without_identity_is_rejected(db, catalog):
    data = _settlement(catalog, clientId="guest")
    with pytest.raises(ValidationError):
        _deliver(db, _event("settlement.succeeded", data))


def test_guest_checkout(db, catalog):
    data = _settlement(catalog, clientId="guest", guestName="Gale Guest", guestEmail="gale@example.com")
    result = _deliver(db, _event("settlement.succeeded", data))
    booking = db.get(Booking, result.booking_id)
    assert booking.client_id is None
    assert booking.guest_name == "Gale Guest"


def test_settlement_for_taken_slot_conflicts(db, catalog):
    _deliver(db, _event("settlement.succeeded", _settlement(catalog, "pi_a")))
    with pytest.raises(ConflictError):
        _deliver(
            db,
            _event("settlement.succeeded", _settlement(catalog, "pi_b", start="2030-01-07T09:15:00Z"), "evt_2"),
        )
    assert db.query(Booking).count() == 1
    assert db.query(PaymentRecord).count() == 1


def test_failure_for_unknown_transaction_is_ignored(db):
    result = _deliver(db, _event("payment_intent.payment_failed", {"id": "pi_never"}))
    assert result.outcome is ReconcileOutcome.IGNORED


def test_stale_failure_does_not_undo_settlement(db, catalog):
    now = int(time.time())
    _deliver(db, _event("settlement.succeeded", _settlement(catalog), created=now))

    stale = _deliver(db, _event("settlement.failed", {"transaction_id": "pi_1"}, "evt_f1", created=now - 60))
    assert stale.outcome is ReconcileOutcome.NOOP

    later = _deliver(db, _event("checkout.session.expired", {"transaction_id": "pi_1"}, "evt_f2", created=now + 60))
    # confirmed -> failed is not an edge; acknowledged without change
    assert later.outcome is ReconcileOutcome.IGNORED

    booking = crud.booking.get_booking_by_transaction(db, "pi_1")
    assert BookingStatus(booking.status) is BookingStatus.CONFIRMED


def test_pending_booking_fails_and_later_settlement_recovers(db, catalog):
    request = BookingCreate(
        provider_id=catalog.standard, service_id=catalog.haircut, start_time=at(15), client_id=catalog.client
    )

    with booking_transaction(db):
        pending = crud.booking.create_booking(db, request, BookingKind.PAID, transaction_id="pi_pending")
    now = int(time.time())

    failed = _deliver(db, _event("settlement.failed", {"transaction_id": "pi_pending"}, "evt_a", created=now))
    assert failed.outcome is ReconcileOutcome.UPDATED
    db.refresh(pending)
    assert BookingStatus(pending.status) is BookingStatus.FAILED
    assert PaymentStatus(pending.payment_status) is PaymentStatus.FAILED

    data = _settlement(catalog, "pi_pending")
    recovered = _deliver(db, _event("settlement.succeeded", data, "evt_b", created=now + 5))
    assert recovered.outcome is ReconcileOutcome.UPDATED
    db.refresh(pending)
    assert BookingStatus(pending.status) is BookingStatus.CONFIRMED
    assert PaymentStatus(pending.payment_status) is PaymentStatus.SUCCEEDED
    # Commercial fields untouched by the status-only update
    assert Decimal(pending.addon_total) == Decimal("0.00")


def _refund(refund_id, cumulative, event_id):
    return _event(
        "charge.refunded",
        {
            "refund_id": refund_id,
            "payment_intent": "pi_1",
            "amount": 338,
            "amount_refunded": cumulative,
            "currency": "usd",
        },
        event_id,
    )


def test_partial_then_full_refund(db, catalog):
    created = _deliver(db, _event("settlement.succeeded", _settlement(catalog)))

    partial = _deliver(db, _refund("re_1", 100, "evt_r1"))
    assert partial.outcome is ReconcileOutcome.UPDATED
    booking = db.get(Booking, created.booking_id)
    db.refresh(booking)
    assert BookingStatus(booking.status) is BookingStatus.PARTIALLY_REFUNDED
    assert PaymentStatus(booking.payment_status) is PaymentStatus.PARTIALLY_REFUNDED

    again = _deliver(db, _refund("re_1", 100, "evt_r1"))
    assert again.outcome is ReconcileOutcome.NOOP

    full = _deliver(db, _refund("re_2", 338, "evt_r2"))
    assert full.outcome is ReconcileOutcome.UPDATED
    db.refresh(booking)
    assert BookingStatus(booking.status) is BookingStatus.REFUNDED
    assert PaymentStatus(booking.payment_status) is PaymentStatus.REFUNDED

    refunds = (
        db.query(PaymentRecord)
        .filter(PaymentRecord.record_type == PaymentRecordType.REFUND)
        .order_by(PaymentRecord.id)
        .all()
    )
    assert [(r.transaction_id, r.amount, r.parent_transaction_id) for r in refunds] == [
        ("re_1", -100, "pi_1"),
        ("re_2", -238, "pi_1"),
    ]
    assert sum(r.amount for r in db.query(PaymentRecord)) == 0
    topics = [row.topic for row in db.query(OutboxEvent).order_by(OutboxEvent.id)]
    assert topics.count("booking.refunded") == 2


def test_refund_on_completed_booking_is_recorded_only(db, catalog):
    created = _deliver(db, _event("settlement.succeeded", _settlement(catalog)))
    crud.booking.update_status(db, created.booking_id, BookingStatus.COMPLETED)

    result = _deliver(db, _refund("re_1", 338, "evt_r1"))
    assert result.outcome is ReconcileOutcome.UPDATED
    booking = db.get(Booking, created.booking_id)
    db.refresh(booking)
    assert BookingStatus(booking.status) is BookingStatus.COMPLETED
    assert PaymentStatus(booking.payment_status) is PaymentStatus.REFUNDED
    assert db.query(PaymentRecord).filter(PaymentRecord.transaction_id == "re_1").count() == 1


def test_refund_for_unknown_charge(db):
    with pytest.raises(ReferentialError):
        _deliver(db, _refund("re_x", 100, "evt_rx"))


def test_account_updates(db, catalog):
    enabled = _deliver(db, _event("account.updated", {"id": "acct_std", "charges_enabled": True}))
    assert enabled.outcome is ReconcileOutcome.UPDATED
    provider = db.get(Provider, catalog.standard)
    assert (provider.gateway_account_status, provider.charges_enabled) == ("active", True)

    same = _deliver(db, _event("account.updated", {"id": "acct_std", "charges_enabled": True}, "evt_2"))
    assert same.outcome is ReconcileOutcome.NOOP

    _deliver(db, _event("account.application.deauthorized", {"account_id": "acct_std"}, "evt_3"))
    db.refresh(provider)
    assert provider.gateway_account_status == "deauthorized"
    assert provider.charges_enabled is False


def test_account_update_for_unknown_account(db):
    with pytest.raises(ReferentialError):
        _deliver(db, _event("account.updated", {"id": "acct_nobody", "charges_enabled": True}))


def test_unhandled_event_type_is_ignored(db):
    result = _deliver(db, _event("customer.created", {"id": "cus_1"}))
    assert result.outcome is ReconcileOutcome.IGNORED
    assert result.to_dict() == {
        "received": True,
        "outcome": "ignored",
        "event_id": "evt_1",
        "booking_id": None,
    }


def test_malformed_payload(db):
    raw = b"{not json"
    with pytest.raises(ValidationError):
        reconcile_event(db, raw, sign_payload(SECRET, raw))
