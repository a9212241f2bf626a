from datetime import timedelta

import pytest

from reservation_engine.application.booking_service import BookingService
from reservation_engine.application.payment_service import PaymentService
from reservation_engine.application.settlement_service import SettlementService
from reservation_engine.domain.exceptions import ConflictError, ValidationError
from reservation_engine.domain.inventory import InventoryKind
from reservation_engine.domain.revenue_split import RevenueSplit
from reservation_engine.infrastructure.payments.gateway import PaymentMethod

USER = {"X-User-Id": "user1"}
OPERATOR = {"X-Operator-Token": "operator-secret"}


@pytest.fixture
def settlements(db, clock):
    return SettlementService(db, clock=clock)


@pytest.fixture
def captured_payment(db, gateway, clock, time_slot):
    bookings = BookingService(db, clock=clock)
    payments = PaymentService(db, gateway, bookings=bookings, clock=clock)

    def _capture(unit_price=10000):
        booking = bookings.create_booking("user1", InventoryKind.TIME_SLOT, time_slot.id, 1, unit_price)
        payment = payments.create_intent("user1", booking.id, booking.total)
        return payments.capture(payment.id, PaymentMethod.CARD, f"tok_{booking.id}")

    return _capture


def test_settle_batch_twice_settles_once(db, clock, settlements, captured_payment):
    payment = captured_payment()
    settlement = settlements.create_settlement(payment.id, settlements.split(payment.amount, has_instructor=True))
    db.commit()

    window = (clock.now - timedelta(hours=1), clock.now + timedelta(hours=1))
    first = settlements.settle_batch(*window)
    db.commit()
    second = settlements.settle_batch(*window)
    db.commit()

    assert [item.id for item in first] == [settlement.id]
    assert second == []
    assert settlements.settlement_repository.get_by_payment_id(payment.id).settled is True


def test_settle_batch_only_picks_payments_in_window(db, clock, settlements, captured_payment):
    early = captured_payment()
    settlements.create_settlement(early.id, settlements.split(early.amount))
    clock.advance(days=2)
    late = captured_payment(unit_price=5000)
    settlements.create_settlement(late.id, settlements.split(late.amount))
    db.commit()

    settled = settlements.settle_batch(clock.now - timedelta(hours=1), clock.now)
    db.commit()

    assert [item.payment_id for item in settled] == [late.id]
    assert settlements.settlement_repository.get_by_payment_id(early.id).settled is False


def test_settle_batch_rejects_inverted_window(clock, settlements):
    with pytest.raises(ValidationError):
        settlements.settle_batch(clock.now, clock.now - timedelta(days=1))


def test_settlement_requires_captured_payment(db, gateway, clock, settlements, time_slot):
    bookings = BookingService(db, clock=clock)
    payments = PaymentService(db, gateway, bookings=bookings, clock=clock)
    booking = bookings.create_booking("user1", InventoryKind.TIME_SLOT, time_slot.id, 1, 10000)
    payment = payments.create_intent("user1", booking.id, booking.total)

    with pytest.raises(ConflictError):
        settlements.create_settlement(payment.id, settlements.split(payment.amount))


def test_settlement_split_must_match_amount(settlements, captured_payment):
    payment = captured_payment()

    with pytest.raises(ValidationError):
        settlements.create_settlement(payment.id, RevenueSplit(1500, 6500, 1000))


def test_one_settlement_per_payment(settlements, captured_payment):
    payment = captured_payment()
    split = settlements.split(payment.amount)
    settlements.create_settlement(payment.id, split)

    with pytest.raises(ConflictError):
        settlements.create_settlement(payment.id, split)


def test_settlement_endpoints(client, time_slot):
    created = client.post(
        "/bookings",
        json={"unit_kind": "time_slot", "unit_id": time_slot.id, "quantity": 1, "unit_price": 10000},
        headers=USER,
    ).json()
    payment_id = created["payment"]["id"]
    captured = client.post(
        f"/payments/{payment_id}/capture",
        json={"method": "card", "card_token": "tok_visa"},
        headers=USER,
    ).json()

    response = client.post(
        f"/payments/{payment_id}/settlement", json={"has_instructor": True}, headers=OPERATOR
    )

    assert response.status_code == 201
    assert response.json()["platform_fee"] == 1500
    assert response.json()["instructor_share"] == 2000
    assert response.json()["supplier_share"] == 6500
    assert response.json()["settled"] is False

    window = {"from_date": captured["captured_at"], "to_date": captured["captured_at"]}
    first = client.post("/settlements/settle", json=window, headers=OPERATOR).json()
    second = client.post("/settlements/settle", json=window, headers=OPERATOR).json()

    assert first["settled_count"] == 1
    assert first["settlements"][0]["settled"] is True
    assert second["settled_count"] == 0


def test_outbox_hand_off(client, time_slot):
    client.post(
        "/bookings",
        json={"unit_kind": "time_slot", "unit_id": time_slot.id, "quantity": 1, "unit_price": 10000},
        headers=USER,
    )

    pending = client.get("/outbox/events", headers=OPERATOR).json()
    assert [item["event_type"] for item in pending] == ["BOOKING_CREATED"]

    published = client.post(f"/outbox/events/{pending[0]['id']}/mark-published", headers=OPERATOR)
    assert published.status_code == 200
    assert published.json()["status"] == "PUBLISHED"
    assert published.json()["attempts"] == 1
    assert client.get("/outbox/events", headers=OPERATOR).json() == []

    missing = client.post("/outbox/events/nope/mark-published", headers=OPERATOR)
    assert missing.status_code == 404


def test_staff_endpoints_require_operator_token(client):
    missing = client.get("/outbox/events", headers=USER)
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "UNAUTHORIZED"

    wrong = client.post(
        "/settlements/settle",
        json={"from_date": "2026-03-01T00:00:00Z", "to_date": "2026-03-31T00:00:00Z"},
        headers={"X-Operator-Token": "guess"},
    )
    assert wrong.status_code == 403
    assert wrong.json()["error"]["code"] == "FORBIDDEN"
