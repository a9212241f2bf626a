USER = {"X-User-Id": "user1"}


def _book(client, unit_id, quantity=1, unit_price=10000, headers=USER):
    payload = {
        "unit_kind": "time_slot",
        "unit_id": unit_id,
        "quantity": quantity,
        "unit_price": unit_price,
    }
    return client.post("/bookings", json=payload, headers=headers)


def test_booking_flow(client, gateway, time_slot):
    response = _book(client, time_slot.id, quantity=2)

    assert response.status_code == 201
    body = response.json()
    booking_id = body["booking"]["id"]
    payment_id = body["payment"]["id"]
    assert body["booking"]["status"] == "pending"
    assert body["booking"]["total"] == 20000
    assert body["payment"]["status"] == "pending"
    assert body["payment"]["amount"] == 20000
    assert body["payment"]["currency"] == "BRL"

    inventory = client.get(f"/inventory/{time_slot.id}").json()
    assert inventory["available"] == 2
    assert inventory["status"] == "open"

    capture_response = client.post(
        f"/payments/{payment_id}/capture",
        json={"method": "card", "card_token": "tok_visa"},
        headers={**USER, "Idempotency-Key": "abc123"},
    )
    assert capture_response.status_code == 200
    assert capture_response.json()["status"] == "captured"
    assert capture_response.json()["provider_ref"] == "pay_tok_visa"
    assert gateway.captures[0]["idempotency_key"] == "abc123"

    booking = client.get(f"/bookings/{booking_id}", headers=USER).json()
    assert booking["status"] == "paid"
    assert booking["payment_id"] == payment_id


def test_capturing_twice_with_same_key_charges_once(client, gateway, time_slot):
    payment_id = _book(client, time_slot.id).json()["payment"]["id"]
    headers = {**USER, "Idempotency-Key": "retry-me"}
    payload = {"method": "pix", "pix_key": "pix-e2e-1"}

    first = client.post(f"/payments/{payment_id}/capture", json=payload, headers=headers)
    second = client.post(f"/payments/{payment_id}/capture", json=payload, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "CONFLICT"
    assert len(gateway.captures) == 1

    payment = client.get(f"/payments/{payment_id}", headers=USER).json()
    assert payment["status"] == "captured"
    assert payment["method"] == "pix"


def test_capture_requires_method_details(client, gateway, time_slot):
    payment_id = _book(client, time_slot.id).json()["payment"]["id"]

    response = client.post(
        f"/payments/{payment_id}/capture",
        json={"method": "card"},
        headers=USER,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
    assert gateway.captures == []


def test_missing_user_header_is_unauthorized(client, time_slot):
    response = _book(client, time_slot.id, headers={})

    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": {
            "code": "UNAUTHORIZED",
            "message": "Missing X-User-Id header",
            "details": {},
        },
    }


def test_other_users_booking_is_forbidden(client, time_slot):
    booking_id = _book(client, time_slot.id).json()["booking"]["id"]

    response = client.get(f"/bookings/{booking_id}", headers={"X-User-Id": "intruder"})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


def test_invalid_quantity_is_a_validation_error(client, time_slot):
    response = _book(client, time_slot.id, quantity=0)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_overbooking_is_rejected(client, time_slot):
    assert _book(client, time_slot.id, quantity=3).status_code == 201

    response = _book(client, time_slot.id, quantity=2)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "OUT_OF_CAPACITY"
    assert client.get(f"/inventory/{time_slot.id}").json()["available"] == 1


def test_unknown_unit_is_not_found(client):
    response = _book(client, "missing")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_kind_mismatch_is_not_found(client, day_use_event):
    response = _book(client, day_use_event.id)

    assert response.status_code == 404
    assert client.get(f"/inventory/{day_use_event.id}").json()["available"] == 10


def test_health(client):
    assert client.get("/health").status_code == 200
