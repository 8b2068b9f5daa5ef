# tests/integration/test_api.py

import pytest

from stayledger.domain.clock import ONE_DAY, ManualClock

HOST = "0xhost"
GUEST = "0xguest"
NIGHTLY = 10**18


@pytest.fixture
def app_state(client):
    state = client.app.state
    # Pin time so check-in windows can be driven from the test.
    state.lifecycle.clock = ManualClock(start=1_700_000_000)
    return state


@pytest.fixture
def booking_id(app_state):
    clock = app_state.lifecycle.clock
    check_in = (clock.now() // ONE_DAY + 2) * ONE_DAY
    app_state.ledger.list_property("villa", HOST, NIGHTLY, property_uri="ipfs://villa")
    outcome = app_state.booking_service.create_booking(
        GUEST, "villa", check_in, check_in + 2 * ONE_DAY, 2 * NIGHTLY
    )
    return outcome.booking.booking_id


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200


def test_unknown_booking_is_404(client):
    assert client.get("/bookings/999").status_code == 404
    assert client.get("/properties/nowhere").status_code == 404


def test_poll_projects_ledger_state(client, booking_id):
    poll = client.post("/sync/poll")

    assert poll.status_code == 200
    assert poll.json()["applied"] == 2
    assert poll.json()["busy"] is False

    booking = client.get(f"/bookings/{booking_id}").json()
    assert booking["status"] == "ACTIVE"
    assert booking["total_amount"] == str(2 * NIGHTLY)
    assert booking["number_of_nights"] == 2
    assert int(booking["platform_fee"]) + int(booking["host_amount"]) == 2 * NIGHTLY

    prop = client.get("/properties/villa").json()
    assert prop["owner"] == HOST
    assert prop["property_uri"] == "ipfs://villa"


def test_transition_errors_map_to_http(client, app_state, booking_id):
    too_early = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"transition": "open_check_in_window"},
    )
    assert too_early.status_code == 409
    assert too_early.json()["detail"]["code"] == "TooEarly"
    assert too_early.json()["detail"]["retryable"] is True

    not_guest = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"transition": "cancel", "caller": HOST},
    )
    assert not_guest.status_code == 403
    assert not_guest.json()["detail"]["code"] == "NotGuest"

    missing = client.post("/bookings/999/transitions", json={"transition": "cancel", "caller": GUEST})
    assert missing.status_code == 404


def test_transition_then_sync(client, app_state, booking_id):
    booking = app_state.ledger.read_booking(booking_id)
    app_state.lifecycle.clock.set(booking.check_in_date)

    opened = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"transition": "open_check_in_window"},
    )
    checked_in = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"transition": "check_in", "caller": GUEST},
    )
    client.post("/sync/poll")

    assert opened.json()["events"] == ["CheckInWindowOpened"]
    assert checked_in.json()["status"] == "CHECKED_IN"
    projected = client.get(f"/bookings/{booking_id}").json()
    assert projected["status"] == "CHECKED_IN"
    assert projected["is_check_in_complete"] is True


def test_reconcile_and_status(client, booking_id):
    reconcile = client.post("/sync/reconcile", json={"property_id": "villa"})

    assert reconcile.status_code == 200
    assert reconcile.json()["created"] == 2
    assert client.get(f"/bookings/{booking_id}").json()["status"] == "ACTIVE"

    both = client.post("/sync/reconcile", json={"guest": GUEST, "property_id": "villa"})
    assert both.status_code == 422

    status = client.get("/sync/status").json()
    assert status["ledger_head"] == 2
    assert status["worker_running"] is False


def test_prune_endpoint(client, booking_id):
    client.post("/sync/poll")

    response = client.post("/sync/prune")

    assert response.status_code == 200
    assert response.json() == {"removed": 0, "committed": 2}


def test_list_property_and_book_over_http(client, app_state):
    clock = app_state.lifecycle.clock
    check_in = (clock.now() // ONE_DAY + 2) * ONE_DAY

    listed = client.post(
        "/properties",
        json={"property_id": "loft", "owner": HOST, "price_per_night": NIGHTLY},
    )
    assert listed.status_code == 200
    assert listed.json()["price_per_night"] == str(NIGHTLY)
    assert listed.json()["token_address"].startswith("0x")

    relisted = client.post(
        "/properties",
        json={"property_id": "loft", "owner": HOST, "price_per_night": NIGHTLY},
    )
    assert relisted.status_code == 422
    assert relisted.json()["detail"]["code"] == "InvalidProperty"

    booked = client.post(
        "/bookings",
        json={
            "guest": GUEST,
            "property_id": "loft",
            "check_in_date": check_in,
            "check_out_date": check_in + 2 * ONE_DAY,
            "total_amount": 2 * NIGHTLY,
        },
    )
    assert booked.status_code == 200
    body = booked.json()
    assert body["status"] == "ACTIVE"
    assert body["events"] == ["BookingCreated"]
    assert int(body["platform_fee"]) + int(body["host_amount"]) == 2 * NIGHTLY

    conflict = client.post(
        "/bookings",
        json={
            "guest": "0xlate",
            "property_id": "loft",
            "check_in_date": check_in + ONE_DAY,
            "check_out_date": check_in + 3 * ONE_DAY,
            "total_amount": 2 * NIGHTLY,
        },
    )
    assert conflict.status_code == 422
    assert conflict.json()["detail"]["code"] == "DateConflict"

    cancelled = client.post(
        f"/bookings/{body['booking_id']}/transitions",
        json={"transition": "cancel", "caller": GUEST},
    )
    assert cancelled.json()["status"] == "CANCELLED"


def test_paid_booking_and_guest_listing(client, app_state, booking_id):
    clock = app_state.lifecycle.clock
    later = (clock.now() // ONE_DAY + 10) * ONE_DAY

    paid = client.post(
        "/bookings",
        json={
            "guest": GUEST,
            "property_id": "villa",
            "check_in_date": later,
            "check_out_date": later + ONE_DAY,
            "total_amount": 5,
            "payment_reference": "pi_123",
        },
    )
    assert paid.status_code == 200
    assert paid.json()["paid_off_chain"] is True
    assert paid.json()["events"] == ["BookingCreatedPaid"]

    client.post("/sync/poll")
    listing = client.get(f"/guests/{GUEST}/bookings").json()

    assert [item["ledger_id"] for item in listing] == [booking_id, paid.json()["booking_id"]]
    assert listing[0]["ledger_status"] == 0
    assert listing[1]["payment_reference"] == "pi_123"
    assert client.get("/guests/0xnobody/bookings").json() == []
