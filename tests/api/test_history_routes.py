from datetime import datetime, timedelta
from decimal import Decimal


def get_json(test_client, auth_headers, path, **params):
    response = test_client.get(path, params=params, headers=auth_headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_customer_booking_history_pages(
    test_client, auth_headers, register_driver, create_booking, clock
):
    for n, km in enumerate((0.5, 1.0, 1.5)):
        register_driver(f"drv_{n}", km=km)
    first = create_booking(customer_id="cust_A")
    clock.advance(5)
    second = create_booking(customer_id="cust_A")
    create_booking(customer_id="cust_B")

    page_one = get_json(test_client, auth_headers, "/bookings", customer_id="cust_A", limit=1)
    page_two = get_json(
        test_client, auth_headers, "/bookings", customer_id="cust_A", limit=1, page=2
    )

    assert [b["booking_id"] for b in page_one["bookings"]] == [second["booking_id"]]
    assert [b["booking_id"] for b in page_two["bookings"]] == [first["booking_id"]]
    assert page_one["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}


def test_booking_history_by_driver_and_status(test_client, auth_headers, completed_booking):
    booking = completed_booking(customer_id="cust_A")

    completed = get_json(
        test_client, auth_headers, "/bookings", driver_id="drv_near", status="completed"
    )
    cancelled = get_json(
        test_client, auth_headers, "/bookings", driver_id="drv_near", status="cancelled"
    )

    assert [b["booking_id"] for b in completed["bookings"]] == [booking["booking_id"]]
    assert cancelled["pagination"]["total"] == 0
    assert cancelled["pagination"]["pages"] == 0


def test_booking_history_needs_owner(test_client, auth_headers):
    response = test_client.get("/bookings", headers=auth_headers)

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_page_size_is_bounded(test_client, auth_headers):
    response = test_client.get(
        "/bookings", params={"customer_id": "cust_A", "limit": 101}, headers=auth_headers
    )

    assert response.status_code == 422


def test_driver_pending_offer(
    test_client, auth_headers, register_driver, create_booking, driver_action, clock
):
    register_driver()
    booking = create_booking()

    offers = get_json(test_client, auth_headers, "/drivers/drv_near/bookings/pending")

    assert len(offers) == 1
    assert offers[0]["booking"]["booking_id"] == booking["booking_id"]
    assert offers[0]["offer_sequence"] == 1
    assert datetime.fromisoformat(offers[0]["expires_at"]) == clock.now + timedelta(seconds=15)

    driver_action("drv_near", booking["booking_id"], "accept")

    assert get_json(test_client, auth_headers, "/drivers/drv_near/bookings/pending") == []


def test_driver_without_offer_has_nothing_pending(test_client, auth_headers, register_driver):
    register_driver()

    assert get_json(test_client, auth_headers, "/drivers/drv_near/bookings/pending") == []


def test_driver_active_booking(
    test_client, auth_headers, register_driver, create_booking, driver_action
):
    register_driver()
    booking = create_booking()
    path = "/drivers/drv_near/bookings/active"

    assert get_json(test_client, auth_headers, path) is None

    driver_action("drv_near", booking["booking_id"], "accept")
    assert get_json(test_client, auth_headers, path)["status"] == "driver_assigned"

    driver_action("drv_near", booking["booking_id"], "start")
    assert get_json(test_client, auth_headers, path)["status"] == "in_progress"

    driver_action("drv_near", booking["booking_id"], "complete")
    assert get_json(test_client, auth_headers, path) is None


def test_driver_trip_history(
    test_client, auth_headers, completed_booking, create_booking, driver_action, clock
):
    booking = completed_booking()
    clock.advance(60)
    ongoing = create_booking()
    driver_action("drv_near", ongoing["booking_id"], "accept")

    history = get_json(test_client, auth_headers, "/drivers/drv_near/bookings/history")
    cancelled = get_json(
        test_client, auth_headers, "/drivers/drv_near/bookings/history", status="cancelled"
    )

    assert [b["booking_id"] for b in history["bookings"]] == [booking["booking_id"]]
    assert history["pagination"]["total"] == 1
    assert cancelled["bookings"] == []


def test_driver_earnings_from_cash_trip(test_client, auth_headers, completed_booking, ledger):
    booking = completed_booking()
    payment = ledger.get_for_booking(booking["booking_id"])

    earnings = get_json(test_client, auth_headers, "/drivers/drv_near/earnings")

    assert Decimal(earnings["total"]) == payment.commission.driver
    assert Decimal(earnings["pending"]) == payment.commission.driver
    assert Decimal(earnings["settled"]) == 0
    assert earnings["completed_payments"] == 1
    assert earnings["recent_booking_ids"] == [booking["booking_id"]]


def test_driver_earnings_after_payout(test_client, auth_headers, completed_booking, ledger):
    booking = completed_booking()
    payment = ledger.get_for_booking(booking["booking_id"])
    test_client.post(
        f"/payments/{payment.payment_id}/settlement",
        json={"outcome": "processed", "settlement_id": "STL_1"},
        headers=auth_headers,
    )

    earnings = get_json(test_client, auth_headers, "/drivers/drv_near/earnings")

    assert Decimal(earnings["settled"]) == payment.commission.driver
    assert Decimal(earnings["pending"]) == 0


def test_customer_payment_history(test_client, auth_headers, completed_booking):
    booking = completed_booking(customer_id="cust_A")

    history = get_json(test_client, auth_headers, "/payments/history", customer_id="cust_A")
    refunded = get_json(
        test_client, auth_headers, "/payments/history", customer_id="cust_A", status="refunded"
    )
    other = get_json(test_client, auth_headers, "/payments/history", customer_id="cust_B")

    assert [p["booking_id"] for p in history["payments"]] == [booking["booking_id"]]
    assert history["payments"][0]["status"] == "completed"
    assert history["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}
    assert refunded["payments"] == []
    assert other["pagination"]["total"] == 0


def test_payment_history_needs_customer(test_client, auth_headers):
    response = test_client.get("/payments/history", headers=auth_headers)

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"
