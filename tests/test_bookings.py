from datetime import date, datetime, timedelta

from hallbook.models import Booking, RoleEnum, Seat

HALL_PAYLOAD = {
    "name": "Reading Room",
    "location": "Library Road",
    "rows": 2,
    "seats_per_row": 3,
    "monthly_price": 1100,
}


def create_study_hall(client, headers, **overrides) -> dict:
    payload = {**HALL_PAYLOAD, **overrides}
    response = client.post("/study-halls", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_study_hall_seats_are_labelled_by_row(bookings_client, merchant, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))

    assert hall["total_seats"] == 6
    assert [seat["seat_id"] for seat in hall["seats"]] == ["A1", "A2", "A3", "B1", "B2", "B3"]


def test_custom_row_names(bookings_client, merchant, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant), custom_row_names=["X", "Y"])
    assert {seat["row_name"] for seat in hall["seats"]} == {"X", "Y"}

    response = bookings_client.post(
        "/study-halls",
        json={**HALL_PAYLOAD, "custom_row_names": ["X"]},
        headers=auth_header(merchant),
    )
    assert response.status_code == 422


def test_seat_booking_flow(bookings_client, merchant, student, make_user, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    seat = hall["seats"][0]
    start = date.today() + timedelta(days=1)
    end = start + timedelta(days=29)

    response = bookings_client.post(
        "/bookings",
        json={"seat_id": seat["id"], "start_date": start.isoformat(), "end_date": end.isoformat()},
        headers=auth_header(student),
    )
    assert response.status_code == 201, response.text
    booking = response.json()
    assert booking["booking_number"].startswith("SB")
    assert booking["status"] == "pending"
    # (1100 - 100) for one 30-day block plus the 2% gateway fee.
    assert booking["total_amount"] == 1020

    availability = bookings_client.get(
        f"/seats/{seat['id']}/availability",
        params={"start_date": end.isoformat(), "end_date": (end + timedelta(days=3)).isoformat()},
    )
    assert availability.status_code == 200
    body = availability.json()
    assert body["available"] is False
    assert body["conflicts"][0]["booking_id"] == booking["id"]

    other = make_user("other")
    response = bookings_client.post(
        "/bookings",
        json={
            "seat_id": seat["id"],
            "start_date": (start + timedelta(days=10)).isoformat(),
            "end_date": (end + timedelta(days=10)).isoformat(),
        },
        headers=auth_header(other),
    )
    assert response.status_code == 409
    assert response.json()["code"] == "SEAT_UNAVAILABLE"
    assert response.json()["error"] == "Seat A1 is already booked for the selected dates."

    mine = bookings_client.get("/bookings/me", headers=auth_header(student)).json()
    assert [entry["id"] for entry in mine] == [booking["id"]]


def test_hall_availability_map(bookings_client, merchant, student, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    booked, free = hall["seats"][0], hall["seats"][1]
    start = date.today() + timedelta(days=2)
    end = start + timedelta(days=6)
    bookings_client.post(
        "/bookings",
        json={"seat_id": booked["id"], "start_date": start.isoformat(), "end_date": end.isoformat()},
        headers=auth_header(student),
    )

    response = bookings_client.get(
        f"/study-halls/{hall['id']}/availability",
        params={"start_date": start.isoformat(), "end_date": start.isoformat()},
    )
    assert response.status_code == 200
    availability = response.json()
    assert availability[str(booked["id"])] is False
    assert availability[str(free["id"])] is True
    assert len(availability) == 6

    response = bookings_client.get(
        f"/study-halls/{hall['id']}/availability/dates",
        params=[("dates", (start - timedelta(days=1)).isoformat()), ("dates", start.isoformat())],
    )
    assert response.status_code == 200
    by_date = response.json()
    assert booked["id"] in by_date[(start - timedelta(days=1)).isoformat()]["available_seats"]
    assert by_date[start.isoformat()]["occupied_seats"] == [booked["id"]]
    assert by_date[start.isoformat()]["total_seats"] == 6


def test_availability_rejects_inverted_range(bookings_client, merchant, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    today = date.today()
    response = bookings_client.get(
        f"/study-halls/{hall['id']}/availability",
        params={"start_date": today.isoformat(), "end_date": (today - timedelta(days=1)).isoformat()},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_booking_dates_are_validated(bookings_client, merchant, student, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    start = date.today() + timedelta(days=1)
    response = bookings_client.post(
        "/bookings",
        json={
            "seat_id": hall["seats"][0]["id"],
            "start_date": start.isoformat(),
            "end_date": (start + timedelta(days=400)).isoformat(),
        },
        headers=auth_header(student),
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Booking period cannot exceed 12 months"


def test_release_expired_bookings(bookings_client, merchant, student, admin, db_session, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    seat = db_session.get(Seat, hall["seats"][0]["id"])
    seat.is_available = False
    db_session.add(
        Booking(
            user_id=student.id,
            study_hall_id=hall["id"],
            seat_id=seat.id,
            start_date=date.today() - timedelta(days=10),
            end_date=date.today() - timedelta(days=1),
            status="active",
        )
    )
    db_session.commit()

    assert bookings_client.post("/bookings/release-expired", headers=auth_header(student)).status_code == 403

    response = bookings_client.post("/bookings/release-expired", headers=auth_header(admin))
    assert response.status_code == 200
    assert response.json() == {"released_count": 1, "cancelled_pending_count": 0}

    db_session.expire_all()
    assert db_session.get(Seat, seat.id).is_available is True
    listed = bookings_client.get("/bookings", headers=auth_header(admin)).json()
    assert listed[0]["status"] == "completed"


def book_first_seat(client, hall, user_headers) -> dict:
    start = date.today() + timedelta(days=1)
    response = client.post(
        "/bookings",
        json={
            "seat_id": hall["seats"][0]["id"],
            "start_date": start.isoformat(),
            "end_date": (start + timedelta(days=29)).isoformat(),
        },
        headers=user_headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_hall_owner_moves_booking_through_statuses(bookings_client, merchant, student, make_user, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    booking = book_first_seat(bookings_client, hall, auth_header(student))
    rival = make_user("rival", RoleEnum.MERCHANT)

    response = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=auth_header(rival)
    )
    assert response.status_code == 403
    response = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=auth_header(student)
    )
    assert response.status_code == 403

    response = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=auth_header(merchant)
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "confirmed"

    response = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "completed"}, headers=auth_header(merchant)
    )
    assert response.json()["status"] == "completed"

    response = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "active"}, headers=auth_header(merchant)
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Cannot move a completed booking to active"


def test_owner_cancels_and_seat_is_bookable_again(bookings_client, merchant, student, make_user, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    booking = book_first_seat(bookings_client, hall, auth_header(student))
    other = make_user("other")

    assert bookings_client.post(f"/bookings/{booking['id']}/cancel", headers=auth_header(other)).status_code == 403

    response = bookings_client.post(f"/bookings/{booking['id']}/cancel", headers=auth_header(student))
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    again = book_first_seat(bookings_client, hall, auth_header(other))
    assert again["id"] != booking["id"]

    repeat = bookings_client.post(f"/bookings/{booking['id']}/cancel", headers=auth_header(student))
    assert repeat.status_code == 400
    assert bookings_client.post("/bookings/9999/cancel", headers=auth_header(student)).status_code == 404


def test_stale_pending_booking_is_cancelled(bookings_client, merchant, student, admin, db_session, auth_header):
    hall = create_study_hall(bookings_client, auth_header(merchant))
    booking = book_first_seat(bookings_client, hall, auth_header(student))
    stored = db_session.get(Booking, booking["id"])
    stored.created_at = datetime.utcnow() - timedelta(hours=2)
    db_session.commit()

    response = bookings_client.post("/bookings/release-expired", headers=auth_header(admin))
    assert response.json() == {"released_count": 0, "cancelled_pending_count": 1}

    db_session.expire_all()
    assert db_session.get(Booking, booking["id"]).status == "cancelled"
    book_first_seat(bookings_client, hall, auth_header(student))
