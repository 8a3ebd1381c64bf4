from __future__ import annotations

from datetime import UTC, datetime
from http import HTTPStatus
from unittest.mock import patch

import pytest
from conftest import reservation_factory
from fastapi.testclient import TestClient

from lending.api import app
from lending.errors import (
    AlreadyConvertedError,
    ConcurrentUpdateError,
    DataAccessError,
    InvalidTransitionError,
    NotAllowedError,
    ReservationValidationError,
)
from lending.models import ConversionResult, Loan, TimeSlot


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


def create_payload(**overrides) -> dict:
    payload = {
        "user_id": "u-1",
        "equipment_id": "E1",
        "reservation_date": "2025-06-01",
        "start_time": "10:00",
        "end_time": "11:00",
        "purpose": "Lab session",
    }
    payload.update(overrides)
    return payload


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == HTTPStatus.OK
    assert resp.json() == {"status": "ok"}


def test_create_reservation_route(client: TestClient) -> None:
    with patch("lending.api.service.create_reservation") as mock_create:
        mock_create.return_value = reservation_factory(status="pending")
        resp = client.post("/reservations", json=create_payload())
        assert resp.status_code == HTTPStatus.CREATED
        assert resp.json()["reservation_id"] == "r-1"
        assert resp.json()["status"] == "pending"
        payload = mock_create.call_args.args[0]
        assert payload.start_time == "10:00"


def test_create_reservation_malformed_time(client: TestClient) -> None:
    with patch("lending.api.service.create_reservation") as mock_create:
        resp = client.post("/reservations", json=create_payload(start_time="25:00"))
        assert resp.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
        mock_create.assert_not_called()


def test_create_reservation_rejected(client: TestClient) -> None:
    with patch("lending.api.service.create_reservation") as mock_create:
        mock_create.side_effect = ReservationValidationError("Selected time slot is unavailable")
        resp = client.post("/reservations", json=create_payload())
        assert resp.status_code == HTTPStatus.BAD_REQUEST
        assert resp.json()["detail"] == "Selected time slot is unavailable"


def test_create_reservation_race_lost(client: TestClient) -> None:
    with patch("lending.api.service.create_reservation") as mock_create:
        mock_create.side_effect = ConcurrentUpdateError("The selected time slot was just booked")
        resp = client.post("/reservations", json=create_payload())
        assert resp.status_code == HTTPStatus.CONFLICT


def test_backend_unavailable(client: TestClient) -> None:
    with patch("lending.api.service.get_reservation") as mock_get:
        mock_get.side_effect = DataAccessError("Could not read reservation")
        resp = client.get("/reservations/r-1")
        assert resp.status_code == HTTPStatus.SERVICE_UNAVAILABLE


def test_get_reservation_route(client: TestClient) -> None:
    with patch("lending.api.service.get_reservation") as mock_get:
        mock_get.return_value = reservation_factory(reservation_id="r-42")
        resp = client.get("/reservations/r-42")
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["reservation_id"] == "r-42"


def test_get_reservation_not_found(client: TestClient) -> None:
    with patch("lending.api.service.get_reservation") as mock_get:
        mock_get.side_effect = KeyError("Reservation not found")
        resp = client.get("/reservations/missing")
        assert resp.status_code == HTTPStatus.NOT_FOUND
        assert resp.json()["detail"] == "Reservation not found"


def test_list_reservations_passes_filters(client: TestClient) -> None:
    with patch("lending.api.service.list_reservations") as mock_list:
        mock_list.return_value = [reservation_factory(reservation_id="a"), reservation_factory(reservation_id="b")]
        resp = client.get("/reservations", params={"status": "approved", "start_date": "2025-06-01"})
        assert resp.status_code == HTTPStatus.OK
        assert [r["reservation_id"] for r in resp.json()] == ["a", "b"]
        kwargs = mock_list.call_args.kwargs
        assert kwargs["status"] == "approved"
        assert str(kwargs["start_date"]) == "2025-06-01"
        assert kwargs["user_id"] is None


def test_list_user_reservations(client: TestClient) -> None:
    with patch("lending.api.service.list_user_reservations") as mock_list:
        mock_list.return_value = [reservation_factory()]
        resp = client.get("/users/u-1/reservations")
        assert resp.status_code == HTTPStatus.OK
        mock_list.assert_called_once_with("u-1")


def test_reschedule_route(client: TestClient) -> None:
    with patch("lending.api.service.reschedule_reservation") as mock_update:
        mock_update.return_value = reservation_factory(purpose="Filming")
        resp = client.put("/reservations/r-1", json={"actor_id": "u-1", "purpose": "Filming"})
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["purpose"] == "Filming"


def test_reschedule_not_owner(client: TestClient) -> None:
    with patch("lending.api.service.reschedule_reservation") as mock_update:
        mock_update.side_effect = NotAllowedError("You are not allowed to change this reservation")
        resp = client.put("/reservations/r-1", json={"actor_id": "u-2", "purpose": "x"})
        assert resp.status_code == HTTPStatus.FORBIDDEN


def test_slots_route(client: TestClient) -> None:
    with patch("lending.api.service.list_time_slots") as mock_slots:
        mock_slots.return_value = [
            TimeSlot(time="09:00", available=True),
            TimeSlot(time="10:00", available=False, conflicting_reservation_id="r-1", conflicting_status="approved"),
        ]
        resp = client.get("/equipment/E1/slots", params={"day": "2025-06-01"})
        assert resp.status_code == HTTPStatus.OK
        assert [s["available"] for s in resp.json()] == [True, False]


def test_approve_route(client: TestClient) -> None:
    with patch("lending.api.service.approve") as mock_approve:
        mock_approve.return_value = reservation_factory(status="approved", approved_by="admin")
        resp = client.post("/reservations/r-1/approve", json={"actor_id": "admin"})
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["approved_by"] == "admin"
        mock_approve.assert_called_once_with("r-1", "admin")


def test_reject_route_passes_reason(client: TestClient) -> None:
    with patch("lending.api.service.reject") as mock_reject:
        mock_reject.return_value = reservation_factory(status="rejected")
        resp = client.post("/reservations/r-1/reject", json={"actor_id": "admin", "reason": "Under repair"})
        assert resp.status_code == HTTPStatus.OK
        mock_reject.assert_called_once_with("r-1", "admin", "Under repair")


def test_invalid_transition_is_conflict(client: TestClient) -> None:
    with patch("lending.api.service.mark_ready") as mock_ready:
        mock_ready.side_effect = InvalidTransitionError("Cannot change reservation from completed to ready")
        resp = client.post("/reservations/r-1/ready", json={"actor_id": "admin"})
        assert resp.status_code == HTTPStatus.CONFLICT
        assert "completed" in resp.json()["detail"]


def test_complete_route(client: TestClient) -> None:
    with patch("lending.api.service.complete") as mock_complete:
        mock_complete.return_value = reservation_factory(status="completed")
        resp = client.post("/reservations/r-1/complete", json={"actor_id": "admin"})
        assert resp.json()["status"] == "completed"


def test_cancel_route(client: TestClient) -> None:
    with patch("lending.api.service.cancel") as mock_cancel:
        mock_cancel.return_value = reservation_factory(status="cancelled")
        resp = client.post("/reservations/r-1/cancel", json={"actor_id": "admin", "as_admin": True})
        assert resp.status_code == HTTPStatus.OK
        mock_cancel.assert_called_once_with("r-1", "admin", None, as_admin=True)


def test_cancel_not_found(client: TestClient) -> None:
    with patch("lending.api.service.cancel") as mock_cancel:
        mock_cancel.side_effect = KeyError("Reservation not found")
        resp = client.post("/reservations/missing/cancel", json={"actor_id": "u-1"})
        assert resp.status_code == HTTPStatus.NOT_FOUND


def test_convert_route(client: TestClient) -> None:
    loan = Loan(
        loan_id="l-1",
        user_id="u-1",
        equipment_id="E1",
        borrow_date=datetime(2025, 6, 1, 10, 0, tzinfo=UTC),
        expected_return_date=datetime(2025, 6, 8, 10, 0, tzinfo=UTC),
        status="approved",
    )
    with patch("lending.api.service.convert_to_loan") as mock_convert:
        mock_convert.return_value = ConversionResult(
            reservation=reservation_factory(status="completed", converted_to_loan_id="l-1"), loan=loan
        )
        resp = client.post("/reservations/r-1/convert", json={"actor_id": "admin"})
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["loan"]["loan_id"] == "l-1"
        assert resp.json()["reservation"]["converted_to_loan_id"] == "l-1"


def test_convert_twice_is_conflict(client: TestClient) -> None:
    with patch("lending.api.service.convert_to_loan") as mock_convert:
        mock_convert.side_effect = AlreadyConvertedError("Reservation has already been converted to a loan")
        resp = client.post("/reservations/r-1/convert", json={"actor_id": "admin"})
        assert resp.status_code == HTTPStatus.CONFLICT
        assert resp.json()["detail"] == "Reservation has already been converted to a loan"
