from __future__ import annotations

from datetime import date

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from lending.errors import (
    ConcurrentUpdateError,
    DataAccessError,
    InvalidTransitionError,
    NotAllowedError,
    ReservationValidationError,
)
from lending.models import (
    CancelRequest,
    ConversionResult,
    Reservation,
    ReservationCreate,
    ReservationStatus,
    ReservationUpdate,
    StatusChange,
    TimeSlot,
)
from lending.service import ReservationService

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="EquipmentLending")

app = FastAPI(title="Equipment Lending API", version="0.1.0")
service = ReservationService()

RESERVATION_NOT_FOUND = "Reservation not found"
RETRY_LATER = "The service is temporarily unavailable, please try again"


@app.exception_handler(ReservationValidationError)
def _validation_error(_: Request, exc: ReservationValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": exc.reason})


@app.exception_handler(NotAllowedError)
def _not_allowed(_: Request, exc: NotAllowedError) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
@app.exception_handler(ConcurrentUpdateError)
def _conflict(_: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(DataAccessError)
def _data_access(_: Request, exc: DataAccessError) -> JSONResponse:
    logger.warning("Request failed on data access", extra={"error": str(exc)})
    return JSONResponse(status_code=503, content={"detail": RETRY_LATER})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@tracer.capture_method
@app.post("/reservations", response_model=Reservation, status_code=201)
def create_reservation(payload: ReservationCreate) -> Reservation:
    reservation = service.create_reservation(payload)
    metrics.add_metric(name="ReservationCreated", value=1, unit=MetricUnit.Count)
    return reservation


@tracer.capture_method
@app.get("/reservations", response_model=list[Reservation])
def list_reservations(
    status: ReservationStatus | None = None,
    user_id: str | None = None,
    equipment_id: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = 100,
) -> list[Reservation]:
    return service.list_reservations(
        status=status,
        user_id=user_id,
        equipment_id=equipment_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )


@tracer.capture_method
@app.get("/reservations/{reservation_id}", response_model=Reservation)
def get_reservation(reservation_id: str) -> Reservation:
    try:
        return service.get_reservation(reservation_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc


@tracer.capture_method
@app.put("/reservations/{reservation_id}", response_model=Reservation)
def reschedule_reservation(reservation_id: str, payload: ReservationUpdate) -> Reservation:
    try:
        return service.reschedule_reservation(reservation_id, payload)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc


@tracer.capture_method
@app.get("/users/{user_id}/reservations", response_model=list[Reservation])
def list_user_reservations(user_id: str) -> list[Reservation]:
    return service.list_user_reservations(user_id)


@tracer.capture_method
@app.get("/equipment/{equipment_id}/slots", response_model=list[TimeSlot])
def list_slots(equipment_id: str, day: date) -> list[TimeSlot]:
    return service.list_time_slots(equipment_id, day)


@tracer.capture_method
@app.post("/reservations/{reservation_id}/approve", response_model=Reservation)
def approve_reservation(reservation_id: str, payload: StatusChange) -> Reservation:
    try:
        return service.approve(reservation_id, payload.actor_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc


@tracer.capture_method
@app.post("/reservations/{reservation_id}/reject", response_model=Reservation)
def reject_reservation(reservation_id: str, payload: StatusChange) -> Reservation:
    try:
        return service.reject(reservation_id, payload.actor_id, payload.reason)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc


@tracer.capture_method
@app.post("/reservations/{reservation_id}/ready", response_model=Reservation)
def mark_reservation_ready(reservation_id: str, payload: StatusChange) -> Reservation:
    try:
        return service.mark_ready(reservation_id, payload.actor_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc


@tracer.capture_method
@app.post("/reservations/{reservation_id}/complete", response_model=Reservation)
def complete_reservation(reservation_id: str, payload: StatusChange) -> Reservation:
    try:
        return service.complete(reservation_id, payload.actor_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc


@tracer.capture_method
@app.post("/reservations/{reservation_id}/cancel", response_model=Reservation)
def cancel_reservation(reservation_id: str, payload: CancelRequest) -> Reservation:
    try:
        return service.cancel(reservation_id, payload.actor_id, payload.reason, as_admin=payload.as_admin)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc


@tracer.capture_method
@app.post("/reservations/{reservation_id}/convert", response_model=ConversionResult)
def convert_reservation(reservation_id: str, payload: StatusChange) -> ConversionResult:
    try:
        result = service.convert_to_loan(reservation_id, payload.actor_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=RESERVATION_NOT_FOUND) from exc
    metrics.add_metric(name="ReservationConverted", value=1, unit=MetricUnit.Count)
    return result
