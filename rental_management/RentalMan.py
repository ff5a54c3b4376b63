import logging
import os

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime
from sqlalchemy import text
from sqlalchemy.orm import Session

from rental_management.db.deps import get_rental_db
from rental_management.db.session import SessionLocalRental
from rental_management.schemas.reservations import (
    AssignAssetRequest,
    CancelRequest,
    ConfirmRequest,
    IssueRequest,
    ReturnRequest,
)
from rental_management.services.errors import (
    AuthenticationRequired,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ReservationError,
    StateError,
    TransientError,
    ValidationError,
)
from rental_management.services.reservation_service import ReservationService, parse_hold_request
from rental_management.services.user_access_service import require_session, verify_service_key

app = FastAPI()

API_LOGGER = logging.getLogger("rental_management.api")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first: AuthenticationRequired subclasses AuthorizationError.
_HTTP_STATUS_BY_ERROR = (
    (AuthenticationRequired, 401),
    (AuthorizationError, 403),
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
    (TransientError, 503),
)


def get_reservation_service() -> ReservationService:
    return ReservationService(SessionLocalRental)


def _http_error(exc: ReservationError) -> HTTPException:
    status_code = 500
    for error_type, candidate in _HTTP_STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = candidate
            break
    if isinstance(exc, StateError) and exc.code == "hold_expired":
        status_code = 410
    detail = {"error": exc.code, "message": exc.message}
    if exc.details is not None:
        detail["details"] = exc.details
    return HTTPException(status_code=status_code, detail=detail)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    # Same shape and status as payload errors raised by the service layer.
    details = jsonable_encoder(
        [{key: value for key, value in error.items() if key in {"type", "loc", "msg"}} for error in exc.errors()]
    )
    return JSONResponse(
        status_code=400,
        content={"detail": {"error": "validation", "message": "Validation failed", "details": details}},
    )


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception):
    API_LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": {"error": "internal", "message": "Internal server error"}})


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/unit-types/{unit_type_id}/availability")
def get_unit_type_availability(
    unit_type_id: str,
    start_date: AwareDatetime = Query(..., alias="startDate"),
    end_date: AwareDatetime = Query(..., alias="endDate"),
    quantity: int = Query(1, alias="quantity"),
    exclude_reservation_id: str | None = Query(None, alias="excludeReservationId"),
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    try:
        session = require_session(x_session_token)
        result = service.get_availability(
            unit_type_id,
            start_date,
            end_date,
            quantity,
            exclude_reservation_id,
            actor=session,
        )
    except ReservationError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@app.post("/api/reservations/holds", status_code=201)
def create_reservation_hold(
    payload: dict,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    try:
        session = require_session(x_session_token)
        hold_request = parse_hold_request(payload)
        result = service.create_hold(hold_request, actor=session)
    except ReservationError as exc:
        if isinstance(exc, ConflictError):
            API_LOGGER.info("Hold rejected for unit type %s: %s", payload.get("unitTypeId"), exc.message)
        raise _http_error(exc) from exc
    return result.to_dict()


@app.get("/api/reservations/{reservation_id}")
def get_reservation(
    reservation_id: str,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    try:
        return service.get_reservation(reservation_id, actor=require_session(x_session_token))
    except ReservationError as exc:
        raise _http_error(exc) from exc


@app.post("/api/reservations/{reservation_id}/confirm")
def confirm_reservation(
    reservation_id: str,
    payload: ConfirmRequest | None = None,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    payload = payload or ConfirmRequest()
    try:
        session = require_session(x_session_token)
        return service.confirm(reservation_id, payload.paymentReference, actor=session)
    except ReservationError as exc:
        raise _http_error(exc) from exc


@app.post("/api/reservations/{reservation_id}/cancel")
def cancel_reservation(
    reservation_id: str,
    payload: CancelRequest | None = None,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    payload = payload or CancelRequest()
    try:
        session = require_session(x_session_token)
        return service.cancel(reservation_id, payload.reason, actor=session)
    except ReservationError as exc:
        raise _http_error(exc) from exc


@app.post("/api/reservations/{reservation_id}/issue")
def issue_reservation(
    reservation_id: str,
    payload: IssueRequest | None = None,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    payload = payload or IssueRequest()
    try:
        session = require_session(x_session_token)
        return service.issue(reservation_id, payload.override, payload.overrideReason, actor=session)
    except ReservationError as exc:
        raise _http_error(exc) from exc


@app.post("/api/reservations/{reservation_id}/return")
def return_reservation(
    reservation_id: str,
    payload: ReturnRequest | None = None,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    payload = payload or ReturnRequest()
    try:
        session = require_session(x_session_token)
        return service.complete(reservation_id, payload.damaged, payload.notes, actor=session)
    except ReservationError as exc:
        raise _http_error(exc) from exc


@app.get("/api/reservations/{reservation_id}/candidate-assets")
def list_candidate_assets(
    reservation_id: str,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    try:
        candidates = service.find_candidates(reservation_id, actor=require_session(x_session_token))
    except ReservationError as exc:
        raise _http_error(exc) from exc
    return {
        "reservationId": reservation_id,
        "candidates": candidates,
        "message": None if candidates else "No available assets.",
    }


@app.post("/api/reservations/{reservation_id}/assign")
def assign_reservation_asset(
    reservation_id: str,
    payload: AssignAssetRequest,
    service: ReservationService = Depends(get_reservation_service),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    try:
        session = require_session(x_session_token)
        return service.assign(reservation_id, payload.assetId, actor=session)
    except ReservationError as exc:
        raise _http_error(exc) from exc


@app.post("/api/maintenance/cleanup-holds")
def cleanup_reservation_holds(
    service: ReservationService = Depends(get_reservation_service),
    x_service_key: str | None = Header(None, alias="X-Service-Key"),
):
    try:
        verify_service_key(x_service_key)
    except ReservationError as exc:
        raise _http_error(exc) from exc

    result = service.sweep()
    if not result.ok:
        raise HTTPException(status_code=500, detail={"error": "sweep_failed", "message": "Failed to cleanup holds"})
    return {"expiredCount": result.expired_count}
