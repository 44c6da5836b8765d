from __future__ import annotations

import hmac
import logging
from datetime import date
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import get_settings
from db.session import validate_db_compatibility
from reservations.engine import (
    cancel_reservation,
    check_availability,
    create_reservation,
    find_alternative_times,
    get_availability,
    get_restaurant_info,
    modify_reservation,
    update_restaurant_settings,
    upsert_table,
)
from reservations.schema import (
    MAX_PARTY_SIZE,
    AlternativeTimesRequest,
    AvailabilityCheckRequest,
    AvailabilityOptions,
    AvailabilityResponse,
    ReservationCancelRequest,
    ReservationCreateRequest,
    ReservationModifyRequest,
    RestaurantInfo,
    RestaurantSettingsUpdateRequest,
    TableUpsertRequest,
)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

APP_NAME = settings.app_name
APP_VERSION = settings.app_version
API_KEY_HEADER = "X-API-Key"
ADMIN_API_KEY_HEADER = "X-Admin-API-Key"


def verify_api_key(x_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER)):
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.reservation_api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key.")


def verify_admin_api_key(x_admin_api_key: Optional[str] = Header(default=None, alias=ADMIN_API_KEY_HEADER)):
    if not x_admin_api_key or not hmac.compare_digest(x_admin_api_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing admin API key.")


class HealthResponse(BaseModel):
    status: Literal["ok", "error"]
    service: str
    version: str


app = FastAPI(title=APP_NAME, version=APP_VERSION)


@app.on_event("startup")
def startup_checks():
    validate_db_compatibility()
    logger.info("%s %s ready", APP_NAME, APP_VERSION)


@app.get("/health/live", response_model=HealthResponse)
def health_live():
    return HealthResponse(status="ok", service=APP_NAME, version=APP_VERSION)


@app.get("/health/ready", response_model=HealthResponse)
def health_ready():
    try:
        validate_db_compatibility()
    except Exception as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return HealthResponse(status="ok", service=APP_NAME, version=APP_VERSION)


@app.get(
    "/v1/restaurants/{restaurant_id}",
    response_model=RestaurantInfo,
    dependencies=[Depends(verify_api_key)],
)
def restaurant_info(restaurant_id: int):
    info = get_restaurant_info(restaurant_id)
    if info is None:
        raise HTTPException(status_code=404, detail="Restaurant not found.")
    return info


@app.get(
    "/v1/restaurants/{restaurant_id}/availability",
    response_model=AvailabilityResponse,
    dependencies=[Depends(verify_api_key)],
)
def restaurant_availability(
    restaurant_id: int,
    day: date,
    guests: int = Query(ge=1, le=MAX_PARTY_SIZE),
    time: Optional[str] = None,
    exact: bool = False,
    max_results: Optional[int] = Query(default=None, ge=1, le=50),
    lang: str = "en",
    allow_combinations: bool = True,
):
    if exact and not time:
        raise HTTPException(status_code=400, detail="time is required when exact=true.")
    options = AvailabilityOptions(
        requested_time=time,
        exact_time_only=exact,
        max_results=max_results,
        lang=lang,
        allow_combinations=allow_combinations,
    )
    return get_availability(restaurant_id, day, guests, options)


@app.post("/v1/reservations", dependencies=[Depends(verify_api_key)])
def create_reservation_route(request: ReservationCreateRequest):
    return JSONResponse(content=create_reservation(request.model_dump(mode="json")))


@app.post("/v1/reservations/{reservation_id}/cancel", dependencies=[Depends(verify_api_key)])
def cancel_reservation_route(reservation_id: int, request: ReservationCancelRequest):
    result = cancel_reservation(reservation_id, request.model_dump(mode="json"))
    if not result["success"] and result["reason"] == "Reservation not found.":
        raise HTTPException(status_code=404, detail=result["reason"])
    return JSONResponse(content=result)


@app.post("/v1/reservations/{reservation_id}/modify", dependencies=[Depends(verify_api_key)])
def modify_reservation_route(reservation_id: int, request: ReservationModifyRequest):
    result = modify_reservation(reservation_id, request.model_dump(mode="json", exclude_none=True))
    if not result["success"] and result["reason"] == "Reservation not found.":
        raise HTTPException(status_code=404, detail=result["reason"])
    return JSONResponse(content=result)


@app.post("/v1/tools/check-availability",dependencies=[Depends(verify_api_key)])
def check_availability_tool(request: AvailabilityCheckRequest):
    return JSONResponse(content=check_availability(request.model_dump(mode="json")))


@app.post("/v1/tools/alternative-times", dependencies=[Depends(verify_api_key)])
def alternative_times_tool(request: AlternativeTimesRequest):
    return JSONResponse(content=find_alternative_times(request.model_dump(mode="json")))


@app.post("/v1/admin/tables", dependencies=[Depends(verify_admin_api_key)])
def admin_upsert_table(request: TableUpsertRequest):
    return JSONResponse(content=upsert_table(request.model_dump(mode="json")))


@app.post("/v1/admin/restaurants/settings", dependencies=[Depends(verify_admin_api_key)])
def admin_update_restaurant_settings(request: RestaurantSettingsUpdateRequest):
    return JSONResponse(content=update_restaurant_settings(request.model_dump(mode="json")))
