"""Reservation creation, modification and cancellation, assistant tools and admin updates."""

from __future__ import annotations

import datetime as dt
import logging
import time as time_module
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from db.session import SessionLocal
from reservations.availability import AvailabilityService, group_active_reservations, is_table_available_at_slot
from reservations.models import DiningTable, Reservation, Restaurant
from reservations.rules import RuleEngine
from reservations.schema import (
    ACTIVE_STATUSES,
    AdminActionResult,
    AlternativeTimesRequest,
    AvailabilityCheckRequest,
    AvailabilityOptions,
    AvailabilityResponse,
    AvailabilitySlot,
    BookingResult,
    ReservationCancelRequest,
    ReservationCreateRequest,
    ReservationModifyRequest,
    ReservationStatus,
    RestaurantInfo,
    RestaurantSettingsUpdateRequest,
    TableUpsertRequest,
    ToolError,
    ToolErrorType,
    ToolResponse,
)
from reservations.storage import SqlAlchemyStorage, reservation_record, restaurant_record
from reservations.timeutils import is_overnight_operation, is_restaurant_open, parse_time_to_minutes, unwrap_minutes

logger = logging.getLogger(__name__)


def availability_service(db: Session) -> AvailabilityService:
    return AvailabilityService.from_settings(SqlAlchemyStorage(db), get_settings())


def _lock_restaurant(db: Session, restaurant_id: int) -> Restaurant | None:
    # Serializes concurrent bookings for the same restaurant.
    return db.scalar(select(Restaurant).where(Restaurant.id == restaurant_id).with_for_update())


def _slot_still_free(
    db: Session,
    *,
    restaurant: Restaurant,
    slot: AvailabilitySlot,
    service_date: dt.date,
    duration: int,
    exclude_reservation_id: int | None = None,
) -> bool:
    stmt = (
        select(Reservation)
        .where(
            Reservation.restaurant_id == restaurant.id,
            Reservation.date == service_date,
            Reservation.table_id.in_(slot.table_ids),
            Reservation.status.in_(ACTIVE_STATUSES),
        )
        .with_for_update()
    )
    by_table = group_active_reservations(
        (reservation_record(row) for row in db.scalars(stmt)),
        exclude_reservation_id=exclude_reservation_id,
    )

    settings = get_settings()
    record = restaurant_record(restaurant)
    opening = parse_time_to_minutes(record.opening_time)
    closing = parse_time_to_minutes(record.closing_time)
    start = unwrap_minutes(parse_time_to_minutes(slot.time), opening, closing)

    return all(
        is_table_available_at_slot(
            table_id,
            start,
            by_table.get(table_id, ()),
            duration,
            default_duration=settings.default_reservation_duration_minutes,
            opening_minutes=opening,
            closing_minutes=closing,
            unparseable_policy=settings.unparseable_reservation_policy,
        )
        for table_id in slot.table_ids
    )


def _add_linked_rows(db: Session, primary: Reservation, table_ids: list[int]) -> None:
    """Placeholder rows holding the extra tables of a combined booking."""
    for table_id in table_ids:
        db.add(
            Reservation(
                restaurant_id=primary.restaurant_id,
                table_id=table_id,
                parent_reservation_id=primary.id,
                guest_name=primary.guest_name,
                date=primary.date,
                time=primary.time,
                duration=primary.duration,
                guests=0,
                status=primary.status,
                source=primary.source,
                comments=f"Combined with reservation #{primary.id}",
            )
        )


def create_reservation(payload: dict) -> dict:
    try:
        request = ReservationCreateRequest.model_validate(payload)
    except ValidationError as exc:
        return BookingResult(success=False, reason=f"Invalid reservation payload: {exc}", available=False).model_dump(mode="json")

    settings = get_settings()
    with SessionLocal() as db:
        try:
            with db.begin():
                restaurant = _lock_restaurant(db, request.restaurant_id)
                if not restaurant:
                    return BookingResult(success=False, reason="Restaurant not found.").model_dump(mode="json")

                record = restaurant_record(restaurant)
                duration = RuleEngine.resolve_duration_minutes(
                    request.duration_minutes, record, settings.default_reservation_duration_minutes
                )

                hours_check = RuleEngine.check_operating_window(request.time, duration, record)
                if not hours_check.allowed:
                    return BookingResult(success=False, reason=hours_check.reason).model_dump(mode="json")

                past_check = RuleEngine.check_not_in_past(request.date, request.time, record)
                if not past_check.allowed:
                    return BookingResult(success=False, reason=past_check.reason).model_dump(mode="json")

                slots = availability_service(db).search_slots(
                    restaurant.id,
                    request.date,
                    request.guests,
                    AvailabilityOptions(
                        requested_time=request.time,
                        exact_time_only=True,
                        slot_duration_minutes=duration,
                        max_results=1,
                        lang=request.lang,
                    ),
                )
                if not slots:
                    return BookingResult(
                        success=False,
                        reason=f"No tables available for {request.guests} guests on {request.date} at {request.time[:5]}",
                        available=False,
                    ).model_dump(mode="json")

                slot = slots[0]
                if not _slot_still_free(db, restaurant=restaurant, slot=slot, service_date=request.date, duration=duration):
                    logger.warning("Slot %s on tables %s was taken before commit", slot.time, slot.table_ids)
                    return BookingResult(
                        success=False,
                        reason="The selected table was just booked. Please choose another time.",
                        available=False,
                    ).model_dump(mode="json")

                primary_table_id, *linked_table_ids = slot.table_ids
                reservation = Reservation(
                    restaurant_id=restaurant.id,
                    table_id=primary_table_id,
                    guest_name=request.guest_name,
                    guest_phone=request.guest_phone,
                    date=request.date,
                    time=dt.time.fromisoformat(slot.time),
                    duration=duration,
                    guests=request.guests,
                    status=request.status,
                    source=request.source,
                    comments=request.comments,
                )
                db.add(reservation)
                db.flush()

                _add_linked_rows(db, reservation, linked_table_ids)
                db.flush()

                logger.info(
                    "Reservation %s created on %s for %s guests at %s %s",
                    reservation.id,
                    slot.table_name,
                    request.guests,
                    request.date,
                    slot.time,
                )
                return BookingResult(
                    success=True,
                    reservation_id=reservation.id,
                    status=ReservationStatus(request.status),
                    table_id=slot.table_id,
                    table_name=slot.table_name,
                    is_combined=slot.is_combined,
                    constituent_table_ids=list(slot.table_ids),
                    date=request.date,
                    time=slot.time,
                    available=True,
                ).model_dump(mode="json")
        except SQLAlchemyError:
            logger.exception("Database error while creating reservation")
            db.rollback()
            return BookingResult(success=False, reason="Database error while creating reservation.").model_dump(mode="json")


def cancel_reservation(reservation_id: int, payload: Optional[dict] = None) -> dict:
    try:
        request = ReservationCancelRequest.model_validate(payload or {})
    except ValidationError as exc:
        return BookingResult(success=False, reason=f"Invalid cancel payload: {exc}").model_dump(mode="json")

    with SessionLocal() as db:
        try:
            with db.begin():
                reservation = db.scalar(select(Reservation).where(Reservation.id == reservation_id).with_for_update())
                if not reservation or reservation.parent_reservation_id is not None:
                    return BookingResult(success=False, reason="Reservation not found.").model_dump(mode="json")
                if request.restaurant_id and reservation.restaurant_id != request.restaurant_id:
                    return BookingResult(
                        success=False,
                        reason="Reservation does not belong to this restaurant.",
                    ).model_dump(mode="json")
                if reservation.status == ReservationStatus.CANCELED.value:
                    return BookingResult(success=False, reason="Reservation already canceled.").model_dump(mode="json")

                linked = list(
                    db.scalars(
                        select(Reservation)
                        .where(Reservation.parent_reservation_id == reservation.id)
                        .with_for_update()
                    )
                )
                for row in [reservation, *linked]:
                    row.status = ReservationStatus.CANCELED.value
                db.flush()

                logger.info("Reservation %s canceled (%s linked rows)", reservation.id, len(linked))
                return BookingResult(
                    success=True,
                    reservation_id=reservation.id,
                    status=ReservationStatus.CANCELED,
                    table_id=reservation.table_id,
                    is_combined=bool(linked),
                    constituent_table_ids=[row.table_id for row in [reservation, *linked] if row.table_id is not None],
                    date=reservation.date,
                    time=reservation.time.strftime("%H:%M:%S"),
                    available=True,
                ).model_dump(mode="json")
        except SQLAlchemyError:
            logger.exception("Database error while canceling reservation %s", reservation_id)
            db.rollback()
            return BookingResult(success=False, reason="Database error while canceling reservation.").model_dump(mode="json")


def modify_reservation(reservation_id: int, payload: dict) -> dict:
    """Move an active reservation to a new date, time, party size or duration.

    The reservation's own rows are ignored while searching, so it may keep its
    table. Placeholder rows of a combined booking are replaced.
    """
    try:
        request = ReservationModifyRequest.model_validate(payload)
    except ValidationError as exc:
        return BookingResult(success=False, reason=f"Invalid modify payload: {exc}").model_dump(mode="json")

    settings = get_settings()
    with SessionLocal() as db:
        try:
            with db.begin():
                reservation = db.scalar(select(Reservation).where(Reservation.id == reservation_id).with_for_update())
                if not reservation or reservation.parent_reservation_id is not None:
                    return BookingResult(success=False, reason="Reservation not found.").model_dump(mode="json")
                if request.restaurant_id and reservation.restaurant_id != request.restaurant_id:
                    return BookingResult(
                        success=False,
                        reason="Reservation does not belong to this restaurant.",
                    ).model_dump(mode="json")
                if reservation.status not in ACTIVE_STATUSES:
                    return BookingResult(
                        success=False,
                        reason=f"Reservation is {reservation.status} and cannot be modified.",
                    ).model_dump(mode="json")

                restaurant = _lock_restaurant(db, reservation.restaurant_id)
                record = restaurant_record(restaurant)
                service_date = request.date or reservation.date
                time_str = request.time or reservation.time.strftime("%H:%M:%S")
                guests = request.guests or reservation.guests
                duration = RuleEngine.resolve_duration_minutes(
                    request.duration_minutes or reservation.duration,
                    record,
                    settings.default_reservation_duration_minutes,
                )

                for check in (
                    RuleEngine.check_operating_window(time_str, duration, record),
                    RuleEngine.check_not_in_past(service_date, time_str, record),
                ):
                    if not check.allowed:
                        return BookingResult(success=False, reason=check.reason).model_dump(mode="json")

                slots = availability_service(db).search_slots(
                    restaurant.id,
                    service_date,
                    guests,
                    AvailabilityOptions(
                        requested_time=time_str,
                        exact_time_only=True,
                        slot_duration_minutes=duration,
                        max_results=1,
                        lang=request.lang,
                        exclude_reservation_id=reservation.id,
                    ),
                )
                if not slots:
                    return BookingResult(
                        success=False,
                        reason=f"No tables available for {guests} guests on {service_date} at {time_str[:5]}",
                        available=False,
                    ).model_dump(mode="json")

                slot = slots[0]
                if not _slot_still_free(
                    db,
                    restaurant=restaurant,
                    slot=slot,
                    service_date=service_date,
                    duration=duration,
                    exclude_reservation_id=reservation.id,
                ):
                    logger.warning("Slot %s on tables %s was taken before commit", slot.time, slot.table_ids)
                    return BookingResult(
                        success=False,
                        reason="The selected table was just booked. Please choose another time.",
                        available=False,
                    ).model_dump(mode="json")

                for row in db.scalars(
                    select(Reservation).where(Reservation.parent_reservation_id == reservation.id).with_for_update()
                ):
                    db.delete(row)

                primary_table_id, *linked_table_ids = slot.table_ids
                reservation.table_id = primary_table_id
                reservation.date = service_date
                reservation.time = dt.time.fromisoformat(slot.time)
                reservation.duration = duration
                reservation.guests = guests
                db.flush()
                _add_linked_rows(db, reservation, linked_table_ids)
                db.flush()

                logger.info(
                    "Reservation %s moved to %s for %s guests at %s %s",
                    reservation.id,
                    slot.table_name,
                    guests,
                    service_date,
                    slot.time,
                )
                return BookingResult(
                    success=True,
                    reservation_id=reservation.id,
                    status=ReservationStatus(reservation.status),
                    table_id=slot.table_id,
                    table_name=slot.table_name,
                    is_combined=slot.is_combined,
                    constituent_table_ids=list(slot.table_ids),
                    date=service_date,
                    time=slot.time,
                    available=True,
                ).model_dump(mode="json")
        except SQLAlchemyError:
            logger.exception("Database error while modifying reservation %s", reservation_id)
            db.rollback()
            return BookingResult(success=False, reason="Database error while modifying reservation.").model_dump(mode="json")


def get_restaurant_info(restaurant_id: int, *, now: dt.datetime | None = None) -> dict | None:
    with SessionLocal() as db:
        restaurant = db.get(Restaurant, restaurant_id)
        if not restaurant:
            return None
        record = restaurant_record(restaurant)

    opening = parse_time_to_minutes(record.opening_time)
    closing = parse_time_to_minutes(record.closing_time)
    has_hours = opening is not None and closing is not None
    return RestaurantInfo(
        id=record.id,
        name=record.name,
        opening_time=record.opening_time,
        closing_time=record.closing_time,
        timezone=record.timezone,
        avg_reservation_duration=record.avg_reservation_duration,
        slot_interval=record.slot_interval,
        overnight=has_hours and is_overnight_operation(opening, closing),
        open_now=has_hours and is_restaurant_open(record.timezone, record.opening_time, record.closing_time, now=now),
    ).model_dump(mode="json")


def get_availability(restaurant_id: int, date: dt.date, guests: int, options: AvailabilityOptions) -> dict:
    with SessionLocal() as db:
        slots = availability_service(db).get_available_time_slots(restaurant_id, date, guests, options)
    return AvailabilityResponse(restaurant_id=restaurant_id, date=date, guests=guests, slots=slots).model_dump(mode="json")


def _validation_failure(exc: ValidationError) -> dict:
    first = exc.errors()[0] if exc.errors() else {}
    loc = first.get("loc") or ()
    return ToolResponse(
        tool_status="FAILURE",
        error=ToolError(
            type=ToolErrorType.VALIDATION,
            message=first.get("msg", str(exc)),
            field=str(loc[0]) if loc else None,
        ),
    ).model_dump(mode="json")


def _business_failure(message: str, code: str, started: float) -> dict:
    return ToolResponse(
        tool_status="FAILURE",
        error=ToolError(type=ToolErrorType.BUSINESS_RULE, message=message, code=code),
        metadata={"execution_time_ms": int((time_module.perf_counter() - started) * 1000)},
    ).model_dump(mode="json")


def _system_failure(message: str) -> dict:
    return ToolResponse(
        tool_status="FAILURE",
        error=ToolError(type=ToolErrorType.SYSTEM, message=message),
    ).model_dump(mode="json")


def _success(data: dict[str, Any], started: float) -> dict:
    return ToolResponse(
        tool_status="SUCCESS",
        data=data,
        metadata={"execution_time_ms": int((time_module.perf_counter() - started) * 1000)},
    ).model_dump(mode="json")


def check_availability(payload: dict) -> dict:
    """Exact-time availability for the booking assistant.

    When nothing fits, probes smaller party sizes at the same time so the
    assistant can offer a partial seating.
    """
    started = time_module.perf_counter()
    try:
        request = AvailabilityCheckRequest.model_validate(payload)
    except ValidationError as exc:
        return _validation_failure(exc)

    def exact(guests: int) -> list[AvailabilitySlot]:
        return service.search_slots(
            request.restaurant_id,
            request.date,
            guests,
            AvailabilityOptions(
                requested_time=request.time,
                exact_time_only=True,
                lang=request.lang,
                exclude_reservation_id=request.exclude_reservation_id,
            ),
        )

    try:
        with SessionLocal() as db:
            service = availability_service(db)
            slots = exact(request.guests)
            if slots:
                best = slots[0]
                suffix = " (combined tables)" if best.is_combined else ""
                return _success(
                    {
                        "available": True,
                        "table": best.table_name,
                        "capacity": best.table_capacity.max,
                        "is_combined": best.is_combined,
                        "exact_time": request.time,
                        "message": f"Table {best.table_name} available for {request.guests} guests at {best.time_display}{suffix}",
                        "constituent_tables": [t.model_dump() for t in best.constituent_tables] or None,
                        "all_available_slots": [{"time": s.time, "table": s.table_name} for s in slots],
                    },
                    started,
                )

            for smaller in range(request.guests - 1, 0, -1):
                if exact(smaller):
                    return _business_failure(
                        f"No tables available for {request.guests} guests at {request.time[:5]} on {request.date}. "
                        f"However, there is availability for {smaller} guests at the same time.",
                        "NO_AVAILABILITY_SUGGEST_SMALLER",
                        started,
                    )
    except SQLAlchemyError:
        logger.exception("check_availability failed")
        return _system_failure("Failed to check availability due to system error")

    return _business_failure(
        f"No tables available for {request.guests} guests at {request.time[:5]} on {request.date}",
        "NO_AVAILABILITY",
        started,
    )


def find_alternative_times(payload: dict) -> dict:
    started = time_module.perf_counter()
    try:
        request = AlternativeTimesRequest.model_validate(payload)
    except ValidationError as exc:
        return _validation_failure(exc)

    try:
        with SessionLocal() as db:
            slots = availability_service(db).search_slots(
                request.restaurant_id,
                request.date,
                request.guests,
                AvailabilityOptions(
                    requested_time=request.preferred_time,
                    max_results=request.max_results,
                    lang=request.lang,
                ),
            )
    except SQLAlchemyError:
        logger.exception("find_alternative_times failed")
        return _system_failure("Failed to find alternative times due to system error")

    if not slots:
        return _business_failure(
            f"No alternative times available for {request.guests} guests on {request.date} near {request.preferred_time[:5]}",
            "NO_ALTERNATIVES",
            started,
        )

    preferred = parse_time_to_minutes(request.preferred_time)
    alternatives = []
    for slot in slots:
        distance = abs(parse_time_to_minutes(slot.time) - preferred)
        alternatives.append(
            {
                "time": slot.time_display,
                "time_internal": slot.time,
                "table": slot.table_name,
                "capacity": slot.table_capacity.max,
                "is_combined": slot.is_combined,
                "proximity_minutes": min(distance, 24 * 60 - distance),
                "message": f"{slot.time_display} - {slot.table_name}{' (combined)' if slot.is_combined else ''}",
            }
        )

    return _success(
        {
            "alternatives": alternatives,
            "count": len(alternatives),
            "date": request.date.isoformat(),
            "preferred_time": request.preferred_time,
            "closest_alternative": alternatives[0],
        },
        started,
    )


def upsert_table(payload: dict) -> dict:
    try:
        model = TableUpsertRequest.model_validate(payload)
    except ValidationError as exc:
        return AdminActionResult(success=False, reason=f"Invalid table payload: {exc}").model_dump(mode="json")

    with SessionLocal() as db:
        try:
            with db.begin():
                restaurant = db.get(Restaurant, model.restaurant_id)
                if not restaurant:
                    return AdminActionResult(success=False, reason="Restaurant not found.").model_dump(mode="json")

                table = db.get(DiningTable, model.table_id) if model.table_id else None
                if model.table_id and not table:
                    return AdminActionResult(success=False, reason="Table not found.").model_dump(mode="json")
                if table:
                    if table.restaurant_id != model.restaurant_id:
                        return AdminActionResult(
                            success=False,
                            reason="Table belongs to a different restaurant.",
                        ).model_dump(mode="json")
                    table.name = model.name
                    table.min_guests = model.min_guests
                    table.max_guests = model.max_guests
                    table.status = model.status.value
                else:
                    duplicate = db.scalar(
                        select(DiningTable).where(
                            DiningTable.restaurant_id == model.restaurant_id,
                            DiningTable.name == model.name,
                        )
                    )
                    if duplicate:
                        return AdminActionResult(
                            success=False,
                            reason=f"Table {model.name} already exists.",
                        ).model_dump(mode="json")
                    table = DiningTable(
                        restaurant_id=model.restaurant_id,
                        name=model.name,
                        min_guests=model.min_guests,
                        max_guests=model.max_guests,
                        status=model.status.value,
                    )
                    db.add(table)

                db.flush()
                return AdminActionResult(success=True, restaurant_id=restaurant.id, table_id=table.id).model_dump(mode="json")
        except SQLAlchemyError:
            logger.exception("Database error while upserting table")
            db.rollback()
            return AdminActionResult(success=False, reason="Database error while upserting table.").model_dump(mode="json")


def update_restaurant_settings(payload: dict) -> dict:
    try:
        model = RestaurantSettingsUpdateRequest.model_validate(payload)
    except ValidationError as exc:
        return AdminActionResult(success=False, reason=f"Invalid settings payload: {exc}").model_dump(mode="json")

    with SessionLocal() as db:
        try:
            with db.begin():
                restaurant = db.get(Restaurant, model.restaurant_id)
                if not restaurant:
                    return AdminActionResult(success=False, reason="Restaurant not found.").model_dump(mode="json")

                opening_time = dt.time.fromisoformat(model.opening_time) if model.opening_time else restaurant.opening_time
                closing_time = dt.time.fromisoformat(model.closing_time) if model.closing_time else restaurant.closing_time
                if opening_time is not None and opening_time == closing_time:
                    return AdminActionResult(
                        success=False,
                        reason="opening_time and closing_time must differ.",
                    ).model_dump(mode="json")

                restaurant.opening_time = opening_time
                restaurant.closing_time = closing_time
                if model.avg_reservation_duration is not None:
                    restaurant.avg_reservation_duration = model.avg_reservation_duration
                if model.slot_interval is not None:
                    restaurant.slot_interval = model.slot_interval
                if model.timezone is not None:
                    restaurant.timezone = model.timezone

                db.flush()
                return AdminActionResult(success=True, restaurant_id=restaurant.id).model_dump(mode="json")
        except SQLAlchemyError:
            logger.exception("Database error while updating restaurant settings")
            db.rollback()
            return AdminActionResult(success=False, reason="Database error while updating settings.").model_dump(mode="json")
