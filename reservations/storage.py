"""Read access to restaurants, tables and reservations for the availability engine."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from reservations.models import DiningTable, Reservation, Restaurant
from reservations.schema import ReservationRecord, RestaurantRecord, TableRecord

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def get_restaurant(self, restaurant_id: int) -> Optional[RestaurantRecord]: ...

    def get_tables(self, restaurant_id: int) -> list[TableRecord]: ...

    def get_reservations(
        self,
        restaurant_id: int,
        *,
        date: dt.date,
        statuses: Iterable[str] | None = None,
    ) -> list[ReservationRecord]: ...


def _time_to_str(value: dt.time | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, dt.time):
        return value.strftime("%H:%M:%S")
    return str(value)


def restaurant_record(restaurant: Restaurant) -> RestaurantRecord:
    return RestaurantRecord(
        id=restaurant.id,
        name=restaurant.name,
        opening_time=_time_to_str(restaurant.opening_time),
        closing_time=_time_to_str(restaurant.closing_time),
        avg_reservation_duration=restaurant.avg_reservation_duration,
        slot_interval=restaurant.slot_interval,
        timezone=restaurant.timezone or "UTC",
    )


def table_record(table: DiningTable) -> TableRecord:
    return TableRecord.model_validate(table)


def reservation_record(reservation: Reservation) -> ReservationRecord:
    return ReservationRecord(
        id=reservation.id,
        restaurant_id=reservation.restaurant_id,
        table_id=reservation.table_id,
        parent_reservation_id=reservation.parent_reservation_id,
        date=reservation.date,
        time=_time_to_str(reservation.time),
        duration=reservation.duration,
        guests=reservation.guests,
        status=reservation.status,
    )


class SqlAlchemyStorage:
    """Storage backed by an open SQLAlchemy session owned by the caller."""

    def __init__(self, db: Session):
        self.db = db

    def get_restaurant(self, restaurant_id: int) -> Optional[RestaurantRecord]:
        restaurant = self.db.get(Restaurant, restaurant_id)
        return restaurant_record(restaurant) if restaurant else None

    def get_tables(self, restaurant_id: int) -> list[TableRecord]:
        stmt = select(DiningTable).where(DiningTable.restaurant_id == restaurant_id).order_by(DiningTable.id.asc())
        return [table_record(table) for table in self.db.scalars(stmt)]

    def get_reservations(
        self,
        restaurant_id: int,
        *,
        date: dt.date,
        statuses: Iterable[str] | None = None,
    ) -> list[ReservationRecord]:
        stmt = select(Reservation).where(
            Reservation.restaurant_id == restaurant_id,
            Reservation.date == date,
        )
        if statuses is not None:
            stmt = stmt.where(Reservation.status.in_(list(statuses)))
        stmt = stmt.order_by(Reservation.time.asc(), Reservation.id.asc())

        records = [reservation_record(reservation) for reservation in self.db.scalars(stmt)]
        logger.debug("Loaded %s reservations for restaurant %s on %s", len(records), restaurant_id, date)
        return records
