import datetime as dt
import os
import tempfile
import uuid

import pytest

_DB_PATH = os.path.join(tempfile.gettempdir(), f"reservations-test-{uuid.uuid4().hex}.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["RESERVATION_API_KEY"] = "test-api-key"
os.environ["ADMIN_API_KEY"] = "test-admin-key"

from db.session import SessionLocal, engine, init_db  # noqa: E402
from reservations.models import Base, DiningTable, Reservation, Restaurant  # noqa: E402
from reservations.schema import RestaurantRecord, TableRecord  # noqa: E402

FUTURE_DATE = dt.date(2099, 6, 15)


class InMemoryStorage:
    def __init__(self, restaurant=None, tables=(), reservations=()):
        self.restaurant = restaurant
        self.tables = list(tables)
        self.reservations = list(reservations)
        self.calls = 0

    def get_restaurant(self, restaurant_id):
        self.calls += 1
        if self.restaurant is not None and self.restaurant.id == restaurant_id:
            return self.restaurant
        return None

    def get_tables(self, restaurant_id):
        return [t for t in self.tables if t.restaurant_id == restaurant_id]

    def get_reservations(self, restaurant_id, *, date, statuses=None):
        return [
            r
            for r in self.reservations
            if r.restaurant_id == restaurant_id
            and r.date == date
            and (statuses is None or r.status in statuses)
        ]


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    if os.path.exists(_DB_PATH):
        os.remove(_DB_PATH)


@pytest.fixture
def memory_storage():
    return InMemoryStorage


@pytest.fixture
def restaurant_record():
    def build(opening="10:00:00", closing="22:00:00", duration=90, interval=30, tz="UTC"):
        return RestaurantRecord(
            id=1,
            name="Test Bistro",
            opening_time=opening,
            closing_time=closing,
            avg_reservation_duration=duration,
            slot_interval=interval,
            timezone=tz,
        )

    return build


@pytest.fixture
def table_record():
    def build(table_id, min_guests, max_guests, status="free", name=None):
        return TableRecord(
            id=table_id,
            restaurant_id=1,
            name=name or f"T{table_id}",
            min_guests=min_guests,
            max_guests=max_guests,
            status=status,
        )

    return build


@pytest.fixture
def db_session():
    with SessionLocal() as db:
        yield db


@pytest.fixture
def seeded_restaurant(db_session):
    """Restaurant open 10:00-22:00 with 90 minute sittings and two 2-4 seat tables."""
    restaurant = Restaurant(
        name="Test Bistro",
        opening_time=dt.time(10, 0),
        closing_time=dt.time(22, 0),
        avg_reservation_duration=90,
        slot_interval=30,
        timezone="UTC",
    )
    db_session.add(restaurant)
    db_session.flush()
    tables = [
        DiningTable(restaurant_id=restaurant.id, name="A", min_guests=2, max_guests=4),
        DiningTable(restaurant_id=restaurant.id, name="B", min_guests=2, max_guests=4),
    ]
    db_session.add_all(tables)
    db_session.flush()
    seeded = {"restaurant_id": restaurant.id, "table_ids": [t.id for t in tables]}
    db_session.commit()
    return seeded


@pytest.fixture
def add_reservation(db_session):
    def add(restaurant_id, table_id, at, *, duration=90, guests=2, status="confirmed", day=FUTURE_DATE):
        reservation = Reservation(
            restaurant_id=restaurant_id,
            table_id=table_id,
            date=day,
            time=at,
            duration=duration,
            guests=guests,
            status=status,
        )
        db_session.add(reservation)
        db_session.flush()
        reservation_id = reservation.id
        db_session.commit()
        return reservation_id

    return add
