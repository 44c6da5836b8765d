"""Table availability search: conflict checks, table selection and slot enumeration."""

from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from itertools import combinations
from typing import Any, Iterable, Optional, Sequence

from pydantic import ValidationError

from config import BLOCK_UNPARSEABLE, SKIP_UNPARSEABLE, Settings
from reservations.schema import (
    ACTIVE_STATUSES,
    COMBINED_TABLE_ID,
    AvailabilityOptions,
    AvailabilitySlot,
    ConstituentTable,
    ReservationRecord,
    TableCapacity,
    TableRecord,
)
from reservations.storage import Storage
from reservations.timeutils import (
    add_minutes,
    format_time_for_display,
    intervals_overlap,
    is_overnight_operation,
    minutes_to_time_string,
    operating_window,
    parse_time_to_minutes,
    unwrap_minutes,
)

logger = logging.getLogger(__name__)

DEFAULT_SLOT_INTERVAL_MINUTES = 30
DEFAULT_RESERVATION_DURATION_MINUTES = 120
DEFAULT_MAX_RESULTS = 5
DEFAULT_MAX_COMBINATION_SIZE = 2


def filter_bookable_tables(tables: Iterable[TableRecord]) -> list[TableRecord]:
    bookable: list[TableRecord] = []
    for table in tables:
        if not table.bookable:
            continue
        if table.min_guests > table.max_guests:
            logger.warning(
                "Table %s (%s) has min_guests %s > max_guests %s; excluded",
                table.id,
                table.name,
                table.min_guests,
                table.max_guests,
            )
            continue
        bookable.append(table)
    return bookable


def tables_fitting_party(tables: Iterable[TableRecord], guests: int) -> list[TableRecord]:
    return [table for table in tables if table.min_guests <= guests <= table.max_guests]


def combination_fits(tables: Sequence[TableRecord], guests: int) -> bool:
    return sum(t.min_guests for t in tables) <= guests <= sum(t.max_guests for t in tables)


def is_table_available_at_slot(
    table_id: int,
    slot_start: int,
    reservations: Iterable[ReservationRecord],
    slot_duration: int,
    *,
    default_duration: int = DEFAULT_RESERVATION_DURATION_MINUTES,
    opening_minutes: int | None = None,
    closing_minutes: int | None = None,
    unparseable_policy: str = SKIP_UNPARSEABLE,
) -> bool:
    """Return True when no reservation overlaps [slot_start, slot_start + slot_duration).

    ``reservations`` must already be the table's active reservations for the
    day. When opening/closing are given, reservation times are placed on the
    same overnight-aware timeline as ``slot_start``.
    """
    slot_end = add_minutes(slot_start, slot_duration)

    for reservation in reservations:
        res_start = parse_time_to_minutes(reservation.time)
        if res_start is None:
            if unparseable_policy == BLOCK_UNPARSEABLE:
                logger.warning(
                    "Reservation %s for table %s has invalid time %r; blocking table for the day",
                    reservation.id,
                    table_id,
                    reservation.time,
                )
                return False
            logger.warning(
                "Reservation %s for table %s has invalid time %r; skipping for conflict check",
                reservation.id,
                table_id,
                reservation.time,
            )
            continue

        if opening_minutes is not None and closing_minutes is not None:
            res_start = unwrap_minutes(res_start, opening_minutes, closing_minutes)
        res_end = add_minutes(res_start, reservation.duration or default_duration)

        if intervals_overlap(slot_start, slot_end, res_start, res_end):
            return False
    return True


def select_best_table(candidates: Iterable[TableRecord]) -> Optional[TableRecord]:
    """Smallest table that still seats the party keeps larger tables for larger parties."""
    ordered = sorted(candidates, key=lambda t: (t.max_guests, t.min_guests, t.id))
    return ordered[0] if ordered else None


def find_best_combination(
    free_tables: Iterable[TableRecord],
    guests: int,
    max_tables: int = DEFAULT_MAX_COMBINATION_SIZE,
) -> Optional[tuple[TableRecord, ...]]:
    """Return the tightest combination of 2..max_tables tables covering the party.

    Ranked by excess capacity (combined max minus guests), then combined max,
    then number of tables, then table ids.
    """
    pool = sorted(free_tables, key=lambda t: t.id)
    best: Optional[tuple[TableRecord, ...]] = None
    best_key: Optional[tuple[Any, ...]] = None

    for size in range(2, max_tables + 1):
        for combo in combinations(pool, size):
            if not combination_fits(combo, guests):
                continue
            combined_max = sum(t.max_guests for t in combo)
            key = (combined_max - guests, combined_max, size, tuple(t.id for t in combo))
            if best_key is None or key < best_key:
                best, best_key = combo, key
    return best


def enumerate_candidate_times(
    opening_minutes: int,
    closing_minutes: int,
    interval_minutes: int,
    duration_minutes: int,
    *,
    requested_minutes: int | None = None,
    exact_time_only: bool = False,
) -> list[int]:
    """Candidate start times on the operating timeline.

    Values past midnight for overnight restaurants are >= 1440; callers wrap
    them with ``minutes_to_time_string``.
    """
    window_start, window_end = operating_window(opening_minutes, closing_minutes)
    last_start = window_end - duration_minutes

    target = None
    if requested_minutes is not None:
        target = unwrap_minutes(requested_minutes, opening_minutes, closing_minutes)

    if exact_time_only:
        if target is None or not window_start <= target <= last_start:
            return []
        return [target]

    candidates = list(range(window_start, last_start + 1, interval_minutes))
    if target is not None:
        candidates.sort(key=lambda minutes: (abs(minutes - target), minutes))
    return candidates


def _single_slot(date_str: str, minutes: int, table: TableRecord, lang: str) -> AvailabilitySlot:
    time_str = minutes_to_time_string(minutes)
    return AvailabilitySlot(
        date=date_str,
        time=time_str,
        time_display=format_time_for_display(time_str, lang),
        table_id=table.id,
        table_name=table.name,
        table_capacity=TableCapacity(min=table.min_guests, max=table.max_guests),
    )


def _combined_slot(date_str: str, minutes: int, tables: Sequence[TableRecord], lang: str) -> AvailabilitySlot:
    time_str = minutes_to_time_string(minutes)
    return AvailabilitySlot(
        date=date_str,
        time=time_str,
        time_display=format_time_for_display(time_str, lang),
        table_id=COMBINED_TABLE_ID,
        table_name=" + ".join(t.name for t in tables),
        table_capacity=TableCapacity(
            min=sum(t.min_guests for t in tables),
            max=sum(t.max_guests for t in tables),
        ),
        is_combined=True,
        constituent_tables=[
            ConstituentTable(id=t.id, name=t.name, min_guests=t.min_guests, max_guests=t.max_guests)
            for t in tables
        ],
    )


def group_active_reservations(
    reservations: Iterable[ReservationRecord],
    *,
    exclude_reservation_id: int | None = None,
) -> dict[int, list[ReservationRecord]]:
    """Active reservations keyed by table id; unassigned rows and the excluded booking are dropped."""
    by_table: dict[int, list[ReservationRecord]] = defaultdict(list)
    for reservation in reservations:
        if not reservation.active or reservation.table_id is None:
            continue
        if exclude_reservation_id is not None and exclude_reservation_id in (
            reservation.id,
            reservation.parent_reservation_id,
        ):
            continue
        by_table[reservation.table_id].append(reservation)
    return by_table


class AvailabilityService:
    """Computes bookable slots from one storage snapshot per call."""

    def __init__(
        self,
        storage: Storage,
        *,
        default_slot_interval: int = DEFAULT_SLOT_INTERVAL_MINUTES,
        default_duration: int = DEFAULT_RESERVATION_DURATION_MINUTES,
        default_max_results: int = DEFAULT_MAX_RESULTS,
        max_combination_size: int = DEFAULT_MAX_COMBINATION_SIZE,
        unparseable_policy: str = SKIP_UNPARSEABLE,
    ):
        self.storage = storage
        self.default_slot_interval = default_slot_interval
        self.default_duration = default_duration
        self.default_max_results = default_max_results
        self.max_combination_size = max_combination_size
        self.unparseable_policy = unparseable_policy

    @classmethod
    def from_settings(cls, storage: Storage, settings: Settings) -> "AvailabilityService":
        return cls(
            storage,
            default_slot_interval=settings.default_slot_interval_minutes,
            default_duration=settings.default_reservation_duration_minutes,
            default_max_results=settings.default_max_results,
            max_combination_size=settings.max_combination_size,
            unparseable_policy=settings.unparseable_reservation_policy,
        )

    def get_available_time_slots(
        self,
        restaurant_id: int,
        date: str | dt.date,
        guests: int,
        options: AvailabilityOptions | dict | None = None,
    ) -> list[AvailabilitySlot]:
        """Return up to ``max_results`` bookable slots; never raises."""
        try:
            opts = self._resolve_options(options)
            service_date = date if isinstance(date, dt.date) else dt.date.fromisoformat(str(date))
        except (ValidationError, ValueError) as exc:
            logger.error("Invalid availability request for restaurant %s: %s", restaurant_id, exc)
            return []

        logger.info(
            "Slot search for restaurant %s, date %s, guests %s, lang %s, options %s",
            restaurant_id,
            service_date,
            guests,
            opts.lang,
            opts.model_dump(exclude_defaults=True),
        )
        try:
            return self._search(restaurant_id, service_date, guests, opts)
        except Exception:
            logger.exception("Availability search failed for restaurant %s", restaurant_id)
            return []

    def search_slots(
        self,
        restaurant_id: int,
        date: dt.date,
        guests: int,
        options: AvailabilityOptions,
    ) -> list[AvailabilitySlot]:
        """Same search, but storage errors propagate to the caller.

        Used by the booking paths so an outage is not reported as a full house.
        """
        return self._search(restaurant_id, date, guests, options)

    def _resolve_options(self, options: AvailabilityOptions | dict | None) -> AvailabilityOptions:
        if options is None:
            return AvailabilityOptions()
        if isinstance(options, AvailabilityOptions):
            return options
        return AvailabilityOptions.model_validate(options)

    def _search(
        self,
        restaurant_id: int,
        service_date: dt.date,
        guests: int,
        opts: AvailabilityOptions,
    ) -> list[AvailabilitySlot]:
        if guests < 1:
            logger.error("Party size must be positive, got %s", guests)
            return []

        restaurant = self.storage.get_restaurant(restaurant_id)
        if restaurant is None:
            logger.error("Restaurant with ID %s not found", restaurant_id)
            return []

        open_str = opts.operating_hours.open if opts.operating_hours else restaurant.opening_time
        close_str = opts.operating_hours.close if opts.operating_hours else restaurant.closing_time
        if not open_str or not close_str:
            logger.error("Restaurant %s missing required operating hours", restaurant_id)
            return []

        opening = parse_time_to_minutes(open_str)
        closing = parse_time_to_minutes(close_str)
        if opening is None or closing is None or opening == closing:
            logger.error("Invalid operating hours %s-%s for restaurant %s", open_str, close_str, restaurant_id)
            return []

        slot_duration = opts.slot_duration_minutes or restaurant.avg_reservation_duration or self.default_duration
        slot_interval = opts.slot_interval_minutes or restaurant.slot_interval or self.default_slot_interval
        max_results = opts.max_results or self.default_max_results
        max_combo = opts.max_combination_size or self.max_combination_size

        requested = None
        if opts.requested_time:
            requested = parse_time_to_minutes(opts.requested_time)
            if requested is None and opts.exact_time_only:
                logger.error("Exact-time search with invalid requested time %r", opts.requested_time)
                return []

        logger.info(
            "Effective settings: interval=%smin duration=%smin max_results=%s hours=%s-%s%s",
            slot_interval,
            slot_duration,
            max_results,
            open_str,
            close_str,
            " (overnight)" if is_overnight_operation(opening, closing) else "",
        )

        bookable = filter_bookable_tables(self.storage.get_tables(restaurant_id))
        if not bookable:
            logger.info("No bookable tables for restaurant %s", restaurant_id)
            return []

        can_combine = opts.allow_combinations and max_combo >= 2
        if not tables_fitting_party(bookable, guests) and not (
            can_combine and find_best_combination(bookable, guests, max_combo)
        ):
            logger.info("No table or combination can seat %s guests at restaurant %s", guests, restaurant_id)
            return []

        reservations = self.storage.get_reservations(restaurant_id, date=service_date, statuses=ACTIVE_STATUSES)
        by_table = group_active_reservations(reservations, exclude_reservation_id=opts.exclude_reservation_id)
        logger.info("Checking against %s active reservations on %s", len(reservations), service_date)

        candidates = enumerate_candidate_times(
            opening,
            closing,
            slot_interval,
            slot_duration,
            requested_minutes=requested,
            exact_time_only=opts.exact_time_only,
        )
        date_str = service_date.isoformat()
        target = unwrap_minutes(requested, opening, closing) if requested is not None else None

        found: list[tuple[tuple[Any, ...], AvailabilitySlot]] = []
        seen: set[tuple[tuple[int, ...], int]] = set()

        for minutes in candidates:
            if len(found) >= max_results:
                break

            free_tables = [
                table
                for table in bookable
                if is_table_available_at_slot(
                    table.id,
                    minutes,
                    by_table.get(table.id, ()),
                    slot_duration,
                    default_duration=self.default_duration,
                    opening_minutes=opening,
                    closing_minutes=closing,
                    unparseable_policy=self.unparseable_policy,
                )
            ]

            slot = None
            excess = 0
            best_table = select_best_table(tables_fitting_party(free_tables, guests))
            if best_table is not None:
                slot = _single_slot(date_str, minutes, best_table, opts.lang)
                excess = best_table.max_guests - guests
            elif can_combine:
                combo = find_best_combination(free_tables, guests, max_combo)
                if combo:
                    slot = _combined_slot(date_str, minutes, combo, opts.lang)
                    excess = slot.table_capacity.max - guests

            if slot is None:
                continue
            key = (slot.table_ids, minutes)
            if key in seen:
                continue
            seen.add(key)

            primary = (abs(minutes - target), minutes) if target is not None else (minutes,)
            found.append(((*primary, slot.is_combined, excess, slot.table_ids), slot))

        found.sort(key=lambda item: item[0])
        slots = [slot for _, slot in found[:max_results]]
        logger.info(
            "Search complete: %s slots for restaurant %s on %s for %s guests",
            len(slots),
            restaurant_id,
            date_str,
            guests,
        )
        return slots
