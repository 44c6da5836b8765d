"""Rule evaluation for reservation requests."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

from reservations.schema import MAX_PARTY_SIZE, RestaurantRecord
from reservations.timeutils import (
    operating_window,
    parse_time_to_minutes,
    resolve_zone,
    unwrap_minutes,
)


@dataclass
class RuleCheckResult:
    allowed: bool
    reason: str | None = None


class RuleEngine:
    @staticmethod
    def resolve_duration_minutes(requested: int | None, restaurant: RestaurantRecord, default: int) -> int:
        return requested or restaurant.avg_reservation_duration or default

    @staticmethod
    def check_party_size(guests: int) -> RuleCheckResult:
        if guests < 1 or guests > MAX_PARTY_SIZE:
            return RuleCheckResult(
                allowed=False,
                reason=f"Invalid number of guests. Must be between 1 and {MAX_PARTY_SIZE}.",
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_not_in_past(
        service_date: dt.date,
        time_str: str,
        restaurant: RestaurantRecord,
        *,
        now: dt.datetime | None = None,
    ) -> RuleCheckResult:
        zone = resolve_zone(restaurant.timezone)
        minutes = parse_time_to_minutes(time_str)
        if minutes is None:
            return RuleCheckResult(allowed=False, reason="Invalid time format. Expected HH:MM or HH:MM:SS.")

        opening = parse_time_to_minutes(restaurant.opening_time)
        closing = parse_time_to_minutes(restaurant.closing_time)
        day_offset = 0
        if opening is not None and closing is not None:
            day_offset = unwrap_minutes(minutes, opening, closing) // (24 * 60)

        requested = dt.datetime.combine(
            service_date + dt.timedelta(days=day_offset),
            dt.time(minutes // 60, minutes % 60),
            tzinfo=zone,
        )
        current = now.astimezone(zone) if now is not None else dt.datetime.now(zone)
        if requested < current:
            return RuleCheckResult(allowed=False, reason="Requested time is in the past.")
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_operating_window(time_str: str, duration_minutes: int, restaurant: RestaurantRecord) -> RuleCheckResult:
        opening = parse_time_to_minutes(restaurant.opening_time)
        closing = parse_time_to_minutes(restaurant.closing_time)
        if opening is None or closing is None or opening == closing:
            return RuleCheckResult(allowed=False, reason="Restaurant operating hours are not configured.")

        start = parse_time_to_minutes(time_str)
        if start is None:
            return RuleCheckResult(allowed=False, reason="Invalid time format. Expected HH:MM or HH:MM:SS.")

        window_start, window_end = operating_window(opening, closing)
        start = unwrap_minutes(start, opening, closing)
        if start < window_start or start + duration_minutes > window_end:
            return RuleCheckResult(
                allowed=False,
                reason=(
                    "Requested time is outside operating hours "
                    f"({restaurant.opening_time[:5]} - {restaurant.closing_time[:5]}, "
                    f"last booking must end by closing)."
                ),
            )
        return RuleCheckResult(allowed=True)
