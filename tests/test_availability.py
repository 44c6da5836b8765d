import datetime as dt

from config import BLOCK_UNPARSEABLE
from reservations.availability import (
    combination_fits,
    enumerate_candidate_times,
    filter_bookable_tables,
    find_best_combination,
    group_active_reservations,
    is_table_available_at_slot,
    select_best_table,
    tables_fitting_party,
)
from reservations.schema import ReservationRecord

DAY = dt.date(2099, 6, 15)


def _reservation(res_id, table_id, at, *, duration=90, status="confirmed", parent=None):
    return ReservationRecord(
        id=res_id,
        restaurant_id=1,
        table_id=table_id,
        parent_reservation_id=parent,
        date=DAY,
        time=at,
        duration=duration,
        guests=2,
        status=status,
    )


def test_filter_drops_unavailable_and_inverted_tables(table_record):
    tables = [
        table_record(1, 2, 4),
        table_record(2, 2, 4, status="unavailable"),
        table_record(3, 6, 4),
        table_record(4, 1, 2, status="occupied"),
    ]
    assert [t.id for t in filter_bookable_tables(tables)] == [1, 4]


def test_single_fit_bounds_are_inclusive(table_record):
    tables = [table_record(1, 2, 4), table_record(2, 5, 8)]
    assert [t.id for t in tables_fitting_party(tables, 2)] == [1]
    assert [t.id for t in tables_fitting_party(tables, 4)] == [1]
    assert [t.id for t in tables_fitting_party(tables, 5)] == [2]
    assert tables_fitting_party(tables, 9) == []
    assert tables_fitting_party(tables, 1) == []


def test_conflict_checker_detects_overlap():
    reservations = [_reservation(1, 1, "19:00:00", duration=90)]

    assert not is_table_available_at_slot(1, 19 * 60 + 30, reservations, 90)
    assert not is_table_available_at_slot(1, 18 * 60, reservations, 90)
    assert is_table_available_at_slot(1, 20 * 60 + 30, reservations, 90)
    assert is_table_available_at_slot(1, 17 * 60 + 30, reservations, 90)


def test_conflict_checker_uses_default_duration_when_missing():
    reservations = [_reservation(1, 1, "19:00", duration=None)]

    assert not is_table_available_at_slot(1, 20 * 60 + 30, reservations, 60, default_duration=120)
    assert is_table_available_at_slot(1, 21 * 60, reservations, 60, default_duration=120)
    assert is_table_available_at_slot(1, 20 * 60 + 30, reservations, 60, default_duration=90)


def test_conflict_checker_unparseable_time_policy():
    reservations = [_reservation(1, 1, "25:99")]

    assert is_table_available_at_slot(1, 19 * 60, reservations, 90)
    assert not is_table_available_at_slot(1, 19 * 60, reservations, 90, unparseable_policy=BLOCK_UNPARSEABLE)


def test_conflict_checker_overnight_timeline():
    opening, closing = 22 * 60, 3 * 60
    reservations = [_reservation(1, 1, "00:30:00", duration=90)]
    one_am = 24 * 60 + 60

    assert not is_table_available_at_slot(
        1, one_am, reservations, 90, opening_minutes=opening, closing_minutes=closing
    )
    assert is_table_available_at_slot(1, 22 * 60, reservations, 90, opening_minutes=opening, closing_minutes=closing)


def test_group_active_reservations_skips_inactive_unassigned_and_excluded():
    reservations = [
        _reservation(1, 1, "19:00"),
        _reservation(2, 1, "12:00", status="canceled"),
        _reservation(3, None, "13:00"),
        _reservation(4, 2, "19:00"),
        _reservation(5, 3, "19:00", parent=4),
        _reservation(6, 2, "21:00", status="completed"),
    ]
    grouped = group_active_reservations(reservations, exclude_reservation_id=4)

    assert {table_id: [r.id for r in rows] for table_id, rows in grouped.items()} == {1: [1]}


def test_select_best_table_prefers_tightest_fit(table_record):
    tables = [table_record(1, 2, 8), table_record(2, 2, 4), table_record(3, 1, 6)]
    assert select_best_table(tables).id == 2
    assert select_best_table([]) is None


def test_select_best_table_ties_are_deterministic(table_record):
    tables = [table_record(5, 2, 4), table_record(3, 2, 4), table_record(4, 1, 4)]
    assert select_best_table(tables).id == 4


def test_combination_fits_requires_minimum_and_maximum(table_record):
    pair = (table_record(1, 4, 6), table_record(2, 4, 6))
    assert combination_fits(pair, 8)
    assert combination_fits(pair, 12)
    assert not combination_fits(pair, 7)
    assert not combination_fits(pair, 13)


def test_find_best_combination_ranks_by_excess_then_ids(table_record):
    tables = [
        table_record(1, 1, 2),
        table_record(2, 2, 4),
        table_record(3, 2, 4),
        table_record(4, 4, 6),
    ]
    combo = find_best_combination(tables, 7)
    assert [t.id for t in combo] == [1, 4]


def test_find_best_combination_prefers_smaller_excess(table_record):
    tables = [table_record(1, 2, 4), table_record(2, 2, 4), table_record(3, 4, 8)]
    combo = find_best_combination(tables, 6)
    assert [t.id for t in combo] == [1, 2]


def test_find_best_combination_none_when_minimums_exceed_party(table_record):
    tables = [table_record(1, 4, 6), table_record(2, 4, 6)]
    assert find_best_combination(tables, 7) is None
    assert find_best_combination([table_record(1, 2, 4)], 3) is None


def test_find_best_combination_triples_only_when_enabled(table_record):
    tables = [table_record(1, 1, 2), table_record(2, 1, 2), table_record(3, 1, 2)]

    assert find_best_combination(tables, 6) is None
    assert [t.id for t in find_best_combination(tables, 6, max_tables=3)] == [1, 2, 3]
    assert len(find_best_combination(tables, 4, max_tables=3)) == 2


def test_enumerate_candidates_stops_at_closing_minus_duration():
    candidates = enumerate_candidate_times(600, 1320, 30, 90)

    assert candidates[0] == 600
    assert candidates[-1] == 1230
    assert all(b - a == 30 for a, b in zip(candidates, candidates[1:]))


def test_enumerate_candidates_sorted_by_proximity():
    candidates = enumerate_candidate_times(600, 1320, 60, 60, requested_minutes=19 * 60 + 30)

    assert candidates[:4] == [1140, 1200, 1080, 1260]
    distances = [abs(m - 1170) for m in candidates]
    assert distances == sorted(distances)


def test_enumerate_candidates_exact_time_only():
    assert enumerate_candidate_times(600, 1320, 30, 90, requested_minutes=975, exact_time_only=True) == [975]
    assert enumerate_candidate_times(600, 1320, 30, 90, requested_minutes=1230, exact_time_only=True) == [1230]
    assert enumerate_candidate_times(600, 1320, 30, 90, requested_minutes=1231, exact_time_only=True) == []
    assert enumerate_candidate_times(600, 1320, 30, 90, exact_time_only=True) == []


def test_enumerate_candidates_overnight():
    candidates = enumerate_candidate_times(22 * 60, 3 * 60, 30, 90)

    assert candidates[0] == 1320
    assert candidates[-1] == 1530
    assert enumerate_candidate_times(22 * 60, 3 * 60, 30, 90, requested_minutes=60, exact_time_only=True) == [1500]


def test_enumerate_candidates_empty_when_duration_exceeds_window():
    assert enumerate_candidate_times(600, 660, 30, 90) == []


def test_conflict_checker_keeps_closed_gap_reservations_on_opening_day():
    opening, closing = 22 * 60, 3 * 60
    reservations = [_reservation(1, 1, "21:30:00", duration=120)]

    assert not is_table_available_at_slot(1, 22 * 60, reservations, 90, opening_minutes=opening, closing_minutes=closing)
    assert is_table_available_at_slot(1, 23 * 60 + 30, reservations, 90, opening_minutes=opening, closing_minutes=closing)
