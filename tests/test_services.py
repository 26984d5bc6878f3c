from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from school_api.database import QueryResult
from school_api.services import (
    attendance_counts,
    attendance_stats,
    build_update,
    gpa_summary,
    letter_grade,
    parse_score,
    require_row,
    total_score,
)


@pytest.mark.parametrize(
    "total, expected",
    [(100, "A"), (80, "A"), (Decimal("79.99"), "B"), (70, "B"), (60, "C"), (50, "D"), (Decimal("49.5"), "F"), (0, "F")],
)
def test_letter_grade_boundaries(total, expected):
    assert letter_grade(total) == expected


@pytest.mark.parametrize("raw, expected", [("12.5", Decimal("12.5")), (8, Decimal("8")), ("", Decimal("0")), (None, Decimal("0")), ("n/a", Decimal("0")), ("NaN", Decimal("0"))])
def test_parse_score_treats_blanks_and_junk_as_zero(raw, expected):
    assert parse_score(raw) == expected


def test_total_score_reads_dicts_and_objects():
    scores = {"score_1": "10", "score_2": 9.5, "score_3": "", "score_4": None, "midterm_score": 20, "final_score": "35"}
    entry = SimpleNamespace(**{key: parse_score(value) for key, value in scores.items()})

    assert total_score(scores) == Decimal("74.5")
    assert total_score(entry) == Decimal("74.5")


def test_gpa_summary_averages_points_and_scores():
    summary = gpa_summary(
        [
            {"grade": "A", "total_score": Decimal("85.50")},
            {"grade": "B", "total_score": Decimal("72.00")},
            {"grade": "D", "total_score": Decimal("51.25")},
        ]
    )

    assert summary["gpa"] == 2.67
    assert summary["total_subjects"] == 3
    assert summary["average_score"] == "69.58"
    assert summary["grade_distribution"] == {"A": 1, "B": 1, "C": 0, "D": 1, "F": 0}


def test_gpa_summary_without_grades():
    summary = gpa_summary([])

    assert summary["gpa"] == 0.0
    assert summary["total_subjects"] == 0
    assert summary["average_score"] == "0.00"


def test_attendance_counts_lists_every_status():
    fragment = attendance_counts("a.status", total_column="a.id", total_alias="total_records")

    assert fragment.startswith("COUNT(a.id) AS total_records")
    for status in ("present", "late", "sick_leave", "personal_leave", "absent"):
        assert f"FILTER (WHERE a.status = '{status}') AS {status}" in fragment


def test_attendance_stats_sums_types():
    homeroom = {"attendance_type": "homeroom", "total_days": 10, "present": 8, "late": 1, "sick_leave": 0, "personal_leave": 0, "absent": 1}
    subject = {"attendance_type": "subject", "total_days": 20, "present": 18, "late": 0, "sick_leave": 2, "personal_leave": 0, "absent": 0}

    stats = attendance_stats([homeroom, subject])

    assert stats["homeroom"] is homeroom
    assert stats["subject"] is subject
    assert stats["total"] == {"present": 26, "late": 1, "sick_leave": 2, "personal_leave": 0, "absent": 1, "total_days": 30}


def test_attendance_stats_without_records():
    stats = attendance_stats([])

    assert stats["homeroom"] is None
    assert stats["total"]["total_days"] == 0


def test_build_update_numbers_placeholders_and_touches_timestamp():
    sql, params = build_update("rooms", {"name": "1/2", "capacity": 35}, 9)

    assert sql == "UPDATE rooms SET name = $1, capacity = $2, updated_at = now() WHERE id = $3 RETURNING *"
    assert params == ["1/2", 35, 9]


def test_build_update_without_timestamp():
    sql, _ = build_update("parents", {"phone": "0811111111"}, 3, touch=False)

    assert "updated_at" not in sql


def test_build_update_requires_changes():
    with pytest.raises(HTTPException) as info:
        build_update("rooms", {}, 1)

    assert info.value.status_code == 400


def test_require_row_raises_not_found():
    assert require_row(QueryResult([{"id": 1}]), "Room not found") == {"id": 1}
    with pytest.raises(HTTPException) as info:
        require_row(QueryResult([]), "Room not found")

    assert info.value.status_code == 404
    assert info.value.detail == "Room not found"
