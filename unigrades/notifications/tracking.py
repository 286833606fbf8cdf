"""Tracked-grade projection and change detection between two snapshots."""

from __future__ import annotations

from typing import Iterable

from ..models.grades import Grade, TrackedGrade


def track(grades: Iterable[Grade]) -> list[TrackedGrade]:
    return [TrackedGrade.from_grade(g) for g in grades]


def changed_grades(previous: list[TrackedGrade], current: list[TrackedGrade]) -> list[TrackedGrade]:
    """Grades in ``current`` with a value that is new for their course occurrence.

    An empty ``previous`` snapshot is a baseline: nothing is reported.
    """
    if not previous:
        return []
    before = {g.identity_key: g.grade for g in previous}
    return [
        g for g in current
        if g.grade and before.get(g.identity_key) != g.grade
    ]


def merge_seen(previous: list[TrackedGrade], accepted: Iterable[TrackedGrade]) -> list[TrackedGrade]:
    """``previous`` with the accepted grades applied by identity key."""
    merged = {g.identity_key: g for g in previous}
    for grade in accepted:
        merged[grade.identity_key] = grade
    return list(merged.values())
