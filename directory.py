from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from models import SEMESTERS, User

ROLE_FILTERS = ("all", "admin", "student")
NO_SEMESTER = "N/A"
SEMESTER_FILTERS = ("all", *(str(s) for s in SEMESTERS), NO_SEMESTER)
ROLE_ORDER = {"admin": 0, "student": 1}


@dataclass
class DirectoryCounts:
    total: int = 0
    admins: int = 0
    students: int = 0
    by_semester: dict[str, int] = field(default_factory=dict)


@dataclass
class DirectoryView:
    rows: list[User]
    counts: DirectoryCounts
    role: str
    semester: str
    search: str


def filter_users(users: Iterable[User], role: str = "all", semester: str = "all", search: str = "") -> list[User]:
    rows = list(users)
    if role != "all":
        rows = [u for u in rows if u.role == role]
    if semester == NO_SEMESTER:
        rows = [u for u in rows if u.semester is None]
    elif semester != "all":
        rows = [u for u in rows if u.semester is not None and str(u.semester) == semester]
    needle = search.strip().lower()
    if needle:
        rows = [u for u in rows if needle in u.usn.lower()]
    return rows


def sort_users(users: Iterable[User]) -> list[User]:
    def sort_key(user: User) -> tuple[int, int, int, str]:
        no_semester = 0 if user.semester is None else 1
        return (ROLE_ORDER.get(user.role, 2), no_semester, user.semester or 0, user.usn)

    return sorted(users, key=sort_key)


def count_users(users: Iterable[User]) -> DirectoryCounts:
    rows = list(users)
    counts = DirectoryCounts(
        total=len(rows),
        by_semester={**{str(s): 0 for s in SEMESTERS}, NO_SEMESTER: 0},
    )
    counts.admins = sum(1 for u in rows if u.is_admin)
    counts.students = counts.total - counts.admins
    for user in rows:
        if user.is_admin:
            continue
        counts.by_semester[user.semester_label] = counts.by_semester.get(user.semester_label, 0) + 1
    return counts


def directory_view(users: Iterable[User], role: str = "all", semester: str = "all", search: str = "") -> DirectoryView:
    rows = list(users)
    role = role if role in ROLE_FILTERS else "all"
    semester = semester if semester in SEMESTER_FILTERS else "all"
    return DirectoryView(
        rows=sort_users(filter_users(rows, role, semester, search)),
        counts=count_users(rows),
        role=role,
        semester=semester,
        search=search.strip(),
    )
