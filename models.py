from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

MASTER_ADMIN_USN = "MASTERADMIN1"
MIN_PASSWORD_LENGTH = 6
USN_PATTERN = re.compile(r"[A-Z0-9]+")
SEMESTERS = tuple(range(1, 9))
FINAL_SEMESTER = SEMESTERS[-1]
ROLES = ("student", "admin")


class UniTaskError(Exception):
    pass


class NotFound(UniTaskError):
    pass


class InvalidCredentials(UniTaskError):
    pass


class DuplicateUser(UniTaskError):
    pass


class WeakPassword(UniTaskError):
    pass


class PermissionDenied(UniTaskError):
    pass


class SelfRoleChange(UniTaskError):
    pass


class StorageCorrupt(UniTaskError):
    pass


class InvalidInput(UniTaskError):
    pass


class TaskStatus(Enum):
    """Kanban columns, in board order."""

    TO_BE_STARTED = "To Be Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    SUBMITTED = "Submitted"
    DONE = "Done"

    @property
    def rank(self) -> int:
        return list(TaskStatus).index(self)

    @property
    def slug(self) -> str:
        return self.name.lower().replace("_", "-")

    @classmethod
    def parse(cls, value: str) -> "TaskStatus":
        text = (value or "").strip()
        for status in cls:
            if text in (status.value, status.name, status.slug):
                return status
        raise InvalidInput(f"Unknown task status: {value!r}.")


def canonical_usn(usn: str) -> str:
    return (usn or "").strip().upper()


@dataclass
class User:
    usn: str
    role: str = "student"
    semester: int | None = None
    password: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_master_admin(self) -> bool:
        return self.usn == MASTER_ADMIN_USN

    @property
    def semester_label(self) -> str:
        return "N/A" if self.semester is None else str(self.semester)

    def without_password(self) -> "User":
        return replace(self, password=None)

    def to_dict(self, include_password: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {"usn": self.usn, "role": self.role, "semester": self.semester}
        if include_password and self.password is not None:
            data["password"] = self.password
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        role = data.get("role", "student")
        if role not in ROLES:
            raise ValueError(f"Unknown role {role!r}")
        semester = data.get("semester")
        return cls(
            usn=canonical_usn(data["usn"]),
            role=role,
            semester=int(semester) if semester is not None else None,
            password=data.get("password"),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Task:
    id: str
    title: str
    description: str
    due_date: datetime
    usn: str
    assigned_by: str
    status: TaskStatus = TaskStatus.TO_BE_STARTED
    assigned_by_name: str | None = None
    semester: int | None = None
    attachment_url: str | None = None
    submission_url: str | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "dueDate": _iso(self.due_date),
            "status": self.status.value,
            "assignedBy": self.assigned_by,
            "assignedByName": self.assigned_by_name,
            "usn": self.usn,
            "semester": self.semester,
            "attachmentUrl": self.attachment_url,
            "submissionUrl": self.submission_url,
            "submittedAt": _iso(self.submitted_at),
            "completedAt": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        semester = data.get("semester")
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            due_date=datetime.fromisoformat(data["dueDate"]),
            status=TaskStatus(data.get("status", TaskStatus.TO_BE_STARTED.value)),
            assigned_by=canonical_usn(data.get("assignedBy", "")),
            assigned_by_name=data.get("assignedByName"),
            usn=canonical_usn(data["usn"]),
            semester=int(semester) if semester is not None else None,
            attachment_url=data.get("attachmentUrl"),
            submission_url=data.get("submissionUrl"),
            submitted_at=_parse_iso(data.get("submittedAt")),
            completed_at=_parse_iso(data.get("completedAt")),
        )
