from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from dates import Urgency, due_date_urgency, format_due_date, format_timestamp
from models import InvalidInput, PermissionDenied, Task, TaskStatus, User, canonical_usn

if TYPE_CHECKING:
    from provider import UniTaskProvider

logger = logging.getLogger(__name__)

COLUMN_ORDER: tuple[TaskStatus, ...] = tuple(TaskStatus)

FOCUS_GROUP_PREFIX = "1RG22CS"
FOCUS_GROUP_FIRST = 1
FOCUS_GROUP_LAST = 98


def group_tasks_by_status(tasks: Iterable[Task]) -> dict[TaskStatus, list[Task]]:
    grouped: dict[TaskStatus, list[Task]] = {status: [] for status in COLUMN_ORDER}
    for task in tasks:
        grouped[task.status].append(task)
    return grouped


def can_drag(task: Task, is_admin: bool) -> bool:
    return is_admin or task.status is not TaskStatus.DONE


def can_drop(status: TaskStatus, is_admin: bool) -> bool:
    return is_admin or status is not TaskStatus.DONE


@dataclass(frozen=True)
class DropResult:
    """A drag gesture reduced to data: which task, from where, to where."""

    task_id: str
    source: TaskStatus
    source_index: int = 0
    destination: TaskStatus | None = None
    destination_index: int | None = None


def request_transition(provider: "UniTaskProvider", drop: DropResult) -> Task | None:
    if drop.destination is None:
        return None
    if drop.destination is drop.source:
        # Columns carry no persisted ordering, so a reorder changes nothing.
        return None

    is_admin = provider.is_admin
    if not is_admin and drop.source is TaskStatus.DONE:
        logger.info("Rejected move of done task %s by non-admin", drop.task_id)
        raise PermissionDenied("Tasks marked as 'Done' cannot be moved back.")
    if not can_drop(drop.destination, is_admin):
        logger.info("Rejected move of task %s to Done by non-admin", drop.task_id)
        raise PermissionDenied("Only administrators can mark tasks as 'Done'.")

    return provider.update_task(drop.task_id, status=drop.destination)


@dataclass
class Card:
    task: Task
    draggable: bool
    urgency: Urgency
    due_label: str
    submitted_label: str = ""
    completed_label: str = ""


@dataclass
class Column:
    status: TaskStatus
    droppable: bool
    cards: list[Card] = field(default_factory=list)


def build_board(tasks: Iterable[Task], is_admin: bool, now: datetime | None = None) -> list[Column]:
    now = now or datetime.now()
    columns: list[Column] = []
    for status, bucket in group_tasks_by_status(tasks).items():
        column = Column(status=status, droppable=can_drop(status, is_admin))
        for task in bucket:
            column.cards.append(
                Card(
                    task=task,
                    draggable=can_drag(task, is_admin),
                    urgency=due_date_urgency(task.due_date, now),
                    due_label=format_due_date(task.due_date, now=now),
                    submitted_label=format_timestamp(task.submitted_at),
                    completed_label=format_timestamp(task.completed_at),
                )
            )
        columns.append(column)
    return columns


def focus_group_usns(
    prefix: str = FOCUS_GROUP_PREFIX,
    first: int = FOCUS_GROUP_FIRST,
    last: int = FOCUS_GROUP_LAST,
) -> list[str]:
    return [f"{prefix}{number:03d}" for number in range(first, last + 1)]


def resolve_assignees(assign_to: str, semester: int, users: Iterable[User]) -> list[str]:
    target = (assign_to or "").strip()
    if not target:
        raise InvalidInput("Specify who to assign to ('all', 'focus' or a USN).")
    if target.lower() == "all":
        return [u.usn for u in users if u.role == "student" and u.semester == semester]
    if target.lower() == "focus":
        return focus_group_usns()
    return [canonical_usn(target)]


def build_assignment(
    title: str,
    description: str,
    due_date: datetime,
    semester: int,
    assignees: Iterable[str],
    assigned_by: User,
    assigned_by_name: str | None = None,
    attachment_url: str | None = None,
    id_base: str | None = None,
) -> list[Task]:
    if not title.strip():
        raise InvalidInput("Title is required.")
    if not description.strip():
        raise InvalidInput("Description is required.")

    id_base = id_base or str(int(time.time() * 1000))
    return [
        Task(
            id=f"{id_base}-{usn}",
            title=title.strip(),
            description=description.strip(),
            due_date=due_date,
            usn=usn,
            assigned_by=assigned_by.usn,
            assigned_by_name=assigned_by_name or None,
            semester=semester,
            attachment_url=attachment_url or None,
        )
        for usn in assignees
    ]
