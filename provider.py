from __future__ import annotations

import copy
import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, NamedTuple

from models import (
    FINAL_SEMESTER,
    MIN_PASSWORD_LENGTH,
    ROLES,
    SEMESTERS,
    USN_PATTERN,
    DuplicateUser,
    InvalidCredentials,
    InvalidInput,
    NotFound,
    PermissionDenied,
    SelfRoleChange,
    StorageCorrupt,
    Task,
    TaskStatus,
    User,
    WeakPassword,
    canonical_usn,
)
from storage import SESSION_USER_KEY, STATE_KEYS, TASKS_KEY, USERS_KEY, KeyValueStore

logger = logging.getLogger(__name__)

ADMIN_PASSWORD = "adminpassword"
STUDENT_PASSWORD = "studentpassword"
MASTER_PASSWORD = "masterpassword"

UPDATABLE_TASK_FIELDS = {
    "title",
    "description",
    "due_date",
    "status",
    "assigned_by_name",
    "semester",
    "attachment_url",
    "submission_url",
}


class PromotionResult(NamedTuple):
    promoted: int
    at_destination: int


def default_seed_users() -> list[User]:
    users = [
        User("MASTERADMIN1", "admin", None, MASTER_PASSWORD),
        User("1RG22CS001", "admin", 3, ADMIN_PASSWORD),
        User("TEACHER001", "admin", None, ADMIN_PASSWORD),
    ]
    student_semesters = [3, 4, 5, 7, 8]
    for offset, semester in enumerate(student_semesters, start=2):
        users.append(User(f"1RG22CS{offset:03d}", "student", semester, STUDENT_PASSWORD))
    return users


def default_seed_tasks(now: datetime) -> list[Task]:
    day = timedelta(days=1)
    return [
        Task(
            id="1",
            title="Complete Project Proposal",
            description="Finalize and submit the project proposal document.",
            due_date=now + 2 * day,
            usn="1RG22CS002",
            assigned_by="TEACHER001",
            assigned_by_name="Prof. Smith",
            semester=3,
        ),
        Task(
            id="2",
            title="Study for Midterm Exam",
            description="Review chapters 1-5 for the upcoming exam.",
            due_date=now + 5 * day,
            usn="1RG22CS002",
            assigned_by="TEACHER001",
            assigned_by_name="Prof. Doe",
            status=TaskStatus.IN_PROGRESS,
            semester=3,
        ),
        Task(
            id="3",
            title="Lab Assignment 3",
            description="Implement the algorithm described in the lab manual.",
            due_date=now + day,
            usn="1RG22CS002",
            assigned_by="1RG22CS001",
            assigned_by_name="CR",
            status=TaskStatus.COMPLETED,
            semester=3,
        ),
        Task(
            id="4",
            title="Prepare Presentation",
            description="Create slides for the group presentation.",
            due_date=now - day,
            usn="1RG22CS002",
            assigned_by="TEACHER001",
            assigned_by_name="Prof. Doe",
            status=TaskStatus.SUBMITTED,
            semester=3,
            submitted_at=now - 2 * day,
        ),
        Task(
            id="5",
            title="Read Research Paper",
            description="Analyze the assigned research paper.",
            due_date=now + 10 * day,
            usn="1RG22CS002",
            assigned_by="TEACHER001",
            assigned_by_name="Prof. Smith",
            status=TaskStatus.DONE,
            semester=3,
            submitted_at=now - 6 * day,
            completed_at=now - 5 * day,
        ),
        Task(
            id="6",
            title="Code Review Session",
            description="Participate in the peer code review.",
            due_date=now + timedelta(hours=3),
            usn="1RG22CS003",
            assigned_by="1RG22CS001",
            assigned_by_name="CR",
            semester=4,
        ),
    ]


def apply_status_timestamps(task: Task, status: TaskStatus, now: datetime) -> None:
    task.status = status
    if status is TaskStatus.DONE:
        task.completed_at = task.completed_at or now
    elif status is TaskStatus.SUBMITTED:
        task.submitted_at = task.submitted_at or now
        task.completed_at = None
    else:
        task.submitted_at = None
        task.completed_at = None


class UniTaskProvider:
    """Single owner of the session user, the user directory and the task list.

    Every mutation is checked against the session user's role, applied to the
    in-memory collections, then written through to the key-value store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = datetime.now,
        seed_users: Iterable[User] | None = None,
        seed_tasks: Iterable[Task] | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self._seed_users = list(seed_users) if seed_users is not None else default_seed_users()
        self._seed_tasks = list(seed_tasks) if seed_tasks is not None else default_seed_tasks(clock())
        self.user: User | None = None
        self.users: list[User] = []
        self.tasks: list[Task] = []
        self.reload()

    # ── Loading & persistence ────────────────────────────────────────────

    def _decode(self, key: str, build: Callable[[Any], Any]) -> Any:
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            return build(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise StorageCorrupt(f"Stored value for {key} is unreadable: {exc}") from exc

    def reload(self) -> None:
        try:
            users = self._decode(USERS_KEY, lambda rows: [User.from_dict(r) for r in rows])
            tasks = self._decode(TASKS_KEY, lambda rows: [Task.from_dict(r) for r in rows])
        except StorageCorrupt as exc:
            logger.warning("Resetting UniTask storage to seed data: %s", exc)
            for key in STATE_KEYS:
                self.store.clear(key)
            users, tasks = None, None

        # The session record belongs to one client; a bad one only logs that client out.
        try:
            session_user = self._decode(SESSION_USER_KEY, User.from_dict)
        except StorageCorrupt as exc:
            logger.warning("Discarding unreadable session: %s", exc)
            self.store.clear(SESSION_USER_KEY)
            session_user = None

        self.users = users if users is not None else copy.deepcopy(self._seed_users)
        if users is None:
            self._save_users()
        self.tasks = tasks if tasks is not None else copy.deepcopy(self._seed_tasks)
        if tasks is None:
            self._save_tasks()

        self.user = None
        if session_user is not None:
            record = self.find_user(session_user.usn)
            if record is None:
                logger.info("Session user %s no longer exists; logging out", session_user.usn)
                self.store.clear(SESSION_USER_KEY)
            else:
                self.user = record.without_password()
                if self.user != session_user:
                    self._save_session()

    def _save_users(self) -> None:
        self.store.set(USERS_KEY, json.dumps([u.to_dict() for u in self.users]))

    def _save_tasks(self) -> None:
        self.store.set(TASKS_KEY, json.dumps([t.to_dict() for t in self.tasks]))

    def _save_session(self) -> None:
        if self.user is None:
            self.store.clear(SESSION_USER_KEY)
        else:
            self.store.set(SESSION_USER_KEY, json.dumps(self.user.to_dict(include_password=False)))

    # ── Lookups & guards ─────────────────────────────────────────────────

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.is_admin

    @property
    def is_master_admin(self) -> bool:
        return self.user is not None and self.user.is_master_admin

    def find_user(self, usn: str) -> User | None:
        wanted = canonical_usn(usn)
        return next((u for u in self.users if u.usn == wanted), None)

    def find_task(self, task_id: str) -> Task | None:
        return next((t for t in self.tasks if t.id == task_id), None)

    def _require_admin(self, message: str) -> User:
        if not self.is_admin:
            raise PermissionDenied(message)
        return self.user

    def _require_master_admin(self, message: str) -> User:
        if not self.is_master_admin:
            raise PermissionDenied(message)
        return self.user

    def _require_user(self, usn: str) -> User:
        target = self.find_user(usn)
        if target is None:
            raise NotFound(f"User {canonical_usn(usn)} not found.")
        return target

    # ── Session ──────────────────────────────────────────────────────────

    def login(self, usn: str, password: str) -> User:
        record = self.find_user(usn)
        if record is None:
            raise NotFound("USN not found.")
        if record.password != password:
            raise InvalidCredentials("Invalid USN or password.")

        self.user = record.without_password()
        self._save_session()
        logger.info("User %s logged in", self.user.usn)
        return self.user

    def logout(self) -> None:
        if self.user is not None:
            logger.info("User %s logged out", self.user.usn)
        self.user = None
        self._save_session()

    def register(self, usn: str, semester: int, password: str) -> User:
        usn = canonical_usn(usn)
        if not usn:
            raise InvalidInput("USN is required.")
        if not USN_PATTERN.fullmatch(usn):
            raise InvalidInput("USN may only contain letters and digits.")
        if self.find_user(usn) is not None:
            raise DuplicateUser("USN already registered.")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
        if semester not in SEMESTERS:
            raise InvalidInput("Semester must be between 1 and 8.")

        new_user = User(usn=usn, role="student", semester=semester, password=password)
        self.users.append(new_user)
        self._save_users()
        logger.info("Registered student %s (semester %s)", usn, semester)
        return new_user.without_password()

    # ── Directory management ─────────────────────────────────────────────

    def get_all_users(self) -> list[User]:
        self._require_admin("Permission denied. Only administrators can view the user list.")
        return [u.without_password() for u in self.users]

    def update_user_role(self, usn: str, role: str) -> User:
        caller = self._require_admin("Permission denied. Only administrators can change user roles.")
        if caller.usn == canonical_usn(usn):
            raise SelfRoleChange("Administrators cannot change their own role.")
        if role not in ROLES:
            raise InvalidInput(f"Unknown role: {role!r}.")
        target = self._require_user(usn)
        if target.is_master_admin:
            raise PermissionDenied("The master admin's role cannot be changed.")

        target.role = role
        self._save_users()
        if self.user is not None and self.user.usn == target.usn:
            self.user = target.without_password()
            self._save_session()
        logger.info("%s set role of %s to %s", caller.usn, target.usn, role)
        return target.without_password()

    def promote_specific_semester(self, semester: int) -> PromotionResult:
        caller = self._require_admin("Permission denied. Only administrators can promote semesters.")
        if semester not in SEMESTERS or semester == FINAL_SEMESTER:
            raise InvalidInput(f"Only semesters 1 to {FINAL_SEMESTER - 1} can be promoted.")

        destination = semester + 1
        promoted = 0
        for user in self.users:
            if user.role == "student" and user.semester == semester:
                user.semester = destination
                promoted += 1
        if promoted:
            self._save_users()

        at_destination = sum(
            1
            for u in self.users
            if u.role == "student" and u.semester is not None and u.semester >= destination
        )
        logger.info("%s promoted %d students from semester %d", caller.usn, promoted, semester)
        return PromotionResult(promoted, at_destination)

    def remove_admin_semester(self, usn: str) -> User:
        caller = self._require_master_admin("Permission denied. Only the master admin can remove an admin's semester.")
        target = self._require_user(usn)
        if not target.is_admin:
            raise InvalidInput(f"{target.usn} is not an admin.")

        target.semester = None
        self._save_users()
        if self.user is not None and self.user.usn == target.usn:
            self.user = target.without_password()
            self._save_session()
        logger.info("%s cleared the semester of admin %s", caller.usn, target.usn)
        return target.without_password()

    def delete_user(self, usn: str) -> int:
        caller = self._require_master_admin("Permission denied. Only the master admin can delete users.")
        target = self._require_user(usn)
        if target.is_master_admin:
            raise PermissionDenied("The master admin account cannot be deleted.")
        if target.usn == caller.usn:
            raise PermissionDenied("You cannot delete your own account.")

        self.users = [u for u in self.users if u.usn != target.usn]
        remaining = [t for t in self.tasks if t.usn != target.usn]
        removed = len(self.tasks) - len(remaining)
        self.tasks = remaining
        self._save_users()
        self._save_tasks()
        logger.info("%s deleted user %s and %d of their tasks", caller.usn, target.usn, removed)
        return removed

    # ── Tasks ────────────────────────────────────────────────────────────

    def visible_tasks(self) -> list[Task]:
        if self.user is None:
            return []
        if self.user.is_admin:
            return [replace(t) for t in self.tasks]
        return [replace(t) for t in self.tasks if t.usn == self.user.usn]

    def add_task(self, task: Task) -> Task | None:
        added = self.add_multiple_tasks([task])
        return added[0] if added else None

    def add_multiple_tasks(self, tasks: Iterable[Task]) -> list[Task]:
        caller = self._require_admin("Permission denied. Only administrators can add tasks.")
        existing_ids = {t.id for t in self.tasks}
        added: list[Task] = []
        for task in tasks:
            if task.id in existing_ids:
                logger.warning("Task %s already exists; skipping", task.id)
                continue
            existing_ids.add(task.id)
            added.append(task)

        if added:
            self.tasks.extend(added)
            self._save_tasks()
        logger.info("%s added %d tasks", caller.usn, len(added))
        return [replace(t) for t in added]

    def update_task(self, task_id: str, **changes: Any) -> Task:
        task = self.find_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found.")
        if self.user is None or (not self.user.is_admin and task.usn != self.user.usn):
            raise PermissionDenied("Permission denied. You can only update your own tasks.")

        unknown = set(changes) - UPDATABLE_TASK_FIELDS
        if unknown:
            raise InvalidInput(f"Cannot update task fields: {', '.join(sorted(unknown))}.")

        status = changes.pop("status", None)
        if status is not None and not isinstance(status, TaskStatus):
            status = TaskStatus.parse(status)
        for field_name, value in changes.items():
            setattr(task, field_name, value)
        if status is not None:
            apply_status_timestamps(task, status, self.clock())

        self._save_tasks()
        logger.info("%s updated task %s", self.user.usn, task.id)
        return replace(task)

    def delete_task(self, task_id: str) -> bool:
        caller = self._require_admin("Permission denied. Only administrators can delete tasks.")
        task = self.find_task(task_id)
        if task is None:
            logger.info("Delete requested for missing task %s; nothing to do", task_id)
            return False

        self.tasks = [t for t in self.tasks if t.id != task_id]
        self._save_tasks()
        logger.info("%s deleted task %s", caller.usn, task_id)
        return True
