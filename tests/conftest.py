"""Shared fixtures for UniTask tests."""

import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

# Ensure the flat modules are importable and that importing app never touches a real database
sys.path.insert(0, str(Path(__file__).parent.parent))
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.mkdtemp(), "unitask-import.db"))

from models import Task, TaskStatus, User  # noqa: E402
from provider import ADMIN_PASSWORD, MASTER_PASSWORD, STUDENT_PASSWORD, UniTaskProvider  # noqa: E402
from storage import MemoryStore  # noqa: E402

NOW = datetime(2024, 10, 23, 12, 0)


def fixed_clock():
    return NOW


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def provider(store):
    """Provider over the default seed data, with time frozen at NOW."""
    return UniTaskProvider(store, clock=fixed_clock)


@pytest.fixture
def small_provider(store):
    """The two-user directory used by the promotion/login/delete scenario."""
    users = [
        User("1RG22CS001", "admin", 3, ADMIN_PASSWORD),
        User("1RG22CS002", "student", 3, STUDENT_PASSWORD),
    ]
    tasks = [
        Task(
            id="t1",
            title="Essay",
            description="Write it",
            due_date=NOW,
            usn="1RG22CS002",
            assigned_by="1RG22CS001",
        ),
    ]
    return UniTaskProvider(store, clock=fixed_clock, seed_users=users, seed_tasks=tasks)


@pytest.fixture
def as_master(provider):
    provider.login("MASTERADMIN1", MASTER_PASSWORD)
    return provider


@pytest.fixture
def as_admin(provider):
    provider.login("1RG22CS001", ADMIN_PASSWORD)
    return provider


@pytest.fixture
def as_student(provider):
    provider.login("1RG22CS002", STUDENT_PASSWORD)
    return provider


@pytest.fixture
def make_task():
    def _make(task_id="x", status=TaskStatus.TO_BE_STARTED, usn="1RG22CS002", **kwargs):
        return Task(
            id=task_id,
            title=kwargs.pop("title", f"Task {task_id}"),
            description=kwargs.pop("description", "Something to do"),
            due_date=kwargs.pop("due_date", NOW),
            usn=usn,
            assigned_by=kwargs.pop("assigned_by", "TEACHER001"),
            status=status,
            **kwargs,
        )

    return _make


@pytest.fixture
def client(tmp_path):
    from app import app, init_store

    app.config["TESTING"] = True
    app.config["DATABASE_PATH"] = str(tmp_path / "unitask.db")
    init_store()
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def login(client):
    def _login(usn, password):
        return client.post("/login", data={"usn": usn, "password": password})

    return _login
