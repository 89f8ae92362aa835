"""
Tests for the Flask routes, driven through the test client against a
temporary SQLite database seeded with the default data.
"""
import io
import json
import threading

from provider import ADMIN_PASSWORD, MASTER_PASSWORD, STUDENT_PASSWORD
from storage import SESSION_USER_KEY


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_index_redirects_anonymous_to_login(client):
    response = client.get("/")
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/login")


def test_dashboard_requires_login(client):
    response = client.get("/dashboard", follow_redirects=True)
    assert b"Please login first." in response.data


def test_login_is_case_insensitive(client, login):
    response = login("1rg22cs002", STUDENT_PASSWORD)
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")

    with client.session_transaction() as sess:
        assert json.loads(sess[SESSION_USER_KEY])["usn"] == "1RG22CS002"


def test_login_failures_are_flashed(client, login):
    response = client.post("/login", data={"usn": "1RG22CS002", "password": "nope"})
    assert response.status_code == 200
    assert b"Invalid USN or password." in response.data

    response = client.post("/login", data={"usn": "NOBODY", "password": "nope"})
    assert b"USN not found." in response.data


def test_logout(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    client.get("/logout")
    with client.session_transaction() as sess:
        assert SESSION_USER_KEY not in sess


def test_register_then_login(client, login):
    response = client.post(
        "/register",
        data={"usn": "1rg22cs070", "semester": "2", "password": "secret1", "confirm_password": "secret1"},
        follow_redirects=True,
    )
    assert b"Account created for 1RG22CS070. Please login." in response.data

    assert login("1RG22CS070", "secret1").headers["Location"].endswith("/dashboard")


def test_register_validation(client):
    response = client.post(
        "/register",
        data={"usn": "1RG22CS070", "semester": "2", "password": "secret1", "confirm_password": "other"},
    )
    assert b"Passwords do not match." in response.data

    response = client.post(
        "/register",
        data={"usn": "1RG22CS002", "semester": "2", "password": "secret1", "confirm_password": "secret1"},
    )
    assert b"USN already registered." in response.data


def test_student_dashboard_shows_own_tasks_only(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.get("/dashboard")
    assert response.status_code == 200
    assert b"Student Dashboard (1RG22CS002)" in response.data
    assert b"Complete Project Proposal" in response.data
    assert b"Code Review Session" not in response.data
    assert b"Create Task" not in response.data


def test_admin_dashboard_shows_every_task(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.get("/dashboard")
    assert b"Admin Dashboard" in response.data
    assert b"Code Review Session" in response.data
    assert b"Create Task" in response.data


def test_student_cannot_open_admin_pages(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.get("/dashboard/admin/users")
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")


def test_move_task_json(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.post(
        "/dashboard/tasks/1/move",
        json={"status": "in-progress", "source_index": 0, "destination_index": 0},
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["moved"] is True
    assert body["task"]["status"] == "In Progress"


def test_move_task_same_column_is_noop(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.post("/dashboard/tasks/2/move", json={"status": "In Progress"})
    assert response.get_json() == {"moved": False}


def test_student_cannot_move_to_done(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.post("/dashboard/tasks/3/move", json={"status": "done"})
    assert response.status_code == 403
    assert response.get_json()["error"] == "Only administrators can mark tasks as 'Done'."


def test_student_cannot_move_others_task(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.post("/dashboard/tasks/6/move", json={"status": "in-progress"})
    assert response.status_code == 403


def test_move_unknown_task(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.post("/dashboard/tasks/nope/move", json={"status": "in-progress"})
    assert response.status_code == 404


def test_move_task_form_flashes(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post("/dashboard/tasks/4/move", data={"status": "done"}, follow_redirects=True)
    assert b"Task moved to Done." in response.data


def test_admin_creates_task_for_semester(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post(
        "/dashboard/tasks",
        data={
            "title": "Lab Assignment 4",
            "description": "Implement Dijkstra",
            "semester": "3",
            "assign_to": "all",
            "due_date": "2999-01-01T17:00",
            "assigned_by_name": "Prof. Smith",
        },
        follow_redirects=True,
    )
    assert b"Task assigned to 1 student(s)." in response.data

    client.get("/logout")
    login("1RG22CS002", STUDENT_PASSWORD)
    assert b"Lab Assignment 4" in client.get("/dashboard").data


def test_create_task_rejects_past_due_date(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post(
        "/dashboard/tasks",
        data={
            "title": "Late",
            "description": "Too late",
            "semester": "3",
            "assign_to": "all",
            "due_date": "2000-01-01T09:00",
        },
        follow_redirects=True,
    )
    assert b"Due date cannot be in the past." in response.data


def test_student_submission(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.post(
        "/dashboard/tasks/1/submit",
        data={"submission": (io.BytesIO(b"%PDF-1.4"), "my report.pdf")},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert b"File my_report.pdf submitted successfully." in response.data
    assert b"https://example.com/submissions/1RG22CS002/1/my_report.pdf" in response.data


def test_submission_rejects_unknown_extension(client, login):
    login("1RG22CS002", STUDENT_PASSWORD)
    response = client.post(
        "/dashboard/tasks/1/submit",
        data={"submission": (io.BytesIO(b"MZ"), "virus.exe")},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert b"Invalid file format." in response.data


def test_admin_edits_and_deletes_task(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post("/dashboard/tasks/2/edit", data={"title": "Study Harder"}, follow_redirects=True)
    assert b"Task &#34;Study Harder&#34; updated." in response.data

    response = client.post("/dashboard/tasks/2/delete", follow_redirects=True)
    assert b"Task deleted." in response.data
    assert b"Study Harder" not in response.data


def test_admin_users_page_filters(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.get("/dashboard/admin/users?role=student&semester=3")
    assert response.status_code == 200
    assert b"1RG22CS002" in response.data
    assert b"1RG22CS004" not in response.data


def test_admin_changes_role(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post("/dashboard/admin/users/1RG22CS003/role", data={"new_role": "admin"}, follow_redirects=True)
    assert b"1RG22CS003&#39;s role updated to admin." in response.data


def test_admin_cannot_change_own_role(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post("/dashboard/admin/users/TEACHER001/role", data={"new_role": "student"}, follow_redirects=True)
    assert b"Administrators cannot change their own role." in response.data


def test_promote_semester(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post("/dashboard/admin/users/promote", data={"semester": "7"}, follow_redirects=True)
    assert b"Promoted 1 student(s) from semester 7 to 8." in response.data


def test_only_master_admin_deletes_users(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    response = client.post("/dashboard/admin/users/1RG22CS003/delete", follow_redirects=True)
    assert b"Only the master admin can delete users." in response.data

    client.get("/logout")
    login("MASTERADMIN1", MASTER_PASSWORD)
    response = client.post("/dashboard/admin/users/1RG22CS003/delete", follow_redirects=True)
    assert b"Deleted account 1RG22CS003 and 1 of its task(s)." in response.data


def test_master_admin_clears_admin_semester(client, login):
    login("MASTERADMIN1", MASTER_PASSWORD)
    response = client.post("/dashboard/admin/users/1RG22CS001/semester/remove", follow_redirects=True)
    assert b"Semester cleared for 1RG22CS001." in response.data


def test_unknown_page_renders_error(client):
    response = client.get("/no-such-page")
    assert response.status_code == 404
    assert b"The page you requested was not found." in response.data


def test_unreadable_session_cookie_keeps_shared_data(client, login):
    client.post(
        "/register",
        data={"usn": "NEWSTU1", "semester": "2", "password": "secret1", "confirm_password": "secret1"},
    )
    with client.session_transaction() as sess:
        sess[SESSION_USER_KEY] = '{"usn": "X", "role": "teacher"}'

    response = client.get("/dashboard")
    assert response.status_code == 302
    with client.session_transaction() as sess:
        assert SESSION_USER_KEY not in sess

    assert login("NEWSTU1", "secret1").headers["Location"].endswith("/dashboard")


def test_register_rejects_usn_with_symbols(client):
    response = client.post(
        "/register",
        data={"usn": "1RG22/CS050", "semester": "2", "password": "secret1", "confirm_password": "secret1"},
    )
    assert b"USN may only contain letters and digits." in response.data


def test_delete_confirmation_survives_quotes_in_title(client, login):
    login("TEACHER001", ADMIN_PASSWORD)
    client.post(
        "/dashboard/tasks",
        data={
            "title": "Bob's lab",
            "description": "Quoted",
            "semester": "3",
            "assign_to": "all",
            "due_date": "2999-01-01T17:00",
        },
    )

    response = client.get("/dashboard")
    assert b'data-confirm="Delete task &quot;Bob&#39;s lab&quot;?"' in response.data
    assert b"onsubmit" not in response.data


def test_anonymous_json_move_gets_json_error(client):
    response = client.post("/dashboard/tasks/1/move", json={"status": "in-progress"})
    assert response.status_code == 401
    assert "session has expired" in response.get_json()["error"]


class RecordingLock:
    def __init__(self):
        self.entered = 0
        self._lock = threading.RLock()

    def __enter__(self):
        self.entered += 1
        return self._lock.__enter__()

    def __exit__(self, *exc_info):
        return self._lock.__exit__(*exc_info)


def test_first_load_of_a_request_takes_the_state_lock(client, monkeypatch):
    import app as app_module

    lock = RecordingLock()
    monkeypatch.setattr(app_module, "STATE_LOCK", lock)

    response = client.get("/dashboard")

    assert response.status_code == 302
    assert lock.entered == 1
