from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from typing import Any, Iterator

from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.utils import secure_filename

from board import (
    COLUMN_ORDER,
    DropResult,
    build_assignment,
    build_board,
    request_transition,
    resolve_assignees,
)
from directory import ROLE_FILTERS, SEMESTER_FILTERS, directory_view
from models import (
    MASTER_ADMIN_USN,
    MIN_PASSWORD_LENGTH,
    SEMESTERS,
    InvalidInput,
    NotFound,
    PermissionDenied,
    SelfRoleChange,
    TaskStatus,
    UniTaskError,
    User,
)
from provider import UniTaskProvider
from storage import SESSION_USER_KEY, KeyValueStore, SQLiteStore

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
IS_VERCEL = bool(os.environ.get("VERCEL"))
DB_PATH = os.environ.get(
    "DATABASE_PATH",
    "/tmp/unitask.db" if IS_VERCEL else os.path.join(BASE_DIR, "unitask.db"),
)

MAX_UPLOAD_BYTES = 8 * 1024 * 1024
SUBMISSION_EXTENSIONS = {".pdf", ".doc", ".docx", ".txt", ".zip", ".rar", ".png", ".jpg", ".jpeg", ".gif"}
SUBMISSION_URL_BASE = "https://example.com/submissions"

NAV_MAP = {
    "dashboard": "dashboard",
    "create_task": "dashboard",
    "admin_users": "users",
}

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-change-me")
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES
app.config["DATABASE_PATH"] = DB_PATH

# Serializes load-mutate-persist cycles across request threads. Reentrant because
# provider_transaction may build the request provider while holding it.
STATE_LOCK = threading.RLock()


class BrowserStore(KeyValueStore):
    """Keeps the session user in the signed cookie and everything else in the shared database."""

    def __init__(self, shared: KeyValueStore) -> None:
        self.shared = shared

    def get(self, key: str) -> str | None:
        if key == SESSION_USER_KEY:
            return session.get(key)
        return self.shared.get(key)

    def set(self, key: str, value: str) -> None:
        if key == SESSION_USER_KEY:
            session[key] = value
        else:
            self.shared.set(key, value)

    def clear(self, key: str) -> None:
        if key == SESSION_USER_KEY:
            session.pop(key, None)
        else:
            self.shared.clear(key)


def get_provider() -> UniTaskProvider:
    if "provider" not in g:
        # Loading may seed or reset shared state.
        with STATE_LOCK:
            g.provider = UniTaskProvider(BrowserStore(SQLiteStore(app.config["DATABASE_PATH"])))
    return g.provider


@contextmanager
def provider_transaction() -> Iterator[UniTaskProvider]:
    with STATE_LOCK:
        provider = get_provider()
        provider.reload()
        yield provider


def init_store() -> None:
    with STATE_LOCK:
        UniTaskProvider(SQLiteStore(app.config["DATABASE_PATH"]))


def current_user() -> User | None:
    return get_provider().user


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user():
            if wants_json():
                return jsonify({"error": "Your session has expired. Please login again."}), 401
            flash("Please login first.", "warning")
            return redirect(url_for("login"))
        return view(*args, **kwargs)

    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if not user:
            flash("Please login first.", "warning")
            return redirect(url_for("login"))
        if not user.is_admin:
            flash("Administrator privileges required.", "danger")
            return redirect(url_for("dashboard"))
        return view(*args, **kwargs)

    return wrapped


def error_status(exc: UniTaskError) -> int:
    if isinstance(exc, (PermissionDenied, SelfRoleChange)):
        return 403
    if isinstance(exc, NotFound):
        return 404
    return 400


def flash_error(exc: UniTaskError) -> None:
    app.logger.info("Rejected %s: %s", request.endpoint, exc)
    flash(str(exc), "danger")


def wants_json() -> bool:
    return request.is_json or request.accept_mimetypes.best == "application/json"


def parse_semester(raw: str | None) -> int:
    try:
        semester = int((raw or "").strip())
    except ValueError:
        raise InvalidInput("Semester must be selected.") from None
    if semester not in SEMESTERS:
        raise InvalidInput("Semester must be between 1 and 8.")
    return semester


def parse_index(raw: Any) -> int:
    try:
        return int(raw or 0)
    except (TypeError, ValueError):
        return 0


def parse_due_date(raw: str | None) -> datetime:
    text = (raw or "").strip()
    if not text:
        raise InvalidInput("Due date is required.")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise InvalidInput("Due date is not a valid date.") from None


def read_submission_name(field_name: str) -> str:
    uploaded = request.files.get(field_name)
    if not uploaded or not uploaded.filename:
        raise InvalidInput("Choose a file to submit.")

    filename = secure_filename(uploaded.filename)
    ext = os.path.splitext(filename)[1].lower()
    if ext not in SUBMISSION_EXTENSIONS:
        raise InvalidInput("Invalid file format. Please upload the supported format only.")
    return filename


def render_page(template_name: str, **context: Any):
    return render_template(template_name, **context)


@app.context_processor
def inject_globals() -> dict[str, Any]:
    provider = get_provider()
    return {
        "current_user": provider.user,
        "is_admin": provider.is_admin,
        "is_master_admin": provider.is_master_admin,
        "master_admin_usn": MASTER_ADMIN_USN,
        "semesters": SEMESTERS,
        "statuses": COLUMN_ORDER,
        "active_nav": NAV_MAP.get(request.endpoint or "", "dashboard"),
    }


@app.route("/")
def index():
    if current_user():
        return redirect(url_for("dashboard"))
    return redirect(url_for("login"))


@app.route("/login", methods=["GET", "POST"])
def login():
    if current_user():
        return redirect(url_for("dashboard"))

    if request.method == "POST":
        usn = request.form.get("usn", "").strip()
        password = request.form.get("password", "")

        if not usn or not password:
            flash("Please enter your USN and password.", "danger")
            return render_page("login.html", usn=usn, page_title="Sign In")

        try:
            user = get_provider().login(usn, password)
        except UniTaskError as exc:
            flash_error(exc)
            return render_page("login.html", usn=usn, page_title="Sign In")

        flash(f"Welcome back, {user.usn}.", "success")
        return redirect(url_for("dashboard"))

    return render_page("login.html", usn="", page_title="Sign In")


@app.route("/register", methods=["GET", "POST"])
def register():
    if current_user():
        return redirect(url_for("dashboard"))

    if request.method == "POST":
        usn = request.form.get("usn", "").strip()
        password = request.form.get("password", "")
        confirm_password = request.form.get("confirm_password", "")

        try:
            if password != confirm_password:
                raise InvalidInput("Passwords do not match.")
            semester = parse_semester(request.form.get("semester"))
            with provider_transaction() as provider:
                user = provider.register(usn, semester, password)
        except UniTaskError as exc:
            flash_error(exc)
            return render_page(
                "register.html",
                usn=usn,
                min_password_length=MIN_PASSWORD_LENGTH,
                page_title="Create Account",
            )

        flash(f"Account created for {user.usn}. Please login.", "success")
        return redirect(url_for("login"))

    return render_page("register.html", usn="", min_password_length=MIN_PASSWORD_LENGTH, page_title="Create Account")


@app.route("/logout")
def logout():
    get_provider().logout()
    flash("You have been logged out.", "info")
    return redirect(url_for("login"))


@app.route("/dashboard")
@login_required
def dashboard():
    provider = get_provider()
    user = provider.user
    columns = build_board(provider.visible_tasks(), provider.is_admin, provider.clock())
    return render_page(
        "dashboard.html",
        page_title="Admin Dashboard" if user.is_admin else f"Student Dashboard ({user.usn})",
        columns=columns,
        task_count=sum(len(c.cards) for c in columns),
    )


@app.route("/dashboard/tasks", methods=["POST"])
@admin_required
def create_task():
    form = request.form
    try:
        semester = parse_semester(form.get("semester"))
        due_date = parse_due_date(form.get("due_date"))
        with provider_transaction() as provider:
            if due_date.date() < provider.clock().date():
                raise InvalidInput("Due date cannot be in the past.")
            assignees = resolve_assignees(form.get("assign_to", ""), semester, provider.users)
            tasks = build_assignment(
                title=form.get("title", ""),
                description=form.get("description", ""),
                due_date=due_date,
                semester=semester,
                assignees=assignees,
                assigned_by=provider.user,
                assigned_by_name=form.get("assigned_by_name", "").strip(),
                attachment_url=form.get("attachment_url", "").strip(),
            )
            added = provider.add_multiple_tasks(tasks)
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("dashboard"))

    if not tasks:
        flash(f"No students found in semester {semester} to assign to.", "warning")
    else:
        flash(f"Task assigned to {len(added)} student(s).", "success")
    return redirect(url_for("dashboard"))


@app.route("/dashboard/tasks/<task_id>/move", methods=["POST"])
@login_required
def move_task(task_id: str):
    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
    else:
        data = request.form
    raw_status = str(data.get("status") or "").strip()

    try:
        with provider_transaction() as provider:
            task = provider.find_task(task_id)
            if task is None:
                raise NotFound(f"Task {task_id} not found.")
            drop = DropResult(
                task_id=task_id,
                source=task.status,
                source_index=parse_index(data.get("source_index")),
                destination=TaskStatus.parse(raw_status) if raw_status else None,
                destination_index=parse_index(data.get("destination_index")),
            )
            moved = request_transition(provider, drop)
    except UniTaskError as exc:
        if wants_json():
            return jsonify({"error": str(exc)}), error_status(exc)
        flash_error(exc)
        return redirect(url_for("dashboard"))

    if wants_json():
        if moved is None:
            return jsonify({"moved": False})
        return jsonify({"moved": True, "task": moved.to_dict()})

    if moved is not None:
        flash(f"Task moved to {moved.status.value}.", "success")
    return redirect(url_for("dashboard"))


@app.route("/dashboard/tasks/<task_id>/submit", methods=["POST"])
@login_required
def submit_task(task_id: str):
    try:
        filename = read_submission_name("submission")
        with provider_transaction() as provider:
            if provider.is_admin:
                raise PermissionDenied("Only students upload submissions.")
            task = provider.find_task(task_id)
            if task is None or task.usn != provider.user.usn:
                raise NotFound(f"Task {task_id} not found.")
            if task.status in (TaskStatus.SUBMITTED, TaskStatus.DONE):
                raise InvalidInput("This task has already been submitted.")
            provider.update_task(
                task_id,
                status=TaskStatus.SUBMITTED,
                submission_url=f"{SUBMISSION_URL_BASE}/{task.usn}/{task.id}/{filename}",
            )
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("dashboard"))

    flash(f"File {filename} submitted successfully.", "success")
    return redirect(url_for("dashboard"))


@app.route("/dashboard/tasks/<task_id>/edit", methods=["POST"])
@admin_required
def edit_task(task_id: str):
    form = request.form
    changes: dict[str, Any] = {}
    try:
        for field_name in ("title", "description"):
            value = form.get(field_name, "").strip()
            if value:
                changes[field_name] = value
        for field_name in ("assigned_by_name", "attachment_url"):
            if field_name in form:
                changes[field_name] = form.get(field_name, "").strip() or None
        if form.get("due_date"):
            changes["due_date"] = parse_due_date(form.get("due_date"))
        if form.get("status"):
            changes["status"] = TaskStatus.parse(form.get("status"))

        with provider_transaction() as provider:
            task = provider.update_task(task_id, **changes)
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("dashboard"))

    flash(f'Task "{task.title}" updated.', "success")
    return redirect(url_for("dashboard"))


@app.route("/dashboard/tasks/<task_id>/delete", methods=["POST"])
@admin_required
def delete_task(task_id: str):
    try:
        with provider_transaction() as provider:
            deleted = provider.delete_task(task_id)
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("dashboard"))

    if deleted:
        flash("Task deleted.", "info")
    else:
        flash("Task was already removed.", "warning")
    return redirect(url_for("dashboard"))


@app.route("/dashboard/admin/users")
@admin_required
def admin_users():
    try:
        users = get_provider().get_all_users()
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("dashboard"))

    view = directory_view(
        users,
        role=request.args.get("role", "all"),
        semester=request.args.get("semester", "all"),
        search=request.args.get("q", ""),
    )
    return render_page(
        "admin_users.html",
        page_title="Manage Users",
        view=view,
        role_filters=ROLE_FILTERS,
        semester_filters=SEMESTER_FILTERS,
        promotable_semesters=SEMESTERS[:-1],
    )


@app.route("/dashboard/admin/users/<usn>/role", methods=["POST"])
@admin_required
def change_role(usn: str):
    new_role = request.form.get("new_role", "").strip().lower()
    try:
        with provider_transaction() as provider:
            target = provider.update_user_role(usn, new_role)
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("admin_users"))

    flash(f"{target.usn}'s role updated to {target.role}.", "success")
    return redirect(url_for("admin_users"))


@app.route("/dashboard/admin/users/promote", methods=["POST"])
@admin_required
def promote_semester():
    try:
        semester = parse_semester(request.form.get("semester"))
        with provider_transaction() as provider:
            result = provider.promote_specific_semester(semester)
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("admin_users"))

    flash(
        f"Promoted {result.promoted} student(s) from semester {semester} to {semester + 1}. "
        f"{result.at_destination} student(s) are now in semester {semester + 1} or above.",
        "success",
    )
    return redirect(url_for("admin_users"))


@app.route("/dashboard/admin/users/<usn>/semester/remove", methods=["POST"])
@admin_required
def remove_admin_semester(usn: str):
    try:
        with provider_transaction() as provider:
            target = provider.remove_admin_semester(usn)
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("admin_users"))

    flash(f"Semester cleared for {target.usn}.", "success")
    return redirect(url_for("admin_users"))


@app.route("/dashboard/admin/users/<usn>/delete", methods=["POST"])
@admin_required
def delete_user(usn: str):
    try:
        with provider_transaction() as provider:
            removed_tasks = provider.delete_user(usn)
    except UniTaskError as exc:
        flash_error(exc)
        return redirect(url_for("admin_users"))

    flash(f"Deleted account {usn.upper()} and {removed_tasks} of its task(s).", "info")
    return redirect(url_for("admin_users"))


@app.route("/health")
def health():
    return jsonify({"status": "ok", "db": app.config["DATABASE_PATH"]})


@app.errorhandler(404)
def not_found(_error):
    return render_page("error.html", code=404, message="The page you requested was not found."), 404


@app.errorhandler(413)
def too_large(_error):
    return render_page(
        "error.html",
        code=413,
        message=f"Request too large. Max upload size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB.",
    ), 413


with app.app_context():
    init_store()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5050"))
    app.run(host="0.0.0.0", port=port, debug=True)
