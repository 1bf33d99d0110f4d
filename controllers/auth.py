from functools import wraps
from flask import Blueprint, jsonify, request
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from models.users_db import get_user, verify_password
from models.audit_store import audit
from services.access import can_view
from services.metrics import LOGIN_SUCCESSES, LOGIN_FAILURES, FORBIDDEN_REQUESTS

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


class User(UserMixin):
    def __init__(self, username, role):
        self.id = username
        self.username = username
        self.role = role


@login_manager.user_loader
def load_user(user_id):
    row = get_user(user_id)
    if not row:
        return None
    return User(row["username"], row["role"])


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(error="authentication required", code="unauthorized"), 401


def section_required(section: str):
    """Yes/no gate in front of a section; scope is resolved by the view itself."""
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if not can_view(current_user, section):
                FORBIDDEN_REQUESTS.labels(section=section).inc()
                audit(
                    "auth.forbidden",
                    target_type="section", target_id=section,
                    outcome="failure", status=403,
                    extra={"reason": f"role={current_user.role}"}
                )
                return jsonify(error=f"no access to {section}", code="forbidden"), 403
            return f(*args, **kwargs)
        return wrapper
    return decorator


def _credentials() -> tuple[str, str]:
    data = request.get_json(silent=True) or request.form
    return (data.get("username") or "").strip(), data.get("password") or ""


@auth_bp.post("/login")
def login_post():
    u, p = _credentials()

    if not verify_password(u, p):
        LOGIN_FAILURES.labels(reason="bad_credentials").inc()
        audit(
            "auth.login.failure",
            target_type="user", target_id=(u or "unknown"),
            outcome="failure", status=401,
            extra={"reason": "bad_credentials"}
        )
        return jsonify(error="invalid username or password", code="bad_credentials"), 401

    row = get_user(u)
    login_user(User(row["username"], row["role"]))
    LOGIN_SUCCESSES.inc()

    audit(
        "auth.login.success",
        target_type="user", target_id=row["username"],
        outcome="success", status=200,
        extra={"note": f"role={row['role']}"}
    )
    return jsonify(username=row["username"], role=row["role"])


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return jsonify(ok=True)


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(username=current_user.username, role=current_user.role)
