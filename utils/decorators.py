"""Authorization decorators for permission-based access control."""
from functools import wraps

from flask import abort, current_app
from flask_login import current_user, login_required

from extensions import db
from models import CHW, AdminUser
from utils.audit import log_action


def _deny(reason: str, required=None):
    current_app.logger.warning(
        "Unauthorized access attempt",
        extra={"actor": getattr(current_user, "actor_id", None), "reason": reason, "required": required},
    )
    log_action("UNAUTHORIZED_ACCESS", current_user, details={"reason": reason, "required": required})
    db.session.commit()
    abort(403)


def permission_required(*permissions):
    """Allow admins whose role grants every listed permission."""
    required = tuple(permissions)

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            if not isinstance(current_user, AdminUser) or not current_user.is_active:
                _deny("admin_required", list(required))
            if not all(current_user.has_permission(p) for p in required):
                _deny("missing_permission", list(required))
            return view_func(*args, **kwargs)

        return wrapped

    return decorator


def chw_required(view_func):
    @wraps(view_func)
    @login_required
    def wrapped(*args, **kwargs):
        if not isinstance(current_user, CHW) or not current_user.is_active:
            _deny("chw_required")
        return view_func(*args, **kwargs)

    return wrapped
