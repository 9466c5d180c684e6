"""Session authentication for CHWs and admin users."""
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length

from extensions import csrf, db
from models import CHW, AdminUser
from utils.audit import log_action
from utils.errors import Forbidden, InvalidInput
from utils.security import password_meets_policy

auth_bp = Blueprint("auth", __name__)
csrf.exempt(auth_bp)


class JsonForm(FlaskForm):
    class Meta:
        csrf = False


class CHWLoginForm(JsonForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])


class AdminLoginForm(JsonForm):
    username = StringField("Username or email", validators=[DataRequired(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])


class ChangePasswordForm(JsonForm):
    current_password = PasswordField("Current password", validators=[DataRequired()])
    new_password = PasswordField("New password", validators=[DataRequired(), Length(min=12, max=128)])


def validated(form: FlaskForm) -> FlaskForm:
    if not form.validate_on_submit():
        raise InvalidInput("Invalid request body", fields=form.errors)
    return form


def _start_session(user) -> None:
    login_user(user, remember=False)
    session.permanent = True
    user.last_login_at = datetime.utcnow()


@auth_bp.route("/chw/login", methods=["POST"])
def chw_login():
    form = validated(CHWLoginForm())
    chw = CHW.query.filter_by(email=form.email.data.lower().strip()).first()
    if not chw or not chw.check_password(form.password.data):
        log_action("LOGIN_FAILED", chw, details={"kind": "chw"})
        db.session.commit()
        return jsonify({"error": "Invalid credentials", "code": "invalid_credentials"}), 401
    if not chw.is_active:
        raise Forbidden("Account is inactive")

    _start_session(chw)
    log_action("LOGIN", chw)
    db.session.commit()
    return jsonify({"message": "Login successful", "chw": chw.profile_payload()})


@auth_bp.route("/admin/login", methods=["POST"])
def admin_login():
    form = validated(AdminLoginForm())
    identifier = form.username.data.strip()
    admin = AdminUser.query.filter(
        (AdminUser.username == identifier) | (AdminUser.email == identifier.lower())
    ).first()
    if not admin or not admin.is_active:
        log_action("LOGIN_FAILED", admin, details={"kind": "admin"})
        db.session.commit()
        return jsonify({"error": "Invalid credentials", "code": "invalid_credentials"}), 401

    now = datetime.utcnow()
    if admin.is_locked(now):
        raise Forbidden("Account temporarily locked due to failed login attempts", locked_until=admin.locked_until.isoformat())

    if not admin.check_password(form.password.data):
        admin.failed_login_attempts = (admin.failed_login_attempts or 0) + 1
        if admin.failed_login_attempts >= int(current_app.config.get("ADMIN_MAX_LOGIN_ATTEMPTS", 5)):
            admin.locked_until = now + timedelta(minutes=int(current_app.config.get("ADMIN_LOCKOUT_MINUTES", 30)))
            admin.failed_login_attempts = 0
            current_app.logger.warning("Admin account locked", extra={"admin": admin.username})
        log_action("LOGIN_FAILED", admin, details={"kind": "admin"})
        db.session.commit()
        return jsonify({"error": "Invalid credentials", "code": "invalid_credentials"}), 401

    admin.failed_login_attempts = 0
    admin.locked_until = None
    _start_session(admin)
    log_action("LOGIN", admin)
    db.session.commit()
    return jsonify(
        {
            "message": "Login successful",
            "admin": {
                "id": admin.id,
                "username": admin.username,
                "full_name": admin.full_name,
                "role": admin.role.name,
                "permissions": sorted(admin.role.permission_set()),
            },
        }
    )


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user = current_user._get_current_object()
    logout_user()
    session.clear()
    log_action("LOGOUT", user)
    db.session.commit()
    return jsonify({"message": "Logged out"})


@auth_bp.route("/change-password", methods=["POST"])
@login_required
def change_password():
    form = validated(ChangePasswordForm())
    user = current_user._get_current_object()
    if not user.check_password(form.current_password.data):
        raise InvalidInput("Current password is incorrect")
    ok, reason = password_meets_policy(form.new_password.data)
    if not ok:
        raise InvalidInput(reason)
    user.set_password(form.new_password.data)
    log_action("CHANGE_PASSWORD", user)
    db.session.commit()
    return jsonify({"message": "Password updated"})
