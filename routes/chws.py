"""CHW account management."""
import secrets

from flask import Blueprint, current_app, jsonify
from flask_login import current_user
from sqlalchemy.exc import IntegrityError
from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional, Regexp

from extensions import csrf, db
from models import CHW
from utils.audit import log_action
from utils.decorators import chw_required, permission_required
from utils.dashboard_stats import chw_activity
from utils.errors import Conflict, InvalidInput, NotFound
from utils.security import password_meets_policy
from .auth import JsonForm, validated
from .common import query_page

chws_bp = Blueprint("chws", __name__, url_prefix="/api/chws")
csrf.exempt(chws_bp)


class CHWForm(JsonForm):
    chw_id = StringField("CHW id", validators=[Optional(), Length(max=64)])
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    phone = StringField("Phone", validators=[DataRequired(), Regexp(r"^\+?[1-9]\d{1,14}$", message="Invalid phone number")])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12, max=128)])
    license_number = StringField("License number", validators=[DataRequired(), Length(max=120)])
    wallet_address = StringField(
        "Wallet address",
        validators=[DataRequired(), Regexp(r"^0x[0-9a-fA-F]{40}$", message="Invalid wallet address")],
    )
    region = StringField("Region", validators=[Optional(), Length(max=120)])
    organization = StringField("Organization", validators=[Optional(), Length(max=255)])


@chws_bp.route("", methods=["POST"])
@permission_required("manage_chws")
def create_chw():
    form = validated(CHWForm())
    ok, reason = password_meets_policy(form.password.data)
    if not ok:
        raise InvalidInput(reason)

    chw = CHW(
        chw_code=(form.chw_id.data or f"CHW-{secrets.token_hex(4).upper()}").strip(),
        name=form.name.data.strip(),
        email=form.email.data.lower().strip(),
        phone=form.phone.data.strip(),
        license_number=form.license_number.data.strip(),
        wallet_address=form.wallet_address.data.lower(),
        region=form.region.data or None,
        organization=form.organization.data or None,
        is_verified=True,
    )
    chw.set_password(form.password.data)
    db.session.add(chw)
    log_action("CHW_CREATED", current_user, context=f"chw:{chw.chw_code}")
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("A CHW with this id, email, license or wallet already exists")

    current_app.logger.info("CHW created", extra={"chw_id": chw.chw_code})
    return jsonify({"chw": chw.profile_payload()}), 201


@chws_bp.route("", methods=["GET"])
@permission_required("manage_chws")
def list_chws():
    page, per_page = query_page()
    query = CHW.query.order_by(CHW.registered_at.desc())
    total = query.count()
    chws = query.offset((page - 1) * per_page).limit(per_page).all()
    return jsonify(
        {
            "chws": [chw.profile_payload() for chw in chws],
            "pagination": {"current": page, "per_page": per_page, "total": total},
        }
    )


@chws_bp.route("/me", methods=["GET"])
@chw_required
def me():
    return jsonify({"chw": current_user.profile_payload()})


def _get_chw(chw_code: str) -> CHW:
    chw = CHW.query.filter_by(chw_code=chw_code).first()
    if not chw:
        raise NotFound("CHW not found", chw_id=chw_code)
    return chw


@chws_bp.route("/<chw_code>", methods=["GET"])
@permission_required("manage_chws")
def chw_detail(chw_code):
    chw = _get_chw(chw_code)
    return jsonify({"chw": chw.profile_payload(), **chw_activity(chw)})


@chws_bp.route("/<chw_code>/deactivate", methods=["POST"])
@permission_required("manage_chws")
def deactivate(chw_code):
    chw = _get_chw(chw_code)
    chw.is_active = False
    log_action("CHW_DEACTIVATED", current_user, context=f"chw:{chw_code}")
    db.session.commit()
    current_app.logger.info("CHW deactivated", extra={"chw_id": chw_code})
    return jsonify({"chw": chw.profile_payload()})
