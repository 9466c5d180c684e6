"""Visit capture and retrieval for CHWs."""
from flask import Blueprint, abort, jsonify, request
from flask_login import current_user, login_required

from extensions import csrf
from models import CHW, AdminUser
from utils.decorators import chw_required
from utils.visit_ledger import create_visit, get_visit, list_visits
from .common import json_body, query_date, query_int

visits_bp = Blueprint("visits", __name__, url_prefix="/api/visits")
csrf.exempt(visits_bp)


@visits_bp.route("", methods=["POST"])
@chw_required
def log_visit():
    visit = create_visit(current_user._get_current_object(), json_body())
    return (
        jsonify(
            {
                "message": "Visit logged successfully",
                "visit": {
                    "visit_id": visit.visit_id,
                    "visit_hash": visit.visit_hash,
                    "hash_version": visit.hash_version,
                    "status": visit.status,
                    "timestamp": visit.timestamp.isoformat(),
                    "ledger_status": visit.ledger_status,
                    "ledger_tx_reference": visit.ledger_tx_reference,
                },
            }
        ),
        201,
    )


@visits_bp.route("", methods=["GET"])
@chw_required
def my_visits():
    filters = {
        "chw_id": current_user.chw_code,
        "status": request.args.get("status"),
        "date_from": query_date("date_from"),
        "date_to": query_date("date_to"),
    }
    result = list_visits(filters, page=query_int("page", 1), per_page=query_int("per_page"))
    return jsonify(
        {
            "visits": [visit.public_payload() for visit in result["visits"]],
            "pagination": result["pagination"],
        }
    )


@visits_bp.route("/<visit_id>", methods=["GET"])
@login_required
def visit_detail(visit_id):
    visit = get_visit(visit_id)
    user = current_user._get_current_object()
    if isinstance(user, CHW):
        if visit.chw_id != user.id:
            abort(404)
        return jsonify({"visit": visit.public_payload()})
    if isinstance(user, AdminUser) and user.has_permission("verify_visits"):
        return jsonify({"visit": visit.public_payload(include_sensitive=True)})
    abort(403)
