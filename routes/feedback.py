"""Public, OTP-gated patient feedback endpoints."""
from flask import Blueprint, jsonify, session

from extensions import csrf
from utils.errors import InvalidInput
from utils.feedback_gate import check_eligibility, request_otp, submit_feedback, verify_otp
from .common import json_body

feedback_bp = Blueprint("feedback", __name__, url_prefix="/api/feedback")
csrf.exempt(feedback_bp)

GRANT_KEY = "feedback_grant"


def _required(body: dict, *names: str) -> list:
    missing = [name for name in names if not body.get(name)]
    if missing:
        raise InvalidInput("Missing required fields", fields=missing)
    return [body[name] for name in names]


@feedback_bp.route("/eligibility/<visit_id>", methods=["GET"])
def eligibility(visit_id):
    return jsonify(check_eligibility(visit_id))


@feedback_bp.route("/otp", methods=["POST"])
def send_otp():
    phone, visit_id = _required(json_body(), "phone", "visit_id")
    result = request_otp(phone, visit_id)
    return jsonify({"message": "OTP sent successfully", **result})


@feedback_bp.route("/otp/verify", methods=["POST"])
def confirm_otp():
    phone, otp, visit_id = _required(json_body(), "phone", "otp", "visit_id")
    grant = verify_otp(phone, otp, visit_id)
    # One grant per session; a new verification replaces the previous one.
    session[GRANT_KEY] = grant
    return jsonify({"verified": True, "visit_id": visit_id})


@feedback_bp.route("", methods=["POST"])
def submit():
    body = json_body()
    visit_id, phone = _required(body, "visit_id", "phone")
    feedback = submit_feedback(visit_id, phone, body, session.get(GRANT_KEY))
    session.pop(GRANT_KEY, None)
    return (
        jsonify(
            {
                "message": "Feedback submitted successfully",
                "feedback_id": feedback.feedback_id,
                "feedback_hash": feedback.feedback_hash,
                "status": feedback.status,
            }
        ),
        201,
    )
