"""Admin review: visit transitions, fraud flags, anomaly alerts, ledger and analytics."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from extensions import csrf, db
from utils.anomaly_engine import resolve_alert, run_anomaly_scan
from utils.audit import log_action
from utils.dashboard_stats import analytics, dashboard_stats
from utils.decorators import permission_required
from utils.errors import InvalidInput
from utils.feedback_gate import feedback_for_visit, resolve_feedback, review_feedback
from utils.fraud_scoring import add_fraud_flag, is_flag_candidate, suspicious_visits
from utils.ledger_anchor import anchor_visit, ledger_status
from utils.visit_ledger import flag_visit, get_visit, list_visits, reject_visit, verify_visit, visit_integrity_ok
from .common import json_body, query_date, query_int

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")
csrf.exempt(admin_bp)


def _actor():
    return current_user._get_current_object()


def _visit_response(visit) -> dict:
    payload = visit.public_payload(include_sensitive=True)
    payload["integrity_ok"] = visit_integrity_ok(visit)
    payload["review_candidate"] = is_flag_candidate(visit)
    feedback = feedback_for_visit(visit.visit_id)
    payload["feedback"] = feedback.public_payload() if feedback else None
    return payload


@admin_bp.route("/visits", methods=["GET"])
@permission_required("verify_visits")
def admin_visits():
    filters = {
        "status": request.args.get("status"),
        "chw_id": request.args.get("chw_id"),
        "patient_id": request.args.get("patient_id"),
        "date_from": query_date("date_from"),
        "date_to": query_date("date_to"),
        "min_fraud_score": query_int("min_fraud_score"),
    }
    result = list_visits(filters, page=query_int("page", 1), per_page=query_int("per_page"))
    return jsonify(
        {
            "visits": [visit.public_payload() for visit in result["visits"]],
            "pagination": result["pagination"],
        }
    )


@admin_bp.route("/visits/<visit_id>", methods=["GET"])
@permission_required("verify_visits")
def admin_visit_detail(visit_id):
    return jsonify({"visit": _visit_response(get_visit(visit_id))})


@admin_bp.route("/visits/<visit_id>/verify", methods=["POST"])
@permission_required("verify_visits")
def verify(visit_id):
    body = request.get_json(silent=True) or {}
    visit = verify_visit(visit_id, _actor().username, body.get("notes"))
    log_action("VISIT_VERIFIED", _actor(), context=f"visit:{visit_id}")
    db.session.commit()
    return jsonify({"message": "Visit verified", "visit_id": visit.visit_id, "status": visit.status})


@admin_bp.route("/visits/<visit_id>/reject", methods=["POST"])
@permission_required("verify_visits")
def reject(visit_id):
    body = json_body()
    visit = reject_visit(visit_id, _actor().username, body.get("reason") or "")
    log_action("VISIT_REJECTED", _actor(), context=f"visit:{visit_id}", details={"reason": visit.rejection_reason})
    db.session.commit()
    return jsonify({"message": "Visit rejected", "visit_id": visit.visit_id, "status": visit.status})


@admin_bp.route("/visits/<visit_id>/flag", methods=["POST"])
@permission_required("fraud_detection")
def flag(visit_id):
    body = request.get_json(silent=True) or {}
    visit = flag_visit(visit_id, _actor().username, body.get("notes"))
    log_action("VISIT_FLAGGED", _actor(), context=f"visit:{visit_id}")
    db.session.commit()
    return jsonify({"message": "Visit flagged", "visit_id": visit.visit_id, "status": visit.status})


@admin_bp.route("/visits/<visit_id>/fraud-flags", methods=["POST"])
@permission_required("fraud_detection")
def add_flag(visit_id):
    body = json_body()
    visit = get_visit(visit_id)
    flag_record = add_fraud_flag(
        visit,
        body.get("type"),
        body.get("reason"),
        body.get("severity") or "medium",
        flagged_by=_actor().username,
    )
    log_action("FRAUD_FLAG_ADDED", _actor(), context=f"visit:{visit_id}", details={"severity": flag_record.severity})
    db.session.commit()
    return (
        jsonify(
            {
                "visit_id": visit.visit_id,
                "flag": flag_record.public_payload(),
                "fraud_score": visit.fraud_score,
                "review_candidate": is_flag_candidate(visit),
            }
        ),
        201,
    )


@admin_bp.route("/visits/<visit_id>/ledger-status", methods=["GET"])
@permission_required("verify_visits")
def visit_ledger_status(visit_id):
    return jsonify(ledger_status(get_visit(visit_id)))


@admin_bp.route("/visits/<visit_id>/anchor", methods=["POST"])
@permission_required("verify_visits")
def anchor(visit_id):
    visit = anchor_visit(get_visit(visit_id), strict=True)
    log_action("VISIT_ANCHORED", _actor(), context=f"visit:{visit_id}")
    db.session.commit()
    return jsonify(
        {
            "visit_id": visit.visit_id,
            "status": visit.ledger_status,
            "tx_reference": visit.ledger_tx_reference,
            "block_reference": visit.ledger_block_reference,
        }
    )


@admin_bp.route("/suspicious-visits", methods=["GET"])
@permission_required("fraud_detection")
def suspicious():
    threshold = query_int("threshold")
    visits = suspicious_visits(threshold)
    return jsonify({"visits": [visit.public_payload() for visit in visits]})


@admin_bp.route("/fraud-alerts", methods=["GET"])
@permission_required("fraud_detection")
def fraud_alerts():
    result = run_anomaly_scan(current_app.config)
    return jsonify(
        {
            "alerts": [
                dict(alert, detected_at=alert["detected_at"].isoformat(), scanned_at=alert["scanned_at"].isoformat())
                for alert in result["alerts"]
            ],
            "summary": result["summary"],
            "failed_rules": result["failed_rules"],
            "scanned_at": result["scanned_at"].isoformat(),
        }
    )


@admin_bp.route("/fraud-alerts/<alert_id>/resolve", methods=["POST"])
@permission_required("fraud_detection")
def resolve(alert_id):
    body = json_body()
    if not body.get("resolution"):
        raise InvalidInput("resolution is required")
    outcome = resolve_alert(alert_id, body["resolution"], _actor(), body.get("notes"))
    outcome["resolved_at"] = outcome["resolved_at"].isoformat()
    return jsonify({"message": "Alert resolved", "resolution": outcome})


@admin_bp.route("/dashboard/stats", methods=["GET"])
@permission_required("view_dashboard")
def stats():
    return jsonify(dashboard_stats())


@admin_bp.route("/analytics", methods=["GET"])
@permission_required("view_analytics")
def analytics_view():
    return jsonify(analytics(request.args.get("timeframe", "30d")))


@admin_bp.route("/feedback/<feedback_id>/review", methods=["POST"])
@permission_required("handle_complaints")
def review(feedback_id):
    body = request.get_json(silent=True) or {}
    feedback = review_feedback(feedback_id, _actor(), body.get("notes"))
    return jsonify({"feedback": feedback.public_payload()})


@admin_bp.route("/feedback/<feedback_id>/resolve", methods=["POST"])
@permission_required("handle_complaints")
def resolve_feedback_route(feedback_id):
    body = request.get_json(silent=True) or {}
    feedback = resolve_feedback(feedback_id, _actor(), body.get("notes"))
    return jsonify({"feedback": feedback.public_payload()})
