"""Patient enrollment and identity tag endpoints."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from extensions import csrf, db
from models import Patient
from utils.audit import log_action
from utils.decorators import chw_required, permission_required
from utils.dashboard_stats import patient_stats
from utils.errors import NotFound
from utils.tag_manager import assign_physical_uid, deactivate_patient, enroll_patient, issue_tag, verify_physical_uid, verify_tag
from .common import json_body, query_page

patients_bp = Blueprint("patients", __name__, url_prefix="/api/patients")
csrf.exempt(patients_bp)


@patients_bp.route("", methods=["POST"])
@permission_required("manage_patients")
def enroll():
    patient, tag = enroll_patient(json_body())
    log_action("PATIENT_ENROLLED", current_user, context=f"patient:{patient.patient_code}")
    db.session.commit()
    return jsonify({"patient": patient.anonymized_payload(), "patient_id": patient.patient_code, "tag": tag.public_payload()}), 201


def _patient_row(patient: Patient) -> dict:
    payload = patient.anonymized_payload()
    payload["patient_id"] = patient.patient_code
    payload["is_active"] = patient.is_active
    return payload


@patients_bp.route("", methods=["GET"])
@permission_required("manage_patients")
def list_patients():
    page, per_page = query_page()
    query = Patient.query
    region = request.args.get("region")
    if region:
        query = query.filter(Patient.region == region)
    total = query.count()
    patients = query.order_by(Patient.enrollment_date.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return jsonify(
        {
            "patients": [_patient_row(patient) for patient in patients],
            "pagination": {"current": page, "per_page": per_page, "total": total},
        }
    )


@patients_bp.route("/stats", methods=["GET"])
@permission_required("view_analytics")
def stats():
    return jsonify(patient_stats())


@patients_bp.route("/<patient_code>", methods=["GET"])
@permission_required("manage_patients")
def patient_detail(patient_code):
    patient = Patient.query.filter_by(patient_code=patient_code).first()
    if not patient:
        raise NotFound("Patient not found")
    payload = _patient_row(patient)
    payload["tags"] = [
        {k: v for k, v in tag.public_payload().items() if k != "token"}
        for tag in patient.tags
    ]
    return jsonify(payload)


@patients_bp.route("/<patient_code>/tags", methods=["POST"])
@permission_required("manage_patients")
def issue(patient_code):
    body = request.get_json(silent=True) or {}
    tag = issue_tag(patient_code, body.get("kind") or "QR")
    log_action("TAG_ISSUED", current_user, context=f"patient:{patient_code}", details={"kind": tag.kind})
    db.session.commit()
    return jsonify({"tag": tag.public_payload()}), 201


@patients_bp.route("/verify-tag", methods=["POST"])
@chw_required
def verify_tag_route():
    body = json_body()
    snapshot = verify_tag(body.get("token"), body.get("kind") or "QR")
    current_app.logger.info("Tag verified", extra={"chw_id": current_user.chw_code, "patient_id": snapshot["patient_id"]})
    return jsonify({"valid": True, "patient": snapshot})


@patients_bp.route("/verify-nfc", methods=["POST"])
@chw_required
def verify_nfc_route():
    body = json_body()
    snapshot = verify_physical_uid(body.get("uid"))
    return jsonify({"valid": True, "patient": snapshot})


@patients_bp.route("/<patient_code>/nfc", methods=["POST"])
@permission_required("manage_patients")
def assign_nfc(patient_code):
    body = json_body()
    tag = assign_physical_uid(patient_code, body.get("uid"))
    log_action("NFC_ASSIGNED", current_user, context=f"patient:{patient_code}")
    db.session.commit()
    return jsonify({"tag": tag.public_payload()})


@patients_bp.route("/<patient_code>/deactivate", methods=["POST"])
@permission_required("manage_patients")
def deactivate(patient_code):
    patient = deactivate_patient(patient_code)
    log_action("PATIENT_DEACTIVATED", current_user, context=f"patient:{patient_code}")
    db.session.commit()
    return jsonify({"patient_id": patient.patient_code, "is_active": patient.is_active})
