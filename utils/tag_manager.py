"""Patient identity tags: issuance, verification and NFC UID binding.

Every tag carries a 256-bit random token. Uniqueness of the active tag per
(patient, kind) and of an active NFC physical UID lives in the database via
the nullable ``active_key`` / ``active_uid`` unique columns, so the checks
below are advisory and the commit is authoritative.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import TAG_KINDS, Patient, PatientTag
from utils.errors import AlreadyAssigned, Conflict, Forbidden, InvalidInput, InvalidOrExpired, NotFound
from utils.security import generate_token

AGE_GROUPS: tuple[str, ...] = ("0-5", "6-17", "18-35", "36-50", "51-65", "65+")
GENDERS: tuple[str, ...] = ("male", "female", "other", "prefer_not_to_say")


def _normalize_kind(kind: str | None) -> str:
    normalized = (kind or "").strip().upper()
    if normalized not in TAG_KINDS:
        raise InvalidInput(f"Unsupported tag kind: {kind!r}")
    return normalized


def _get_patient(patient_code: str, require_active: bool = True) -> Patient:
    patient = Patient.query.filter_by(patient_code=patient_code).first()
    if not patient:
        raise NotFound("Patient not found", patient_id=patient_code)
    if require_active and not patient.is_active:
        raise Forbidden("Patient is inactive", patient_id=patient_code)
    return patient


def _active_tag(patient_id: str, kind: str) -> PatientTag | None:
    return PatientTag.query.filter_by(active_key=PatientTag.slot_key(patient_id, kind)).first()


def _new_tag(patient: Patient, kind: str, now: datetime) -> PatientTag:
    validity = int(current_app.config.get("TAG_VALIDITY_DAYS", 365))
    tag = PatientTag(
        patient=patient,
        patient_id=patient.id,
        kind=kind,
        token=generate_token(32),
        issued_at=now,
        expires_at=now + timedelta(days=validity),
    )
    tag.activate()
    return tag


def _rotate(patient: Patient, kind: str, now: datetime) -> PatientTag:
    prior = _active_tag(patient.id, kind)
    if prior:
        prior.deactivate(now)
        # Release the unique slot before the replacement claims it.
        db.session.flush()
    tag = _new_tag(patient, kind, now)
    db.session.add(tag)
    return tag


def enroll_patient(payload: dict, now: datetime | None = None) -> tuple[Patient, PatientTag]:
    """Create a patient and issue its first QR tag."""
    now = now or datetime.utcnow()
    patient_code = (payload.get("patient_id") or "").strip()
    if not patient_code:
        raise InvalidInput("patient_id is required")
    if Patient.query.filter_by(patient_code=patient_code).first():
        raise Conflict("Patient already enrolled", patient_id=patient_code)

    age_group = payload.get("age_group")
    if age_group and age_group not in AGE_GROUPS:
        raise InvalidInput("Unsupported age group")
    gender = payload.get("gender")
    if gender and gender not in GENDERS:
        raise InvalidInput("Unsupported gender")

    location = payload.get("location") or {}
    consent = bool(payload.get("consent_given"))
    patient = Patient(
        patient_code=patient_code,
        hashed_patient_id=Patient.hash_code(patient_code),
        age_group=age_group,
        gender=gender,
        region=payload.get("region"),
        district=payload.get("district"),
        latitude=location.get("latitude"),
        longitude=location.get("longitude"),
        phone=payload.get("phone"),
        consent_given=consent,
        consent_date=now if consent else None,
        enrollment_date=now,
    )
    db.session.add(patient)
    db.session.flush()
    tag = _rotate(patient, "QR", now)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Patient already enrolled", patient_id=patient_code)

    current_app.logger.info("Patient enrolled", extra={"patient_id": patient_code, "tag_id": tag.id})
    return patient, tag


def issue_tag(patient_code: str, kind: str = "QR", now: datetime | None = None) -> PatientTag:
    """Issue a fresh tag, deactivating the prior active tag of the same kind."""
    kind = _normalize_kind(kind)
    now = now or datetime.utcnow()
    patient = _get_patient(patient_code)
    tag = _rotate(patient, kind, now)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Concurrent tag issuance", extra={"patient_id": patient_code, "kind": kind})
        raise Conflict("Another active tag was issued concurrently", patient_id=patient_code, kind=kind)

    current_app.logger.info("Tag issued", extra={"patient_id": patient_code, "kind": kind, "tag_id": tag.id})
    return tag


def _check_live(tag: PatientTag | None, now: datetime) -> PatientTag:
    if not tag or not tag.is_active or tag.is_expired(now):
        raise InvalidOrExpired()
    if not tag.patient or not tag.patient.is_active:
        raise InvalidOrExpired()
    return tag


def resolve_tag(token: str, kind: str = "QR", now: datetime | None = None) -> PatientTag:
    kind = _normalize_kind(kind)
    if not token:
        raise InvalidOrExpired()
    tag = PatientTag.query.filter_by(token=token, kind=kind, is_active=True).first()
    return _check_live(tag, now or datetime.utcnow())


def verify_tag(token: str, kind: str = "QR", now: datetime | None = None) -> dict:
    """Return the patient snapshot for a live tag. Read-only and repeatable."""
    tag = resolve_tag(token, kind, now)
    snapshot = tag.patient.snapshot()
    snapshot["tag_kind"] = tag.kind
    snapshot["tag_expires_at"] = tag.expires_at.isoformat()
    return snapshot


def verify_physical_uid(uid: str, now: datetime | None = None) -> dict:
    if not uid:
        raise InvalidOrExpired()
    tag = PatientTag.query.filter_by(active_uid=uid).first()
    tag = _check_live(tag, now or datetime.utcnow())
    snapshot = tag.patient.snapshot()
    snapshot["tag_kind"] = tag.kind
    snapshot["token"] = tag.token
    return snapshot


def assign_physical_uid(patient_code: str, uid: str, now: datetime | None = None) -> PatientTag:
    """Bind an NFC UID to the patient's active NFC tag, issuing one if needed."""
    uid = (uid or "").strip()
    if not uid:
        raise InvalidInput("uid is required")
    now = now or datetime.utcnow()
    patient = _get_patient(patient_code)

    holder = PatientTag.query.filter_by(active_uid=uid).first()
    if holder and holder.patient_id != patient.id:
        raise AlreadyAssigned(uid=uid)

    tag = _active_tag(patient.id, "NFC")
    if tag is None or tag.is_expired(now):
        tag = _rotate(patient, "NFC", now)
    if holder and holder.id != tag.id:
        # Same patient, stale NFC tag still holding the UID.
        holder.bind_uid(None)
        db.session.flush()
    tag.bind_uid(uid)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise AlreadyAssigned(uid=uid)

    current_app.logger.info("NFC uid bound", extra={"patient_id": patient_code, "tag_id": tag.id})
    return tag


def deactivate_patient(patient_code: str, now: datetime | None = None) -> Patient:
    now = now or datetime.utcnow()
    patient = _get_patient(patient_code, require_active=False)
    patient.is_active = False
    deactivated = 0
    for tag in patient.tags.filter_by(is_active=True):
        tag.deactivate(now)
        deactivated += 1
    db.session.commit()
    current_app.logger.info("Patient deactivated", extra={"patient_id": patient_code, "tags": deactivated})
    return patient
