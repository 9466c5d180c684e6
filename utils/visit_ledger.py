"""Visit record construction, content hashing and admin status transitions.

The ``v1`` canonical string is ``chw_address + patient_id + "lat,lon" +
timestamp_epoch_millis``. Coordinates are written exactly as JavaScript's
``String(number)`` writes them, so hashes anchored by the existing JS capture
clients recompute identically here.
"""
from __future__ import annotations

import hashlib
import math
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import SERVICE_TYPES, TAG_KINDS, VISIT_STATUSES, VISIT_TYPES, CHW, Patient, Visit
from utils.errors import Conflict, Forbidden, InvalidInput, NotFound
from utils.ledger_anchor import anchor_visit
from utils.tag_manager import resolve_tag

HASH_VERSION = "v1"
EPOCH = datetime(1970, 1, 1)


def format_coordinate(value: float) -> str:
    """Render a number the way JavaScript's Number-to-String does.

    Plain decimal notation for 1e-6 <= |x| < 1e21, exponent form (``1e-7``,
    ``1.5e+21``) outside it, no trailing ``.0`` on integral values.
    """
    number = float(value)
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "Infinity" if number > 0 else "-Infinity"
    if number == 0:
        return "0"

    sign = "-" if number < 0 else ""
    # repr() yields the shortest round-trip digits, the same digits JS picks.
    _, digit_tuple, exponent = Decimal(repr(abs(number))).normalize().as_tuple()
    digits = "".join(map(str, digit_tuple))
    k = len(digits)
    n = exponent + k

    if k <= n <= 21:
        return sign + digits + "0" * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * (-n) + digits
    mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
    return f"{sign}{mantissa}e{'+' if n - 1 >= 0 else '-'}{abs(n - 1)}"


def max_clock_skew() -> timedelta:
    return timedelta(minutes=int(current_app.config.get("MAX_CLOCK_SKEW_MINUTES", 5)))


def epoch_millis(moment: datetime) -> int:
    return (moment - EPOCH) // timedelta(milliseconds=1)


def parse_timestamp(raw) -> tuple[datetime, int]:
    """Accept epoch milliseconds or an ISO-8601 string; return (naive UTC, millis)."""
    if isinstance(raw, bool) or raw is None or raw == "":
        raise InvalidInput("timestamp is required")
    if isinstance(raw, (int, float)) or (isinstance(raw, str) and raw.strip().lstrip("-").isdigit()):
        millis = int(raw)
        return EPOCH + timedelta(milliseconds=millis), millis
    if not isinstance(raw, str):
        raise InvalidInput("timestamp must be epoch milliseconds or ISO-8601")
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise InvalidInput("timestamp must be epoch milliseconds or ISO-8601")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    millis = epoch_millis(parsed)
    return EPOCH + timedelta(milliseconds=millis), millis


def canonical_visit_string(chw_address: str, patient_id: str, latitude: float, longitude: float, timestamp_ms: int) -> str:
    return f"{chw_address}{patient_id}{format_coordinate(latitude)},{format_coordinate(longitude)}{int(timestamp_ms)}"


def compute_visit_hash(chw_address: str, patient_id: str, latitude: float, longitude: float, timestamp_ms: int) -> str:
    canonical = canonical_visit_string(chw_address, patient_id, latitude, longitude, timestamp_ms)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def recompute_visit_hash(visit: Visit) -> str:
    return compute_visit_hash(visit.chw_address, visit.patient_code, visit.latitude, visit.longitude, visit.timestamp_ms)


def visit_integrity_ok(visit: Visit) -> bool:
    return secrets.compare_digest(recompute_visit_hash(visit), visit.visit_hash)


def _coordinate(location: dict, name: str, bound: float) -> float:
    raw = location.get(name)
    if raw is None or isinstance(raw, bool):
        raise InvalidInput(f"location.{name} is required")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidInput(f"location.{name} must be numeric")
    if not math.isfinite(value) or abs(value) > bound:
        raise InvalidInput(f"location.{name} is out of range")
    return value


def _new_visit_id(chw_code: str, timestamp_ms: int) -> str:
    return f"{chw_code}-{timestamp_ms}-{secrets.token_hex(5)[:9]}"


def create_visit(chw: CHW, payload: dict, now: datetime | None = None) -> Visit:
    """Verify the presented tag, then persist a pending visit bound to it."""
    if chw is None:
        raise NotFound("CHW not found")
    if not chw.is_active:
        raise Forbidden("CHW account is inactive")

    patient_code = (payload.get("patient_id") or "").strip()
    location = payload.get("location")
    signature = payload.get("signature")
    tag_payload = payload.get("tag_payload")
    missing = [
        name
        for name, value in (
            ("patient_id", patient_code),
            ("location", location),
            ("timestamp", payload.get("timestamp")),
            ("tag_payload", tag_payload),
            ("signature", signature),
        )
        if not value and value != 0
    ]
    if missing:
        raise InvalidInput("Missing required fields", fields=missing)
    if not isinstance(location, dict):
        raise InvalidInput("location must be an object")

    latitude = _coordinate(location, "latitude", 90.0)
    longitude = _coordinate(location, "longitude", 180.0)
    timestamp, timestamp_ms = parse_timestamp(payload.get("timestamp"))
    if timestamp > (now or datetime.utcnow()) + max_clock_skew():
        raise InvalidInput("timestamp is in the future", timestamp=timestamp.isoformat())

    tag_kind = (payload.get("tag_kind") or "QR").upper()
    if tag_kind not in TAG_KINDS:
        raise InvalidInput("Unsupported tag kind")
    visit_type = payload.get("visit_type") or "routine_checkup"
    if visit_type not in VISIT_TYPES:
        raise InvalidInput("Unsupported visit type")
    services = payload.get("services") or []
    if not isinstance(services, list) or any(s not in SERVICE_TYPES for s in services):
        raise InvalidInput("Unsupported service in services")
    duration = payload.get("duration")
    if duration is not None and (isinstance(duration, bool) or not isinstance(duration, int) or duration < 0):
        raise InvalidInput("duration must be a non-negative number of minutes")

    patient = Patient.query.filter_by(patient_code=patient_code).first()
    if not patient:
        raise NotFound("Patient not found", patient_id=patient_code)
    if not patient.is_active:
        raise Forbidden("Patient is inactive", patient_id=patient_code)

    tag = resolve_tag(tag_payload, tag_kind, now)
    if tag.patient_id != patient.id:
        raise InvalidInput("Tag does not belong to the claimed patient")

    visit_hash = compute_visit_hash(chw.wallet_address, patient_code, latitude, longitude, timestamp_ms)
    visit = Visit(
        visit_id=_new_visit_id(chw.chw_code, timestamp_ms),
        patient_id=patient.id,
        patient_code=patient_code,
        chw_id=chw.id,
        chw_code=chw.chw_code,
        chw_address=chw.wallet_address,
        latitude=latitude,
        longitude=longitude,
        address=location.get("address"),
        accuracy=location.get("accuracy"),
        timestamp=timestamp,
        timestamp_ms=timestamp_ms,
        signature=str(signature),
        visit_hash=visit_hash,
        hash_version=HASH_VERSION,
        tag_payload=tag_payload,
        tag_kind=tag_kind,
        visit_type=visit_type,
        services=services,
        duration_minutes=duration,
        notes=payload.get("notes"),
        device_info=payload.get("device_info"),
        fraud_score=0,
        status="pending",
        ledger_status="pending",
    )
    db.session.add(visit)
    chw.total_visits = (chw.total_visits or 0) + 1
    patient.record_visit(timestamp)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Visit id collision; retry the submission")

    current_app.logger.info(
        "Visit logged",
        extra={"visit_id": visit.visit_id, "chw_id": chw.chw_code, "patient_id": patient_code},
    )

    anchor_visit(visit)
    return visit


def get_visit(visit_id: str) -> Visit:
    visit = Visit.query.filter_by(visit_id=visit_id).first()
    if not visit:
        raise NotFound("Visit not found", visit_id=visit_id)
    return visit


def _transition(visit: Visit, new_status: str) -> None:
    if not visit.can_transition(new_status):
        raise Conflict(
            f"Visit cannot move from {visit.status} to {new_status}",
            visit_id=visit.visit_id,
            status=visit.status,
        )
    visit.status = new_status


def verify_visit(visit_id: str, verifier: str, notes: str | None = None, now: datetime | None = None) -> Visit:
    """Mark a visit verified; a no-op when it already is."""
    visit = get_visit(visit_id)
    if visit.status == "verified":
        return visit
    _transition(visit, "verified")
    visit.verified_by = verifier
    visit.verified_at = now or datetime.utcnow()
    if notes:
        visit.append_note("Verification Notes", notes)
    db.session.commit()
    current_app.logger.info("Visit verified", extra={"visit_id": visit_id, "verifier": verifier})
    return visit


def reject_visit(visit_id: str, reviewer: str, reason: str, now: datetime | None = None) -> Visit:
    if not reason:
        raise InvalidInput("A rejection reason is required")
    visit = get_visit(visit_id)
    _transition(visit, "rejected")
    visit.rejection_reason = reason[:500]
    visit.verified_by = reviewer
    visit.verified_at = now or datetime.utcnow()
    db.session.commit()
    current_app.logger.info("Visit rejected", extra={"visit_id": visit_id, "reviewer": reviewer})
    return visit


def flag_visit(visit_id: str, reviewer: str, notes: str | None = None) -> Visit:
    visit = get_visit(visit_id)
    _transition(visit, "flagged")
    if notes:
        visit.append_note("Review Notes", notes)
    db.session.commit()
    current_app.logger.info(
        "Visit flagged for investigation",
        extra={"visit_id": visit_id, "reviewer": reviewer, "fraud_score": visit.fraud_score},
    )
    return visit


def list_visits(filters: dict | None = None, page: int = 1, per_page: int | None = None) -> dict:
    filters = filters or {}
    per_page = max(1, min(int(per_page or current_app.config.get("VISIT_PAGE_SIZE", 20)), 100))
    page = max(int(page or 1), 1)

    query = Visit.query
    status = filters.get("status")
    if status:
        if status not in VISIT_STATUSES:
            raise InvalidInput("Unsupported status filter")
        query = query.filter(Visit.status == status)
    if filters.get("chw_id"):
        query = query.filter(Visit.chw_code == filters["chw_id"])
    if filters.get("patient_id"):
        query = query.filter(Visit.patient_code == filters["patient_id"])
    if filters.get("date_from"):
        query = query.filter(Visit.timestamp >= filters["date_from"])
    if filters.get("date_to"):
        query = query.filter(Visit.timestamp <= filters["date_to"])
    if filters.get("min_fraud_score") is not None:
        query = query.filter(Visit.fraud_score >= int(filters["min_fraud_score"]))

    total = query.count()
    visits = query.order_by(Visit.timestamp.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return {
        "visits": visits,
        "pagination": {
            "current": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }
