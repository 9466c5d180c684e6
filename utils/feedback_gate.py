"""OTP-gated patient feedback: eligibility, OTP issue/verify and submission.

A successful OTP verification yields a one-shot grant bound to a
(visit, phone) pair. Submission requires that grant and re-checks
eligibility, while the unique ``feedback.visit_id`` column is the final
guard against two concurrent submissions for the same visit.
"""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import COMPLAINT_TYPES, FRAUD_SEVERITIES, RATING_CATEGORIES, Feedback, Visit
from utils.audit import log_action
from utils.errors import (
    Conflict,
    Expired,
    ExternalUnavailable,
    FeedbackNotEligible,
    Forbidden,
    InvalidInput,
    NotFound,
    OtpMismatch,
)
from utils.ledger_anchor import hash_record
from utils.otp_store import get_otp_store
from utils.security import constant_time_equals, generate_otp, hash_value, is_valid_phone
from utils.sms_service import dispatch_otp
from utils.visit_ledger import epoch_millis, max_clock_skew


def check_eligibility(visit_id: str, now: datetime | None = None) -> dict:
    """Report whether feedback may be collected for a visit; fails closed."""
    now = now or datetime.utcnow()
    visit = Visit.query.filter_by(visit_id=visit_id).first() if visit_id else None
    if not visit:
        return {"eligible": False, "reason": "visit_not_found"}
    if visit.has_feedback or Feedback.query.filter_by(visit_id=visit_id).first():
        return {"eligible": False, "reason": "feedback_exists"}
    window = timedelta(days=int(current_app.config.get("FEEDBACK_WINDOW_DAYS", 7)))
    if visit.timestamp > now + max_clock_skew():
        return {"eligible": False, "reason": "visit_in_future"}
    if now - visit.timestamp > window:
        return {"eligible": False, "reason": "window_expired"}
    return {
        "eligible": True,
        "reason": None,
        "visit": {
            "visit_id": visit.visit_id,
            "chw_id": visit.chw_code,
            "timestamp": visit.timestamp.isoformat(),
            "visit_type": visit.visit_type,
            "services": list(visit.services or []),
        },
    }


def _require_eligible(visit_id: str, now: datetime) -> dict:
    result = check_eligibility(visit_id, now)
    reason = result["reason"]
    if reason == "visit_not_found":
        raise NotFound("Visit not found", visit_id=visit_id)
    if reason == "feedback_exists":
        raise Conflict("Feedback already submitted for this visit", visit_id=visit_id)
    if reason == "visit_in_future":
        raise FeedbackNotEligible("Visit is dated in the future", visit_id=visit_id)
    if reason == "window_expired":
        raise FeedbackNotEligible("Feedback window has closed for this visit", visit_id=visit_id)
    return result


def _require_phone(phone: str | None) -> str:
    phone = (phone or "").strip()
    if not is_valid_phone(phone):
        raise InvalidInput("Invalid phone number format")
    return phone


def request_otp(phone: str, visit_id: str, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    phone = _require_phone(phone)
    _require_eligible(visit_id, now)

    ttl = int(current_app.config.get("OTP_TTL_SECONDS", 600))
    otp = generate_otp(int(current_app.config.get("OTP_LENGTH", 6)))
    store = get_otp_store()
    store.put(phone, {"otp_hash": hash_value(otp), "visit_id": visit_id, "attempts": 0}, ttl, now)

    channel = dispatch_otp(phone, otp, visit_id, ttl)
    if channel == "failed":
        store.delete(phone)
        raise ExternalUnavailable("Unable to deliver the verification code")

    current_app.logger.info("Feedback OTP issued", extra={"visit_id": visit_id, "channel": channel})
    return {"visit_id": visit_id, "expires_in": ttl, "channel": channel}


def verify_otp(phone: str, otp: str, visit_id: str, now: datetime | None = None) -> dict:
    """Consume a pending OTP and return the feedback grant for (visit, phone)."""
    now = now or datetime.utcnow()
    phone = _require_phone(phone)
    store = get_otp_store()
    entry = store.get(phone)
    if entry is None:
        raise NotFound("No OTP found for this phone number")
    if entry.is_expired(now):
        store.delete(phone)
        raise Expired("OTP has expired")

    pending = entry.value
    attempts = int(pending.get("attempts", 0)) + 1
    matches = pending.get("visit_id") == visit_id and constant_time_equals(
        pending.get("otp_hash", ""), hash_value(str(otp or "").strip())
    )
    if not matches:
        max_attempts = int(current_app.config.get("OTP_MAX_ATTEMPTS", 5))
        if attempts >= max_attempts:
            store.delete(phone)
            current_app.logger.warning("OTP attempts exhausted", extra={"visit_id": visit_id})
        else:
            remaining = (entry.expires_at - now).total_seconds()
            store.put(phone, dict(pending, attempts=attempts), remaining, now)
        raise OtpMismatch(attempts=attempts)

    store.delete(phone)
    current_app.logger.info("Feedback OTP verified", extra={"visit_id": visit_id})
    return {
        "visit_id": visit_id,
        "phone": phone,
        "attempts": attempts,
        "verified_at": now.isoformat(),
    }


def _rating(value, name: str, required: bool = False) -> int | None:
    if value is None:
        if required:
            raise InvalidInput(f"{name} rating is required")
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise InvalidInput(f"{name} rating must be an integer between 1 and 5")
    return value


def _text(value, limit: int) -> str | None:
    if value is None:
        return None
    return str(value).strip()[:limit] or None


def submit_feedback(visit_id: str, phone: str, payload: dict, grant: dict | None, now: datetime | None = None) -> Feedback:
    now = now or datetime.utcnow()
    phone = _require_phone(phone)
    if not grant or grant.get("visit_id") != visit_id or grant.get("phone") != phone:
        raise Forbidden("OTP verification is required before submitting feedback")

    _require_eligible(visit_id, now)
    visit = Visit.query.filter_by(visit_id=visit_id).first()

    rating = payload.get("rating") or {}
    if not isinstance(rating, dict):
        raise InvalidInput("rating must be an object")
    overall = _rating(rating.get("overall"), "overall", required=True)
    categories = rating.get("categories") or {}
    sub_ratings = {name: _rating(categories.get(name), name) for name in RATING_CATEGORIES}

    comments = payload.get("comments") or {}
    complaint = payload.get("complaint") or {}
    has_complaint = bool(complaint.get("has_complaint"))
    complaint_type = complaint.get("type") if has_complaint else None
    complaint_severity = complaint.get("severity") if has_complaint else None
    if has_complaint:
        if complaint_type not in COMPLAINT_TYPES:
            raise InvalidInput("Unsupported complaint type")
        if complaint_severity not in FRAUD_SEVERITIES:
            raise InvalidInput("Unsupported complaint severity")

    verified_at = datetime.fromisoformat(grant["verified_at"]) if grant.get("verified_at") else now
    feedback = Feedback(
        feedback_id=f"FB-{epoch_millis(now)}-{secrets.token_hex(5)[:9]}",
        visit_id=visit_id,
        patient_code=visit.patient_code,
        rating_overall=overall,
        comment_positive=_text(comments.get("positive"), 500),
        comment_improvement=_text(comments.get("improvement"), 500),
        comment_general=_text(comments.get("general"), 1000),
        has_complaint=has_complaint,
        complaint_type=complaint_type,
        complaint_details=_text(complaint.get("details"), 1000) if has_complaint else None,
        complaint_severity=complaint_severity,
        otp_phone=phone,
        otp_verified=True,
        otp_attempts=int(grant.get("attempts", 1)),
        otp_verified_at=verified_at,
        submission_method=payload.get("submission_method") or "web",
        status="draft",
    )
    for name, value in sub_ratings.items():
        setattr(feedback, f"rating_{name}", value)

    feedback.feedback_hash = hash_record(
        {
            "visit_id": visit_id,
            "rating": {"overall": overall, **sub_ratings},
            "comments": {
                "positive": feedback.comment_positive,
                "improvement": feedback.comment_improvement,
                "general": feedback.comment_general,
            },
            "timestamp": epoch_millis(now),
        }
    )
    feedback.mark_submitted(now)
    visit.has_feedback = True
    visit.feedback_hash = feedback.feedback_hash
    db.session.add(feedback)
    log_action("FEEDBACK_SUBMITTED", None, context=f"visit:{visit_id}", details={"feedback_id": feedback.feedback_id})
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Feedback already submitted for this visit", visit_id=visit_id)

    current_app.logger.info(
        "Feedback submitted",
        extra={"visit_id": visit_id, "feedback_id": feedback.feedback_id, "rating": overall},
    )
    return feedback


def get_feedback(feedback_id: str) -> Feedback:
    feedback = Feedback.query.filter_by(feedback_id=feedback_id).first()
    if not feedback:
        raise NotFound("Feedback not found", feedback_id=feedback_id)
    return feedback


def feedback_for_visit(visit_id: str) -> Feedback | None:
    return Feedback.query.filter_by(visit_id=visit_id).first()


def review_feedback(feedback_id: str, reviewer, notes: str | None = None, now: datetime | None = None) -> Feedback:
    feedback = get_feedback(feedback_id)
    if feedback.status != "submitted":
        raise Conflict(f"Feedback in status {feedback.status} cannot be reviewed")
    feedback.status = "reviewed"
    feedback.reviewed_by = reviewer.actor_id
    feedback.reviewed_at = now or datetime.utcnow()
    feedback.review_notes = notes
    log_action("FEEDBACK_REVIEWED", reviewer, context=f"feedback:{feedback_id}")
    db.session.commit()
    return feedback


def resolve_feedback(feedback_id: str, reviewer, notes: str | None = None, now: datetime | None = None) -> Feedback:
    feedback = get_feedback(feedback_id)
    if feedback.status not in ("submitted", "reviewed"):
        raise Conflict(f"Feedback in status {feedback.status} cannot be resolved")
    feedback.status = "resolved"
    feedback.reviewed_by = reviewer.actor_id
    feedback.reviewed_at = now or datetime.utcnow()
    if notes:
        feedback.review_notes = f"{feedback.review_notes}\n\n{notes}" if feedback.review_notes else notes
    log_action("FEEDBACK_RESOLVED", reviewer, context=f"feedback:{feedback_id}")
    db.session.commit()
    current_app.logger.info("Feedback resolved", extra={"feedback_id": feedback_id})
    return feedback
