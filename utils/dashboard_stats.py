"""Aggregate statistics for the admin dashboard and analytics views."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import case, func

from extensions import db
from models import CHW, Feedback, Patient, Visit
from utils.errors import InvalidInput

TIMEFRAMES: Dict[str, timedelta] = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}

_SUBMITTED = ("submitted", "reviewed", "resolved")


def dashboard_stats() -> Dict:
    threshold = int(current_app.config.get("FRAUD_REVIEW_THRESHOLD", 70))
    total_visits = Visit.query.count()
    verified_visits = Visit.query.filter(Visit.status == "verified").count()
    feedback_count, avg_rating = (
        db.session.query(func.count(Feedback.id), func.avg(Feedback.rating_overall))
        .filter(Feedback.status.in_(_SUBMITTED))
        .one()
    )
    return {
        "total_visits": total_visits,
        "verified_visits": verified_visits,
        "total_chws": CHW.query.count(),
        "active_chws": CHW.query.filter(CHW.is_active.is_(True)).count(),
        "total_feedback": feedback_count or 0,
        "average_rating": round(float(avg_rating), 1) if avg_rating is not None else 0.0,
        "fraud_alerts": Visit.query.filter(Visit.fraud_score >= threshold).count(),
        "verification_rate": round(verified_visits / total_visits * 100, 1) if total_visits else 0.0,
    }


def _visits_by_date(since: datetime) -> List[Dict]:
    day = func.date(Visit.timestamp)
    rows = (
        db.session.query(
            day.label("day"),
            func.count(Visit.id),
            func.sum(case((Visit.status == "verified", 1), else_=0)),
        )
        .filter(Visit.timestamp >= since)
        .group_by(day)
        .order_by(day)
        .all()
    )
    return [{"date": str(d), "visits": count, "verified": int(verified or 0)} for d, count, verified in rows]


def _visits_by_chw(since: datetime, limit: int = 10) -> List[Dict]:
    total = func.count(Visit.id)
    rows = (
        db.session.query(Visit.chw_code, total)
        .filter(Visit.timestamp >= since)
        .group_by(Visit.chw_code)
        .order_by(total.desc(), Visit.chw_code)
        .limit(limit)
        .all()
    )
    return [{"chw_id": chw_id, "visits": count} for chw_id, count in rows]


def _visits_by_region(since: datetime) -> List[Dict]:
    total = func.count(Visit.id)
    rows = (
        db.session.query(CHW.region, total)
        .join(CHW, CHW.id == Visit.chw_id)
        .filter(Visit.timestamp >= since)
        .group_by(CHW.region)
        .order_by(total.desc())
        .all()
    )
    return [{"region": region or "Unknown", "visits": count} for region, count in rows]


def _rating_distribution(since: datetime) -> Dict[int, int]:
    rows = (
        db.session.query(Feedback.rating_overall, func.count(Feedback.id))
        .filter(Feedback.status.in_(_SUBMITTED), Feedback.submitted_at >= since)
        .group_by(Feedback.rating_overall)
        .all()
    )
    distribution = {score: 0 for score in range(1, 6)}
    for score, count in rows:
        distribution[int(score)] = count
    return distribution


def analytics(timeframe: str = "30d", now: Optional[datetime] = None) -> Dict:
    if timeframe not in TIMEFRAMES:
        raise InvalidInput(f"Unsupported timeframe: {timeframe!r}")
    now = now or datetime.utcnow()
    since = now - TIMEFRAMES[timeframe]
    return {
        "timeframe": timeframe,
        "since": since.isoformat(),
        "visits_by_date": _visits_by_date(since),
        "visits_by_chw": _visits_by_chw(since),
        "visits_by_region": _visits_by_region(since),
        "rating_distribution": _rating_distribution(since),
    }


def _count_by(column, *criteria) -> Dict[str, int]:
    rows = db.session.query(column, func.count()).filter(*criteria).group_by(column).all()
    return {key or "Unknown": count for key, count in rows}


def patient_stats() -> Dict:
    return {
        "total_patients": Patient.query.count(),
        "active_patients": Patient.query.filter(Patient.is_active.is_(True)).count(),
        "by_region": _count_by(Patient.region),
        "by_age_group": _count_by(Patient.age_group),
    }


def chw_activity(chw: CHW, recent: int = 10) -> Dict:
    """Visit counts by status plus the latest visits for one CHW."""
    by_status = _count_by(Visit.status, Visit.chw_id == chw.id)
    visits = chw.visits.order_by(Visit.timestamp.desc()).limit(recent).all()
    return {
        "visits_by_status": by_status,
        "recent_visits": [visit.public_payload() for visit in visits],
    }
