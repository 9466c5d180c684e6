"""Rule-based anomaly scan over recent visits and feedback.

Alerts are recomputed on every scan and never stored. Each alert id is a
digest of the rule and the records that triggered it, so an unchanged
condition keeps its id from one scan to the next. ``detected_at`` is when
the triggering event happened; ``scanned_at`` is when the scan ran.
"""
from __future__ import annotations

import hashlib
import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from flask import current_app

from extensions import db
from models import FRAUD_SEVERITIES, Feedback, Visit
from utils.audit import log_action
from utils.errors import InvalidInput

EARTH_RADIUS_KM = 6371.0

DEFAULT_THRESHOLDS: Dict[str, float] = {
    "frequency_window_minutes": 60,
    "frequency_max_visits": 5,
    "travel_window_hours": 24,
    "travel_max_minutes": 60.0,
    "travel_max_km": 50.0,
    "low_rating_ceiling": 2,
    "low_rating_min_count": 3,
}

ALERT_RESOLUTIONS: tuple[str, ...] = (
    "confirmed_fraud",
    "false_positive",
    "needs_investigation",
    "dismissed",
)


class VisitPoint(NamedTuple):
    visit_id: str
    chw_id: str
    timestamp: datetime
    latitude: float
    longitude: float


class LowRating(NamedTuple):
    feedback_id: str
    visit_id: str
    chw_id: str
    rating: int
    submitted_at: Optional[datetime]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _alert_id(prefix: str, *parts: str) -> str:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"{prefix}_{digest[:12]}"


def _alert(alert_id, alert_type, severity, chw_id, description, evidence, detected_at) -> Dict:
    return {
        "id": alert_id,
        "type": alert_type,
        "severity": severity,
        "chw_id": chw_id,
        "description": description,
        "evidence": evidence,
        "detected_at": detected_at,
        "status": "pending",
    }


def _group_by_chw(points: Iterable) -> Dict[str, List]:
    groups: Dict[str, List] = defaultdict(list)
    for point in points:
        groups[point.chw_id].append(point)
    return groups


def detect_high_frequency(points: Iterable[VisitPoint], now: datetime, thresholds: Dict) -> List[Dict]:
    window = timedelta(minutes=thresholds["frequency_window_minutes"])
    limit = int(thresholds["frequency_max_visits"])
    since = now - window
    # Future-dated visits stay in scope; a skewed clock must not hide them.
    recent = [p for p in points if p.timestamp >= since]

    alerts = []
    for chw_id, group in _group_by_chw(recent).items():
        if len(group) <= limit:
            continue
        visit_ids = sorted(p.visit_id for p in group)
        window_label = f"{int(window.total_seconds() // 60)} minutes"
        alerts.append(
            _alert(
                _alert_id("FREQ", chw_id, *visit_ids),
                "High Visit Frequency",
                "medium",
                chw_id,
                f"CHW has {len(group)} visits in the last {window_label}",
                {"visit_count": len(group), "time_window": window_label, "visit_ids": visit_ids},
                max(p.timestamp for p in group),
            )
        )
    return alerts


def detect_location_anomalies(points: Iterable[VisitPoint], now: datetime, thresholds: Dict) -> List[Dict]:
    since = now - timedelta(hours=thresholds["travel_window_hours"])
    max_minutes = float(thresholds["travel_max_minutes"])
    max_km = float(thresholds["travel_max_km"])
    recent = [p for p in points if p.timestamp >= since]

    alerts = []
    for chw_id, group in _group_by_chw(recent).items():
        group.sort(key=lambda p: (p.timestamp, p.visit_id))
        # Only chronologically adjacent visits are compared.
        for first, second in zip(group, group[1:]):
            elapsed = (second.timestamp - first.timestamp).total_seconds() / 60
            if elapsed >= max_minutes:
                continue
            distance = haversine_km(first.latitude, first.longitude, second.latitude, second.longitude)
            if distance <= max_km:
                continue
            alerts.append(
                _alert(
                    _alert_id("LOC", chw_id, first.visit_id, second.visit_id),
                    "Location Anomaly",
                    "high",
                    chw_id,
                    f"Visits {distance:.1f}km apart within {elapsed:.1f} minutes",
                    {
                        "distance_km": round(distance, 1),
                        "elapsed_minutes": round(elapsed, 1),
                        "visit1": first.visit_id,
                        "visit2": second.visit_id,
                    },
                    second.timestamp,
                )
            )
    return alerts


def detect_low_ratings(ratings: Iterable[LowRating], now: datetime, thresholds: Dict) -> List[Dict]:
    ceiling = int(thresholds["low_rating_ceiling"])
    min_count = int(thresholds["low_rating_min_count"])
    low = [r for r in ratings if r.rating <= ceiling]

    alerts = []
    for chw_id, group in _group_by_chw(low).items():
        if len(group) < min_count:
            continue
        mean = sum(r.rating for r in group) / len(group)
        feedback_ids = sorted(r.feedback_id for r in group)
        alerts.append(
            _alert(
                _alert_id("RATING", chw_id, *feedback_ids),
                "Low Feedback Ratings",
                "medium",
                chw_id,
                f"CHW has {len(group)} visits with ratings <= {ceiling} stars",
                {
                    "low_rating_count": len(group),
                    "average_rating": round(mean, 1),
                    "visit_ids": sorted(r.visit_id for r in group),
                },
                max((r.submitted_at for r in group if r.submitted_at), default=now),
            )
        )
    return alerts


def load_visit_points(since: datetime) -> List[VisitPoint]:
    rows = (
        db.session.query(Visit.visit_id, Visit.chw_code, Visit.timestamp, Visit.latitude, Visit.longitude)
        .filter(Visit.timestamp >= since)
        .all()
    )
    return [VisitPoint(*row) for row in rows]


def load_low_ratings(ceiling: int) -> List[LowRating]:
    rows = (
        db.session.query(Feedback.feedback_id, Feedback.visit_id, Visit.chw_code, Feedback.rating_overall, Feedback.submitted_at)
        .join(Visit, Visit.visit_id == Feedback.visit_id)
        .filter(Feedback.rating_overall <= ceiling, Feedback.status != "draft")
        .all()
    )
    return [LowRating(*row) for row in rows]


def _thresholds(config) -> Dict:
    merged = dict(DEFAULT_THRESHOLDS)
    merged.update((config or {}).get("ANOMALY_THRESHOLDS") or {})
    return merged


def summarize(alerts: List[Dict]) -> Dict[str, int]:
    summary = {"total": len(alerts)}
    for severity in FRAUD_SEVERITIES:
        summary[severity] = sum(1 for a in alerts if a["severity"] == severity)
    return summary


def run_anomaly_scan(config=None, now: Optional[datetime] = None) -> Dict:
    """Run every rule independently and merge whatever succeeds."""
    now = now or datetime.utcnow()
    thresholds = _thresholds(config if config is not None else current_app.config)
    horizon = max(
        timedelta(minutes=thresholds["frequency_window_minutes"]),
        timedelta(hours=thresholds["travel_window_hours"]),
    )

    cache: Dict[str, List] = {}

    def visits() -> List[VisitPoint]:
        if "visits" not in cache:
            cache["visits"] = load_visit_points(now - horizon)
        return cache["visits"]

    rules: List[tuple[str, Callable[[], List[Dict]]]] = [
        # 1. Too many visits in a short window
        ("high_frequency", lambda: detect_high_frequency(visits(), now, thresholds)),
        # 2. Impossible travel between consecutive visits
        ("location_anomaly", lambda: detect_location_anomalies(visits(), now, thresholds)),
        # 3. Repeated poor feedback
        ("low_ratings", lambda: detect_low_ratings(load_low_ratings(int(thresholds["low_rating_ceiling"])), now, thresholds)),
    ]

    alerts: List[Dict] = []
    failed_rules: List[str] = []
    for name, rule in rules:
        try:
            alerts.extend(rule())
        except Exception:
            current_app.logger.exception("Anomaly rule failed", extra={"rule": name})
            db.session.rollback()
            failed_rules.append(name)

    for alert in alerts:
        alert["scanned_at"] = now
    alerts.sort(key=lambda a: (a["detected_at"], a["id"]), reverse=True)
    summary = summarize(alerts)
    current_app.logger.info("Anomaly scan complete", extra={"summary": summary, "failed_rules": failed_rules})
    return {"alerts": alerts, "summary": summary, "failed_rules": failed_rules, "scanned_at": now}


def resolve_alert(alert_id: str, resolution: str, resolved_by, notes: str | None = None) -> Dict:
    """Record an alert decision as an audit event. A later scan may raise the alert again."""
    if not alert_id:
        raise InvalidInput("alert id is required")
    if resolution not in ALERT_RESOLUTIONS:
        raise InvalidInput(f"Unsupported resolution: {resolution!r}")
    log_action(
        "FRAUD_ALERT_RESOLVED",
        resolved_by,
        context=f"alert:{alert_id}",
        details={"resolution": resolution, "notes": notes},
    )
    db.session.commit()
    current_app.logger.info("Fraud alert resolved", extra={"alert_id": alert_id, "resolution": resolution})
    return {
        "alert_id": alert_id,
        "resolution": resolution,
        "resolved_by": getattr(resolved_by, "actor_id", resolved_by),
        "notes": notes,
        "resolved_at": datetime.utcnow(),
    }
