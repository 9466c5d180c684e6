"""Severity-weighted fraud scoring for visits."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from flask import current_app
from sqlalchemy import or_

from extensions import db
from models import FRAUD_SEVERITIES, FraudFlag, Visit
from utils.errors import InvalidInput

SEVERITY_POINTS: dict[str, int] = {
    "critical": 40,
    "high": 25,
    "medium": 15,
    "low": 5,
}

MAX_SCORE = 100


def _severity_of(flag) -> str:
    if isinstance(flag, str):
        return flag
    if isinstance(flag, dict):
        return flag.get("severity", "")
    return getattr(flag, "severity", "")


def calculate_fraud_score(flags: Iterable) -> int:
    """Sum per-flag points and clamp to [0, 100]; flag order does not matter."""
    total = sum(SEVERITY_POINTS.get(_severity_of(flag), 0) for flag in flags)
    return max(0, min(MAX_SCORE, total))


def add_fraud_flag(
    visit: Visit,
    kind: str,
    reason: str | None = None,
    severity: str = "medium",
    flagged_by: str | None = None,
    now: datetime | None = None,
) -> FraudFlag:
    """Append a flag and store the recomputed score. Status is left to the caller."""
    kind = (kind or "").strip()
    if not kind:
        raise InvalidInput("Flag type is required")
    if severity not in FRAUD_SEVERITIES:
        raise InvalidInput(f"Unsupported severity: {severity!r}")

    flag = FraudFlag(
        kind=kind[:80],
        severity=severity,
        reason=(reason or "")[:500] or None,
        flagged_by=flagged_by,
        flagged_at=now or datetime.utcnow(),
    )
    visit.fraud_flags.append(flag)
    visit.fraud_score = calculate_fraud_score(visit.fraud_flags)
    db.session.commit()

    current_app.logger.info(
        "Fraud flag added",
        extra={"visit_id": visit.visit_id, "kind": flag.kind, "severity": severity, "fraud_score": visit.fraud_score},
    )
    return flag


def is_flag_candidate(visit: Visit, threshold: int | None = None) -> bool:
    if threshold is None:
        threshold = int(current_app.config.get("FRAUD_REVIEW_THRESHOLD", 70))
    return visit.fraud_score >= threshold


def suspicious_visits(threshold: int | None = None, limit: int = 100) -> list[Visit]:
    if threshold is None:
        threshold = int(current_app.config.get("FRAUD_REVIEW_THRESHOLD", 70))
    return (
        Visit.query.filter(or_(Visit.fraud_score >= threshold, Visit.fraud_flags.any()))
        .order_by(Visit.fraud_score.desc(), Visit.timestamp.desc())
        .limit(limit)
        .all()
    )
