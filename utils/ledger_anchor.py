"""Best-effort anchoring of visit hashes to an external ledger sink."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict

import requests
from flask import current_app

from extensions import db
from models import LedgerAnchor
from utils.errors import ExternalUnavailable


class LedgerSinkError(Exception):
    """Raised when the ledger sink rejects or cannot process an anchor request."""


def hash_record(payload: Dict[str, Any]) -> str:
    normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def sink_configured() -> bool:
    return bool(current_app.config.get("LEDGER_ANCHOR_URL"))


def record_anchor(
    record_type: str,
    record_id: str,
    data_hash: str,
    status: str,
    tx_reference: str | None = None,
    block_reference: str | None = None,
    metadata: Dict[str, Any] | None = None,
) -> LedgerAnchor:
    existing = LedgerAnchor.query.filter_by(record_type=record_type, record_id=str(record_id), data_hash=data_hash).first()
    if existing:
        existing.status = status
        existing.tx_reference = tx_reference or existing.tx_reference
        existing.block_reference = block_reference or existing.block_reference
        existing.anchored_at = datetime.utcnow()
        return existing
    anchor = LedgerAnchor(
        record_type=record_type,
        record_id=str(record_id),
        data_hash=data_hash,
        tx_reference=tx_reference,
        block_reference=block_reference,
        status=status,
        extra_metadata=metadata,
    )
    db.session.add(anchor)
    return anchor


def _submit(payload: Dict[str, Any]) -> Dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    token = current_app.config.get("LEDGER_ANCHOR_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    try:
        response = requests.post(
            current_app.config["LEDGER_ANCHOR_URL"],
            json=payload,
            headers=headers,
            timeout=float(current_app.config.get("EXTERNAL_TIMEOUT_SECONDS", 5)),
        )
        response.raise_for_status()
        body = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise LedgerSinkError(str(exc)) from exc
    tx_reference = body.get("tx_reference") or body.get("transaction_hash")
    if not tx_reference:
        raise LedgerSinkError("Ledger sink response carried no transaction reference")
    return {
        "tx_reference": str(tx_reference),
        "block_reference": str(body["block_reference"]) if body.get("block_reference") is not None else None,
    }


def anchor_visit(visit, strict: bool = False):
    """Send the visit hash to the sink and record the outcome on the visit.

    The visit is already committed; failures only change ``ledger_status``.
    With ``strict`` the failure is re-raised as ExternalUnavailable.
    """
    if visit.has_ledger_receipt:
        return visit

    if not sink_configured():
        visit.ledger_status = "unavailable"
        db.session.commit()
        current_app.logger.info("Ledger sink not configured; visit kept off-ledger", extra={"visit_id": visit.visit_id})
        if strict:
            raise ExternalUnavailable("Ledger sink is not configured")
        return visit

    payload = {
        "record_type": "visit",
        "record_id": visit.visit_id,
        "data_hash": visit.visit_hash,
        "hash_version": visit.hash_version,
        "chw_address": visit.chw_address,
        "timestamp": visit.timestamp_ms,
    }
    try:
        receipt = _submit(payload)
    except LedgerSinkError as exc:
        visit.ledger_status = "failed"
        record_anchor("visit", visit.visit_id, visit.visit_hash, "failed", metadata={"error": str(exc)[:255]})
        db.session.commit()
        current_app.logger.warning("Ledger anchoring failed", extra={"visit_id": visit.visit_id, "error": str(exc)})
        if strict:
            raise ExternalUnavailable("Ledger sink unreachable") from exc
        return visit

    visit.ledger_tx_reference = receipt["tx_reference"]
    visit.ledger_block_reference = receipt["block_reference"]
    visit.ledger_status = "anchored"
    record_anchor(
        "visit",
        visit.visit_id,
        visit.visit_hash,
        "anchored",
        tx_reference=receipt["tx_reference"],
        block_reference=receipt["block_reference"],
    )
    db.session.commit()
    current_app.logger.info("Visit anchored", extra={"visit_id": visit.visit_id, "tx_reference": receipt["tx_reference"]})
    return visit


def ledger_status(visit) -> dict:
    if not sink_configured():
        raise ExternalUnavailable("Ledger sink is not configured")
    anchors = (
        LedgerAnchor.query.filter_by(record_type="visit", record_id=visit.visit_id)
        .order_by(LedgerAnchor.anchored_at.desc())
        .all()
    )
    return {
        "visit_id": visit.visit_id,
        "visit_hash": visit.visit_hash,
        "status": visit.ledger_status,
        "has_receipt": visit.has_ledger_receipt,
        "tx_reference": visit.ledger_tx_reference,
        "block_reference": visit.ledger_block_reference,
        "attempts": [anchor.public_payload() for anchor in anchors],
    }
