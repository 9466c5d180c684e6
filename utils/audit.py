"""Audit trail helper; callers own the commit."""
from flask import has_request_context, request

from extensions import db
from models import AuditLog


def log_action(action: str, actor=None, context: str | None = None, details: dict | None = None) -> AuditLog:
    if isinstance(actor, str):
        actor_type, actor_id = "system", actor
    elif actor is not None:
        actor_type, actor_id = actor.actor_type, actor.actor_id
    else:
        actor_type, actor_id = None, None

    entry = AuditLog(
        actor_type=actor_type,
        actor_id=actor_id,
        action_type=action,
        context_entity=context,
        details=details,
    )
    if has_request_context():
        entry.ip_address = request.remote_addr
        entry.user_agent = request.headers.get("User-Agent", "unknown")[:255]
    db.session.add(entry)
    return entry
