"""Request helpers shared by the JSON blueprints."""
from datetime import datetime

from flask import current_app, request

from utils.errors import InvalidInput


def json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


def query_date(name: str) -> datetime | None:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be an ISO-8601 date")


def query_int(name: str, default: int | None = None) -> int | None:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be an integer")


def query_page() -> tuple[int, int]:
    """Return (page, per_page) from the query string; per_page is kept within 1..100."""
    page = max(query_int("page", 1), 1)
    per_page = query_int("per_page", current_app.config.get("VISIT_PAGE_SIZE", 20))
    return page, max(1, min(per_page, 100))
