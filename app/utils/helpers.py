"""Shared utility functions used by services and blueprints.

parse_datetime:   lenient ISO parser (returns None on bad input)
to_iso:           datetime/date → ISO string for JSON columns
request_meta:     requester IP (X-Forwarded-For aware) + user agent
parse_pagination: page / limit query args with bounds
"""
import logging
from datetime import date, datetime, time, timezone

from flask import request

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 100


def parse_datetime(value):
    """Parse an ISO date / datetime string to an aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[.ffffff][+HH:MM | Z]
    - date / datetime objects (naive values are taken as UTC)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value):
    """ISO string for a date-like value, None when it cannot be parsed."""
    parsed = parse_datetime(value)
    return parsed.isoformat() if parsed else None


def get_client_ip() -> str | None:
    """Return real client IP, honouring X-Forwarded-For from load balancers.

    request.remote_addr alone is the LB address behind a proxy; the first
    X-Forwarded-For entry is the originating client.
    """
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.remote_addr


def request_meta() -> dict:
    """Requester fingerprint recorded on public actions."""
    return {
        "ip": get_client_ip(),
        "user_agent": request.headers.get("User-Agent"),
    }


def parse_pagination(args, default_limit: int = 20, max_limit: int = MAX_PAGE_LIMIT) -> tuple[int, int]:
    """(page, limit) from query args; page ≥ 1, 1 ≤ limit ≤ max_limit."""
    page = args.get("page", 1, type=int) or 1
    limit = args.get("limit", default_limit, type=int) or default_limit
    return max(page, 1), min(max(limit, 1), max_limit)
