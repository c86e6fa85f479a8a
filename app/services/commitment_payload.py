"""
Normalisers for commitment sub-item lists.

Every write path (create, update, version fork) runs caller-supplied
lists through these before they reach the JSON columns:

- entries that are not dicts, or that lack the required identity field
  (``text`` for terms / milestones / deliverables, ``url`` + ``public_id``
  for attachments), are dropped;
- unknown statuses fall back to the list's initial status;
- dates are stored as ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime, timezone

from app.models.commitment import (
    ATTACHMENT_RESOURCE_TYPES,
    DELIVERABLE_STATUSES,
    MILESTONE_STATUSES,
    PAYMENT_TERM_STATUSES,
)
from app.utils.helpers import to_iso


def _items(value) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _text(item: dict) -> str:
    raw = item.get("text")
    return str(raw).strip() if raw is not None else ""


def _status(item: dict, allowed: frozenset[str], default: str) -> str:
    status = str(item.get("status") or "").upper()
    return status if status in allowed else default


def _number(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def normalize_payment_terms(value) -> list[dict]:
    result = []
    for item in _items(value):
        text = _text(item)
        if not text:
            continue
        result.append({
            "text": text,
            "status": _status(item, PAYMENT_TERM_STATUSES, "PENDING"),
            "due_at": to_iso(item.get("due_at")),
            "paid_at": to_iso(item.get("paid_at")),
            "amount": _number(item.get("amount")),
            "currency": item.get("currency") or None,
        })
    return result


def normalize_milestones(value) -> list[dict]:
    result = []
    for item in _items(value):
        text = _text(item)
        if not text:
            continue
        result.append({
            "text": text,
            "status": _status(item, MILESTONE_STATUSES, "NOT_STARTED"),
            "due_at": to_iso(item.get("due_at")),
            "completed_at": to_iso(item.get("completed_at")),
        })
    return result


def normalize_deliverables(value) -> list[dict]:
    result = []
    for item in _items(value):
        text = _text(item)
        if not text:
            continue
        result.append({
            "text": text,
            "status": _status(item, DELIVERABLE_STATUSES, "NOT_STARTED"),
            "due_at": to_iso(item.get("due_at")),
            "completed_at": to_iso(item.get("completed_at")),
        })
    return result


def normalize_attachments(value, uploaded_by_user_id: int | None = None) -> list[dict]:
    """Attachment references; the blob itself lives in external storage."""
    result = []
    for item in _items(value):
        url = item.get("url") or item.get("secure_url")
        public_id = item.get("public_id")
        if not url or not public_id:
            continue
        resource_type = item.get("resource_type") or "raw"
        result.append({
            "url": url,
            "public_id": public_id,
            "file_name": item.get("file_name") or item.get("original_name"),
            "original_name": item.get("original_name"),
            "mime_type": item.get("mime_type"),
            "bytes": item.get("bytes") if isinstance(item.get("bytes"), int) else None,
            "resource_type": resource_type if resource_type in ATTACHMENT_RESOURCE_TYPES else "raw",
            "uploaded_at": to_iso(item.get("uploaded_at")) or datetime.now(timezone.utc).isoformat(),
            "uploaded_by_user_id": item.get("uploaded_by_user_id") or uploaded_by_user_id,
        })
    return result


def text_projection(items) -> list[dict]:
    """``[{"text": …}]`` view used to decide whether promised content changed."""
    return [{"text": (item or {}).get("text") or ""} for item in (items or [])]
