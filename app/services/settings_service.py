"""
Organization settings.

Updates merge approval_defaults / notification_settings key by key
instead of replacing them. The ORG_SETTINGS_UPDATED activity row is
written after the settings commit and is best-effort (see
``record_activity``).
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.core.exceptions import ForbiddenError, ValidationError
from app.core.identity import AuthContext
from app.models import db
from app.models.audit import ACTIVITY_ACTIONS, ActivityLog, record_activity
from app.models.auth import (
    DEFAULT_APPROVAL_DEFAULTS,
    DEFAULT_NOTIFICATION_SETTINGS,
    ROLE_MANAGER,
    Organization,
)
from app.services.plan_service import get_organization

logger = logging.getLogger(__name__)

_TEXT_FIELDS = ("name", "contact_email", "timezone", "currency")
MAX_ACTIVITY_LIMIT = 500


def _merge_flags(current: dict | None, incoming, allowed: dict, field: str) -> dict:
    if not isinstance(incoming, dict):
        raise ValidationError(f"{field} must be an object")
    merged = dict(current or {})
    for key, value in incoming.items():
        if key not in allowed:
            raise ValidationError(f"Unknown {field} key: {key}", details={field: key})
        if not isinstance(value, bool):
            raise ValidationError(f"{field}.{key} must be a boolean", details={field: key})
        merged[key] = value
    return merged


def get_organization_settings(ctx: AuthContext) -> Organization:
    return get_organization(ctx.org_id)


def update_organization_settings(ctx: AuthContext, data: dict) -> Organization:
    if ctx.role == ROLE_MANAGER:
        raise ForbiddenError("Only founders can change organization settings")

    org = get_organization(ctx.org_id)
    changed = []
    for field in _TEXT_FIELDS:
        if field not in data or data[field] is None:
            continue
        value = data[field]
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} must be a non-empty string", details={field: "invalid"})
        value = value.strip()
        if field == "contact_email" and "@" not in value:
            raise ValidationError("contact_email is invalid", details={field: "invalid"})
        if field == "currency":
            value = value.upper()
        setattr(org, field, value)
        changed.append(field)

    if data.get("approval_defaults") is not None:
        org.approval_defaults = _merge_flags(
            org.approval_defaults, data["approval_defaults"], DEFAULT_APPROVAL_DEFAULTS, "approval_defaults",
        )
        changed.append("approval_defaults")
    if data.get("notification_settings") is not None:
        org.notification_settings = _merge_flags(
            org.notification_settings, data["notification_settings"],
            DEFAULT_NOTIFICATION_SETTINGS, "notification_settings",
        )
        changed.append("notification_settings")

    db.session.commit()
    logger.info("Organization settings updated", extra={"org_id": ctx.org_id, "user_id": ctx.user_id})

    record_activity(
        org_id=ctx.org_id,
        action="ORG_SETTINGS_UPDATED",
        actor_user_id=ctx.user_id,
        entity_type="organization",
        entity_id=org.id,
        meta={"fields": changed},
    )
    return org


def list_activity_log(ctx: AuthContext, action: str | None = None, limit: int = 100) -> list[ActivityLog]:
    if action and action not in ACTIVITY_ACTIONS:
        raise ValidationError(f"action must be one of {sorted(ACTIVITY_ACTIONS)}")
    limit = min(max(int(limit or 100), 1), MAX_ACTIVITY_LIMIT)

    stmt = select(ActivityLog).where(ActivityLog.org_id == ctx.org_id)
    if action:
        stmt = stmt.where(ActivityLog.action == action)
    stmt = stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)
    return list(db.session.execute(stmt).scalars())
