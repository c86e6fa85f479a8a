"""
Audit domain model.

Models:
    - ApprovalEvent: immutable, append-only proof trail for commitment lifecycle events.
    - ActivityLog: org-level settings trail, written best-effort.
"""

import logging
from datetime import UTC, datetime

from app.core.identity import ACTOR_CLIENT, ACTOR_USER, ClientActor, UserActor
from app.models import db
from app.models.base import TenantModel

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

EVENT_TYPES = {
    # Creation / editing
    "COMMITMENT_CREATED",
    "COMMITMENT_UPDATED",
    "SCOPE_TERMS_UPDATED_VERSION_BUMP",
    "COMMITMENT_ASSIGNED",
    # Approval
    "APPROVAL_LINK_SENT",
    "APPROVAL_LINK_RESENT",
    "CLIENT_APPROVED",
    "CLIENT_REQUESTED_CHANGE",
    "USER_REQUESTED_CHANGE",
    # Delivery / acceptance
    "MARKED_DELIVERED",
    "MARKED_DELIVERED_AUTO_ACCEPTED",
    "ACCEPTANCE_LINK_SENT",
    "ACCEPTANCE_LINK_RESENT",
    "CLIENT_ACCEPTED",
    # Change request resolution
    "CHANGE_REQUEST_ACCEPTED",
    "CHANGE_REQUEST_REJECTED",
}

ACTIVITY_ACTIONS = {
    "ORG_SETTINGS_UPDATED",
}


class ApprovalEvent(TenantModel):
    """
    One row per lifecycle action against a commitment version.

    Never updated or deleted. ``commitment_version`` is the version the
    action was performed against (the new version for in-place bumps).
    """

    __tablename__ = "approval_events"
    __table_args__ = (
        db.Index("ix_approval_events_org_commitment_created", "org_id", "commitment_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # RESTRICT: a commitment with history cannot be deleted underneath its proof trail
    commitment_id = db.Column(
        db.Integer,
        db.ForeignKey("commitments.id", ondelete="RESTRICT"),
        nullable=False,
    )
    commitment_version = db.Column(db.Integer, nullable=False)

    # Who
    actor_type = db.Column(db.String(10), nullable=False, comment="USER | CLIENT")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Set for USER actors only",
    )
    actor_name = db.Column(db.String(200), comment="Set for CLIENT actors only")
    actor_email = db.Column(db.String(200), comment="Set for CLIENT actors only")

    # What
    event_type = db.Column(db.String(60), nullable=False)
    message = db.Column(db.Text)
    meta = db.Column(db.JSON, default=dict, comment="ip / user_agent / changed fields / …")

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def actor(self) -> UserActor | ClientActor:
        if self.actor_type == ACTOR_USER:
            return UserActor(user_id=self.actor_user_id)
        return ClientActor(name=self.actor_name, email=self.actor_email)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "commitment_id": self.commitment_id,
            "commitment_version": self.commitment_version,
            "actor_type": self.actor_type,
            "actor_user_id": self.actor_user_id,
            "actor_name": self.actor_name,
            "actor_email": self.actor_email,
            "event_type": self.event_type,
            "message": self.message,
            "meta": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ApprovalEvent {self.id}: {self.event_type} commitment={self.commitment_id} v{self.commitment_version}>"


class ActivityLog(TenantModel):
    """Organization-level activity (settings changes)."""

    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("ix_activity_logs_org_created", "org_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    action = db.Column(db.String(60), nullable=False)
    entity_type = db.Column(db.String(30), nullable=False, default="organization")
    entity_id = db.Column(db.String(36))
    meta = db.Column(db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "meta": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ── Convenience writers ──────────────────────────────────────────────────────

def append_event(
    *,
    org_id: int,
    commitment_id: int,
    commitment_version: int,
    actor: UserActor | ClientActor,
    event_type: str,
    message: str | None = None,
    meta: dict | None = None,
) -> ApprovalEvent:
    """
    Append a single approval event.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) ApprovalEvent instance.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown approval event type: {event_type}")

    event = ApprovalEvent(
        org_id=org_id,
        commitment_id=commitment_id,
        commitment_version=commitment_version,
        actor_type=actor.kind,
        event_type=event_type,
        message=message,
        meta=meta or {},
    )
    if actor.kind == ACTOR_USER:
        event.actor_user_id = actor.user_id
    elif actor.kind == ACTOR_CLIENT:
        event.actor_name = actor.name
        event.actor_email = actor.email

    db.session.add(event)
    db.session.flush()
    logger.info(
        "Approval event %s",
        event_type,
        extra={
            "org_id": org_id,
            "commitment_id": commitment_id,
            "commitment_version": commitment_version,
            "event_type": event_type,
        },
    )
    return event


def list_events(*, org_id: int, commitment_id: int) -> list[ApprovalEvent]:
    """Replay order: oldest first, id as tie-breaker."""
    return (
        ApprovalEvent.query_for_org(org_id)
        .filter_by(commitment_id=commitment_id)
        .order_by(ApprovalEvent.created_at.asc(), ApprovalEvent.id.asc())
        .all()
    )


def record_activity(
    *,
    org_id: int,
    action: str,
    actor_user_id: int | None = None,
    entity_type: str = "organization",
    entity_id: str | int | None = None,
    meta: dict | None = None,
) -> ActivityLog | None:
    """
    Write one activity row and commit it. Call after the primary change
    has been committed.

    Best-effort: a failure here is logged and discarded so it never breaks
    the operation that triggered it. Returns None when the write failed.
    """
    try:
        entry = ActivityLog(
            org_id=org_id,
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            meta=meta or {},
        )
        db.session.add(entry)
        db.session.commit()
        return entry
    except Exception:
        logger.warning(
            "Activity log write failed: %s", action,
            extra={"org_id": org_id, "action": action},
            exc_info=True,
        )
        db.session.rollback()
        return None
