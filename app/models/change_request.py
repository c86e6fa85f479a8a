"""
Change request model.

A ChangeRequest asks for an alteration of one commitment version. It is
raised by the client (through an approval link) or by an internal user,
and is resolved exactly once:

    OPEN → ACCEPTED   a new commitment version is forked (created_version_id)
    OPEN → REJECTED   the commitment returns to previous_status

At most one OPEN request may exist per commitment; the partial unique
index below enforces that in the database, not just in the service.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel

CR_STATUS_OPEN = "OPEN"
CR_STATUS_ACCEPTED = "ACCEPTED"
CR_STATUS_REJECTED = "REJECTED"
CR_STATUSES = frozenset({CR_STATUS_OPEN, CR_STATUS_ACCEPTED, CR_STATUS_REJECTED})

REQUESTED_BY_CLIENT = "CLIENT"
REQUESTED_BY_USER = "USER"


class ChangeRequest(TenantModel):
    __tablename__ = "change_requests"

    id = db.Column(db.Integer, primary_key=True)
    commitment_id = db.Column(
        db.Integer,
        db.ForeignKey("commitments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    commitment_version = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=CR_STATUS_OPEN)
    previous_status = db.Column(
        db.String(30), nullable=False,
        comment="Commitment status when the request was opened; restored on rejection",
    )

    # Requester
    requested_by_type = db.Column(db.String(10), nullable=False, comment="CLIENT | USER")
    requested_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    requested_by_name = db.Column(db.String(200))
    requested_by_email = db.Column(db.String(200))

    # Resolution
    resolved_at = db.Column(db.DateTime(timezone=True))
    resolved_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    resolution_note = db.Column(db.Text)
    created_version_id = db.Column(
        db.Integer,
        db.ForeignKey("commitments.id", ondelete="SET NULL"),
        nullable=True,
        comment="Commitment version forked when the request was accepted",
    )

    meta = db.Column(db.JSON, default=dict, comment="Requester IP / user agent")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index(
            "ix_change_requests_org_commitment_status_created",
            "org_id", "commitment_id", "status", "created_at",
        ),
        db.Index(
            "uq_change_requests_one_open",
            "commitment_id",
            unique=True,
            sqlite_where=db.text("status = 'OPEN'"),
            postgresql_where=db.text("status = 'OPEN'"),
        ),
    )

    commitment = db.relationship("Commitment", foreign_keys=[commitment_id])

    @property
    def requested_by(self) -> dict:
        return {
            "user_id": self.requested_by_user_id,
            "name": self.requested_by_name,
            "email": self.requested_by_email,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "commitment_id": self.commitment_id,
            "commitment_version": self.commitment_version,
            "reason": self.reason,
            "status": self.status,
            "previous_status": self.previous_status,
            "requested_by_type": self.requested_by_type,
            "requested_by": self.requested_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by_user_id": self.resolved_by_user_id,
            "resolution_note": self.resolution_note,
            "created_version_id": self.created_version_id,
            "meta": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ChangeRequest #{self.id} commitment={self.commitment_id} {self.status}>"
