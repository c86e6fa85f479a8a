"""
Commitment domain model — the aggregate root of the ledger.

A Commitment is one *version* of a scoped-work agreement with a client.
Versions form a lineage through two back-references:

    root_commitment_id      same value on every version (version 1 points at itself)
    previous_commitment_id  immediate predecessor, NULL on version 1

Lineage is navigated by id lookup only; nothing cascades along it.

Business rules:
- status / version / the four lifecycle timestamps are owned by the
  commitment services — never written from a blueprint.
- client_*_snapshot columns are copied from the Client row at creation and
  at version-fork time so historical proof survives client edits/deletion.
- Sub-item lists (payment terms, milestones, deliverables, attachments) and
  approval rules are stored as JSON and normalised at every write.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel

# ── Lifecycle states ──────────────────────────────────────────────────────────

STATUS_DRAFT = "DRAFT"
STATUS_INTERNAL_REVIEW = "INTERNAL_REVIEW"
STATUS_AWAITING_CLIENT_APPROVAL = "AWAITING_CLIENT_APPROVAL"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_CHANGE_REQUEST_CREATED = "CHANGE_REQUEST_CREATED"
STATUS_DELIVERED = "DELIVERED"
STATUS_ACCEPTED = "ACCEPTED"
STATUS_CLOSED = "CLOSED"
STATUS_CANCELLED = "CANCELLED"

COMMITMENT_STATUSES = (
    STATUS_DRAFT,
    STATUS_INTERNAL_REVIEW,
    STATUS_AWAITING_CLIENT_APPROVAL,
    STATUS_IN_PROGRESS,
    STATUS_CHANGE_REQUEST_CREATED,
    STATUS_DELIVERED,
    STATUS_ACCEPTED,
    STATUS_CLOSED,
    STATUS_CANCELLED,
)

# Locked-field guard: scope / commercial fields freeze once the client has
# the agreement in hand.
LOCKED_FIELDS = (
    "title",
    "scope_title",
    "scope_description",
    "amount",
    "currency",
    "attachments",
    "approval_rules",
)
LOCKED_STATUSES = frozenset({
    STATUS_IN_PROGRESS,
    STATUS_CHANGE_REQUEST_CREATED,
    STATUS_DELIVERED,
    STATUS_ACCEPTED,
    STATUS_CLOSED,
    STATUS_CANCELLED,
})
DELIVERABLES_LOCKED_STATUSES = frozenset({
    STATUS_DELIVERED, STATUS_ACCEPTED, STATUS_CLOSED, STATUS_CANCELLED,
})
TERMS_LOCKED_STATUSES = frozenset({STATUS_ACCEPTED, STATUS_CLOSED, STATUS_CANCELLED})

# ── Sub-item vocabularies ─────────────────────────────────────────────────────

PAYMENT_TERM_STATUSES = frozenset({"PENDING", "PAID", "OVERDUE", "CANCELLED"})
MILESTONE_STATUSES = frozenset({"NOT_STARTED", "IN_PROGRESS", "COMPLETED", "BLOCKED"})
DELIVERABLE_STATUSES = frozenset({"NOT_STARTED", "IN_PROGRESS", "DELIVERED", "ACCEPTED", "REJECTED"})
DELIVERABLE_DONE_STATUSES = frozenset({"DELIVERED", "ACCEPTED"})
ATTACHMENT_RESOURCE_TYPES = frozenset({"raw", "image", "video"})

APPROVER_CLIENT_ONLY = "CLIENT_ONLY"
APPROVER_BOTH_PARTIES = "BOTH_PARTIES"
VALID_APPROVERS = frozenset({APPROVER_CLIENT_ONLY, APPROVER_BOTH_PARTIES})

DEFAULT_CURRENCY = "INR"


@dataclass(frozen=True)
class ApprovalRules:
    """Per-commitment approval configuration.

    Always built through ``normalize`` so partial or malformed input from a
    caller can never reach the database.
    """

    approver: str = APPROVER_CLIENT_ONLY
    re_approval_on_changes: bool = True
    acceptance_required: bool = True

    @classmethod
    def normalize(cls, value: dict | ApprovalRules | None, fallback: dict | None = None) -> ApprovalRules:
        """Merge ``value`` over ``fallback`` over defaults, dropping bad types."""
        if isinstance(value, ApprovalRules):
            return value
        raw = value if value is not None else (fallback or {})
        if not isinstance(raw, dict):
            raw = {}
        approver = raw.get("approver")
        if approver not in VALID_APPROVERS:
            approver = APPROVER_CLIENT_ONLY
        re_approval = raw.get("re_approval_on_changes")
        acceptance = raw.get("acceptance_required")
        return cls(
            approver=approver,
            re_approval_on_changes=re_approval if isinstance(re_approval, bool) else True,
            acceptance_required=acceptance if isinstance(acceptance, bool) else True,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Commitment(TenantModel):
    """
    One version of a scoped-work agreement.

    Status flow (see commitment_service for guards):
        DRAFT / INTERNAL_REVIEW → AWAITING_CLIENT_APPROVAL → IN_PROGRESS
        → DELIVERED → CLOSED, with CHANGE_REQUEST_CREATED as a detour.
    """

    __tablename__ = "commitments"

    id = db.Column(db.Integer, primary_key=True)

    # Client association + point-in-time identity snapshot
    client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        comment="Live client; SET NULL on delete — the snapshot columns remain",
    )
    client_name_snapshot = db.Column(db.String(200))
    client_email_snapshot = db.Column(db.String(200))
    client_company_snapshot = db.Column(db.String(200))

    # Content
    title = db.Column(db.String(300), nullable=False)
    scope_title = db.Column(db.String(300))
    scope_description = db.Column(db.Text, nullable=False)
    amount = db.Column(db.Numeric(14, 2, asdecimal=False))
    currency = db.Column(db.String(8), nullable=False, default=DEFAULT_CURRENCY)
    payment_terms = db.Column(db.JSON, nullable=False, default=list)
    milestones = db.Column(db.JSON, nullable=False, default=list)
    deliverables = db.Column(db.JSON, nullable=False, default=list)
    attachments = db.Column(db.JSON, nullable=False, default=list)
    approval_rules = db.Column(db.JSON, nullable=False, default=lambda: ApprovalRules().to_dict())

    # Lifecycle
    status = db.Column(db.String(30), nullable=False, default=STATUS_DRAFT, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    approval_sent_at = db.Column(db.DateTime(timezone=True))
    approved_at = db.Column(db.DateTime(timezone=True))
    delivered_at = db.Column(db.DateTime(timezone=True))
    accepted_at = db.Column(db.DateTime(timezone=True))

    # Lineage (pure back-references)
    root_commitment_id = db.Column(
        db.Integer,
        db.ForeignKey("commitments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Origin of the lineage; equals id on version 1",
    )
    previous_commitment_id = db.Column(
        db.Integer,
        db.ForeignKey("commitments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    change_request_id = db.Column(
        db.Integer,
        nullable=True,
        index=True,
        comment="change_requests.id that produced this version (no FK: change_requests already references commitments)",
    )

    # Ownership
    created_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    assigned_to_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_commitments_org_status_updated", "org_id", "status", "updated_at"),
        db.Index("ix_commitments_org_assignee_status", "org_id", "assigned_to_user_id", "status"),
        db.Index("ix_commitments_org_client_updated", "org_id", "client_id", "updated_at"),
    )

    client = db.relationship("Client", foreign_keys=[client_id], lazy="joined")
    assignee = db.relationship("User", foreign_keys=[assigned_to_user_id], lazy="joined")
    previous = db.relationship(
        "Commitment", foreign_keys=[previous_commitment_id], remote_side=[id], lazy="select",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def rules(self) -> ApprovalRules:
        return ApprovalRules.normalize(self.approval_rules)

    @property
    def client_snapshot(self) -> dict:
        return {
            "name": self.client_name_snapshot,
            "email": self.client_email_snapshot,
            "company_name": self.client_company_snapshot,
        }

    def to_dict(self, include_client: bool = True, include_assignee: bool = True) -> dict:
        d = {
            "id": self.id,
            "org_id": self.org_id,
            "client_id": self.client_id,
            "client_snapshot": self.client_snapshot,
            "title": self.title,
            "scope_title": self.scope_title,
            "scope_description": self.scope_description,
            "amount": self.amount,
            "currency": self.currency,
            "payment_terms": list(self.payment_terms or []),
            "milestones": list(self.milestones or []),
            "deliverables": list(self.deliverables or []),
            "attachments": list(self.attachments or []),
            "approval_rules": self.rules.to_dict(),
            "status": self.status,
            "version": self.version,
            "approval_sent_at": _iso(self.approval_sent_at),
            "approved_at": _iso(self.approved_at),
            "delivered_at": _iso(self.delivered_at),
            "accepted_at": _iso(self.accepted_at),
            "root_commitment_id": self.root_commitment_id,
            "previous_commitment_id": self.previous_commitment_id,
            "change_request_id": self.change_request_id,
            "created_by_user_id": self.created_by_user_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_client:
            d["client"] = self.client.to_dict() if self.client else None
        if include_assignee:
            d["assignee"] = self.assignee.to_summary() if self.assignee else None
        return d

    def __repr__(self) -> str:
        return f"<Commitment #{self.id} v{self.version} {self.status}>"
