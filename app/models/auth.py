"""
Auth Models — organizations (tenants) and their users.

Authentication itself is handled upstream; these tables only carry what
the commitment core needs to resolve an already-authenticated actor:
the organization's plan (feature gating) and the user's role / active
flag (assignment and manager scoping).
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_FOUNDER = "FOUNDER"
ROLE_MANAGER = "MANAGER"
ROLE_SUPER_ADMIN = "SUPER_ADMIN"
VALID_ROLES = frozenset({ROLE_FOUNDER, ROLE_MANAGER, ROLE_SUPER_ADMIN})

PLAN_FREELANCER = "FREELANCER"
PLAN_AGENCY = "AGENCY"
PLAN_AGENCY_PRO = "AGENCY_PRO"
VALID_PLANS = frozenset({PLAN_FREELANCER, PLAN_AGENCY, PLAN_AGENCY_PRO})

VALID_PLAN_STATUSES = frozenset({"ACTIVE", "PAST_DUE", "CANCELLED"})

DEFAULT_APPROVAL_DEFAULTS = {
    "require_approval": True,
    "re_approval_on_changes": True,
    "acceptance_required": True,
}
DEFAULT_NOTIFICATION_SETTINGS = {
    "approval_reminders": True,
    "risk_alerts": True,
}


# ═══════════════════════════════════════════════════════════════
# 1. ORGANIZATIONS
# ═══════════════════════════════════════════════════════════════
class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    contact_email = db.Column(db.String(200))
    timezone = db.Column(db.String(64), default="Asia/Kolkata")
    currency = db.Column(db.String(8), default="INR")
    plan = db.Column(db.String(30), nullable=False, default=PLAN_AGENCY, index=True)
    plan_status = db.Column(db.String(20), nullable=False, default="ACTIVE", index=True)
    approval_defaults = db.Column(db.JSON, default=dict)
    notification_settings = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    users = db.relationship("User", back_populates="organization", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "contact_email": self.contact_email or "",
            "timezone": self.timezone or "Asia/Kolkata",
            "currency": self.currency or "INR",
            "plan": self.plan,
            "plan_status": self.plan_status,
            "approval_defaults": {**DEFAULT_APPROVAL_DEFAULTS, **(self.approval_defaults or {})},
            "notification_settings": {
                **DEFAULT_NOTIFICATION_SETTINGS,
                **(self.notification_settings or {}),
            },
        }

    def __repr__(self):
        return f"<Organization #{self.id} {self.slug} plan={self.plan}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(20), nullable=False, default=ROLE_FOUNDER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Composite unique: same email can exist in different organizations
    __table_args__ = (
        db.UniqueConstraint("org_id", "email", name="uq_user_org_email"),
        db.Index("ix_users_org_id", "org_id"),
        db.Index("ix_users_org_role", "org_id", "role"),
    )

    organization = db.relationship("Organization", back_populates="users")

    def to_summary(self):
        """Identity fields joined onto commitments for display."""
        return {"id": self.id, "full_name": self.full_name, "email": self.email}

    def to_dict(self):
        return {
            "id": self.id,
            "org_id": self.org_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
