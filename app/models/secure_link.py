"""
Secure link model.

Single-use, expiring, version-pinned capability token. Only the SHA-256
hash of the raw token is stored; ``used_at`` moves from NULL to a
timestamp exactly once (see secure_link_service.burn_link).
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel

PURPOSE_APPROVAL = "APPROVAL"
PURPOSE_ACCEPTANCE = "ACCEPTANCE"
LINK_PURPOSES = frozenset({PURPOSE_APPROVAL, PURPOSE_ACCEPTANCE})


class SecureLink(TenantModel):
    __tablename__ = "secure_links"

    id = db.Column(db.Integer, primary_key=True)
    commitment_id = db.Column(
        db.Integer,
        db.ForeignKey("commitments.id", ondelete="CASCADE"),
        nullable=False,
    )
    commitment_version = db.Column(db.Integer, nullable=False, comment="Version pinned at issuance")
    purpose = db.Column(db.String(20), nullable=False, comment="APPROVAL | ACCEPTANCE")
    token_hash = db.Column(db.String(64), nullable=False, unique=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_secure_links_org_commitment_purpose", "org_id", "commitment_id", "purpose"),
    )

    commitment = db.relationship("Commitment", foreign_keys=[commitment_id])

    def to_dict(self):
        # token_hash is deliberately absent
        return {
            "id": self.id,
            "org_id": self.org_id,
            "commitment_id": self.commitment_id,
            "commitment_version": self.commitment_version,
            "purpose": self.purpose,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<SecureLink #{self.id} {self.purpose} commitment={self.commitment_id} v{self.commitment_version}>"
