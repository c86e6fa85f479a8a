"""
TenantModel — Abstract base class for organization-scoped models.

The organization is the tenant: every record this service owns is
partitioned by ``org_id``. Models inherit from TenantModel instead of
db.Model directly to get:
  - org_id FK column with index
  - query_for_org(org_id) classmethod
"""

from app.models import db


class TenantModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    org_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_org(cls, org_id):
        """Return a query filtered by org_id."""
        return cls.query.filter_by(org_id=org_id)
