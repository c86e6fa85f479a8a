"""
Plan / feature gating.

Each organization plan unlocks a fixed feature set. Services ask
``require_feature`` before a gated action; the check is made against the
organization row in the database, never against a client-supplied plan.
"""

from __future__ import annotations

import logging

from app.core.exceptions import NotFoundError, PlanForbiddenError
from app.core.identity import AuthContext
from app.models import db
from app.models.auth import PLAN_AGENCY, PLAN_AGENCY_PRO, PLAN_FREELANCER, Organization

logger = logging.getLogger(__name__)

FEATURE_ASSIGN_COMMITMENT = "ASSIGN_COMMITMENT"
FEATURE_ACCEPTANCE_PROOF = "ACCEPTANCE_PROOF"

# ASSIGN_COMMITMENT: create-time and later reassignment, fork reassignment
# ACCEPTANCE_PROOF: asking the client to sign off delivered work
PLAN_RULES: dict[str, frozenset[str]] = {
    PLAN_FREELANCER: frozenset({
        FEATURE_ACCEPTANCE_PROOF,
    }),
    PLAN_AGENCY: frozenset({
        FEATURE_ACCEPTANCE_PROOF,
        FEATURE_ASSIGN_COMMITMENT,
    }),
    PLAN_AGENCY_PRO: frozenset({
        FEATURE_ACCEPTANCE_PROOF,
        FEATURE_ASSIGN_COMMITMENT,
    }),
}


def get_allowed_features(plan: str | None) -> frozenset[str]:
    return PLAN_RULES.get(plan or "", frozenset())


def is_feature_allowed(plan: str | None, feature: str) -> bool:
    return feature in get_allowed_features(plan)


def get_organization(org_id: int) -> Organization:
    org = db.session.get(Organization, org_id)
    if org is None:
        raise NotFoundError(resource="Organization", resource_id=org_id)
    return org


def can_use(ctx: AuthContext, feature: str) -> bool:
    """Whether the caller's organization may use ``feature``. SUPER_ADMIN always may."""
    if ctx.is_super_admin:
        return True
    return is_feature_allowed(get_organization(ctx.org_id).plan, feature)


def require_feature(ctx: AuthContext, feature: str) -> None:
    """Raise PlanForbiddenError unless the caller's plan includes ``feature``."""
    if can_use(ctx, feature):
        return
    plan = get_organization(ctx.org_id).plan
    logger.info(
        "Plan gate declined %s for plan %s", feature, plan,
        extra={"org_id": ctx.org_id, "user_id": ctx.user_id},
    )
    raise PlanForbiddenError(feature=feature, plan=plan)
