"""
Versioning engine.

Two separate paths change a commitment's version:

In-place bump (same row)
    ``update_commitment`` calls ``needs_version_bump`` with the normalised
    updates. When re-approval is on, the commitment was already sent or
    approved, and promised content changed, ``apply_version_bump``
    increments the version, resets the status to AWAITING_CLIENT_APPROVAL
    and clears the four lifecycle timestamps.

Fork (new row)
    Accepting a change request builds the next generation's content with
    ``build_fork_payload`` and creates a new Commitment linked through
    root_commitment_id / previous_commitment_id. The predecessor row is
    not modified.

"Promised content" is title, scope title / description, amount, currency,
the *text* of payment terms and milestones, and the approval rules.
Sub-item statuses and dates never trigger a bump.
"""

from __future__ import annotations

import json
import logging

from app.models.commitment import STATUS_AWAITING_CLIENT_APPROVAL, ApprovalRules, Commitment
from app.services.commitment_payload import (
    normalize_attachments,
    normalize_deliverables,
    normalize_milestones,
    normalize_payment_terms,
    text_projection,
)

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = ("scope_title", "scope_description", "title", "amount", "currency")
_TEXT_LIST_FIELDS = ("payment_terms", "milestones")


def _same_json(a, b) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


def did_scope_or_terms_change(existing: Commitment, updates: dict) -> bool:
    """True when ``updates`` alters any promised-content field of ``existing``."""
    for field in _SCALAR_FIELDS:
        if field in updates and updates[field] != getattr(existing, field):
            return True

    for field in _TEXT_LIST_FIELDS:
        if field in updates and not _same_json(
            text_projection(updates[field]), text_projection(getattr(existing, field))
        ):
            return True

    if "approval_rules" in updates:
        new_rules = ApprovalRules.normalize(updates["approval_rules"]).to_dict()
        if not _same_json(new_rules, existing.rules.to_dict()):
            return True

    return False


def needs_version_bump(existing: Commitment, updates: dict) -> bool:
    """Whether an in-place update must send the commitment back for approval."""
    if not existing.rules.re_approval_on_changes:
        return False
    if not (existing.approval_sent_at or existing.approved_at):
        return False
    return did_scope_or_terms_change(existing, updates)


def apply_version_bump(commitment: Commitment) -> int:
    """Bump in place; returns the new version number."""
    previous_version = commitment.version or 1
    commitment.version = previous_version + 1
    commitment.status = STATUS_AWAITING_CLIENT_APPROVAL
    commitment.approval_sent_at = None
    commitment.approved_at = None
    commitment.delivered_at = None
    commitment.accepted_at = None
    logger.info(
        "Version bump v%s → v%s", previous_version, commitment.version,
        extra={"org_id": commitment.org_id, "commitment_id": commitment.id,
               "commitment_version": commitment.version},
    )
    return commitment.version


def build_fork_payload(previous: Commitment, patch: dict, actor_user_id: int | None = None) -> dict:
    """Content of the next generation: ``patch`` over ``previous``, normalised.

    Lifecycle fields (status, timestamps, lineage) are not part of the
    payload; the caller sets them on the new row.
    """
    patch = patch or {}

    title = patch.get("title")
    scope_title = patch.get("scope_title")
    scope_description = patch.get("scope_description")
    currency = patch.get("currency")
    amount = patch.get("amount")
    return {
        "client_id": previous.client_id,
        "title": title.strip() if isinstance(title, str) and title.strip() else previous.title,
        "scope_title": scope_title.strip() if isinstance(scope_title, str) else previous.scope_title,
        "scope_description": (
            scope_description if isinstance(scope_description, str) else previous.scope_description
        ),
        "amount": amount if amount is not None else previous.amount,
        "currency": (
            currency.strip().upper()
            if isinstance(currency, str) and currency.strip()
            else previous.currency
        ),
        "attachments": (
            normalize_attachments(patch["attachments"], actor_user_id)
            if isinstance(patch.get("attachments"), list)
            else list(previous.attachments or [])
        ),
        "payment_terms": (
            normalize_payment_terms(patch["payment_terms"])
            if isinstance(patch.get("payment_terms"), list)
            else list(previous.payment_terms or [])
        ),
        "milestones": (
            normalize_milestones(patch["milestones"])
            if isinstance(patch.get("milestones"), list)
            else list(previous.milestones or [])
        ),
        "deliverables": (
            normalize_deliverables(patch["deliverables"])
            if isinstance(patch.get("deliverables"), list)
            else list(previous.deliverables or [])
        ),
        "approval_rules": ApprovalRules.normalize(
            patch.get("approval_rules") if isinstance(patch.get("approval_rules"), dict) else None,
            fallback=previous.rules.to_dict(),
        ).to_dict(),
    }
