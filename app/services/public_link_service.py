"""
Public (token-holder) side of the commitment state machine.

    preview_link(raw, purpose)                       read-only, burns nothing
    consume_approval_token(raw, action, comment, meta)
        approve          AWAITING → IN_PROGRESS, approved_at
        request_change   → CHANGE_REQUEST_CREATED + OPEN change request
    consume_acceptance_token(raw, comment, meta)     → CLOSED, accepted_at

Order of checks on consumption:
    1. action is known (nothing burned otherwise)
    2. burn_link: atomic, committed on success (LINK_INVALID otherwise)
    3. commitment still exists (NOT_FOUND)
    4. pinned version == current version (LINK_OLD_VERSION; token stays burned)

The only gate after a successful burn is the version pin. Burning a link
retires its resent siblings, so each version is approved (or accepted) at
most once through the public side.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.exceptions import LinkOldVersionError, NotFoundError, ValidationError
from app.core.identity import ClientActor
from app.models import db
from app.models.audit import append_event
from app.models.change_request import REQUESTED_BY_CLIENT
from app.models.commitment import (
    STATUS_CHANGE_REQUEST_CREATED,
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    Commitment,
)
from app.models.secure_link import LINK_PURPOSES, PURPOSE_ACCEPTANCE, PURPOSE_APPROVAL, SecureLink
from app.services.change_request_service import open_change_request
from app.services.client_service import get_client_or_snapshot
from app.services.helpers.scoped_queries import get_scoped_or_none
from app.services.secure_link_service import burn_link, find_active_link

logger = logging.getLogger(__name__)

ACTION_APPROVE = "approve"
ACTION_REQUEST_CHANGE = "request_change"
APPROVAL_ACTIONS = frozenset({ACTION_APPROVE, ACTION_REQUEST_CHANGE})


def _resolve_commitment(link: SecureLink) -> Commitment:
    """Commitment behind a burned link, with the version pin enforced."""
    commitment = get_scoped_or_none(Commitment, link.commitment_id, org_id=link.org_id)
    if commitment is None:
        raise NotFoundError(resource="Commitment", resource_id=link.commitment_id, org_id=link.org_id)
    if commitment.version != link.commitment_version:
        logger.info(
            "Stale link v%s (current v%s)", link.commitment_version, commitment.version,
            extra={"org_id": link.org_id, "commitment_id": commitment.id,
                   "commitment_version": commitment.version},
        )
        raise LinkOldVersionError(link_version=link.commitment_version, current_version=commitment.version)
    return commitment


def _client_actor(commitment: Commitment) -> ClientActor:
    identity = get_client_or_snapshot(commitment)
    return ClientActor(name=identity.get("name"), email=identity.get("email"))


def consume_approval_token(
    raw_token: str,
    action: str,
    comment: str | None = None,
    meta: dict | None = None,
) -> dict:
    """Client approves the commitment or asks for a change."""
    if action not in APPROVAL_ACTIONS:
        raise ValidationError(
            f"action must be one of {sorted(APPROVAL_ACTIONS)}", details={"action": "invalid"},
        )

    link = burn_link(raw_token, PURPOSE_APPROVAL)
    commitment = _resolve_commitment(link)
    actor = _client_actor(commitment)
    version = commitment.version
    meta = dict(meta or {})

    if action == ACTION_REQUEST_CHANGE:
        reason = comment or "Change requested"
        change_request = open_change_request(
            link.org_id, commitment, reason, REQUESTED_BY_CLIENT, actor, meta,
        )
        commitment.status = STATUS_CHANGE_REQUEST_CREATED
        append_event(
            org_id=link.org_id,
            commitment_id=commitment.id,
            commitment_version=version,
            actor=actor,
            event_type="CLIENT_REQUESTED_CHANGE",
            message=reason,
            meta={**meta, "change_request_id": change_request.id},
        )
        db.session.commit()
        return {"status": commitment.status, "change_request_id": change_request.id}

    commitment.approved_at = datetime.now(timezone.utc)
    commitment.status = STATUS_IN_PROGRESS
    append_event(
        org_id=link.org_id,
        commitment_id=commitment.id,
        commitment_version=version,
        actor=actor,
        event_type="CLIENT_APPROVED",
        message=comment or "Approved",
        meta=meta,
    )
    db.session.commit()
    return {"status": commitment.status}


def consume_acceptance_token(
    raw_token: str,
    comment: str | None = None,
    meta: dict | None = None,
) -> dict:
    """Client confirms the delivered work; the commitment closes."""
    link = burn_link(raw_token, PURPOSE_ACCEPTANCE)
    commitment = _resolve_commitment(link)
    actor = _client_actor(commitment)
    version = commitment.version

    commitment.status = STATUS_CLOSED
    commitment.accepted_at = datetime.now(timezone.utc)
    append_event(
        org_id=link.org_id,
        commitment_id=commitment.id,
        commitment_version=version,
        actor=actor,
        event_type="CLIENT_ACCEPTED",
        message=comment or "Accepted",
        meta=dict(meta or {}),
    )
    db.session.commit()
    return {"status": commitment.status}


def preview_link(raw_token: str, purpose: str) -> dict:
    """What the client sees before acting. Monetary fields are included."""
    if purpose not in LINK_PURPOSES:
        raise ValueError(f"Unknown secure link purpose: {purpose}")

    link = find_active_link(raw_token, purpose)
    commitment = get_scoped_or_none(Commitment, link.commitment_id, org_id=link.org_id)
    if commitment is None:
        raise NotFoundError(resource="Commitment", resource_id=link.commitment_id)

    identity = get_client_or_snapshot(commitment)
    return {
        "purpose": purpose,
        "version_ok": commitment.version == link.commitment_version,
        "link": {
            "commitment_version": link.commitment_version,
            "expires_at": link.expires_at.isoformat() if link.expires_at else None,
            "used": link.used_at is not None,
        },
        "commitment": commitment.to_dict(include_client=False, include_assignee=False),
        "client": {"name": identity.get("name"), "email": identity.get("email")},
    }
