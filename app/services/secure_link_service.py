"""
Secure Link Token Protocol.

Issues and consumes single-use, expiring, version-pinned capability tokens
that let an unauthenticated client perform exactly one action.

    issue_link(commitment, purpose)   → URL containing the raw token
    burn_link(raw_token, purpose)     → SecureLink (used_at set) or LinkInvalidError
    find_active_link(raw, purpose)    → read-only preview lookup

Rules:
    - Only the SHA-256 hash of the raw token is persisted; the raw value is
      returned once inside the URL and never logged.
    - Consumption is one conditional UPDATE (hash + purpose + unused +
      unexpired → used_at = now). Two racing requests cannot both match it,
      so exactly one wins and the other sees LINK_INVALID.
    - The burn is committed before the caller checks the pinned version, so
      a stale-version token is still permanently unusable.
    - Resending never reuses a record: every issue_link() inserts a new row.
    - Consuming one link retires every other unused link with the same
      commitment, purpose and version, so a resent copy cannot act later.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import select, update

from app.core.exceptions import LinkInvalidError
from app.models import db
from app.models.commitment import Commitment
from app.models.secure_link import LINK_PURPOSES, PURPOSE_ACCEPTANCE, PURPOSE_APPROVAL, SecureLink

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
DEFAULT_TTL_HOURS = 168

_URL_SEGMENTS = {
    PURPOSE_APPROVAL: "approve",
    PURPOSE_ACCEPTANCE: "accept",
}


def generate_raw_token(nbytes: int = TOKEN_BYTES) -> str:
    """Random token, hex encoded (64 chars for the default 32 bytes)."""
    return secrets.token_hex(nbytes)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw token (the only form stored)."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def token_expires_at(hours: int | float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def build_link_url(purpose: str, raw_token: str) -> str:
    base = current_app.config.get("PUBLIC_BASE_URL", "http://localhost:5173").rstrip("/")
    return f"{base}/{_URL_SEGMENTS[purpose]}/{raw_token}"


def issue_link(commitment: Commitment, purpose: str) -> str:
    """Insert a new SecureLink pinned to ``commitment.version`` and return its URL.

    Flushes only; the caller commits together with the state transition.
    """
    if purpose not in LINK_PURPOSES:
        raise ValueError(f"Unknown secure link purpose: {purpose}")

    raw = generate_raw_token()
    ttl = current_app.config.get("SECURE_LINK_TTL_HOURS", DEFAULT_TTL_HOURS)
    link = SecureLink(
        org_id=commitment.org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        purpose=purpose,
        token_hash=hash_token(raw),
        expires_at=token_expires_at(ttl),
    )
    db.session.add(link)
    db.session.flush()

    logger.info(
        "Secure link issued: %s", purpose,
        extra={
            "org_id": commitment.org_id,
            "commitment_id": commitment.id,
            "commitment_version": commitment.version,
        },
    )
    return build_link_url(purpose, raw)


def burn_link(raw_token: str, purpose: str) -> SecureLink:
    """Atomically mark the link used and return it.

    Other unused links for the same commitment, purpose and version are
    retired in the same transaction, so a resent duplicate can never act
    once one copy has been consumed. The transaction is committed
    immediately. Raises LinkInvalidError when no unused, unexpired link
    with this hash and purpose exists.
    """
    token_hash = hash_token(raw_token or "")
    now = datetime.now(timezone.utc)

    result = db.session.execute(
        update(SecureLink)
        .where(
            SecureLink.token_hash == token_hash,
            SecureLink.purpose == purpose,
            SecureLink.used_at.is_(None),
            SecureLink.expires_at > now,
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.info("Secure link rejected: %s", purpose)
        raise LinkInvalidError()

    link = db.session.execute(
        select(SecureLink).where(SecureLink.token_hash == token_hash)
    ).scalar_one()
    retired = db.session.execute(
        update(SecureLink)
        .where(
            SecureLink.commitment_id == link.commitment_id,
            SecureLink.commitment_version == link.commitment_version,
            SecureLink.purpose == purpose,
            SecureLink.used_at.is_(None),
            SecureLink.id != link.id,
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.commit()

    logger.info(
        "Secure link consumed: %s (%s sibling link(s) retired)", purpose, retired,
        extra={
            "org_id": link.org_id,
            "commitment_id": link.commitment_id,
            "commitment_version": link.commitment_version,
        },
    )
    return link


def find_active_link(raw_token: str, purpose: str) -> SecureLink:
    """Unexpired link for a read-only preview (used or not). LinkInvalidError otherwise."""
    link = db.session.execute(
        select(SecureLink).where(
            SecureLink.token_hash == hash_token(raw_token or ""),
            SecureLink.purpose == purpose,
            SecureLink.expires_at > datetime.now(timezone.utc),
        )
    ).scalar_one_or_none()
    if link is None:
        raise LinkInvalidError("Link is invalid or expired")
    return link
