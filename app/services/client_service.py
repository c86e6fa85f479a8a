"""
Client service — client CRUD and the identity snapshot used by commitments.

    snapshot_client(client)           → snapshot column values
    get_client_or_snapshot(commitment) → {name, email, company_name}

A commitment never depends on the live Client row for its proof trail:
the snapshot columns are filled at creation and at version-fork time,
and every reader falls back to them when the client has been deleted.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, ValidationError
from app.core.identity import AuthContext
from app.models import db
from app.models.client import Client
from app.models.commitment import Commitment
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("name", "email", "phone", "company_name", "is_active")


def snapshot_client(client: Client | None) -> dict:
    """Snapshot column values for ``client``; all None when there is no client."""
    if client is None:
        return {
            "client_name_snapshot": None,
            "client_email_snapshot": None,
            "client_company_snapshot": None,
        }
    return {
        "client_name_snapshot": client.name,
        "client_email_snapshot": client.email,
        "client_company_snapshot": client.company_name,
    }


def get_client_or_snapshot(commitment: Commitment) -> dict:
    """Live client identity when the row still exists, else the stored snapshot."""
    client = commitment.client
    if client is not None and client.org_id == commitment.org_id:
        return {"name": client.name, "email": client.email, "company_name": client.company_name}
    return commitment.client_snapshot


# ── CRUD ─────────────────────────────────────────────────────────────────────


def _clean(data: dict, *, partial: bool) -> dict:
    values = {}
    for field in _EDITABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "is_active":
            if not isinstance(value, bool):
                raise ValidationError("is_active must be a boolean")
            values[field] = value
            continue
        values[field] = value.strip() if isinstance(value, str) else value

    if "email" in values:
        values["email"] = (values["email"] or "").lower()

    required = ("name", "email") if not partial else tuple(f for f in ("name", "email") if f in values)
    missing = [f for f in required if not values.get(f)]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
    if "email" in values and "@" not in values["email"]:
        raise ValidationError("email is invalid", details={"email": "invalid"})
    return values


def create_client(ctx: AuthContext, data: dict) -> Client:
    values = _clean(data, partial=False)
    client = Client(org_id=ctx.org_id, **values)
    db.session.add(client)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(resource="Client", field="email", value=values["email"])
    logger.info("Client created", extra={"org_id": ctx.org_id, "user_id": ctx.user_id})
    return client


def get_client(ctx: AuthContext, client_id: int) -> Client:
    return get_scoped(Client, client_id, org_id=ctx.org_id)


def list_clients(ctx: AuthContext, *, q: str | None = None, include_inactive: bool = False) -> list[Client]:
    stmt = select(Client).where(Client.org_id == ctx.org_id)
    if not include_inactive:
        stmt = stmt.where(Client.is_active.is_(True))
    if q:
        pattern = f"%{q.strip().lower()}%"
        stmt = stmt.where(
            func.lower(Client.name).like(pattern) | func.lower(Client.email).like(pattern)
        )
    return list(db.session.execute(stmt.order_by(Client.name.asc(), Client.id.asc())).scalars())


def update_client(ctx: AuthContext, client_id: int, data: dict) -> Client:
    """Edit a client. Existing commitments keep their snapshots."""
    client = get_scoped(Client, client_id, org_id=ctx.org_id)
    for field, value in _clean(data, partial=True).items():
        setattr(client, field, value)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(resource="Client", field="email", value=data.get("email"))
    return client


def delete_client(ctx: AuthContext, client_id: int) -> None:
    """Hard delete; commitments keep client_*_snapshot and get client_id = NULL."""
    client = get_scoped(Client, client_id, org_id=ctx.org_id)
    db.session.execute(
        Commitment.__table__.update()
        .where(Commitment.client_id == client.id, Commitment.org_id == ctx.org_id)
        .values(client_id=None)
    )
    db.session.delete(client)
    db.session.commit()
    logger.info("Client deleted", extra={"org_id": ctx.org_id, "user_id": ctx.user_id})
