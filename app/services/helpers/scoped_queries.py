"""
Tenant-scoped query helpers.

Every get-by-id in the ledger MUST use these helpers instead of
Model.query.get(pk) or db.session.get(Model, pk). Direct .get() calls
bypass tenant isolation; the organization filter belongs in the SQL
statement itself, never in a post-fetch check.

Usage:
    # Scope by org_id (every TenantModel subclass)
    client = get_scoped(Client, client_id, org_id=org_id)

    # Add extra predicates (manager scoping, change request → commitment)
    cr = get_scoped(ChangeRequest, cr_id, org_id=org_id, commitment_id=commitment_id)

    # When None is an acceptable outcome (optional FK lookups)
    client = get_scoped_or_none(Client, client_id, org_id=org_id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    If the model does not have that column, a ValueError is raised at
    call time so the bug surfaces immediately during development/testing
    rather than silently allowing unscoped access in production.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, *, org_id: int, resource: str | None = None, **extra_scopes):
    """Fetch a single entity by PK with mandatory organization filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Args:
        model: SQLAlchemy model class with ``id`` and ``org_id`` columns.
        pk: Primary key value to look up.
        org_id: Tenant scope. Required.
        resource: Name used in the NotFoundError (defaults to the class name).
        **extra_scopes: Additional ``column=value`` equality predicates.
                        ``None`` values are skipped.

    Raises:
        ValueError: org_id missing, or a scope names a column the model lacks.
        NotFoundError: entity absent or outside the given scope.
    """
    if org_id is None:
        raise ValueError(
            f"{model.__name__} id={pk} requires org_id. "
            "Unscoped lookups are forbidden — they bypass tenant isolation."
        )

    scopes = {"org_id": org_id}
    scopes.update({k: v for k, v in extra_scopes.items() if v is not None})

    missing_fields = [field for field in scopes if not hasattr(model, field)]
    if missing_fields:
        raise ValueError(
            f"{model.__name__} id={pk}: scope field(s) {sorted(missing_fields)} "
            f"do not exist as columns on {model.__name__}."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in scopes.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).unique().scalar_one_or_none()

    if result is None:
        logger.debug(
            "get_scoped: %s id=%s not found in scope %s",
            model.__name__,
            pk,
            scopes,
        )
        raise NotFoundError(resource=resource or model.__name__, resource_id=pk, org_id=org_id)

    return result


def get_scoped_or_none(model, pk: int, *, org_id: int, **extra_scopes):
    """Same as get_scoped but returns None instead of raising NotFoundError.

    Still enforces the org_id requirement, because silent unscoped lookups
    are never acceptable regardless of return style.
    """
    if pk is None:
        return None
    try:
        return get_scoped(model, pk, org_id=org_id, **extra_scopes)
    except NotFoundError:
        return None
