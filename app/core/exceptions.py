"""
Commitment-core exception hierarchy.

Why this module exists:
  The state machine, the versioning engine and the secure-link protocol
  all surface failures through one closed taxonomy. Services raise these
  types; blueprints register handlers against them once (see
  ``app.utils.errors.register_error_handlers``) and get consistent HTTP
  status codes and machine-readable ``code`` values everywhere.

Taxonomy (code → meaning):
  NOT_FOUND         referenced record absent or outside the caller's scope
  CONFLICT          duplicate open change request / duplicate unique key
  INVALID_STATE     a state-machine guard failed
  FORBIDDEN         manager acting outside their assignment
  PLAN_FORBIDDEN    the organization's plan does not include the feature
  LINK_INVALID      token unknown, already used, or expired
  LINK_OLD_VERSION  token consumed but pinned to a superseded version

Usage:
    from app.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="Commitment", resource_id=42)
    raise InvalidStateError("Commitment is not in progress")
"""


class CommitmentCoreError(Exception):
    """Base class; ``code`` is the machine-readable taxonomy value."""

    code = "BAD_REQUEST"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(CommitmentCoreError):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. This intentional ambiguity prevents information disclosure
    — a 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "Commitment", "Client").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        org_id: Optional — the scope that was enforced. For debug logging only.
    """

    code = "NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        org_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.org_id = org_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if org_id is not None:
            msg += f" (org={org_id})"
        super().__init__(msg)

    @property
    def public_message(self) -> str:
        return f"{self.resource} not found"


class ValidationError(CommitmentCoreError):
    """Raised when input is well-formed but violates an input rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "VALIDATION_ERROR"


class ConflictError(CommitmentCoreError):
    """Raised when an operation would duplicate something that must be unique.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field / condition that would be duplicated.
        value: The conflicting value (logs only).
    """

    code = "CONFLICT"

    def __init__(self, resource: str, field: str, value: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class InvalidStateError(CommitmentCoreError):
    """A lifecycle guard failed: wrong source state, locked field, incomplete deliverables."""

    code = "INVALID_STATE"


class ForbiddenError(CommitmentCoreError):
    """The caller is authenticated but acting outside their assignment."""

    code = "FORBIDDEN"


class PlanForbiddenError(CommitmentCoreError):
    """The organization's plan does not include the requested feature."""

    code = "PLAN_FORBIDDEN"

    def __init__(self, feature: str, plan: str | None = None) -> None:
        self.feature = feature
        self.plan = plan
        super().__init__("Feature not allowed for your plan", details={"feature": feature})


class LinkInvalidError(CommitmentCoreError):
    """Secure link unknown, already used, expired, or for another purpose."""

    code = "LINK_INVALID"

    def __init__(self, message: str = "Link invalid/expired/used") -> None:
        super().__init__(message)


class LinkOldVersionError(CommitmentCoreError):
    """Secure link was burned, but it pins a superseded commitment version."""

    code = "LINK_OLD_VERSION"

    def __init__(self, link_version: int, current_version: int) -> None:
        self.link_version = link_version
        self.current_version = current_version
        super().__init__(
            "Old version link",
            details={"link_version": link_version, "current_version": current_version},
        )
