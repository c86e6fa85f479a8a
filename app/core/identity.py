"""
Caller and actor identities.

AuthContext is what the authentication layer hands to every internal
operation. UserActor / ClientActor are the two shapes an audit event or a
change request can be attributed to; keeping them as separate types means
a CLIENT actor can never carry a user id and a USER actor always does.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.models.auth import ROLE_MANAGER, ROLE_SUPER_ADMIN

ACTOR_USER = "USER"
ACTOR_CLIENT = "CLIENT"


@dataclass(frozen=True)
class AuthContext:
    """An already-authenticated internal caller."""

    user_id: int
    org_id: int
    role: str

    @property
    def is_manager(self) -> bool:
        return self.role == ROLE_MANAGER

    @property
    def is_super_admin(self) -> bool:
        return self.role == ROLE_SUPER_ADMIN

    def as_actor(self) -> UserActor:
        return UserActor(user_id=self.user_id)


@dataclass(frozen=True)
class UserActor:
    user_id: int

    kind = ACTOR_USER


@dataclass(frozen=True)
class ClientActor:
    name: str | None = None
    email: str | None = None

    kind = ACTOR_CLIENT


Actor = UserActor | ClientActor
