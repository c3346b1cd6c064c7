"""Caller identity and roles.

Guards receive the caller explicitly (as an argument of the guarded call or
of the guard itself) instead of reading ambient global state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable


@dataclass(frozen=True)
class CallerContext:
    """Who is calling a guarded operation.

    Attributes:
        identity: Stable caller identifier (user id, API key hash, client IP).
        roles: Role names granted to the caller.
    """

    identity: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, identity: str | None, roles: Iterable[str] = ()) -> "CallerContext":
        """Build a context from any iterable of role names."""
        return cls(identity=identity, roles=frozenset(role.strip() for role in roles if role.strip()))

    def has_role(self, role: str) -> bool:
        return role in self.roles


ANONYMOUS = CallerContext()
