"""FastAPI dependencies building the caller context of a request.

Design principles:
- Guards take the caller explicitly; this module is the only place that
  knows how a caller is represented on the wire.
- Identity falls back to the client IP when no user header is present, so
  anonymous traffic is still limited per client.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Header, Request

from keyguard.core.context import CallerContext
from keyguard.core.logging import hash_identity

logger = logging.getLogger(__name__)


def parse_roles(roles_string: str | None) -> set[str]:
    """Parse comma-separated role names into a set.

    Examples:
        >>> sorted(parse_roles("admin, user"))
        ['admin', 'user']
        >>> parse_roles(None)
        set()
    """
    if not roles_string:
        return set()
    return {role.strip() for role in roles_string.split(",") if role.strip()}


async def get_caller_context(
    request: Request,
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
    x_user_roles: Annotated[str | None, Header(alias="X-User-Roles")] = None,
) -> CallerContext:
    """FastAPI dependency returning the CallerContext of the current request.

    Usage:
        @router.post("/orders")
        @rate_limit(limit=5, window_seconds=60, on_reject=raise_rejection)
        async def create_order(caller: CallerContext = Depends(get_caller_context)):
            ...
    """
    if x_user_id:
        identity = f"user:{x_user_id}"
    else:
        client_host = request.client.host if request.client else "unknown"
        identity = f"ip:{client_host}"

    caller = CallerContext.of(identity, parse_roles(x_user_roles))
    logger.debug(
        "caller.resolved",
        extra={
            "identity_hash": hash_identity(identity),
            "identity_type": "user" if x_user_id else "ip",
            "roles": sorted(caller.roles),
        },
    )
    return caller
