# Overview: Resolves "performed by" / "approved by" user references.

from __future__ import annotations

from flask import current_app

from ..errors import NotFoundError


def resolve_user(user_id: int | None) -> int | None:
    """
    Validate a user reference against the identity collaborator.

    User accounts live outside this core. The app config may provide
    IDENTITY_RESOLVER, a callable(user_id) returning truthy for known users;
    without one any positive id is accepted.

    Returns:
        The user id (or None when no user was supplied)

    Raises:
        NotFoundError: If the identity collaborator does not know the user
    """
    if user_id is None:
        return None

    resolver = current_app.config.get("IDENTITY_RESOLVER")
    if resolver is None:
        known = isinstance(user_id, int) and user_id > 0
    else:
        known = bool(resolver(user_id))

    if not known:
        raise NotFoundError("User", user_id)
    return user_id
