"""Well-known role names."""

from __future__ import annotations

from typing import Iterable, Optional

SERVER_ADMIN = "ServerAdmin"

ALL_ROLES = (SERVER_ADMIN,)


def has_server_admin(roles: Iterable[Optional[str]]) -> bool:
    return SERVER_ADMIN in set(roles)


__all__ = ["ALL_ROLES", "SERVER_ADMIN", "has_server_admin"]
