"""Admin token checks guarding the account administration routes."""
from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Iterable, Tuple

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings

logger = logging.getLogger("payserver.security")


def _fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]


class AdminTokenAuth:
    """FastAPI dependency that admits requests carrying a configured admin token.

    The index of the matching token is stored on ``request.state.admin_token``
    so handlers can tell operators apart in their own logs.
    """

    def __init__(self, tokens: Iterable[str]) -> None:
        self._tokens: Tuple[str, ...] = tuple(token.strip() for token in tokens if token.strip())
        if not self._tokens:
            raise ValueError("At least one admin token must be configured")
        self._bearer = HTTPBearer(auto_error=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdminTokenAuth":
        return cls(settings.admin_tokens)

    def _match(self, provided: str) -> int | None:
        matched = None
        for index, token in enumerate(self._tokens):
            # every token is compared, even after a match
            if secrets.compare_digest(provided.encode("utf-8"), token.encode("utf-8")):
                matched = index
        return matched

    async def __call__(self, request: Request) -> None:
        client = request.client.host if request.client else "unknown"
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            logger.warning("Admin call to %s from %s without bearer token", request.url.path, client)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

        index = self._match(credentials.credentials)
        if index is None:
            logger.warning(
                "Rejected admin call to %s from %s (token %s)",
                request.url.path,
                client,
                _fingerprint(credentials.credentials),
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")

        request.state.admin_token = index


__all__ = ["AdminTokenAuth"]
