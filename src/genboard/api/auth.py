# src/genboard/api/auth.py

"""
Access-token verification for the backend routes.

Tokens are issued elsewhere (password exchange); this side only checks them.
A token may arrive as `X-Backend-Token`, as `Authorization: Bearer <token>`,
or as a `token` query parameter (image tags and EventSource cannot set headers).
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

TOKEN_HEADER = "x-backend-token"


class TokenRegistry:
    def __init__(self, tokens: Iterable[str] = ()) -> None:
        self._tokens: set[str] = {t.strip() for t in tokens if t and t.strip()}

    def __len__(self) -> int:
        return len(self._tokens)

    def verify(self, token: str | None) -> bool:
        if not token:
            return False
        candidate = token.encode("utf-8")
        return any(hmac.compare_digest(candidate, known.encode("utf-8")) for known in self._tokens)


def extract_token(request: Request) -> str | None:
    header = request.headers.get(TOKEN_HEADER)
    if header:
        return header.strip()
    authorization = request.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.query_params.get("token") or None


def require_token(request: Request) -> str:
    """FastAPI dependency: 401 unless the request carries a known token."""
    tokens: TokenRegistry = request.app.state.genboard.tokens
    token = extract_token(request)
    if not tokens.verify(token):
        logger.debug("Rejected request path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return token or ""
