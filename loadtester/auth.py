"""Bearer-token guard for the control API."""

from __future__ import annotations

import abc
import secrets
from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from loadtester.config import get_settings


class AuthProvider(abc.ABC):
    @abc.abstractmethod
    def verify(self, token: Optional[str]) -> bool: ...


# ───── Shared secret from LOADTEST_CONTROL_TOKEN ─────────────────────
class TokenProvider(AuthProvider):
    def __init__(self, token: str) -> None:
        self._token = token

    def verify(self, token: Optional[str]) -> bool:
        return token is not None and secrets.compare_digest(token, self._token)


# ───── No-auth / local dev provider ──────────────────────────────────
class LocalProvider(AuthProvider):
    def verify(self, token: Optional[str]) -> bool:
        # allow *any* token or none at all
        return True


def get_provider(token: Optional[str] = None) -> AuthProvider:
    token = token or get_settings().control_token
    return TokenProvider(token) if token else LocalProvider()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or " " not in authorization:
        return None
    scheme, token = authorization.split(" ", 1)
    return token.strip() if scheme.lower() == "bearer" else None


class ControlTokenMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, provider: Optional[AuthProvider] = None) -> None:
        super().__init__(app)
        self.provider = provider or get_provider()

    async def dispatch(self, request: Request, call_next):
        token = bearer_token(request.headers.get("authorization"))
        if not self.provider.verify(token):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing credentials"},
            )
        return await call_next(request)
