from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse

from relay_gateway.config import ApiToken, GatewayConfig, TokenStatus
from relay_gateway.gateway.quota_ledger import QuotaLedger


@dataclass(slots=True, frozen=True)
class TokenContext:
    token_id: int
    account_id: int
    allowed_models: str = ""
    token_name: str = ""


class TokenAuthenticator:
    """Resolves the caller's API key to an admitted ``TokenContext``.

    Admission reads the ledger once; concurrent requests near the cap can
    all pass and overdraw by the cost of what was in flight.
    """

    def __init__(
        self,
        config: GatewayConfig,
        ledger: QuotaLedger,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(UTC))

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        key = _parse_auth_header(request.headers.get("authorization"))
        if not key:
            return _auth_error(
                status.HTTP_401_UNAUTHORIZED,
                "Missing API key in Authorization header",
                "missing_api_key",
            )

        token = await self.validate_key(key)
        if token is None:
            return _auth_error(
                status.HTTP_401_UNAUTHORIZED,
                "Invalid or expired API key",
                "invalid_api_key",
            )

        account = self._config.account_by_id(token.account_id)
        if account is None or not account.is_enabled:
            return _auth_error(
                status.HTTP_403_FORBIDDEN,
                "User account is disabled",
                "user_disabled",
            )

        request.state.token_context = TokenContext(
            token_id=token.id,
            account_id=token.account_id,
            allowed_models=token.models,
            token_name=token.name,
        )
        return None

    async def validate_key(self, key: str) -> ApiToken | None:
        token = self._config.token_for_key(key)
        if token is None or token.status != TokenStatus.ENABLED:
            return None
        if token.is_expired(self._clock()):
            return None
        if token.quota > 0:
            usage = await self._ledger.token_usage(token.id)
            if token.quota_exhausted(usage.used_quota):
                return None
        return token


def _parse_auth_header(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer":
        return token.strip() or None
    return header.strip() or None


def _auth_error(status_code: int, message: str, code: str) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error": {
                "message": message,
                "type": "invalid_request_error",
                "code": code,
            },
        },
    )
