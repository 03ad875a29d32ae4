from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from postflow.errors import CredentialsError, PublishError
from postflow.integrations.graph_api import extract_error_message, sanitize
from postflow.settings import get_settings

logger = logging.getLogger(__name__)

# Meta long-lived tokens last 60 days when expires_in is omitted
DEFAULT_EXPIRES_IN = 60 * 24 * 3600


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None


class MetaTokenClient:
    """Exchanges a stored long-lived token for a fresh one at /oauth/access_token."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    async def refresh(self, refresh_token: str) -> TokenSet:
        settings = get_settings()
        if not settings.meta_app_id or not settings.meta_app_secret:
            raise CredentialsError("META_APP_ID / META_APP_SECRET not configured", code="OAUTH_NOT_CONFIGURED")

        try:
            async with httpx.AsyncClient(timeout=settings.external_call_timeout_sec, transport=self._transport) as client:
                resp = await client.get(
                    f"{settings.graph_api_base}/oauth/access_token",
                    params={
                        "grant_type": "fb_exchange_token",
                        "client_id": settings.meta_app_id,
                        "client_secret": settings.meta_app_secret,
                        "fb_exchange_token": refresh_token,
                    },
                )
        except httpx.TimeoutException as exc:
            raise PublishError("Token refresh timed out", retryable=True, code="TIMEOUT") from exc
        except httpx.TransportError as exc:
            raise PublishError(sanitize(f"Token refresh network error: {exc}"), retryable=True, code="NETWORK") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 500 or resp.status_code == 429:
            raise PublishError(f"Token refresh HTTP {resp.status_code}", retryable=True, code=f"HTTP_{resp.status_code}")
        if resp.status_code != 200 or "error" in data or not data.get("access_token"):
            msg = sanitize(f"Token refresh rejected: {extract_error_message(data.get('error'))}")
            raise CredentialsError(msg, code="REFRESH_REJECTED")

        logger.info("[credentials] token exchanged successfully")
        return TokenSet(
            access_token=data["access_token"],
            # Meta does not rotate a separate refresh token; the new long-lived token doubles as one
            refresh_token=data.get("refresh_token") or data["access_token"],
            expires_in=data.get("expires_in") or DEFAULT_EXPIRES_IN,
            token_type=data.get("token_type"),
            scope=data.get("scope"),
        )
