"""
Thin async client for the Meta Graph API (Instagram + Facebook publishing).

Every call is bounded by settings.external_call_timeout_sec. Failures are
raised as PublishError / AuthError, already tagged retryable or not:
- HTTP 401 or OAuth error 190        -> AuthError
- HTTP 429 / 5xx, timeouts, network   -> retryable
- rate-limit codes, "not ready" media -> retryable
- anything else                       -> permanent
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable

import httpx

from postflow.errors import AuthError, PublishError
from postflow.settings import get_settings

logger = logging.getLogger(__name__)


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"fb_exchange_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "fb_exchange_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    # Generic long opaque tokens (Meta tokens start with EAA and run 150+ chars)
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]

_SENSITIVE_KEYS = {"access_token", "refresh_token", "client_secret", "fb_exchange_token", "authorization"}


def sanitize(text: str | None) -> str | None:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_dict(d: dict | None) -> dict | None:
    """Mask sensitive keys in a response dict before it is persisted."""
    if not d:
        return d
    cleaned: dict[str, Any] = {}
    for k, v in d.items():
        if k.lower() in _SENSITIVE_KEYS:
            cleaned[k] = "***"
        elif isinstance(v, dict):
            cleaned[k] = sanitize_dict(v)
        elif isinstance(v, str):
            cleaned[k] = sanitize(v)
        else:
            cleaned[k] = v
    return cleaned


# ── Error classification ─────────────────────────────────────

RETRYABLE_CODES = {
    1,      # unknown error, usually transient
    2,      # service temporarily unavailable
    4,      # application request limit reached
    17,     # user request limit reached
    32,     # page request limit reached
    341,    # application limit reached
    613,    # calls within one hour exceeded
    80001,  # page rate limit
}

RETRYABLE_MESSAGES = (
    "not ready",
    "media is not ready",
    "please wait",
    "processing",
    "in progress",
    "temporarily",
    "try again",
)


def extract_error_message(error: dict | None) -> str:
    if not error:
        return "Unknown error"
    return error.get("error_user_msg") or error.get("message") or f"Graph API error (code: {error.get('code')})"


def is_retryable_graph_error(error: dict | None) -> bool:
    if not error:
        return False
    if error.get("code") in RETRYABLE_CODES or error.get("is_transient") is True:
        return True
    message = (error.get("error_user_msg") or error.get("message") or "").lower()
    return any(p in message for p in RETRYABLE_MESSAGES)


def graph_error(status_code: int, error: dict | None, what: str) -> PublishError:
    """Build a tagged PublishError from a Graph API error payload."""
    error = error or {}
    message = sanitize(f"{what}: {extract_error_message(error)}")
    code = error.get("code")
    raw = sanitize_dict({"status": status_code, "error": error})
    if status_code == 401 or code == 190:
        return AuthError(message, raw=raw)
    retryable = status_code == 429 or status_code >= 500 or is_retryable_graph_error(error)
    return PublishError(
        message,
        retryable=retryable,
        code=f"GRAPH_{code}" if code is not None else f"HTTP_{status_code}",
        raw=raw,
    )


# ── Client ───────────────────────────────────────────────────

class GraphAPIClient:
    """Stateless HTTP wrapper; one instance is shared by both adapters."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.graph_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.external_call_timeout_sec
        self._transport = transport
        self._sleep = sleep or asyncio.sleep

    async def get(self, path: str, params: dict[str, Any], access_token: str, *, what: str = "Graph GET") -> dict:
        return await self._request("GET", path, access_token, what=what, params=params)

    async def post(self, path: str, params: dict[str, Any], access_token: str, *, what: str = "Graph POST") -> dict:
        form = {k: _form_value(v) for k, v in params.items() if v is not None}
        return await self._request("POST", path, access_token, what=what, data=form)

    async def post_json(self, path: str, body: dict[str, Any], access_token: str, *, what: str = "Graph POST") -> dict:
        return await self._request("POST", path, access_token, what=what, json=body)

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        what: str,
        params: dict | None = None,
        data: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = dict(params or {})
        if data is not None:
            data = {**data, "access_token": access_token}
        elif json is not None:
            json = {**json, "access_token": access_token}
        else:
            query["access_token"] = access_token

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, url, params=query or None, data=data, json=json)
        except httpx.TimeoutException as exc:
            raise PublishError(sanitize(f"{what}: timed out ({exc})"), retryable=True, code="TIMEOUT") from exc
        except httpx.TransportError as exc:
            raise PublishError(sanitize(f"{what}: network error ({exc})"), retryable=True, code="NETWORK") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            if resp.status_code >= 400:
                raise graph_error(resp.status_code, {"message": resp.text[:300]}, what)
            raise PublishError(f"{what}: unexpected response body", retryable=False, code="BAD_RESPONSE")

        if resp.status_code >= 400 or "error" in body:
            logger.warning(f"[graph] {method} {path} -> {resp.status_code}: {sanitize(str(body.get('error'))[:300])}")
            raise graph_error(resp.status_code, body.get("error"), what)

        return body

    async def wait_for_status(
        self,
        entity_id: str,
        access_token: str,
        *,
        target_statuses: tuple[str, ...] = ("FINISHED", "PUBLISHED"),
        error_statuses: tuple[str, ...] = ("ERROR", "FAILED", "EXPIRED"),
        max_attempts: int | None = None,
        initial_wait: float | None = None,
        max_wait: float | None = None,
        backoff: float | None = None,
    ) -> str:
        """Poll a media container until it leaves the processing state.

        Returns the final status code. Raises a permanent PublishError on an
        error status and a retryable one when processing outlives the poll budget.
        """
        settings = get_settings()
        max_attempts = max_attempts or settings.media_poll_max_attempts
        wait = initial_wait if initial_wait is not None else settings.media_poll_initial_wait_sec
        max_wait = max_wait if max_wait is not None else settings.media_poll_max_wait_sec
        backoff = backoff or settings.media_poll_backoff

        last_status = "UNKNOWN"
        for attempt in range(1, max_attempts + 1):
            try:
                data = await self.get(
                    f"/{entity_id}", {"fields": "status_code,status"}, access_token, what="container status"
                )
                last_status = data.get("status_code") or data.get("status") or "UNKNOWN"
            except AuthError:
                raise
            except PublishError as exc:
                if not exc.retryable:
                    raise
                logger.warning(f"[graph] status check for {entity_id} failed (attempt {attempt}): {exc.message}")
            else:
                if last_status in target_statuses:
                    logger.info(f"[graph] container {entity_id} ready: {last_status} after {attempt} checks")
                    return last_status
                if last_status in error_statuses:
                    raise PublishError(
                        f"Container {entity_id} processing failed with status {last_status}",
                        retryable=False,
                        code="CONTAINER_ERROR",
                        raw={"container_id": entity_id, "status": last_status},
                    )
            logger.debug(f"[graph] container {entity_id} status={last_status}, waiting {wait:.1f}s")
            await self._sleep(wait)
            wait = min(wait * backoff, max_wait)

        raise PublishError(
            f"Container {entity_id} did not finish processing after {max_attempts} checks (status={last_status})",
            retryable=True,
            code="CONTAINER_TIMEOUT",
        )


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
