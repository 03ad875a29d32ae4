"""
Ops alerts: Telegram, throttled.

Env:
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

Throttle: the same key is not sent more than once per 15 minutes, so a
Graph API outage does not flood the chat with one alert per publication.
"""
from __future__ import annotations

import html
import logging
import time
from typing import Any

import httpx

from postflow.settings import get_settings

logger = logging.getLogger(__name__)

_throttle: dict[str, float] = {}
THROTTLE_SEC = 15 * 60


def _should_send(key: str) -> bool:
    now = time.monotonic()
    last = _throttle.get(key)
    if last is not None and now - last < THROTTLE_SEC:
        return False
    _throttle[key] = now
    return True


async def _send_telegram(text: str, *, transport: httpx.AsyncBaseTransport | None = None) -> bool:
    settings = get_settings()
    token, chat_id = settings.telegram_bot_token, settings.telegram_chat_id
    if not token or not chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    url = f"https://api.telegram.org/bot{token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            r = await client.post(url, json={
                "chat_id": chat_id,
                "text": text[:4000],
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
            if r.status_code == 200:
                return True
            logger.warning(f"[notify] Telegram API {r.status_code}: {r.text[:200]}")
    except httpx.HTTPError as e:
        logger.warning(f"[notify] Telegram send failed: {e}")
    return False


async def notify_error(title: str, payload: Any = None, *, key: str | None = None) -> bool:
    """Send error-level alert, throttled by `key` (defaults to title)."""
    if not _should_send(f"error:{key or title}"):
        logger.debug(f"[notify] throttled error: {title}")
        return False
    body = f"🔴 <b>{html.escape(title)}</b>"
    if payload:
        body += f"\n<pre>{html.escape(str(payload)[:500])}</pre>"
    return await _send_telegram(body)


async def notify_publication_failed(
    publication_id: str, platform: str, content_type: str, error: str, code: str | None = None
) -> bool:
    """Terminal publish failure. Throttled per platform + error code."""
    return await notify_error(
        f"{platform} {content_type} publication failed",
        f"publication={publication_id}\ncode={code}\n{error}",
        key=f"publication:{platform}:{code}",
    )


async def notify_warn(title: str, payload: Any = None) -> bool:
    """Send warning-level alert (throttled by title)."""
    if not _should_send(f"warn:{title}"):
        logger.debug(f"[notify] throttled warn: {title}")
        return False
    body = f"🟡 <b>{html.escape(title)}</b>"
    if payload:
        body += f"\n<pre>{html.escape(str(payload)[:500])}</pre>"
    return await _send_telegram(body)
