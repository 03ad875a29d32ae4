"""
Credential store for connected social accounts.

Credentials live Fernet-encrypted on SocialAccount.credentials_encrypted as a
JSON blob {accessToken, refreshToken, expiryDate, scope, tokenType}. They are
overwritten in place on every refresh.

Refresh policy:
- eager: a token with no expiry or expiring within TOKEN_REFRESH_SKEW_SEC is
  refreshed before use
- reactive: if the provider still answers 401 for a token the eager check
  accepted, refresh once more and rerun the operation once
  (execute_with_credential_refresh)

Concurrent workers may refresh the same account. Every read/persist uses its
own short transaction, last writer wins, and a reactive refresh first re-reads
the row so a token refreshed by another worker is reused instead of overwritten.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postflow.errors import AuthError, CredentialsError
from postflow.integrations.meta_oauth import MetaTokenClient
from postflow.models import SocialAccount, SocialAccountStatus
from postflow.settings import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    access_token: str
    refresh_token: str | None = None
    expiry_date: datetime | None = None
    scope: str | None = None
    token_type: str | None = "Bearer"

    def is_expired(self, now: datetime | None = None, skew_sec: int = 60) -> bool:
        if self.expiry_date is None:
            return True
        now = now or _utcnow()
        return self.expiry_date - now <= timedelta(seconds=skew_sec)

    def to_dict(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiryDate": self.expiry_date.isoformat() if self.expiry_date else None,
            "scope": self.scope,
            "tokenType": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        access_token = data.get("accessToken")
        if not access_token:
            raise CredentialsError("Stored credentials have no access token", code="CREDENTIALS_INCOMPLETE")
        expiry = data.get("expiryDate")
        expiry_date = None
        if expiry:
            try:
                expiry_date = datetime.fromisoformat(expiry)
            except (TypeError, ValueError) as exc:
                raise CredentialsError(
                    f"Stored credentials have an invalid expiryDate: {expiry!r}", code="CREDENTIALS_UNREADABLE"
                ) from exc
            if expiry_date.tzinfo is None:
                expiry_date = expiry_date.replace(tzinfo=timezone.utc)
        return cls(
            access_token=access_token,
            refresh_token=data.get("refreshToken"),
            expiry_date=expiry_date,
            scope=data.get("scope"),
            token_type=data.get("tokenType") or "Bearer",
        )


class CredentialCipher:
    def __init__(self, key: str | bytes | None = None):
        key = key or get_settings().credentials_encryption_key
        if not key:
            raise CredentialsError("CREDENTIALS_ENCRYPTION_KEY not configured", code="ENCRYPTION_NOT_CONFIGURED")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, credential: Credential) -> str:
        return self._fernet.encrypt(json.dumps(credential.to_dict()).encode()).decode()

    def decrypt(self, blob: str) -> Credential:
        try:
            raw = self._fernet.decrypt(blob.encode())
        except InvalidToken as exc:
            raise CredentialsError("Failed to decrypt credentials", code="CREDENTIALS_UNREADABLE") from exc
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise CredentialsError("Stored credentials are not valid JSON", code="CREDENTIALS_UNREADABLE") from exc
        if not isinstance(data, dict):
            raise CredentialsError("Stored credentials are not a JSON object", code="CREDENTIALS_UNREADABLE")
        return Credential.from_dict(data)


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_client: MetaTokenClient,
        cipher: CredentialCipher | None = None,
        *,
        skew_sec: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._token_client = token_client
        self._cipher = cipher or CredentialCipher()
        self._skew_sec = skew_sec if skew_sec is not None else get_settings().token_refresh_skew_sec
        self._clock = clock

    async def get(self, account_id: str) -> Credential:
        async with self._session_factory() as session:
            account = await session.get(SocialAccount, account_id)
            if account is None:
                raise CredentialsError(f"Social account {account_id} not found", code="SOCIAL_ACCOUNT_NOT_FOUND")
            if not account.credentials_encrypted:
                raise CredentialsError("Social account has no stored credentials", code="CREDENTIALS_MISSING")
            return self._cipher.decrypt(account.credentials_encrypted)

    async def persist(self, account_id: str, credential: Credential) -> None:
        async with self._session_factory() as session:
            account = await session.get(SocialAccount, account_id)
            if account is None:
                raise CredentialsError(f"Social account {account_id} not found", code="SOCIAL_ACCOUNT_NOT_FOUND")
            account.credentials_encrypted = self._cipher.encrypt(credential)
            account.status = SocialAccountStatus.active.value
            account.status_message = None
            await session.commit()

    async def mark_error(self, account_id: str, message: str) -> None:
        async with self._session_factory() as session:
            account = await session.get(SocialAccount, account_id)
            if account is None:
                return
            account.status = SocialAccountStatus.error.value
            account.status_message = message[:500]
            await session.commit()
        logger.warning(f"[credentials] account {account_id} marked ERROR: {message}")

    async def refresh(self, account_id: str, credential: Credential) -> Credential:
        if not credential.refresh_token:
            await self.mark_error(account_id, "Missing refresh token")
            raise CredentialsError("Missing refresh token", code="MISSING_REFRESH_TOKEN")

        try:
            tokens = await self._token_client.refresh(credential.refresh_token)
        except CredentialsError as exc:
            await self.mark_error(account_id, exc.message)
            raise

        now = self._clock()
        fresh = Credential(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or credential.refresh_token,
            expiry_date=now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None,
            scope=tokens.scope or credential.scope,
            token_type=tokens.token_type or credential.token_type,
        )
        await self.persist(account_id, fresh)
        logger.info(f"[credentials] refreshed token for account {account_id}")
        return fresh

    async def resolve(self, account_id: str) -> tuple[Credential, bool]:
        """Return a usable credential and whether it was refreshed eagerly."""
        credential = await self.get(account_id)
        if credential.is_expired(self._clock(), self._skew_sec):
            logger.info(f"[credentials] token for account {account_id} expired or expiring, refreshing")
            return await self.refresh(account_id, credential), True
        return credential, False

    async def reactive_refresh(self, account_id: str, rejected_token: str) -> Credential:
        current = await self.get(account_id)
        if current.access_token != rejected_token and not current.is_expired(self._clock(), self._skew_sec):
            logger.info(f"[credentials] account {account_id} already refreshed by another worker, reusing")
            return current
        return await self.refresh(account_id, current)


async def execute_with_credential_refresh(
    store: CredentialStore,
    account_id: str,
    operation: Callable[[str], Awaitable[T]],
) -> T:
    """Run `operation(access_token)` with eager refresh and at most one reactive refresh on 401.

    The reactive retry only happens when the eager check did not already
    refresh during this call; a second AuthError propagates.
    """
    credential, refreshed = await store.resolve(account_id)
    try:
        return await operation(credential.access_token)
    except AuthError as exc:
        if refreshed:
            raise
        logger.warning(f"[credentials] provider rejected token for account {account_id}: {exc.message}; refreshing once")
        fresh = await store.reactive_refresh(account_id, credential.access_token)
    return await operation(fresh.access_token)
