"""Shared fixtures: env defaults, a throwaway SQLite database, Graph API stub, fakes."""

import asyncio
import os
import urllib.parse
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["CREDENTIALS_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["META_APP_ID"] = "test-app"
os.environ["META_APP_SECRET"] = "test-secret"
os.environ["GRAPH_API_HOST"] = "https://graph.test"
os.environ["MEDIA_CDN_BASE_URL"] = "https://cdn.test"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("TELEGRAM_CHAT_ID", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from postflow.db import Base  # noqa: E402
from postflow.errors import QueueError  # noqa: E402
from postflow.integrations.graph_api import GraphAPIClient  # noqa: E402
from postflow.integrations.meta_oauth import MetaTokenClient  # noqa: E402
from postflow.models import Brand, Media, SocialAccount, SocialAccountStatus, SocialPlatform  # noqa: E402
from postflow.services.credential_store import Credential, CredentialCipher  # noqa: E402

WORKSPACE = "ws-1"


async def _no_sleep(_seconds: float) -> None:
    return None


class TestDB:
    __test__ = False

    def __init__(self, url: str):
        self.engine = create_async_engine(url, poolclass=NullPool)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self.cipher = CredentialCipher()

    async def create_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def add(self, *objects):
        async with self.session_factory() as session:
            session.add_all(objects)
            await session.commit()
        return objects[0] if len(objects) == 1 else objects

    async def seed_account(
        self,
        *,
        platform: SocialPlatform = SocialPlatform.instagram_business,
        status: SocialAccountStatus = SocialAccountStatus.active,
        credential: Credential | None = None,
        external_account_id: str = "ig-1",
        workspace_id: str = WORKSPACE,
        brand: Brand | None = None,
    ) -> tuple[Brand, SocialAccount]:
        if credential is None:
            credential = Credential(
                access_token="token-old",
                refresh_token="refresh-1",
                expiry_date=datetime.now(timezone.utc) + timedelta(days=30),
            )
        async with self.session_factory() as session:
            if brand is None:
                brand = Brand(workspace_id=workspace_id, name="Acme", slug="acme")
                session.add(brand)
                await session.flush()
            account = SocialAccount(
                workspace_id=workspace_id,
                brand_id=brand.id,
                platform=platform.value,
                external_account_id=external_account_id,
                display_name="acme",
                status=status.value,
                credentials_encrypted=self.cipher.encrypt(credential),
            )
            session.add(account)
            await session.commit()
        return brand, account

    async def seed_media(self, media_id: str, *, workspace_id: str = WORKSPACE) -> Media:
        return await self.add(Media(id=media_id, workspace_id=workspace_id, object_key=f"uploads/{media_id}.jpg"))

    async def account(self, account_id: str) -> SocialAccount:
        async with self.session_factory() as session:
            return await session.get(SocialAccount, account_id)


@pytest.fixture
def with_db(tmp_path):
    """Run `scenario(db)` on a fresh SQLite file inside a single event loop."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'postflow.db'}"

    def _run(scenario):
        async def _main():
            db = TestDB(url)
            await db.create_all()
            try:
                return await scenario(db)
            finally:
                await db.close()

        return asyncio.run(_main())

    return _run


class GraphStub:
    """httpx.MockTransport handler keyed by (method, path without API version).

    Responses queue up per route; the last one repeats.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.calls: list[tuple[str, str, dict]] = []

    def on(self, method: str, path: str, *responses):
        self.routes.setdefault((method, path), []).extend(responses)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = "/" + request.url.path.split("/", 2)[2]
        if request.method == "POST":
            params = dict(urllib.parse.parse_qsl(request.content.decode()))
        else:
            params = dict(request.url.params)
        self.calls.append((request.method, path, params))
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(400, json={"error": {"message": f"no stub for {request.method} {path}", "code": 100}})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, json=body)

    def paths(self, method: str | None = None) -> list[str]:
        return [p for m, p, _ in self.calls if method is None or m == method]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> GraphAPIClient:
        return GraphAPIClient(base_url="https://graph.test/v24.0", transport=self.transport(), sleep=_no_sleep)

    def token_client(self) -> MetaTokenClient:
        return MetaTokenClient(transport=self.transport())


@pytest.fixture
def graph():
    return GraphStub()


class FakeQueue:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.jobs: list[dict] = []
        self.revoked: list[str] = []

    def enqueue(self, platform, job, delay_ms=0):
        if self.fail:
            raise QueueError("Publication saved but could not be queued", details={"publicationId": job["publicationId"]})
        job_id = f"job-{len(self.jobs) + 1}"
        self.jobs.append({"platform": platform, "job": job, "delay_ms": delay_ms, "job_id": job_id})
        return job_id

    def revoke(self, job_id):
        self.revoked.append(job_id)
        return True


@pytest.fixture
def fake_queue():
    return FakeQueue()


class FakeBroadcaster:
    def __init__(self):
        self.events: list[tuple[str, str, dict, str | None]] = []

    async def broadcast_event(self, workspace_id, event_type, data, brand_id=None):
        self.events.append((workspace_id, event_type, data, brand_id))

    def types(self) -> list[str]:
        return [e[1] for e in self.events]


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()
