import json
import os

import sqlalchemy as sa
from cryptography.fernet import Fernet

from postflow.models import ActivityLog, Content, Publication, SocialAccount, SocialAccountStatus, SocialPlatform
from postflow.services.activity import ActivityLogger
from postflow.services.credential_store import Credential, CredentialStore
from postflow.services.media_resolver import MediaResolver
from postflow.services.publication_queue import build_job
from postflow.services.publish_worker import PublishWorker
from postflow.services.publisher_adapter import build_adapters

from conftest import WORKSPACE

IMAGE_PAYLOAD = {"contentType": "IMAGE", "imageMediaId": "img-1", "caption": "hello"}


class AlertRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, publication_id, platform, content_type, error, code=None):
        self.calls.append((publication_id, code))
        return True


def _worker(db, graph, broadcaster, alert=None, activity=None) -> PublishWorker:
    return PublishWorker(
        db.session_factory,
        build_adapters(graph.client()),
        CredentialStore(db.session_factory, graph.token_client()),
        MediaResolver(),
        broadcaster=broadcaster,
        activity=activity,
        alert=alert,
    )


def _stub_image_publish(graph, ig_user="ig-1", media_id="m-1"):
    graph.on("POST", f"/{ig_user}/media", (200, {"id": f"c-{media_id}"}))
    graph.on("POST", f"/{ig_user}/media_publish", (200, {"id": media_id}))
    graph.on("GET", f"/{media_id}", (200, {"permalink": f"https://instagram.com/p/{media_id}"}))


async def _seed_publication(db, brand, account, **fields) -> Publication:
    values = dict(
        workspace_id=WORKSPACE,
        brand_id=brand.id,
        social_account_id=account.id if account else None,
        platform="INSTAGRAM",
        content_type="IMAGE",
        payload_json=IMAGE_PAYLOAD,
    )
    values.update(fields)
    return await db.add(Publication(**values))


async def _get(db, publication_id) -> Publication:
    async with db.session_factory() as session:
        return await session.get(Publication, publication_id)


def test_image_publication_end_to_end(with_db, graph, broadcaster):
    _stub_image_publish(graph)

    async def scenario(db):
        brand, account = await db.seed_account()
        await db.seed_media("img-1")
        pub = await _seed_publication(db, brand, account)
        activity = ActivityLogger(db.session_factory)

        outcome = await _worker(db, graph, broadcaster, activity=activity).process(
            build_job(pub.id, WORKSPACE, brand.id), "job-1"
        )
        await activity.drain()
        assert outcome.status == "PUBLISHED"
        assert outcome.retry is False

        stored = await _get(db, pub.id)
        assert stored.status == "PUBLISHED"
        assert stored.external_post_id == "m-1"
        assert stored.permalink == "https://instagram.com/p/m-1"
        assert stored.published_at is not None
        assert stored.failed_at is None
        assert stored.job_id == "job-1"
        assert stored.provider_response_json["external_id"] == "m-1"

        async with db.session_factory() as session:
            types = (await session.execute(sa.select(ActivityLog.type))).scalars().all()
        assert types == ["publication.published"]

    with_db(scenario)
    container = graph.calls[0][2]
    assert container["image_url"] == "https://cdn.test/uploads/img-1.jpg"
    assert container["access_token"] == "token-old"
    assert broadcaster.types() == ["publication.publishing", "publication.published"]


def test_terminal_publication_is_a_noop(with_db, graph, broadcaster):
    async def scenario(db):
        brand, account = await db.seed_account()
        pub = await _seed_publication(db, brand, account, status="PUBLISHED", external_post_id="m-0")
        outcome = await _worker(db, graph, broadcaster).process(build_job(pub.id, WORKSPACE, brand.id), "job-2")
        assert outcome.status == "noop"
        assert (await _get(db, pub.id)).external_post_id == "m-0"

        missing = await _worker(db, graph, broadcaster).process(build_job("missing", WORKSPACE, brand.id), "job-3")
        assert missing.status == "noop"

    with_db(scenario)
    assert graph.calls == []
    assert broadcaster.events == []


def test_row_claimed_by_another_job_is_a_noop(with_db, graph, broadcaster):
    async def scenario(db):
        brand, account = await db.seed_account()
        pub = await _seed_publication(db, brand, account, status="PUBLISHING", job_id="job-1")
        outcome = await _worker(db, graph, broadcaster).process(build_job(pub.id, WORKSPACE, brand.id), "job-dup")
        assert outcome.status == "noop"

    with_db(scenario)
    assert graph.calls == []


def test_transient_failure_retries_then_fails_when_exhausted(with_db, graph, broadcaster):
    graph.on("POST", "/ig-1/media", (503, {"error": {"message": "Service temporarily unavailable", "code": 2}}))
    alert = AlertRecorder()

    async def scenario(db):
        brand, account = await db.seed_account()
        await db.seed_media("img-1")
        pub = await _seed_publication(db, brand, account)
        worker = _worker(db, graph, broadcaster, alert=alert)
        job = build_job(pub.id, WORKSPACE, brand.id)

        first = await worker.process(job, "job-1", attempt=1, max_attempts=3)
        assert first.retry is True
        assert first.status == "PUBLISHING"
        stored = await _get(db, pub.id)
        assert stored.status == "PUBLISHING"
        assert stored.provider_response_json["retryable"] is True
        assert stored.provider_response_json["attempt"] == 1
        assert stored.failed_at is None

        last = await worker.process(job, "job-1", attempt=3, max_attempts=3)
        assert last.retry is False
        assert last.status == "FAILED"
        stored = await _get(db, pub.id)
        assert stored.status == "FAILED"
        assert stored.failed_at is not None
        assert stored.provider_response_json["attempt"] == 3
        return pub.id

    publication_id = with_db(scenario)
    assert alert.calls == [(publication_id, "GRAPH_2")]
    assert "publication.retrying" in broadcaster.types()
    assert broadcaster.types()[-1] == "publication.failed"


def test_permanent_failure_fails_immediately(with_db, graph, broadcaster):
    graph.on("POST", "/ig-1/media", (400, {"error": {"message": "Invalid parameter", "code": 100}}))

    async def scenario(db):
        brand, account = await db.seed_account()
        await db.seed_media("img-1")
        pub = await _seed_publication(db, brand, account)
        outcome = await _worker(db, graph, broadcaster).process(
            build_job(pub.id, WORKSPACE, brand.id), "job-1", attempt=1, max_attempts=3
        )
        assert outcome.retry is False
        assert outcome.status == "FAILED"
        stored = await _get(db, pub.id)
        assert stored.status == "FAILED"
        assert stored.provider_response_json["error"] == "GRAPH_100"
        assert stored.published_at is None

    with_db(scenario)
    assert len(graph.paths("POST")) == 1


def test_missing_media_fails_without_calling_graph(with_db, graph, broadcaster):
    async def scenario(db):
        brand, account = await db.seed_account()
        pub = await _seed_publication(db, brand, account)
        outcome = await _worker(db, graph, broadcaster).process(build_job(pub.id, WORKSPACE, brand.id), "job-1")
        assert outcome.status == "FAILED"
        assert (await _get(db, pub.id)).provider_response_json["error"] == "MEDIA_UNRESOLVED"

    with_db(scenario)
    assert graph.calls == []


def test_disconnected_account_skips_publication(with_db, graph, broadcaster):
    async def scenario(db):
        brand, account = await db.seed_account(status=SocialAccountStatus.disconnected)
        pub = await _seed_publication(db, brand, account)
        orphaned = await _seed_publication(db, brand, None)

        outcome = await _worker(db, graph, broadcaster).process(build_job(pub.id, WORKSPACE, brand.id), "job-1")
        assert outcome.status == "SKIPPED"
        assert (await _get(db, pub.id)).status == "SKIPPED"

        outcome = await _worker(db, graph, broadcaster).process(build_job(orphaned.id, WORKSPACE, brand.id), "job-2")
        assert outcome.status == "SKIPPED"

    with_db(scenario)
    assert graph.calls == []
    assert broadcaster.types() == ["publication.skipped", "publication.skipped"]


def test_rejected_token_is_refreshed_once_and_publish_rerun(with_db, graph, broadcaster):
    graph.on(
        "POST",
        "/ig-1/media",
        (401, {"error": {"message": "Error validating access token", "code": 190}}),
        (200, {"id": "c-1"}),
    )
    graph.on("POST", "/ig-1/media_publish", (200, {"id": "m-1"}))
    graph.on("GET", "/m-1", (200, {"permalink": "https://instagram.com/p/m-1"}))
    graph.on("GET", "/oauth/access_token", (200, {"access_token": "token-new", "expires_in": 3600}))

    async def scenario(db):
        brand, account = await db.seed_account()
        await db.seed_media("img-1")
        pub = await _seed_publication(db, brand, account)
        outcome = await _worker(db, graph, broadcaster).process(build_job(pub.id, WORKSPACE, brand.id), "job-1")
        assert outcome.status == "PUBLISHED"
        stored = await db.account(account.id)
        assert db.cipher.decrypt(stored.credentials_encrypted).access_token == "token-new"

    with_db(scenario)
    media_tokens = [params["access_token"] for method, path, params in graph.calls if path == "/ig-1/media"]
    assert media_tokens == ["token-old", "token-new"]
    assert graph.paths("GET").count("/oauth/access_token") == 1


def test_content_becomes_partially_published(with_db, graph, broadcaster):
    _stub_image_publish(graph)
    graph.on("POST", "/ig-2/media", (400, {"error": {"message": "Invalid parameter", "code": 100}}))

    async def scenario(db):
        brand, first = await db.seed_account()
        _, second = await db.seed_account(external_account_id="ig-2", brand=brand)
        await db.seed_media("img-1")
        content = await db.add(Content(workspace_id=WORKSPACE, brand_id=brand.id))
        ok = await _seed_publication(db, brand, first, content_id=content.id)
        bad = await _seed_publication(db, brand, second, content_id=content.id)

        worker = _worker(db, graph, broadcaster)
        assert (await worker.process(build_job(ok.id, WORKSPACE, brand.id), "job-1")).status == "PUBLISHED"
        assert (await worker.process(build_job(bad.id, WORKSPACE, brand.id), "job-2")).status == "FAILED"

        async with db.session_factory() as session:
            assert (await session.get(Content, content.id)).status == "PARTIALLY_PUBLISHED"

    with_db(scenario)
    changes = [e[2]["status"] for e in broadcaster.events if e[1] == "content.status.changed"]
    assert changes[-1] == "PARTIALLY_PUBLISHED"
    assert "PUBLISHING" in changes


def test_retry_after_account_disconnected_fails_row(with_db, graph, broadcaster):
    graph.on("POST", "/ig-1/media", (503, {"error": {"message": "Service temporarily unavailable", "code": 2}}))
    alert = AlertRecorder()

    async def scenario(db):
        brand, account = await db.seed_account()
        await db.seed_media("img-1")
        pub = await _seed_publication(db, brand, account)
        worker = _worker(db, graph, broadcaster, alert=alert)
        job = build_job(pub.id, WORKSPACE, brand.id)

        assert (await worker.process(job, "job-1", attempt=1, max_attempts=3)).retry is True

        async with db.session_factory() as session:
            (await session.get(SocialAccount, account.id)).status = SocialAccountStatus.disconnected.value
            await session.commit()

        outcome = await worker.process(job, "job-1", attempt=2, max_attempts=3)
        assert outcome.status == "FAILED"
        assert outcome.retry is False
        stored = await _get(db, pub.id)
        assert stored.status == "FAILED"
        assert stored.failed_at is not None
        assert stored.provider_response_json["error"] == "SOCIAL_ACCOUNT_DISCONNECTED"
        assert stored.provider_response_json["attempt"] == 2
        return pub.id

    publication_id = with_db(scenario)
    assert alert.calls == [(publication_id, "SOCIAL_ACCOUNT_DISCONNECTED")]
    assert broadcaster.types()[-1] == "publication.failed"
    assert len(graph.paths("POST")) == 1


def test_retry_after_account_removed_fails_row(with_db, graph, broadcaster):
    async def scenario(db):
        brand, _ = await db.seed_account()
        pub = await _seed_publication(db, brand, None, status="PUBLISHING", job_id="job-1")
        other = await _seed_publication(db, brand, None, status="PUBLISHING", job_id="job-9")
        worker = _worker(db, graph, broadcaster)

        outcome = await worker.process(build_job(pub.id, WORKSPACE, brand.id), "job-1", attempt=2)
        assert outcome.status == "FAILED"
        stored = await _get(db, pub.id)
        assert stored.status == "FAILED"
        assert stored.provider_response_json["error"] == "SOCIAL_ACCOUNT_NOT_FOUND"

        foreign = await worker.process(build_job(other.id, WORKSPACE, brand.id), "job-1", attempt=2)
        assert foreign.status == "noop"
        assert (await _get(db, other.id)).status == "PUBLISHING"

    with_db(scenario)
    assert graph.calls == []
    assert broadcaster.types() == ["publication.failed"]


def test_missing_refresh_token_fails_without_retry(with_db, graph, broadcaster):
    async def scenario(db):
        credential = Credential(access_token="token-old", refresh_token=None, expiry_date=None)
        brand, account = await db.seed_account(credential=credential)
        await db.seed_media("img-1")
        pub = await _seed_publication(db, brand, account)

        outcome = await _worker(db, graph, broadcaster).process(
            build_job(pub.id, WORKSPACE, brand.id), "job-1", attempt=1, max_attempts=3
        )
        assert outcome.status == "FAILED"
        assert outcome.retry is False
        stored = await _get(db, pub.id)
        assert stored.status == "FAILED"
        assert stored.provider_response_json["error"] == "MISSING_REFRESH_TOKEN"
        assert (await db.account(account.id)).status == SocialAccountStatus.error.value

    with_db(scenario)
    assert graph.paths("POST") == []
    assert broadcaster.types()[-1] == "publication.failed"


def test_unreadable_credentials_fail_claimed_row(with_db, graph, broadcaster):
    fernet = Fernet(os.environ["CREDENTIALS_ENCRYPTION_KEY"].encode())
    blob = fernet.encrypt(json.dumps({"accessToken": "t", "expiryDate": "not-a-date"}).encode()).decode()

    async def scenario(db):
        brand, account = await db.seed_account()
        await db.seed_media("img-1")
        async with db.session_factory() as session:
            (await session.get(SocialAccount, account.id)).credentials_encrypted = blob
            await session.commit()
        pub = await _seed_publication(db, brand, account)

        outcome = await _worker(db, graph, broadcaster).process(build_job(pub.id, WORKSPACE, brand.id), "job-1")
        assert outcome.status == "FAILED"
        assert outcome.retry is False
        stored = await _get(db, pub.id)
        assert stored.status == "FAILED"
        assert stored.provider_response_json["error"] == "CREDENTIALS_UNREADABLE"

    with_db(scenario)
    assert graph.calls == []


def test_facebook_photo_end_to_end(with_db, graph, broadcaster):
    graph.on("POST", "/page-1/photos", (200, {"id": "ph-1", "post_id": "page-1_9"}))
    graph.on("GET", "/ph-1", (200, {"link": "https://www.facebook.com/photo/?fbid=1"}))

    async def scenario(db):
        brand, account = await db.seed_account(
            platform=SocialPlatform.facebook_page, external_account_id="page-1"
        )
        await db.seed_media("img-1")
        pub = await _seed_publication(
            db,
            brand,
            account,
            platform="FACEBOOK",
            content_type="PHOTO",
            payload_json={"contentType": "PHOTO", "imageMediaId": "img-1", "message": "fb"},
        )

        outcome = await _worker(db, graph, broadcaster).process(build_job(pub.id, WORKSPACE, brand.id), "job-1")
        assert outcome.status == "PUBLISHED"
        stored = await _get(db, pub.id)
        assert stored.status == "PUBLISHED"
        assert stored.external_post_id == "page-1_9"
        assert stored.permalink == "https://www.facebook.com/photo/?fbid=1"

    with_db(scenario)
    photo = graph.calls[0][2]
    assert photo["url"] == "https://cdn.test/uploads/img-1.jpg"
    assert photo["caption"] == "fb"
    assert broadcaster.types() == ["publication.publishing", "publication.published"]
