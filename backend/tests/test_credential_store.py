from datetime import datetime, timedelta, timezone

import pytest

from postflow.errors import AuthError, CredentialsError
from postflow.models import SocialAccount, SocialAccountStatus
from postflow.services.credential_store import Credential, CredentialStore, execute_with_credential_refresh

TOKEN_PATH = "/oauth/access_token"


def _expired() -> Credential:
    return Credential(
        access_token="token-old",
        refresh_token="refresh-1",
        expiry_date=datetime.now(timezone.utc) - timedelta(minutes=5),
    )


def _token_calls(graph) -> int:
    return graph.paths("GET").count(TOKEN_PATH)


def test_is_expired_honours_skew():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert Credential("a", expiry_date=now + timedelta(seconds=30)).is_expired(now, skew_sec=60)
    assert not Credential("a", expiry_date=now + timedelta(minutes=5)).is_expired(now, skew_sec=60)
    assert Credential("a").is_expired(now)


def test_valid_token_is_used_without_refresh(with_db, graph):
    async def scenario(db):
        _, account = await db.seed_account()
        store = CredentialStore(db.session_factory, graph.token_client())
        credential, refreshed = await store.resolve(account.id)
        assert credential.access_token == "token-old"
        assert refreshed is False

    with_db(scenario)
    assert graph.calls == []


def test_expiring_token_is_refreshed_and_persisted(with_db, graph):
    graph.on("GET", TOKEN_PATH, (200, {"access_token": "token-new", "expires_in": 3600}))

    async def scenario(db):
        _, account = await db.seed_account(credential=_expired())
        store = CredentialStore(db.session_factory, graph.token_client())
        credential, refreshed = await store.resolve(account.id)
        assert refreshed is True
        assert credential.access_token == "token-new"

        stored = await store.get(account.id)
        assert stored.access_token == "token-new"
        assert stored.expiry_date > datetime.now(timezone.utc) + timedelta(minutes=50)

    with_db(scenario)
    params = graph.calls[0][2]
    assert params["grant_type"] == "fb_exchange_token"
    assert params["fb_exchange_token"] == "refresh-1"
    assert params["client_id"] == "test-app"


def test_missing_refresh_token_marks_account_error(with_db, graph):
    async def scenario(db):
        credential = Credential(access_token="token-old", refresh_token=None, expiry_date=None)
        _, account = await db.seed_account(credential=credential)
        store = CredentialStore(db.session_factory, graph.token_client())
        with pytest.raises(CredentialsError) as exc:
            await store.resolve(account.id)
        assert exc.value.code == "MISSING_REFRESH_TOKEN"
        assert exc.value.retryable is False

        stored = await db.account(account.id)
        assert stored.status == SocialAccountStatus.error.value
        assert stored.status_message == "Missing refresh token"

    with_db(scenario)
    assert graph.calls == []


def test_rejected_refresh_marks_account_error(with_db, graph):
    graph.on("GET", TOKEN_PATH, (400, {"error": {"message": "Error validating access token", "code": 190}}))

    async def scenario(db):
        _, account = await db.seed_account(credential=_expired())
        store = CredentialStore(db.session_factory, graph.token_client())
        with pytest.raises(CredentialsError) as exc:
            await store.resolve(account.id)
        assert exc.value.code == "REFRESH_REJECTED"
        assert (await db.account(account.id)).status == SocialAccountStatus.error.value

    with_db(scenario)


def test_401_triggers_exactly_one_refresh_and_one_rerun(with_db, graph):
    graph.on("GET", TOKEN_PATH, (200, {"access_token": "token-new", "expires_in": 3600}))
    tokens_seen = []

    async def operation(access_token):
        tokens_seen.append(access_token)
        if access_token == "token-old":
            raise AuthError("Invalid OAuth access token")
        return "posted"

    async def scenario(db):
        _, account = await db.seed_account()
        store = CredentialStore(db.session_factory, graph.token_client())
        assert await execute_with_credential_refresh(store, account.id, operation) == "posted"
        assert (await store.get(account.id)).access_token == "token-new"

    with_db(scenario)
    assert tokens_seen == ["token-old", "token-new"]
    assert _token_calls(graph) == 1


def test_second_401_propagates(with_db, graph):
    graph.on("GET", TOKEN_PATH, (200, {"access_token": "token-new", "expires_in": 3600}))
    attempts = []

    async def operation(access_token):
        attempts.append(access_token)
        raise AuthError("still rejected")

    async def scenario(db):
        _, account = await db.seed_account()
        store = CredentialStore(db.session_factory, graph.token_client())
        with pytest.raises(AuthError):
            await execute_with_credential_refresh(store, account.id, operation)

    with_db(scenario)
    assert attempts == ["token-old", "token-new"]
    assert _token_calls(graph) == 1


def test_no_reactive_refresh_after_eager_refresh(with_db, graph):
    graph.on("GET", TOKEN_PATH, (200, {"access_token": "token-new", "expires_in": 3600}))
    attempts = []

    async def operation(access_token):
        attempts.append(access_token)
        raise AuthError("rejected")

    async def scenario(db):
        _, account = await db.seed_account(credential=_expired())
        store = CredentialStore(db.session_factory, graph.token_client())
        with pytest.raises(AuthError):
            await execute_with_credential_refresh(store, account.id, operation)

    with_db(scenario)
    assert attempts == ["token-new"]
    assert _token_calls(graph) == 1


def test_reactive_refresh_reuses_token_refreshed_by_another_worker(with_db, graph):
    async def scenario(db):
        _, account = await db.seed_account()
        store = CredentialStore(db.session_factory, graph.token_client())
        await store.persist(
            account.id,
            Credential(
                access_token="token-other",
                refresh_token="refresh-2",
                expiry_date=datetime.now(timezone.utc) + timedelta(days=60),
            ),
        )
        credential = await store.reactive_refresh(account.id, rejected_token="token-old")
        assert credential.access_token == "token-other"

    with_db(scenario)
    assert _token_calls(graph) == 0


@pytest.mark.parametrize(
    "plaintext",
    [
        b'{"accessToken": "t", "expiryDate": "not-a-date"}',
        b"not json at all",
        b'["accessToken", "t"]',
    ],
)
def test_unreadable_stored_credentials(with_db, graph, plaintext):
    async def scenario(db):
        _, account = await db.seed_account()
        async with db.session_factory() as session:
            stored = await session.get(SocialAccount, account.id)
            stored.credentials_encrypted = db.cipher._fernet.encrypt(plaintext).decode()
            await session.commit()

        store = CredentialStore(db.session_factory, graph.token_client())
        with pytest.raises(CredentialsError) as exc:
            await store.get(account.id)
        assert exc.value.code == "CREDENTIALS_UNREADABLE"
        assert exc.value.retryable is False

    with_db(scenario)
