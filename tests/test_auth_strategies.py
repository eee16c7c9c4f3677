from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from storegate.config import get_settings
from storegate.service.auth import (
    CredentialsStrategy,
    OAuthStrategy,
    build_strategies,
    register_user,
)
from storegate.service.errors import ConflictError
from storegate.service.passwords import CredentialHasher
from storegate.storage.errors import StoreUnavailable
from storegate.storage.memory import MemoryStore
from storegate.storage.models import Account, Role

PASSWORD = "UserPassword123!"


@pytest.fixture
def hasher():
    return CredentialHasher()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def google(store):
    return OAuthStrategy(
        "google",
        store,
        get_settings(),
        client_id="client-id",
        client_secret="client-secret",
    )


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def _google_payload(sub="g-123", email="shopper@example.com", name="Shopper"):
    return {"provider_account_id": sub, "email": email, "name": name, "tokens": {}}


def _provider_returns(google, payload):
    google._exchange_code = AsyncMock(return_value=payload)


async def test_credentials_authorize_success(store, hasher):
    user = register_user(store, hasher, name="User", email="user@example.com", password=PASSWORD)
    identity = await CredentialsStrategy(store, hasher).authorize("user@example.com", PASSWORD)
    assert identity is not None
    assert identity.id == user.id
    assert identity.role == Role.USER


async def test_credentials_email_lookup_ignores_case(store, hasher):
    register_user(store, hasher, name="User", email="User@Example.com", password=PASSWORD)
    identity = await CredentialsStrategy(store, hasher).authorize("user@example.com", PASSWORD)
    assert identity is not None


async def test_credentials_failures_are_indistinguishable(store, hasher):
    register_user(store, hasher, name="User", email="user@example.com", password=PASSWORD)
    store.create_user("oauth-only@example.com", "OAuth Only")
    strategy = CredentialsStrategy(store, hasher)
    outcomes = [
        await strategy.authorize("user@example.com", "WrongPassword!"),
        await strategy.authorize("nobody@example.com", PASSWORD),
        await strategy.authorize("oauth-only@example.com", PASSWORD),
        await strategy.authorize("not-an-email", PASSWORD),
        await strategy.authorize("user@example.com", "short"),
        await strategy.authorize(None, None),
    ]
    assert outcomes == [None] * len(outcomes)


async def test_credentials_store_outage_propagates(hasher):
    class DownStore(MemoryStore):
        def get_user_by_email(self, email):
            raise StoreUnavailable()

    with pytest.raises(StoreUnavailable):
        await CredentialsStrategy(DownStore(), hasher).authorize("user@example.com", PASSWORD)


def test_register_user_rejects_duplicate_email(store, hasher):
    register_user(store, hasher, name="User", email="user@example.com", password=PASSWORD)
    with pytest.raises(ConflictError):
        register_user(store, hasher, name="Again", email="USER@example.com", password=PASSWORD)


def test_register_user_stores_a_digest(store, hasher):
    user = register_user(store, hasher, name="User", email="user@example.com", password=PASSWORD)
    assert user.password != PASSWORD
    assert hasher.verify(PASSWORD, user.password)


def test_build_strategies_only_enables_google_with_both_secrets(store, hasher):
    settings = get_settings()
    assert set(build_strategies(settings, store, hasher)) == {"credentials"}

    half = settings.model_copy(update={"google_client_id": "id-only"})
    assert set(build_strategies(half, store, hasher)) == {"credentials"}

    full = settings.model_copy(
        update={"google_client_id": "id", "google_client_secret": "secret"}
    )
    assert set(build_strategies(full, store, hasher)) == {"credentials", "google"}


def test_oauth_start_builds_authorization_url(google):
    url = google.start("/admin")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert parsed.netloc == "accounts.google.com"
    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == ["http://localhost:3000/api/auth/callback/google"]
    assert query["response_type"] == ["code"]
    assert query["state"]


async def test_oauth_first_sign_in_creates_user_and_account(google, store):
    state = _state_from(google.start("/admin"))
    _provider_returns(google, _google_payload())
    result = await google.complete("code-1", state)
    assert result is not None
    assert result.is_new_user
    assert result.callback_url == "/admin"
    assert result.identity.role == Role.USER
    user = store.get_user_by_account("google", "g-123")
    assert user.email == "shopper@example.com"
    assert user.password is None


async def test_oauth_repeat_sign_in_reuses_account(google, store):
    state = _state_from(google.start("/"))
    _provider_returns(google, _google_payload())
    first = await google.complete("code-1", state)

    state = _state_from(google.start("/"))
    _provider_returns(google, _google_payload())
    second = await google.complete("code-2", state)
    assert not second.is_new_user
    assert second.identity.id == first.identity.id
    assert len(store.list_accounts(first.identity.id)) == 1


async def test_oauth_does_not_take_over_password_account(google, store, hasher):
    register_user(store, hasher, name="User", email="shopper@example.com", password=PASSWORD)
    state = _state_from(google.start("/"))
    _provider_returns(google, _google_payload())
    assert await google.complete("code-1", state) is None
    assert store.get_user_by_account("google", "g-123") is None


async def test_oauth_links_existing_passwordless_user(google, store):
    existing = store.create_user("shopper@example.com", "Shopper")
    state = _state_from(google.start("/"))
    _provider_returns(google, _google_payload())
    result = await google.complete("code-1", state)
    assert result.identity.id == existing.id
    assert not result.is_new_user


async def test_oauth_state_is_single_use(google):
    state = _state_from(google.start("/"))
    _provider_returns(google, _google_payload())
    assert await google.complete("code-1", state) is not None
    _provider_returns(google, _google_payload())
    assert await google.complete("code-2", state) is None


async def test_oauth_unknown_or_expired_state_is_rejected(google):
    _provider_returns(google, _google_payload())
    assert await google.complete("code-1", "forged") is None

    state = _state_from(google.start("/"))
    _, callback = google._oauth_states[state]
    google._oauth_states[state] = (datetime.now(timezone.utc) - timedelta(seconds=1), callback)
    assert await google.complete("code-1", state) is None


async def test_oauth_incomplete_profile_is_rejected(google):
    state = _state_from(google.start("/"))
    _provider_returns(google, _google_payload(email=None))
    assert await google.complete("code-1", state) is None


async def test_oauth_race_on_link_resolves_to_linked_user(google, store):
    winner = store.create_user("first@example.com", "First")
    store.link_account(Account(user_id=winner.id, provider="google", provider_account_id="g-race"))

    calls = {"n": 0}
    original = store.get_user_by_account

    def first_lookup_misses(provider, provider_account_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return original(provider, provider_account_id)

    store.get_user_by_account = first_lookup_misses
    state = _state_from(google.start("/"))
    _provider_returns(google, _google_payload(sub="g-race", email="late@example.com"))
    result = await google.complete("code-1", state)
    assert result is not None
    assert result.identity.id == winner.id


@pytest.fixture
def google_endpoints(monkeypatch):
    """Route the strategy's HTTP calls to an in-process handler."""
    seen = []
    responses = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = responses[request.url.host]
        return httpx.Response(status, json=body)

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return responses, seen


async def test_exchange_code_reads_tokens_and_profile(google, google_endpoints):
    responses, seen = google_endpoints
    responses["oauth2.googleapis.com"] = (
        200,
        {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600, "token_type": "Bearer"},
    )
    responses["www.googleapis.com"] = (
        200,
        {"id": "g-9", "email": "shopper@example.com", "name": "Shopper"},
    )
    identity = await google._exchange_code("auth-code")
    assert identity["provider_account_id"] == "g-9"
    assert identity["email"] == "shopper@example.com"
    assert identity["tokens"]["access_token"] == "at-1"
    assert identity["tokens"]["refresh_token"] == "rt-1"

    token_request, userinfo_request = seen
    form = parse_qs(token_request.content.decode())
    assert form["code"] == ["auth-code"]
    assert form["grant_type"] == ["authorization_code"]
    assert form["redirect_uri"] == ["http://localhost:3000/api/auth/callback/google"]
    assert userinfo_request.headers["Authorization"] == "Bearer at-1"


async def test_exchange_code_rejected_by_provider(google, google_endpoints):
    responses, seen = google_endpoints
    responses["oauth2.googleapis.com"] = (400, {"error": "invalid_grant"})
    assert await google._exchange_code("stale-code") is None
    assert len(seen) == 1


async def test_exchange_code_without_access_token(google, google_endpoints):
    responses, _ = google_endpoints
    responses["oauth2.googleapis.com"] = (200, {"token_type": "Bearer"})
    assert await google._exchange_code("auth-code") is None


def test_cleanup_expired_states(google):
    state = _state_from(google.start("/"))
    _, callback = google._oauth_states[state]
    google._oauth_states[state] = (datetime.now(timezone.utc) - timedelta(seconds=1), callback)
    assert google.cleanup_expired_states() == 1
