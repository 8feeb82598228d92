"""AuthService flows exercised directly against the in-memory runtime."""

import inspect
import threading
from urllib.parse import parse_qs, urlparse

import pytest

from zajel_auth.api import routes
from zajel_auth.service.errors import (
    AuthenticationError,
    ChannelUnavailableError,
    ConflictError,
    InvalidCodeError,
    InvalidCredentialsError,
    NotFoundError,
    NotVerifiedError,
    ValidationError,
)
from zajel_auth.storage.errors import CacheUnavailableError

PASSWORD = "s3cret-pass"
PHONE = "+966501234567"


class DownCache:
    async def get(self, key):
        raise CacheUnavailableError("down", operation="get")

    async def set(self, key, value, ttl_seconds):
        raise CacheUnavailableError("down", operation="set")

    async def delete(self, key):
        raise CacheUnavailableError("down", operation="delete")

    async def exists(self, key):
        raise CacheUnavailableError("down", operation="exists")

    async def pop(self, key):
        raise CacheUnavailableError("down", operation="pop")


async def _verified_user(runtime, mailbox, email="layla@example.com"):
    await runtime.auth.signup("Layla Hassan", email, PASSWORD, None)
    code = mailbox.last("verification", email)["code"]
    _, pair = await runtime.auth.verify_email(email, code)
    return pair


@pytest.mark.asyncio
async def test_signup_creates_unverified_identity(runtime, mailbox):
    result = await runtime.auth.signup("Layla Hassan", "Layla@Example.com", PASSWORD, None)
    assert result == {"message": "Account created. Please check your email to verify."}
    identity = runtime.store.get_identity_by_email("layla@example.com")
    assert identity is not None
    assert identity.email_verified is False
    assert identity.username.startswith("LaylaHassan.")
    assert mailbox.last("verification", "layla@example.com")["code"]
    record = runtime.store.get_password_record(identity.id)
    assert record[1] == "argon2id"
    assert PASSWORD not in record[0]


@pytest.mark.asyncio
async def test_signup_rejects_duplicates(runtime, mailbox):
    await runtime.auth.signup("Layla", "layla@example.com", PASSWORD, None, "layla.h")
    with pytest.raises(ConflictError):
        await runtime.auth.signup("Other", "LAYLA@example.com", PASSWORD, None)
    with pytest.raises(ConflictError):
        await runtime.auth.signup("Other", "other@example.com", PASSWORD, None, "layla.h")


@pytest.mark.asyncio
async def test_login_requires_verified_email(runtime, mailbox):
    await runtime.auth.signup("Layla", "layla@example.com", PASSWORD, None)
    with pytest.raises(NotVerifiedError):
        await runtime.auth.login("layla@example.com", PASSWORD, None)


@pytest.mark.asyncio
async def test_verify_email_issues_session(runtime, mailbox):
    await runtime.auth.signup("Layla", "layla@example.com", PASSWORD, None)
    with pytest.raises(InvalidCodeError):
        await runtime.auth.verify_email("layla@example.com", "zzzzzz")
    code = mailbox.last("verification", "layla@example.com")["code"]
    body, pair = await runtime.auth.verify_email("layla@example.com", code)
    assert body["accessToken"] == pair.access_token
    assert body["requiresPhoneSetup"] is True
    assert pair.identity.email_verified is True
    stored = await runtime.sessions.get_active_refresh_token(pair.identity.id)
    assert stored == pair.refresh_token
    # Codes are single use
    with pytest.raises(InvalidCodeError):
        await runtime.auth.verify_email("layla@example.com", code)


@pytest.mark.asyncio
async def test_login_failures_are_indistinguishable(runtime, mailbox):
    await _verified_user(runtime, mailbox)
    with pytest.raises(InvalidCredentialsError) as wrong_password:
        await runtime.auth.login("layla@example.com", "not-the-password", None)
    with pytest.raises(InvalidCredentialsError) as unknown_email:
        await runtime.auth.login("nobody@example.com", PASSWORD, None)
    assert wrong_password.value.message == unknown_email.value.message
    assert wrong_password.value.status_code == unknown_email.value.status_code == 400


@pytest.mark.asyncio
async def test_refresh_rotates_and_rejects_previous(runtime, mailbox):
    first = await _verified_user(runtime, mailbox)
    second = await runtime.auth.refresh(first.refresh_token)
    assert second.refresh_token != first.refresh_token
    with pytest.raises(AuthenticationError):
        await runtime.auth.refresh(first.refresh_token)
    third = await runtime.auth.refresh(second.refresh_token)
    assert third.identity.id == first.identity.id


@pytest.mark.asyncio
async def test_new_login_replaces_refresh_token(runtime, mailbox):
    first = await _verified_user(runtime, mailbox)
    await runtime.auth.login("layla@example.com", PASSWORD, None)
    with pytest.raises(AuthenticationError):
        await runtime.auth.refresh(first.refresh_token)


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(runtime, mailbox):
    pair = await _verified_user(runtime, mailbox)
    with pytest.raises(AuthenticationError):
        await runtime.auth.refresh(pair.access_token)
    with pytest.raises(ValidationError):
        await runtime.auth.refresh(None)


@pytest.mark.asyncio
async def test_logout_clears_refresh_and_revokes_access(runtime, mailbox):
    pair = await _verified_user(runtime, mailbox)
    ctx = await runtime.auth.authenticate(f"Bearer {pair.access_token}")
    assert ctx.user_id == pair.identity.id

    await runtime.auth.logout(pair.refresh_token, pair.access_token)
    assert await runtime.sessions.get_active_refresh_token(pair.identity.id) is None
    with pytest.raises(AuthenticationError) as excinfo:
        await runtime.auth.authenticate(f"Bearer {pair.access_token}")
    assert excinfo.value.message == "Token has been revoked."
    with pytest.raises(AuthenticationError):
        await runtime.auth.refresh(pair.refresh_token)
    again = await runtime.auth.logout(pair.refresh_token)
    assert again == {"message": "Logged out successfully!"}


@pytest.mark.asyncio
async def test_authenticate_rejects_other_token_types(runtime, mailbox):
    pair = await _verified_user(runtime, mailbox)
    with pytest.raises(AuthenticationError):
        await runtime.auth.authenticate(f"Bearer {pair.refresh_token}")
    reset = runtime.tokens.issue_reset_token(pair.identity.id)
    with pytest.raises(AuthenticationError):
        await runtime.auth.authenticate(None, reset)
    with pytest.raises(AuthenticationError):
        await runtime.auth.authenticate(None, None)


@pytest.mark.asyncio
async def test_password_reset_flow(runtime, mailbox):
    pair = await _verified_user(runtime, mailbox)
    await runtime.auth.request_password_reset("layla@example.com")
    url = mailbox.last("password_reset", "layla@example.com")["url"]
    assert url.startswith("https://shop.example.com/auth/reset-password?token=")
    token = parse_qs(urlparse(url).query)["token"][0]

    result = await runtime.auth.reset_password(token, "brand-new-pass")
    assert result == {"message": "Password changed successfully."}
    # Single use
    with pytest.raises(ValidationError):
        await runtime.auth.reset_password(token, "another-pass")
    # Sessions from before the reset are gone
    with pytest.raises(AuthenticationError):
        await runtime.auth.refresh(pair.refresh_token)
    with pytest.raises(InvalidCredentialsError):
        await runtime.auth.login("layla@example.com", PASSWORD, None)
    assert await runtime.auth.login("layla@example.com", "brand-new-pass", None)


@pytest.mark.asyncio
async def test_superseded_reset_token_rejected(runtime, mailbox):
    await _verified_user(runtime, mailbox)
    await runtime.auth.request_password_reset("layla@example.com")
    first = mailbox.last("password_reset")["url"].split("token=")[1]
    await runtime.auth.request_password_reset("layla@example.com")
    with pytest.raises(ValidationError):
        await runtime.auth.reset_password(first, "brand-new-pass")


@pytest.mark.asyncio
async def test_reset_rejects_refresh_token(runtime, mailbox):
    pair = await _verified_user(runtime, mailbox)
    with pytest.raises(ValidationError):
        await runtime.auth.reset_password(pair.refresh_token, "brand-new-pass")


@pytest.mark.asyncio
async def test_reset_for_unknown_email(runtime, mailbox):
    with pytest.raises(ValidationError):
        await runtime.auth.request_password_reset("ghost@example.com")


@pytest.mark.asyncio
async def test_sessions_survive_cache_outage(runtime, mailbox):
    await runtime.auth.signup("Layla", "layla@example.com", PASSWORD, None)
    code = mailbox.last("verification")["code"]
    runtime.sessions.refresh.primary = DownCache()
    runtime.sessions.reset.primary = DownCache()
    runtime.revocation.cache = DownCache()

    _, pair = await runtime.auth.verify_email("layla@example.com", code)
    stored = runtime.store.get_identity(pair.identity.id)
    assert stored.refresh_token == pair.refresh_token

    rotated = await runtime.auth.refresh(pair.refresh_token)
    with pytest.raises(AuthenticationError):
        await runtime.auth.refresh(pair.refresh_token)

    await runtime.auth.logout(rotated.refresh_token, rotated.access_token)
    assert runtime.store.get_identity(pair.identity.id).refresh_token is None
    with pytest.raises(AuthenticationError):
        await runtime.auth.authenticate(f"Bearer {rotated.access_token}")


@pytest.mark.asyncio
async def test_resend_code(runtime, mailbox):
    await runtime.auth.signup("Layla", "layla@example.com", PASSWORD, None)
    result = await runtime.auth.resend_code("layla@example.com")
    assert result == {"message": "Verification code resent."}
    code = mailbox.last("verification")["code"]
    _, pair = await runtime.auth.verify_email("layla@example.com", code)
    with pytest.raises(ValidationError):
        await runtime.auth.resend_code("layla@example.com")
    with pytest.raises(ValidationError):
        await runtime.auth.resend_code("ghost@example.com")


@pytest.mark.asyncio
async def test_phone_verification_and_login(runtime, mailbox, sms):
    pair = await _verified_user(runtime, mailbox)
    sent = await runtime.auth.send_phone_verification(pair.identity.id, PHONE)
    assert sent["phoneNumber"] == "+966****4567"
    assert sms.sent == [PHONE]

    with pytest.raises(InvalidCodeError):
        await runtime.auth.verify_phone(pair.identity.id, "000000")
    verified = await runtime.auth.verify_phone(pair.identity.id, sms.APPROVED_CODE)
    assert verified["message"] == "Phone number verified successfully."

    # Verification reset the backoff, so the login code goes out immediately
    login = await runtime.auth.login_with_phone(PHONE)
    assert login["message"] == "Verification code sent successfully."
    phone_pair = await runtime.auth.verify_phone_login(PHONE, sms.APPROVED_CODE)
    assert phone_pair.identity.id == pair.identity.id


@pytest.mark.asyncio
async def test_phone_login_errors(runtime, mailbox, sms):
    with pytest.raises(NotFoundError):
        await runtime.auth.login_with_phone(PHONE)
    with pytest.raises(ValidationError):
        await runtime.auth.login_with_phone("12345")
    sms.is_configured = False
    with pytest.raises(ChannelUnavailableError):
        await runtime.auth.login_with_phone(PHONE)


@pytest.mark.asyncio
async def test_google_login_unconfigured(runtime):
    with pytest.raises(ChannelUnavailableError):
        await runtime.auth.google_authorization_url()


def _configure_google(runtime, profile):
    runtime.google.client_id = "client-id"
    runtime.google.client_secret = "client-secret"
    runtime.google.redirect_uri = "https://api.example.com/auth/google/callback"

    async def exchange_code(code):
        return profile if code == "good-code" else None

    runtime.google.exchange_code = exchange_code


@pytest.mark.asyncio
async def test_google_login_creates_and_links(runtime, mailbox):
    _configure_google(
        runtime,
        {"provider_uid": "g-1", "email": "noor@example.com", "name": "Noor", "picture": "p.png"},
    )
    url = await runtime.auth.google_authorization_url()
    state = parse_qs(urlparse(url).query)["state"][0]
    pair = await runtime.auth.complete_google_login("good-code", state)
    assert pair.identity.google_id == "g-1"
    assert pair.identity.email_verified is True
    assert pair.identity.profile_picture == "p.png"
    # Password login can never succeed for a Google-created identity
    assert runtime.store.get_password_record(pair.identity.id)[1] == "oauth"

    # State is single use
    with pytest.raises(AuthenticationError):
        await runtime.auth.complete_google_login("good-code", state)

    url = await runtime.auth.google_authorization_url()
    state = parse_qs(urlparse(url).query)["state"][0]
    again = await runtime.auth.complete_google_login("good-code", state)
    assert again.identity.id == pair.identity.id


@pytest.mark.asyncio
async def test_google_login_links_existing_email(runtime, mailbox):
    await runtime.auth.signup("Noor", "noor@example.com", PASSWORD, None)
    _configure_google(
        runtime, {"provider_uid": "g-2", "email": "noor@example.com", "name": "Noor", "picture": ""}
    )
    url = await runtime.auth.google_authorization_url()
    state = parse_qs(urlparse(url).query)["state"][0]
    pair = await runtime.auth.complete_google_login("good-code", state)
    assert pair.identity.google_id == "g-2"
    assert pair.identity.email_verified is True
    assert await runtime.auth.login("noor@example.com", PASSWORD, None)


@pytest.mark.asyncio
async def test_google_login_rejects_unknown_state_and_bad_code(runtime):
    _configure_google(
        runtime, {"provider_uid": "g-3", "email": "x@example.com", "name": "X", "picture": ""}
    )
    with pytest.raises(AuthenticationError):
        await runtime.auth.complete_google_login("good-code", "never-issued")
    url = await runtime.auth.google_authorization_url()
    state = parse_qs(urlparse(url).query)["state"][0]
    with pytest.raises(AuthenticationError):
        await runtime.auth.complete_google_login("bad-code", state)


@pytest.mark.asyncio
async def test_oauth_state_survives_cache_outage(runtime):
    _configure_google(
        runtime, {"provider_uid": "g-4", "email": "y@example.com", "name": "Y", "picture": ""}
    )
    runtime.auth.cache = DownCache()
    url = await runtime.auth.google_authorization_url()
    state = parse_qs(urlparse(url).query)["state"][0]
    pair = await runtime.auth.complete_google_login("good-code", state)
    assert pair.identity.email == "y@example.com"


@pytest.mark.asyncio
async def test_password_checks_run_off_the_event_loop(runtime, mailbox, monkeypatch):
    pair = await _verified_user(runtime, mailbox)
    loop_thread = threading.get_ident()
    seen = []
    original = runtime.auth.verify_password

    def recording(user_id, password):
        seen.append(threading.get_ident())
        return original(user_id, password)

    monkeypatch.setattr(runtime.auth, "verify_password", recording)
    await runtime.auth.login("layla@example.com", PASSWORD, None)
    with pytest.raises(ValidationError):
        await runtime.accounts.delete_account(pair.identity.id, "wrong-pass", "DELETE")
    assert len(seen) == 2
    assert loop_thread not in seen
    assert runtime.store.get_identity(pair.identity.id) is not None


def test_update_password_route_runs_in_threadpool():
    assert not inspect.iscoroutinefunction(routes.update_password)
