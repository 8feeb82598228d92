from __future__ import annotations

import asyncio
import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from zajel_auth.config import Settings
from zajel_auth.logging import get_logger
from zajel_auth.service.captcha import CaptchaVerifier
from zajel_auth.service.email import EmailService
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
from zajel_auth.service.oauth import GoogleOAuthClient
from zajel_auth.service.revocation import RevocationRegistry
from zajel_auth.service.sessions import SessionCache
from zajel_auth.service.tokens import ACCESS, REFRESH, RESET, TokenError, TokenService
from zajel_auth.service.verification import (
    Channel,
    Purpose,
    VerificationChannelManager,
    mask_phone,
)
from zajel_auth.storage.common import validate_username_format
from zajel_auth.storage.errors import CacheUnavailableError
from zajel_auth.storage.models import Identity

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
OAUTH_STATE_PREFIX = "oauthState"
OAUTH_STATE_TTL_SECONDS = 10 * 60


class IdentityStore(Protocol):
    def create_identity(
        self,
        name: str,
        email: str,
        *,
        username: Optional[str] = None,
        google_id: Optional[str] = None,
        email_verified: bool = False,
        verification_code_hash: Optional[str] = None,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_phone(self, phone_number: str) -> Optional[Identity]: ...

    def get_identity_by_username(self, username: str) -> Optional[Identity]: ...

    def get_identity_by_google_id(self, google_id: str) -> Optional[Identity]: ...

    def email_in_use(self, email: str, exclude_id: Optional[str] = None) -> bool: ...

    def phone_in_use(self, phone_number: str, exclude_id: Optional[str] = None) -> bool: ...

    def username_in_use(self, username: str, exclude_id: Optional[str] = None) -> bool: ...

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]: ...

    def delete_identity(self, identity_id: str) -> bool: ...

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    user_id: str
    access_token: Optional[str] = None


@dataclass
class TokenPair:
    identity: Identity
    access_token: str
    refresh_token: str


class AuthService:
    """Signup, login, token rotation, password reset, phone and Google flows."""

    def __init__(
        self,
        store: IdentityStore,
        cache,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionCache,
        revocation: RevocationRegistry,
        verification: VerificationChannelManager,
        email: EmailService,
        captcha: CaptchaVerifier,
        google: GoogleOAuthClient,
    ) -> None:
        self.store: IdentityStore = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.revocation = revocation
        self.verification = verification
        self.email = email
        self.captcha = captcha
        self.google = google
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_hex(16))
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, datetime] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            pass

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # sessions
    async def _issue_session(self, identity: Identity) -> TokenPair:
        access_token = self.tokens.issue_access_token(identity.id)
        refresh_token = self.tokens.issue_refresh_token(identity.id)
        await self.sessions.set_active_refresh_token(identity.id, refresh_token)
        return TokenPair(identity=identity, access_token=access_token, refresh_token=refresh_token)

    async def signup(
        self,
        name: str,
        email: str,
        password: str,
        captcha_token: Optional[str],
        username: Optional[str] = None,
        *,
        remote_ip: Optional[str] = None,
    ) -> dict:
        """Create an unverified identity and mail its confirmation code.

        Raises:
            CaptchaFailedError: captcha rejected
            ConflictError: email or username already registered
        """
        await self.captcha.verify(captcha_token, remote_ip=remote_ip)
        if self.store.email_in_use(email):
            raise ConflictError("Email is already in use.")
        if username:
            try:
                validate_username_format(username)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if self.store.username_in_use(username):
                raise ConflictError("Username is already taken.")
        code = secrets.token_hex(3)
        code_hash = await asyncio.to_thread(self.verification.email_channel.hash_code, code)
        identity = self.store.create_identity(
            name, email, username=username, verification_code_hash=code_hash
        )
        await asyncio.to_thread(self.save_password, identity.id, password)
        sent = await asyncio.to_thread(
            self.email.send_verification_code, identity.email, identity.name, code
        )
        if not sent:
            # The account stays; the code can be resent
            self.logger.error("signup_confirmation_email_failed", user_id=identity.id)
        self.logger.info("signup_completed", user_id=identity.id)
        return {"message": "Account created. Please check your email to verify."}

    async def verify_email(self, email: str, code: str) -> tuple[dict, TokenPair]:
        identity = self.store.get_identity_by_email(email)
        if not identity:
            raise InvalidCodeError("Invalid verification code.")
        try:
            identity = await self.verification.verify_code(
                identity, Channel.EMAIL, code, purpose=Purpose.EMAIL_CONFIRMATION
            )
        except ValidationError as exc:
            raise InvalidCodeError("Invalid verification code.") from exc
        pair = await self._issue_session(identity)
        self.logger.info("email_verified", user_id=identity.id)
        body = {
            "message": "Email successfully verified. Please add your phone number to complete registration.",
            "accessToken": pair.access_token,
            "requiresPhoneSetup": not identity.phone_verified,
        }
        return body, pair

    async def resend_code(self, email: str) -> dict:
        identity = self.store.get_identity_by_email(email)
        if not identity:
            raise ValidationError("User not found.")
        if identity.email_verified:
            raise ValidationError("Email is already verified.")
        await self.verification.request_code(
            identity, Channel.EMAIL, identity.email, purpose=Purpose.EMAIL_CONFIRMATION
        )
        return {"message": "Verification code resent."}

    async def login(
        self,
        email: str,
        password: str,
        captcha_token: Optional[str],
        *,
        remote_ip: Optional[str] = None,
    ) -> TokenPair:
        """Password login.

        Raises:
            CaptchaFailedError: captcha rejected
            InvalidCredentialsError: unknown email or wrong password, indistinguishably
            NotVerifiedError: the email has not been confirmed
        """
        await self.captcha.verify(captcha_token, remote_ip=remote_ip)
        identity = self.store.get_identity_by_email(email)
        if not identity:
            await asyncio.to_thread(self._burn_dummy_verify, password)
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(self.verify_password, identity.id, password):
            self.logger.info("login_failed", user_id=identity.id)
            raise InvalidCredentialsError()
        if not identity.email_verified:
            raise NotVerifiedError()
        pair = await self._issue_session(identity)
        self.logger.info("login_succeeded", user_id=identity.id, method="password")
        return pair

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        """Rotate the refresh token; the submitted one must be the registered one."""
        if not refresh_token:
            raise ValidationError("Refresh Token is required.")
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=type(exc).__name__)
            raise AuthenticationError("Invalid or expired Refresh Token.") from exc
        user_id = claims["sub"]
        stored = await self.sessions.get_active_refresh_token(user_id)
        if not stored or not hmac.compare_digest(stored, refresh_token):
            self.logger.info("refresh_token_not_current", user_id=user_id)
            raise AuthenticationError("Invalid or expired Refresh Token.")
        identity = self.store.get_identity(user_id)
        if not identity:
            raise AuthenticationError("Invalid or expired Refresh Token.")
        return await self._issue_session(identity)

    async def logout(self, refresh_token: Optional[str], access_token: Optional[str] = None) -> dict:
        if not refresh_token:
            raise ValidationError("No Refresh Token found.")
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except TokenError as exc:
            raise AuthenticationError("Invalid Refresh Token.") from exc
        user_id = claims["sub"]
        await self.sessions.clear_active_refresh_token(user_id)
        if access_token:
            try:
                access_claims = self.tokens.verify(access_token, ACCESS)
            except TokenError:
                access_claims = None
            if access_claims and access_claims["sub"] == user_id:
                await self.revocation.add(access_token, self.tokens.expires_at(access_claims))
        self.logger.info("logout_completed", user_id=user_id)
        return {"message": "Logged out successfully!"}

    async def request_password_reset(
        self,
        email: str,
        captcha_token: Optional[str] = None,
        *,
        remote_ip: Optional[str] = None,
    ) -> dict:
        if captcha_token:
            await self.captcha.verify(captcha_token, remote_ip=remote_ip)
        identity = self.store.get_identity_by_email(email)
        if not identity:
            raise ValidationError("User not found.")
        token = self.tokens.issue_reset_token(identity.id)
        await self.sessions.set_reset_token(identity.id, token)
        reset_link = f"{self.settings.frontend_url.rstrip('/')}/auth/reset-password?token={token}"
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            identity.email,
            identity.name,
            reset_link,
            self.settings.password_reset_ttl_minutes,
        )
        if not sent:
            raise ChannelUnavailableError("Failed to send reset email.")
        self.logger.info("password_reset_requested", user_id=identity.id)
        return {"message": "Reset link sent successfully."}

    async def reset_password(self, token: str, new_password: str) -> dict:
        invalid = ValidationError("The link is invalid or has expired.")
        subject = self.tokens.unverified_subject(token) if token else None
        if not subject:
            raise invalid
        stored = await self.sessions.get_reset_token(subject)
        if not stored or not hmac.compare_digest(stored, token):
            self.logger.warning("password_reset_invalid_token", user_id=subject)
            raise invalid
        try:
            claims = self.tokens.verify(token, RESET)
        except TokenError as exc:
            raise invalid from exc
        if claims["sub"] != subject or not self.store.get_identity(subject):
            raise invalid
        await self.sessions.clear_reset_token(subject)
        await asyncio.to_thread(self.save_password, subject, new_password)
        # Existing sessions end with the old password
        await self.sessions.clear_active_refresh_token(subject)
        self.logger.info("password_reset_completed", user_id=subject)
        return {"message": "Password changed successfully."}

    # phone
    def _require_identity(self, user_id: str) -> Identity:
        identity = self.store.get_identity(user_id)
        if not identity:
            raise NotFoundError("User not found.")
        return identity

    async def send_phone_verification(self, user_id: str, phone_number: Optional[str]) -> dict:
        identity = self._require_identity(user_id)
        identity = await self.verification.request_code(
            identity, Channel.PHONE, phone_number, purpose=Purpose.PHONE
        )
        masked = mask_phone(identity.pending_phone)
        return {"message": f"Verification code sent to {masked}", "phoneNumber": masked}

    async def verify_phone(self, user_id: str, code: str) -> dict:
        identity = self._require_identity(user_id)
        identity = await self.verification.verify_code(
            identity, Channel.PHONE, code, purpose=Purpose.PHONE
        )
        return {
            "message": "Phone number verified successfully.",
            "phoneNumber": mask_phone(identity.phone_number),
        }

    def _phone_login_identity(self, phone_number: Optional[str]) -> Identity:
        sms = self.verification.sms_channel
        if not sms.is_configured:
            raise ChannelUnavailableError(
                "Phone login service is currently unavailable. Please use email login instead."
            )
        phone = sms.validate(phone_number)
        identity = self.store.get_identity_by_phone(phone)
        if not identity:
            raise NotFoundError("No account found with this phone number.")
        if not identity.phone_verified:
            raise ValidationError("Phone number is not verified.")
        return identity

    async def login_with_phone(self, phone_number: Optional[str]) -> dict:
        identity = self._phone_login_identity(phone_number)
        await self.verification.request_code(
            identity, Channel.PHONE, identity.phone_number, purpose=Purpose.PHONE_LOGIN
        )
        return {
            "message": "Verification code sent successfully.",
            "phoneNumber": mask_phone(identity.phone_number),
        }

    async def verify_phone_login(self, phone_number: Optional[str], code: str) -> TokenPair:
        identity = self._phone_login_identity(phone_number)
        identity = await self.verification.verify_code(
            identity, Channel.PHONE, code, purpose=Purpose.PHONE_LOGIN
        )
        pair = await self._issue_session(identity)
        self.logger.info("login_succeeded", user_id=identity.id, method="phone")
        return pair

    # google
    async def _remember_oauth_state(self, state: str) -> None:
        try:
            await self.cache.set(f"{OAUTH_STATE_PREFIX}:{state}", "1", OAUTH_STATE_TTL_SECONDS)
            return
        except CacheUnavailableError as exc:
            self.logger.warning("oauth_state_cache_unavailable", operation="set", error=str(exc))
        with self._state_lock:
            now = self._now()
            for stale in [s for s, exp in self._oauth_states.items() if exp <= now]:
                self._oauth_states.pop(stale, None)
            self._oauth_states[state] = now + timedelta(seconds=OAUTH_STATE_TTL_SECONDS)

    async def _consume_oauth_state(self, state: Optional[str]) -> bool:
        if not state:
            return False
        try:
            if await self.cache.pop(f"{OAUTH_STATE_PREFIX}:{state}"):
                return True
        except CacheUnavailableError as exc:
            self.logger.warning("oauth_state_cache_unavailable", operation="pop", error=str(exc))
        with self._state_lock:
            expires_at = self._oauth_states.pop(state, None)
        return bool(expires_at and expires_at > self._now())

    async def google_authorization_url(self) -> str:
        if not self.google.is_configured:
            self.logger.warning("oauth_not_configured", provider="google")
            raise ChannelUnavailableError("Google login is not configured.")
        state = secrets.token_urlsafe(24)
        await self._remember_oauth_state(state)
        return self.google.authorization_url(state)

    async def complete_google_login(self, code: Optional[str], state: Optional[str]) -> TokenPair:
        """Finish the Google callback and start a session.

        Raises:
            AuthenticationError: state unknown, expired or reused, or the code exchange failed
        """
        if not await self._consume_oauth_state(state):
            self.logger.warning("oauth_state_invalid", provider="google")
            raise AuthenticationError("authentication_failed")
        if not code:
            raise AuthenticationError("authentication_failed")
        profile = await self.google.exchange_code(code)
        if not profile:
            raise AuthenticationError("authentication_failed")

        identity = self.store.get_identity_by_google_id(profile["provider_uid"])
        if not identity:
            existing = self.store.get_identity_by_email(profile["email"])
            if existing:
                fields = {"google_id": profile["provider_uid"], "email_verified": True}
                if not existing.profile_picture and profile.get("picture"):
                    fields["profile_picture"] = profile["picture"]
                identity = self.store.update_identity(existing.id, **fields) or existing
                self.logger.info("oauth_identity_linked", user_id=identity.id, provider="google")
            else:
                identity = self.store.create_identity(
                    profile["name"],
                    profile["email"],
                    google_id=profile["provider_uid"],
                    email_verified=True,
                )
                if profile.get("picture"):
                    identity = (
                        self.store.update_identity(identity.id, profile_picture=profile["picture"])
                        or identity
                    )
                # Unusable marker so password login cannot succeed for this identity
                self.store.save_password(identity.id, secrets.token_urlsafe(32), "oauth")
                self.logger.info("oauth_identity_created", user_id=identity.id, provider="google")
        pair = await self._issue_session(identity)
        self.logger.info("login_succeeded", user_id=identity.id, method="google")
        return pair

    # request authentication
    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(
        self,
        authorization: Optional[str],
        cookie_access_token: Optional[str] = None,
    ) -> AuthContext:
        """Resolve the caller from a bearer header or the ``accessToken`` cookie.

        Raises:
            AuthenticationError: missing, revoked, invalid or expired token, or unknown user
        """
        token = self.extract_bearer(authorization) or cookie_access_token
        if not token:
            raise AuthenticationError("Authentication required.")
        if await self.revocation.contains(token):
            self.logger.info("access_token_revoked")
            raise AuthenticationError("Token has been revoked.")
        try:
            claims = self.tokens.verify(token, ACCESS)
        except TokenError as exc:
            raise AuthenticationError("Invalid or expired token.") from exc
        user_id = claims["sub"]
        if not self.store.get_identity(user_id):
            raise AuthenticationError("User not found.")
        return AuthContext(user_id=user_id, access_token=token)
