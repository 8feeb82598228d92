"""Rate-limited code delivery and checking for the email and SMS channels.

Each identity carries one attempt counter and one last-attempt timestamp per
channel. A new code may only be requested once the delay selected by the
counter has elapsed; the counter returns to zero on a successful verify.
"""

from __future__ import annotations

import asyncio
import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from zajel_auth.logging import get_logger
from zajel_auth.service.errors import (
    ChannelUnavailableError,
    ConflictError,
    InvalidCodeError,
    RateLimitedError,
    ValidationError,
)
from zajel_auth.service.sms import SmsProviderError
from zajel_auth.storage.common import normalize_email
from zajel_auth.storage.models import Identity, utcnow

logger = get_logger(__name__)

PHONE_BACKOFF_SCHEDULE: tuple[int, ...] = (0, 60, 120, 300, 900)
EMAIL_BACKOFF_SCHEDULE: tuple[int, ...] = (0, 60, 60, 900, 3600)

_PHONE_MASK = re.compile(r"(\+\d{1,3})\d+(\d{4})")
_EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Channel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class Purpose(str, Enum):
    EMAIL_CONFIRMATION = "email_confirmation"
    EMAIL_CHANGE = "email_change"
    PHONE = "phone"
    PHONE_LOGIN = "phone_login"


_PURPOSE_CHANNEL = {
    Purpose.EMAIL_CONFIRMATION: Channel.EMAIL,
    Purpose.EMAIL_CHANGE: Channel.EMAIL,
    Purpose.PHONE: Channel.PHONE,
    Purpose.PHONE_LOGIN: Channel.PHONE,
}


def mask_phone(phone_number: Optional[str]) -> str:
    if not phone_number:
        return ""
    return _PHONE_MASK.sub(r"\1****\2", phone_number)


def compute_wait_seconds(
    attempts: int,
    last_attempt_at: Optional[datetime],
    schedule: Sequence[int],
    now: datetime,
) -> int:
    """Seconds left before another code may be sent; 0 when allowed."""
    if last_attempt_at is None or not schedule:
        return 0
    delay = schedule[min(max(attempts, 0), len(schedule) - 1)]
    elapsed = (now - last_attempt_at).total_seconds()
    if elapsed >= delay:
        return 0
    return max(1, math.ceil(delay - elapsed))


def generate_numeric_code(digits: int = 6) -> str:
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


@dataclass(frozen=True)
class _ChannelState:
    attempts_field: str
    last_attempt_field: str
    schedule: tuple[int, ...]


_STATE = {
    Channel.EMAIL: _ChannelState("email_attempts", "email_last_attempt_at", EMAIL_BACKOFF_SCHEDULE),
    Channel.PHONE: _ChannelState("phone_attempts", "phone_last_attempt_at", PHONE_BACKOFF_SCHEDULE),
}


class EmailChannel:
    """Locally generated codes, stored as argon2 hashes and mailed out."""

    channel = Channel.EMAIL

    def __init__(self, email_service, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.email = email_service
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @property
    def is_configured(self) -> bool:
        # Unconfigured SMTP logs messages instead of sending
        return True

    def validate(self, destination: Optional[str]) -> str:
        normalized = normalize_email(destination or "")
        if not normalized or len(normalized) > 254 or not _EMAIL_SHAPE.match(normalized):
            raise ValidationError("Invalid new email.")
        return normalized

    def hash_code(self, code: str) -> str:
        return self._hasher.hash(code)

    def code_matches(self, code_hash: Optional[str], code: Optional[str]) -> bool:
        if not code_hash or not code:
            return False
        try:
            return self._hasher.verify(code_hash, code.strip())
        except (InvalidHash, VerifyMismatchError):
            return False

    async def dispatch(self, identity: Identity, destination: str, purpose: Purpose) -> str:
        """Mail a fresh code and return its hash."""
        code = generate_numeric_code()
        if purpose == Purpose.EMAIL_CHANGE:
            sent = await asyncio.to_thread(self.email.send_email_change_code, destination, code)
        else:
            sent = await asyncio.to_thread(
                self.email.send_verification_code, destination, identity.name, code
            )
        if not sent:
            raise ChannelUnavailableError("Failed to send verification code.")
        return await asyncio.to_thread(self.hash_code, code)


class SmsChannel:
    """OTP delivery and checking delegated to the SMS provider."""

    channel = Channel.PHONE

    def __init__(self, sms_client, phone_pattern: str) -> None:
        self.sms = sms_client
        self._pattern = re.compile(phone_pattern)

    @property
    def is_configured(self) -> bool:
        return self.sms.is_configured

    def validate(self, destination: Optional[str]) -> str:
        phone = (destination or "").strip()
        if not self._pattern.match(phone):
            raise ValidationError(
                "Phone number must be a valid Saudi number (e.g., +966501234567)"
            )
        return phone

    async def dispatch(self, identity: Identity, destination: str, purpose: Purpose) -> None:
        try:
            await self.sms.send_code(destination)
        except SmsProviderError as exc:
            raise ChannelUnavailableError("Failed to send verification code.") from exc

    async def check(self, destination: str, code: Optional[str]) -> bool:
        if not code:
            return False
        try:
            return await self.sms.check_code(destination, code.strip())
        except SmsProviderError as exc:
            raise ChannelUnavailableError(
                "Phone verification service is currently unavailable."
            ) from exc


class VerificationChannelManager:
    """Backoff, dispatch and commit of verification codes for both channels."""

    def __init__(
        self,
        store,
        *,
        email_channel: EmailChannel,
        sms_channel: SmsChannel,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email_channel = email_channel
        self.sms_channel = sms_channel
        self._clock = clock or utcnow

    def _sender(self, channel: Channel):
        return self.email_channel if channel == Channel.EMAIL else self.sms_channel

    def wait_seconds(self, identity: Identity, channel: Channel) -> int:
        state = _STATE[channel]
        return compute_wait_seconds(
            getattr(identity, state.attempts_field),
            getattr(identity, state.last_attempt_field),
            state.schedule,
            self._clock(),
        )

    def _check_destination_owner(
        self, identity: Identity, destination: str, purpose: Purpose
    ) -> None:
        if purpose == Purpose.EMAIL_CHANGE:
            if destination == identity.email:
                raise ValidationError("Invalid new email.")
            if self.store.email_in_use(destination, exclude_id=identity.id):
                raise ConflictError("Email is already in use.")
        elif purpose == Purpose.PHONE:
            if self.store.phone_in_use(destination, exclude_id=identity.id):
                raise ConflictError("Phone number is already associated with another account.")

    async def request_code(
        self,
        identity: Identity,
        channel: Channel,
        destination: Optional[str],
        *,
        purpose: Purpose,
    ) -> Identity:
        """Send a code to ``destination`` for ``purpose``.

        Raises:
            ChannelUnavailableError: channel not configured or the send failed
            ValidationError: destination is malformed
            ConflictError: destination belongs to another identity
            RateLimitedError: the backoff window has not elapsed
        """
        if _PURPOSE_CHANNEL[purpose] != channel:
            raise ValueError(f"purpose {purpose.value} does not use channel {channel.value}")
        sender = self._sender(channel)
        if not sender.is_configured:
            logger.warning("verification_channel_unconfigured", channel=channel.value)
            raise ChannelUnavailableError(
                "Phone verification service is currently unavailable. Please contact support."
            )
        target = sender.validate(destination)
        self._check_destination_owner(identity, target, purpose)

        remaining = self.wait_seconds(identity, channel)
        if remaining:
            logger.info(
                "verification_rate_limited",
                channel=channel.value,
                purpose=purpose.value,
                user_id=identity.id,
                remaining_seconds=remaining,
            )
            raise RateLimitedError(remaining)

        code_hash = await sender.dispatch(identity, target, purpose)

        state = _STATE[channel]
        attempts = min(getattr(identity, state.attempts_field) + 1, len(state.schedule))
        fields = {
            state.attempts_field: attempts,
            state.last_attempt_field: self._clock(),
        }
        if purpose == Purpose.EMAIL_CONFIRMATION:
            fields["verification_code_hash"] = code_hash
        elif purpose == Purpose.EMAIL_CHANGE:
            fields["pending_email"] = target
            fields["pending_email_code_hash"] = code_hash
        elif purpose == Purpose.PHONE:
            fields["pending_phone"] = target
        updated = self.store.update_identity(identity.id, **fields)
        logger.info(
            "verification_code_sent",
            channel=channel.value,
            purpose=purpose.value,
            user_id=identity.id,
            attempts=attempts,
        )
        return updated or identity

    async def verify_code(
        self,
        identity: Identity,
        channel: Channel,
        code: Optional[str],
        *,
        purpose: Purpose,
    ) -> Identity:
        """Check ``code`` and commit the pending destination on success.

        Raises:
            ValidationError: nothing is pending for this purpose
            InvalidCodeError: the code does not match
        """
        if _PURPOSE_CHANNEL[purpose] != channel:
            raise ValueError(f"purpose {purpose.value} does not use channel {channel.value}")
        state = _STATE[channel]
        reset = {state.attempts_field: 0, state.last_attempt_field: None}

        if purpose == Purpose.EMAIL_CONFIRMATION:
            if not identity.verification_code_hash:
                raise ValidationError("Invalid verification code.")
            if not await asyncio.to_thread(
                self.email_channel.code_matches, identity.verification_code_hash, code
            ):
                raise InvalidCodeError("Invalid verification code.")
            fields = {**reset, "email_verified": True, "verification_code_hash": None}
        elif purpose == Purpose.EMAIL_CHANGE:
            if not identity.pending_email or not identity.pending_email_code_hash:
                raise ValidationError("No email change in progress.")
            if not await asyncio.to_thread(
                self.email_channel.code_matches, identity.pending_email_code_hash, code
            ):
                raise InvalidCodeError("Invalid verification code.")
            fields = {
                **reset,
                "email": identity.pending_email,
                "email_verified": True,
                "pending_email": None,
                "pending_email_code_hash": None,
            }
        elif purpose == Purpose.PHONE:
            if not identity.pending_phone:
                raise ValidationError("No phone verification in progress.")
            if not self.sms_channel.is_configured:
                raise ChannelUnavailableError(
                    "Phone verification service is currently unavailable. Please contact support."
                )
            if not await self.sms_channel.check(identity.pending_phone, code):
                raise InvalidCodeError("Invalid or expired verification code.")
            fields = {
                **reset,
                "phone_number": identity.pending_phone,
                "pending_phone": None,
                "phone_verified": True,
            }
        else:
            if not identity.phone_number or not identity.phone_verified:
                raise ValidationError("Phone number is not verified.")
            if not self.sms_channel.is_configured:
                raise ChannelUnavailableError(
                    "Phone verification service is currently unavailable. Please contact support."
                )
            if not await self.sms_channel.check(identity.phone_number, code):
                raise InvalidCodeError("Invalid or expired verification code.")
            fields = reset

        updated = self.store.update_identity(identity.id, **fields)
        logger.info(
            "verification_succeeded",
            channel=channel.value,
            purpose=purpose.value,
            user_id=identity.id,
        )
        return updated or identity
