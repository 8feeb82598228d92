from __future__ import annotations

import re
import unicodedata
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalise."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Email must be a string.")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("Email address is too long.")
    if len(normalized) < 3:
        raise ValueError("Invalid email format.")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email format.")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email format.")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email format.")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email format.")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError("Password must be at least 6 characters long.")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError("Password must be at most 128 characters long.")
    return value


class _CamelModel(BaseModel):
    """Accepts the camelCase keys the storefront sends, or field names."""

    model_config = ConfigDict(populate_by_name=True)


class SignupRequest(_CamelModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str
    password: str
    username: Optional[str] = Field(default=None, max_length=30)
    captcha_token: Optional[str] = Field(default=None, alias="captchaToken", max_length=MAX_TOKEN_LENGTH)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if len(value) < 2:
            raise ValueError("Name must be at least 2 characters long.")
        return value

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    captcha_token: Optional[str] = Field(default=None, alias="captchaToken", max_length=MAX_TOKEN_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyEmailRequest(_CamelModel):
    email: str
    verification_code: str = Field(..., alias="verificationCode", min_length=1, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class ResendCodeRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(_CamelModel):
    email: str
    captcha_token: Optional[str] = Field(default=None, alias="captchaToken", max_length=MAX_TOKEN_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(_CamelModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PhoneRequest(_CamelModel):
    phone_number: str = Field(..., alias="phoneNumber", max_length=32)


class PhoneCodeRequest(_CamelModel):
    code: str = Field(..., min_length=1, max_length=16)


class PhoneLoginVerifyRequest(_CamelModel):
    phone_number: str = Field(..., alias="phoneNumber", max_length=32)
    code: str = Field(..., min_length=1, max_length=16)


class UpdateProfileRequest(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    username: Optional[str] = Field(default=None, max_length=30)
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", max_length=32)


class UpdatePasswordRequest(_CamelModel):
    old_password: str = Field(..., alias="oldPassword", max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailUpdateRequest(_CamelModel):
    new_email: str = Field(..., alias="newEmail")

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        try:
            return _validate_email(value)
        except ValueError as exc:
            raise ValueError("Invalid new email.") from exc


class EmailUpdateConfirm(_CamelModel):
    # The storefront posts the code as "verificationCode"; "code" is accepted too
    code: str = Field(..., alias="verificationCode", min_length=1, max_length=16)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class DeleteAccountRequest(_CamelModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirmation: str = Field(..., max_length=16)


class MessageResponse(BaseModel):
    message: str


class AccessTokenResponse(BaseModel):
    accessToken: str


class UsernameCheckResponse(BaseModel):
    available: bool
    message: str
