from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    id: str
    name: str
    email: str
    username: Optional[str] = None
    phone_number: Optional[str] = None
    pending_phone: Optional[str] = None
    pending_email: Optional[str] = None
    verification_code_hash: Optional[str] = None
    pending_email_code_hash: Optional[str] = None
    email_verified: bool = False
    phone_verified: bool = False
    google_id: Optional[str] = None
    profile_picture: str = ""
    email_attempts: int = 0
    email_last_attempt_at: Optional[datetime] = None
    phone_attempts: int = 0
    phone_last_attempt_at: Optional[datetime] = None
    # Written only when the session cache is unreachable
    refresh_token: Optional[str] = None
    reset_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# Columns that callers may change through update_identity
MUTABLE_IDENTITY_FIELDS = frozenset(
    {
        "name",
        "email",
        "username",
        "phone_number",
        "pending_phone",
        "pending_email",
        "verification_code_hash",
        "pending_email_code_hash",
        "email_verified",
        "phone_verified",
        "google_id",
        "profile_picture",
        "email_attempts",
        "email_last_attempt_at",
        "phone_attempts",
        "phone_last_attempt_at",
        "refresh_token",
        "reset_token",
    }
)
