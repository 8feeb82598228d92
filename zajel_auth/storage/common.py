"""Helpers shared between the memory and postgres identity stores.

Both backends normalise emails, generate usernames and (de)serialise identity
records the same way so behaviour does not depend on the configured store.
"""

from __future__ import annotations

import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from zajel_auth.storage.models import Identity


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# ============================================================================
# USERNAMES
# ============================================================================

USERNAME_MIN_LENGTH = 6
USERNAME_MAX_LENGTH = 30
_USERNAME_ALLOWED = re.compile(r"^[a-zA-Z0-9._-]+$")
_USERNAME_HAS_LETTER = re.compile(r"[a-zA-Z]")
_ARABIC_CHARS = re.compile(r"[\u0600-\u06FF]")

_ARABIC_TO_LATIN = {
    "أ": "a", "ا": "a", "إ": "i", "آ": "a", "ب": "b", "ت": "t", "ث": "th",
    "ج": "j", "ح": "h", "خ": "kh", "د": "d", "ذ": "dh", "ر": "r", "ز": "z",
    "س": "s", "ش": "sh", "ص": "s", "ض": "d", "ط": "t", "ظ": "z", "ع": "a",
    "غ": "gh", "ف": "f", "ق": "q", "ك": "k", "ل": "l", "م": "m", "ن": "n",
    "ه": "h", "و": "w", "ي": "y", "ء": "a", "ئ": "y", "ؤ": "w", "ى": "a",
    "ة": "h",
}


def validate_username_format(username: str) -> str:
    """Return the username unchanged or raise ValueError with a user-facing message."""
    if not isinstance(username, str) or not username:
        raise ValueError("Username is required.")
    if len(username) < USERNAME_MIN_LENGTH:
        raise ValueError("Username must be at least 6 characters long.")
    if len(username) > USERNAME_MAX_LENGTH:
        raise ValueError("Username must be 30 characters or fewer.")
    if re.search(r"\s", username):
        raise ValueError("Spaces are not allowed in the username.")
    if not _USERNAME_ALLOWED.match(username):
        raise ValueError(
            "Only English letters, numbers, dots (.), and hyphens (-, _) are allowed."
        )
    if not _USERNAME_HAS_LETTER.search(username):
        raise ValueError("Username must contain at least one English letter.")
    return username


def transliterate_arabic(text: str) -> str:
    return "".join(_ARABIC_TO_LATIN.get(ch, ch) for ch in text)


def username_base(name: str) -> str:
    """Derive the stem of a generated username from a display name."""
    stem = re.sub(r"\s+", "", name or "")
    if _ARABIC_CHARS.search(stem):
        stem = transliterate_arabic(stem)
    stem = re.sub(r"[^a-zA-Z0-9._-]", "", stem)[:15]
    if not _USERNAME_HAS_LETTER.search(stem):
        stem = f"user{stem}"[:15]
    return stem


def generate_username(
    name: str,
    is_taken: Callable[[str], bool],
    *,
    max_attempts: int = 50,
) -> str:
    """Build ``<stem>.<4 digits>``, retrying on collision."""
    stem = username_base(name)
    for _ in range(max_attempts):
        candidate = f"{stem}.{1000 + secrets.randbelow(9000)}"
        if not is_taken(candidate):
            return candidate
    # Pathological collision rate; widen the suffix
    return f"{stem}.{secrets.token_hex(4)}"


# ============================================================================
# SERIALISATION
# ============================================================================

_DATETIME_FIELDS = (
    "email_last_attempt_at",
    "phone_last_attempt_at",
    "created_at",
    "updated_at",
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_identity(identity: Identity) -> Dict[str, Any]:
    data = dict(identity.__dict__)
    for key in _DATETIME_FIELDS:
        value = data.get(key)
        data[key] = value.isoformat() if value else None
    return data


def deserialize_identity(data: Dict[str, Any]) -> Identity:
    values = dict(data)
    for key in _DATETIME_FIELDS:
        raw = values.get(key)
        values[key] = _as_utc(datetime.fromisoformat(raw)) if raw else None
    if values.get("created_at") is None:
        values.pop("created_at", None)
    if values.get("updated_at") is None:
        values.pop("updated_at", None)
    known = set(Identity.__dataclass_fields__)
    return Identity(**{k: v for k, v in values.items() if k in known})


def identity_from_row(row: Dict[str, Any]) -> Identity:
    """Build an Identity from a dict_row result."""
    known = set(Identity.__dataclass_fields__)
    values = {k: row[k] for k in row.keys() if k in known}
    values["id"] = str(values["id"])
    for key in _DATETIME_FIELDS:
        if key in values:
            values[key] = _as_utc(values[key])
    for key in ("email_attempts", "phone_attempts"):
        if values.get(key) is None:
            values[key] = 0
    if values.get("profile_picture") is None:
        values["profile_picture"] = ""
    return Identity(**values)


def public_profile(identity: Identity) -> Dict[str, Any]:
    """Profile view without password material, code hashes or stored tokens."""
    return {
        "id": identity.id,
        "name": identity.name,
        "email": identity.email,
        "username": identity.username,
        "phoneNumber": identity.phone_number,
        "pendingPhoneNumber": identity.pending_phone,
        "pendingEmail": identity.pending_email,
        "isVerified": identity.email_verified,
        "isPhoneVerified": identity.phone_verified,
        "profilePicture": identity.profile_picture,
        "hasGoogleLogin": bool(identity.google_id),
        "createdAt": identity.created_at.isoformat() if identity.created_at else None,
        "updatedAt": identity.updated_at.isoformat() if identity.updated_at else None,
    }
