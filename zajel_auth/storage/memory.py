from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from zajel_auth.logging import get_logger
from zajel_auth.storage.common import (
    deserialize_identity,
    generate_username,
    generate_uuid,
    normalize_email,
    serialize_identity,
)
from zajel_auth.storage.errors import ConstraintViolation
from zajel_auth.storage.models import MUTABLE_IDENTITY_FIELDS, Identity, utcnow

# Fields that must be unique across identities when set
_UNIQUE_FIELDS = ("email", "username", "phone_number", "google_id")


class MemoryStore:
    """In-process identity store persisted to a JSON file under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/zajel", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.revoked_tokens: Dict[str, datetime] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # identities
    def create_identity(
        self,
        name: str,
        email: str,
        *,
        username: Optional[str] = None,
        google_id: Optional[str] = None,
        email_verified: bool = False,
        verification_code_hash: Optional[str] = None,
    ) -> Identity:
        normalized = normalize_email(email)
        with self._data_lock:
            if self._find("email", normalized) or self._find("pending_email", normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and self._find("username", username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if google_id and self._find("google_id", google_id):
                raise ConstraintViolation("google account already linked", {"field": "google_id"})
            identity = Identity(
                id=generate_uuid(),
                name=name,
                email=normalized,
                username=username
                or generate_username(name, lambda c: self._find("username", c) is not None),
                google_id=google_id,
                email_verified=email_verified,
                verification_code_hash=verification_code_hash,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return replace(identity)

    def _find(self, field: str, value: Any, exclude_id: Optional[str] = None) -> Optional[Identity]:
        for identity in self.identities.values():
            if identity.id == exclude_id:
                continue
            if getattr(identity, field) == value:
                return identity
        return None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def _get_by(self, field: str, value: Any) -> Optional[Identity]:
        if not value:
            return None
        with self._data_lock:
            identity = self._find(field, value)
            return replace(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._get_by("email", normalize_email(email))

    def get_identity_by_phone(self, phone_number: str) -> Optional[Identity]:
        return self._get_by("phone_number", phone_number)

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        return self._get_by("username", username)

    def get_identity_by_google_id(self, google_id: str) -> Optional[Identity]:
        return self._get_by("google_id", google_id)

    def email_in_use(self, email: str, exclude_id: Optional[str] = None) -> bool:
        normalized = normalize_email(email)
        with self._data_lock:
            return bool(
                self._find("email", normalized, exclude_id)
                or self._find("pending_email", normalized, exclude_id)
            )

    def phone_in_use(self, phone_number: str, exclude_id: Optional[str] = None) -> bool:
        with self._data_lock:
            return self._find("phone_number", phone_number, exclude_id) is not None

    def username_in_use(self, username: str, exclude_id: Optional[str] = None) -> bool:
        with self._data_lock:
            return self._find("username", username, exclude_id) is not None

    def update_identity(self, identity_id: str, **fields: Any) -> Optional[Identity]:
        unknown = set(fields) - MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"unknown identity fields: {', '.join(sorted(unknown))}")
        if fields.get("email"):
            fields["email"] = normalize_email(fields["email"])
        if fields.get("pending_email"):
            fields["pending_email"] = normalize_email(fields["pending_email"])
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            for field in _UNIQUE_FIELDS:
                value = fields.get(field)
                if value and self._find(field, value, exclude_id=identity_id):
                    raise ConstraintViolation(f"{field} already exists", {"field": field})
            pending = fields.get("pending_email")
            if pending and (
                self._find("email", pending, exclude_id=identity_id)
                or self._find("pending_email", pending, exclude_id=identity_id)
            ):
                raise ConstraintViolation("email already exists", {"field": "pending_email"})
            updated = replace(identity, **fields, updated_at=utcnow())
            self.identities[identity_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_identity(self, identity_id: str) -> bool:
        with self._data_lock:
            if identity_id not in self.identities:
                return False
            self.identities.pop(identity_id, None)
            self.credentials.pop(identity_id, None)
            self._persist_state()
            return True

    # credentials
    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for credentials", {"identity_id": identity_id}
                )
            self.credentials[identity_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(identity_id)

    # revoked tokens
    def revoke_token(
        self, token_digest: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            self._purge_revoked_locked(now or utcnow())
            current = self.revoked_tokens.get(token_digest)
            if current is None or current < expires_at:
                self.revoked_tokens[token_digest] = expires_at
            self._persist_state()

    def is_token_revoked(self, token_digest: str, *, now: Optional[datetime] = None) -> bool:
        with self._data_lock:
            expires_at = self.revoked_tokens.get(token_digest)
            return expires_at is not None and expires_at > (now or utcnow())

    def purge_revoked_tokens(self, *, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            purged = self._purge_revoked_locked(now or utcnow())
            if purged:
                self._persist_state()
            return purged

    def _purge_revoked_locked(self, now: datetime) -> int:
        expired = [digest for digest, expiry in self.revoked_tokens.items() if expiry <= now]
        for digest in expired:
            self.revoked_tokens.pop(digest, None)
        return len(expired)

    def verify_connection(self) -> None:
        """Health probe: the state directory must be writable."""
        if self.persist:
            probe = self._state_path().parent / ".health_check"
            probe.write_text(utcnow().isoformat())
            probe.unlink(missing_ok=True)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "identities": [serialize_identity(i) for i in self.identities.values()],
            "credentials": [
                {
                    "identity_id": identity_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for identity_id, creds in self.credentials.items()
            ],
            "revoked_tokens": [
                {"token_digest": digest, "expires_at": expiry.isoformat()}
                for digest, expiry in self.revoked_tokens.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: deserialize_identity(i) for i in data.get("identities", [])
        }
        self.credentials = {
            entry["identity_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.revoked_tokens = {
            entry["token_digest"]: datetime.fromisoformat(entry["expires_at"])
            for entry in data.get("revoked_tokens", [])
        }
        self.logger.info("memory_store_loaded", identities=len(self.identities))
        return True
