from __future__ import annotations

import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from zajel_auth.config import Settings
from zajel_auth.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
RESET = "reset"


class SigningKeyError(RuntimeError):
    """Signing keys could not be loaded or generated; the process must not serve."""


class TokenError(Exception):
    """Base class for token verification failures."""


class MalformedTokenError(TokenError):
    pass


class ExpiredTokenError(TokenError):
    pass


class BadSignatureError(TokenError):
    pass


@dataclass(frozen=True)
class SigningKeys:
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey

    @property
    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def generate_key_pair(key_size: int = 2048) -> SigningKeys:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return SigningKeys(private_key=private_key, public_key=private_key.public_key())


def private_pem(keys: SigningKeys) -> bytes:
    return keys.private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _keys_from_pem(private_data: bytes, public_data: Optional[bytes]) -> SigningKeys:
    try:
        private_key = serialization.load_pem_private_key(private_data, password=None)
    except (ValueError, TypeError) as exc:
        raise SigningKeyError(f"unable to parse private key: {exc}") from exc
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise SigningKeyError("private key must be an RSA key")
    derived_public = private_key.public_key()
    if public_data is None:
        return SigningKeys(private_key=private_key, public_key=derived_public)
    try:
        public_key = serialization.load_pem_public_key(public_data)
    except (ValueError, TypeError) as exc:
        raise SigningKeyError(f"unable to parse public key: {exc}") from exc
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise SigningKeyError("public key must be an RSA key")
    if public_key.public_numbers() != derived_public.public_numbers():
        raise SigningKeyError("public key does not match private key")
    return SigningKeys(private_key=private_key, public_key=public_key)


def atomic_write(path: Path, data: bytes, mode: int) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, data)
            os.fchmod(fd, mode)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(path))
    except OSError:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def _load_or_create_persisted(fs_root: Path) -> SigningKeys:
    key_dir = fs_root / "keys"
    private_path = key_dir / "private.pem"
    public_path = key_dir / "public.pem"
    if private_path.exists() and not private_path.is_symlink():
        public_data = public_path.read_bytes() if public_path.exists() else None
        return _keys_from_pem(private_path.read_bytes(), public_data)

    keys = generate_key_pair()
    try:
        key_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(key_dir, 0o700)
        atomic_write(private_path, private_pem(keys), 0o600)
        atomic_write(public_path, keys.public_pem, 0o644)
    except OSError as exc:
        logger.error("signing_key_persist_failed", error=str(exc), path=str(key_dir))
        raise SigningKeyError(
            "Unable to persist signing keys; set JWT_PRIVATE_KEY_PATH or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("signing_keys_generated", path=str(key_dir))
    return keys


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Load the RS256 key pair once at startup.

    Sources, in order: inline PEM settings, PEM file paths, then a pair
    persisted under ``SHARED_FS_ROOT/keys`` (generated on first start).

    Raises:
        SigningKeyError: when no usable private key can be obtained.
    """
    if settings.jwt_private_key:
        public = settings.jwt_public_key.encode() if settings.jwt_public_key else None
        keys = _keys_from_pem(settings.jwt_private_key.encode(), public)
        logger.info("signing_keys_loaded", source="env")
        return keys
    if settings.jwt_private_key_path:
        try:
            private_data = Path(settings.jwt_private_key_path).read_bytes()
            public_data = (
                Path(settings.jwt_public_key_path).read_bytes()
                if settings.jwt_public_key_path
                else None
            )
        except OSError as exc:
            raise SigningKeyError(f"unable to read signing key files: {exc}") from exc
        keys = _keys_from_pem(private_data, public_data)
        logger.info("signing_keys_loaded", source="path")
        return keys
    keys = _load_or_create_persisted(Path(settings.shared_fs_root))
    logger.info("signing_keys_loaded", source="shared_fs")
    return keys


class TokenService:
    """Mint and verify RS256 tokens. Holds no storage handles."""

    ALGORITHM = "RS256"

    def __init__(
        self,
        keys: SigningKeys,
        *,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        reset_ttl: timedelta = timedelta(minutes=10),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._keys = keys
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.reset_ttl = reset_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings, keys: SigningKeys) -> "TokenService":
        return cls(
            keys,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )

    def _issue(self, subject_id: str, token_type: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "userId": subject_id,
            "sub": subject_id,
            "type": token_type,
            # Unique per token so two mints in the same second never collide
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        return jwt.encode(payload, self._keys.private_key, algorithm=self.ALGORITHM)

    def issue_access_token(self, subject_id: str) -> str:
        return self._issue(subject_id, ACCESS, self.access_ttl)

    def issue_refresh_token(self, subject_id: str) -> str:
        return self._issue(subject_id, REFRESH, self.refresh_ttl)

    def issue_reset_token(self, subject_id: str) -> str:
        return self._issue(subject_id, RESET, self.reset_ttl)

    def verify(self, token: str, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Verify signature, algorithm and expiry with the public key.

        Raises:
            MalformedTokenError: not a JWT, missing claims or wrong token type
            ExpiredTokenError: ``exp`` has passed
            BadSignatureError: signature invalid or algorithm is not RS256
        """
        if not token or not isinstance(token, str):
            raise MalformedTokenError("token missing")
        try:
            claims = jwt.decode(
                token,
                self._keys.public_key,
                algorithms=[self.ALGORITHM],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise ExpiredTokenError("token expired") from exc
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as exc:
            raise BadSignatureError(str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedTokenError(str(exc)) from exc
        if not claims.get("userId") or claims.get("userId") != claims.get("sub"):
            raise MalformedTokenError("subject claim missing")
        if expected_type and claims.get("type") != expected_type:
            raise MalformedTokenError("unexpected token type")
        return claims

    @staticmethod
    def unverified_subject(token: str) -> Optional[str]:
        """Read the subject without verifying; only for locating stored values."""
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None
        subject = claims.get("userId") or claims.get("sub")
        return str(subject) if subject else None

    @staticmethod
    def expires_at(claims: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
