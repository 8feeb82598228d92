import base64
import hashlib
import hmac
import json
import stat
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from zajel_auth.config import Settings
from zajel_auth.service.tokens import (
    ACCESS,
    REFRESH,
    RESET,
    BadSignatureError,
    ExpiredTokenError,
    MalformedTokenError,
    SigningKeyError,
    TokenService,
    generate_key_pair,
    load_signing_keys,
    private_pem,
)


@pytest.fixture(scope="module")
def keys():
    return generate_key_pair()


@pytest.fixture
def tokens(keys):
    return TokenService(keys)


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _hs256_with_public_key(keys, payload: dict) -> str:
    """Forge a token whose HMAC secret is the RSA public key PEM."""
    header = _b64(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    body = _b64(json.dumps(payload).encode())
    signing_input = f"{header}.{body}".encode("ascii")
    signature = hmac.new(keys.public_pem, signing_input, hashlib.sha256).digest()
    return f"{header}.{body}.{_b64(signature)}"


def test_issue_and_verify_access_token(tokens):
    token = tokens.issue_access_token("user-1")
    claims = tokens.verify(token, ACCESS)
    assert claims["sub"] == "user-1"
    assert claims["userId"] == "user-1"
    assert claims["type"] == ACCESS
    assert claims["exp"] - claims["iat"] == 15 * 60


def test_refresh_and_reset_lifetimes(tokens):
    refresh = tokens.verify(tokens.issue_refresh_token("u"), REFRESH)
    reset = tokens.verify(tokens.issue_reset_token("u"), RESET)
    assert refresh["exp"] - refresh["iat"] == 30 * 24 * 3600
    assert reset["exp"] - reset["iat"] == 10 * 60


def test_tokens_minted_in_same_second_differ(tokens):
    assert tokens.issue_refresh_token("u") != tokens.issue_refresh_token("u")


def test_header_declares_rs256(tokens):
    header = jwt.get_unverified_header(tokens.issue_access_token("u"))
    assert header["alg"] == "RS256"


def test_expired_token_rejected(keys):
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    stale = TokenService(keys, clock=lambda: past)
    token = stale.issue_access_token("u")
    with pytest.raises(ExpiredTokenError):
        TokenService(keys).verify(token)


def test_wrong_type_rejected(tokens):
    refresh = tokens.issue_refresh_token("u")
    with pytest.raises(MalformedTokenError):
        tokens.verify(refresh, ACCESS)


def test_tampered_payload_rejected(tokens):
    header, _, signature = tokens.issue_access_token("victim").split(".")
    forged_body = _b64(
        json.dumps(
            {
                "userId": "attacker",
                "sub": "attacker",
                "type": ACCESS,
                "iat": int(datetime.now(timezone.utc).timestamp()),
                "exp": int(datetime.now(timezone.utc).timestamp()) + 600,
            }
        ).encode()
    )
    with pytest.raises(BadSignatureError):
        tokens.verify(f"{header}.{forged_body}.{signature}")


def test_token_from_other_key_rejected(tokens):
    other = TokenService(generate_key_pair())
    with pytest.raises(BadSignatureError):
        tokens.verify(other.issue_access_token("u"))


def test_hs256_signed_with_public_key_rejected(keys, tokens):
    now = int(datetime.now(timezone.utc).timestamp())
    forged = _hs256_with_public_key(
        keys, {"userId": "u", "sub": "u", "type": ACCESS, "iat": now, "exp": now + 600}
    )
    with pytest.raises(BadSignatureError):
        tokens.verify(forged, ACCESS)


def test_alg_none_rejected(tokens):
    now = int(datetime.now(timezone.utc).timestamp())
    header = _b64(json.dumps({"alg": "none", "typ": "JWT"}).encode())
    body = _b64(
        json.dumps({"userId": "u", "sub": "u", "type": ACCESS, "iat": now, "exp": now + 600}).encode()
    )
    with pytest.raises(BadSignatureError):
        tokens.verify(f"{header}.{body}.")


@pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
def test_garbage_rejected(tokens, garbage):
    with pytest.raises(MalformedTokenError):
        tokens.verify(garbage)


def test_missing_subject_rejected(keys, tokens):
    now = int(datetime.now(timezone.utc).timestamp())
    token = jwt.encode(
        {"type": ACCESS, "iat": now, "exp": now + 600}, keys.private_key, algorithm="RS256"
    )
    with pytest.raises(MalformedTokenError):
        tokens.verify(token)


def test_mismatched_user_id_rejected(keys, tokens):
    now = int(datetime.now(timezone.utc).timestamp())
    token = jwt.encode(
        {"userId": "a", "sub": "b", "type": ACCESS, "iat": now, "exp": now + 600},
        keys.private_key,
        algorithm="RS256",
    )
    with pytest.raises(MalformedTokenError):
        tokens.verify(token)


def test_unverified_subject_and_expiry(tokens):
    token = tokens.issue_reset_token("user-9")
    assert TokenService.unverified_subject(token) == "user-9"
    assert TokenService.unverified_subject("junk") is None
    claims = tokens.verify(token, RESET)
    assert TokenService.expires_at(claims).tzinfo is not None


def test_keys_persisted_under_shared_fs(tmp_path):
    settings = Settings(shared_fs_root=str(tmp_path))
    first = load_signing_keys(settings)
    second = load_signing_keys(settings)
    assert first.public_pem == second.public_pem
    private_path = tmp_path / "keys" / "private.pem"
    assert stat.S_IMODE(private_path.stat().st_mode) == 0o600
    assert (tmp_path / "keys" / "public.pem").read_bytes() == first.public_pem


def test_inline_keys_take_precedence(tmp_path, keys):
    settings = Settings(
        shared_fs_root=str(tmp_path),
        jwt_private_key=private_pem(keys).decode(),
        jwt_public_key=keys.public_pem.decode(),
    )
    loaded = load_signing_keys(settings)
    assert loaded.public_pem == keys.public_pem
    assert not (tmp_path / "keys").exists()


def test_escaped_newlines_in_inline_key(tmp_path, keys):
    escaped = private_pem(keys).decode().replace("\n", "\\n")
    loaded = load_signing_keys(Settings(shared_fs_root=str(tmp_path), jwt_private_key=escaped))
    assert loaded.public_pem == keys.public_pem


def test_mismatched_public_key_is_fatal(tmp_path, keys):
    other = generate_key_pair()
    settings = Settings(
        shared_fs_root=str(tmp_path),
        jwt_private_key=private_pem(keys).decode(),
        jwt_public_key=other.public_pem.decode(),
    )
    with pytest.raises(SigningKeyError):
        load_signing_keys(settings)


def test_unreadable_key_path_is_fatal(tmp_path):
    settings = Settings(
        shared_fs_root=str(tmp_path), jwt_private_key_path=str(tmp_path / "missing.pem")
    )
    with pytest.raises(SigningKeyError):
        load_signing_keys(settings)


def test_keys_loaded_from_paths(tmp_path, keys):
    (tmp_path / "priv.pem").write_bytes(private_pem(keys))
    (tmp_path / "pub.pem").write_bytes(keys.public_pem)
    settings = Settings(
        shared_fs_root=str(tmp_path / "fs"),
        jwt_private_key_path=str(tmp_path / "priv.pem"),
        jwt_public_key_path=str(tmp_path / "pub.pem"),
    )
    assert load_signing_keys(settings).public_pem == keys.public_pem
