from zajel_auth.logging import _redact_pii, sanitize_error_message
from zajel_auth.service.runtime import _mask_url_password, get_runtime
from zajel_auth.storage.memory import MemoryStore
from zajel_auth.storage.memory_cache import MemoryCache


def test_runtime_without_redis_url_uses_memory_cache(runtime):
    assert isinstance(runtime.cache, MemoryCache)
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.sessions.refresh.primary is runtime.cache
    assert get_runtime() is runtime


def test_mask_url_password():
    assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
    assert _mask_url_password(None) is None


def test_redact_pii_masks_contact_details_and_codes():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "verification_sent",
            "email": "layla@example.com",
            "phone_number": "+966501234567",
            "code": "123456",
            "error_code": "rate_limited",
        },
    )
    assert event["email"] == "la***om"
    assert event["phone_number"] == "+9***67"
    assert event["code"] == "12***56"
    assert event["error_code"] == "rate_limited"
    assert event["event"] == "verification_sent"


def test_sanitize_error_message():
    cleaned = sanitize_error_message("auth failed: password=hunter2 at /srv/zajel/keys/jwt.pem")
    assert "hunter2" not in cleaned
    assert "/srv/zajel" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500
