"""The flat error body every failure renders to."""

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from zajel_auth.api.error_handling import register_exception_handlers
from zajel_auth.service.errors import (
    ChannelUnavailableError,
    ConflictError,
    NotVerifiedError,
    RateLimitedError,
)
from zajel_auth.storage.errors import ConstraintViolation


class Body(BaseModel):
    email: str


def _app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("Email is already in use.")

    @app.get("/forbidden")
    async def forbidden():
        raise NotVerifiedError()

    @app.get("/limited")
    async def limited():
        raise RateLimitedError(42)

    @app.get("/unavailable")
    async def unavailable():
        raise ChannelUnavailableError("Phone login service is currently unavailable.")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/http")
    async def http_error():
        raise HTTPException(status_code=404, detail="nothing here")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def validate(body: Body):
        return body

    return app


def _client():
    return TestClient(_app(), raise_server_exceptions=False)


def test_service_error_body():
    response = _client().get("/conflict")
    assert response.status_code == 409
    assert response.json() == {
        "message": "Email is already in use.",
        "code": "conflict",
        "details": None,
    }


def test_forbidden_default_message():
    response = _client().get("/forbidden")
    assert response.status_code == 403
    assert response.json()["message"] == "Account not verified."


def test_rate_limited_carries_remaining_seconds():
    response = _client().get("/limited")
    assert response.status_code == 429
    assert response.json()["remainingSeconds"] == 42
    assert response.headers["Retry-After"] == "42"


def test_channel_unavailable():
    response = _client().get("/unavailable")
    assert response.status_code == 503
    assert response.json()["code"] == "channel_unavailable"


def test_constraint_violation_is_conflict():
    response = _client().get("/constraint")
    assert response.status_code == 409
    assert response.json()["details"] == {"field": "email"}


def test_http_exception_keeps_status():
    response = _client().get("/http")
    assert response.status_code == 404
    assert response.json()["message"] == "nothing here"
    assert response.json()["code"] == "not_found"


def test_unhandled_exception_hides_details():
    response = _client().get("/boom")
    assert response.status_code == 500
    assert response.json()["message"] == "Internal server error."
    assert "secret" not in response.text


def test_request_validation_is_400():
    response = _client().post("/validate", json={})
    assert response.status_code == 400
    body = response.json()
    assert body["message"] == "email is required."
    assert body["details"] == {"fields": ["body.email"]}
