from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from zajel_auth.api.schemas import (
    AccessTokenResponse,
    DeleteAccountRequest,
    EmailUpdateConfirm,
    EmailUpdateRequest,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    PhoneCodeRequest,
    PhoneLoginVerifyRequest,
    PhoneRequest,
    ResendCodeRequest,
    SignupRequest,
    UpdatePasswordRequest,
    UpdateProfileRequest,
    UsernameCheckResponse,
    VerifyEmailRequest,
)
from zajel_auth.config import Settings
from zajel_auth.logging import get_logger
from zajel_auth.service.auth import AuthContext, TokenPair
from zajel_auth.service.errors import AuthenticationError
from zajel_auth.service.runtime import get_runtime

logger = get_logger(__name__)

REFRESH_COOKIE = "refreshToken"
ACCESS_COOKIE = "accessToken"

auth_router = APIRouter(prefix="/auth", tags=["auth"])
user_router = APIRouter(prefix="/user", tags=["user"])


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="none",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_auth_cookies(response: Response, settings: Settings, *, include_access: bool = False) -> None:
    response.delete_cookie(
        REFRESH_COOKIE, path="/", secure=settings.cookie_secure, httponly=True, samesite="none"
    )
    if include_access:
        response.delete_cookie(
            ACCESS_COOKIE, path="/", secure=settings.cookie_secure, httponly=True, samesite="none"
        )


def _session_response(response: Response, pair: TokenPair, settings: Settings) -> AccessTokenResponse:
    _set_refresh_cookie(response, pair.refresh_token, settings)
    return AccessTokenResponse(accessToken=pair.access_token)


async def get_current_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, access_token)


@auth_router.get("/ping", response_model=MessageResponse)
async def ping():
    """Wake-up probe used by the storefront before the first auth call."""
    return MessageResponse(message="Server is awake")


@auth_router.get("/check-username", response_model=UsernameCheckResponse)
async def check_username(
    username: str = Query(..., max_length=30),
    user_id: Optional[str] = Query(None, alias="userId"),
):
    runtime = get_runtime()
    return runtime.accounts.check_username(username, user_id)


@auth_router.post("/signup", response_model=MessageResponse, status_code=201)
async def signup(body: SignupRequest, request: Request):
    """Register an unverified account and mail the confirmation code.

    Raises:
        400: captcha rejected or invalid input
        409: email or username already registered
    """
    runtime = get_runtime()
    return await runtime.auth.signup(
        body.name,
        body.email,
        body.password,
        body.captcha_token,
        body.username,
        remote_ip=_client_ip(request),
    )


@auth_router.post("/login", response_model=AccessTokenResponse)
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login; the refresh token travels only in the cookie.

    Raises:
        400: captcha rejected or invalid credentials
        403: email not verified
    """
    runtime = get_runtime()
    pair = await runtime.auth.login(
        body.email, body.password, body.captcha_token, remote_ip=_client_ip(request)
    )
    return _session_response(response, pair, runtime.settings)


@auth_router.post("/verify-email")
async def verify_email(body: VerifyEmailRequest, response: Response):
    runtime = get_runtime()
    payload, pair = await runtime.auth.verify_email(body.email, body.verification_code)
    _set_refresh_cookie(response, pair.refresh_token, runtime.settings)
    return payload


@auth_router.post("/resend-code", response_model=MessageResponse)
async def resend_code(body: ResendCodeRequest):
    runtime = get_runtime()
    return await runtime.auth.resend_code(body.email)


@auth_router.post("/password-reset", response_model=MessageResponse)
async def password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    return await runtime.auth.request_password_reset(
        body.email, body.captcha_token, remote_ip=_client_ip(request)
    )


@auth_router.post("/reset-password", response_model=MessageResponse)
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    return await runtime.auth.reset_password(body.token, body.new_password)


@auth_router.post("/refresh-token", response_model=AccessTokenResponse)
async def refresh_token(
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh cookie and hand out a fresh access token.

    Raises:
        400: no refresh cookie
        401: refresh token invalid, expired or no longer current
    """
    runtime = get_runtime()
    pair = await runtime.auth.refresh(refresh_cookie)
    return _session_response(response, pair, runtime.settings)


@auth_router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    access_token = runtime.auth.extract_bearer(authorization) or access_cookie
    result = await runtime.auth.logout(refresh_cookie, access_token)
    _clear_auth_cookies(response, runtime.settings)
    return result


@auth_router.get("/google")
async def google_login():
    runtime = get_runtime()
    url = await runtime.auth.google_authorization_url()
    return RedirectResponse(url, status_code=307)


@auth_router.get("/google/callback")
async def google_callback(code: Optional[str] = None, state: Optional[str] = None):
    """Finish Google sign-in and bounce back to the storefront.

    Failures never surface as JSON: the browser lands on the login page with
    an ``error`` query parameter instead.
    """
    runtime = get_runtime()
    frontend = runtime.settings.frontend_url.rstrip("/")
    try:
        pair = await runtime.auth.complete_google_login(code, state)
    except AuthenticationError:
        return RedirectResponse(
            f"{frontend}/auth/login?{urlencode({'error': 'authentication_failed'})}",
            status_code=307,
        )
    except Exception as exc:
        logger.error("oauth_callback_failed", provider="google", error=str(exc))
        return RedirectResponse(
            f"{frontend}/auth/login?{urlencode({'error': 'server_error'})}", status_code=307
        )
    redirect = RedirectResponse(
        f"{frontend}/auth/google/callback?{urlencode({'accessToken': pair.access_token})}",
        status_code=307,
    )
    _set_refresh_cookie(redirect, pair.refresh_token, runtime.settings)
    return redirect


@auth_router.post("/send-phone-verification")
async def send_phone_verification(
    body: PhoneRequest, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    return await runtime.auth.send_phone_verification(principal.user_id, body.phone_number)


@auth_router.post("/verify-phone")
async def verify_phone(body: PhoneCodeRequest, principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    return await runtime.auth.verify_phone(principal.user_id, body.code)


@auth_router.post("/login-phone")
async def login_phone(body: PhoneRequest):
    runtime = get_runtime()
    return await runtime.auth.login_with_phone(body.phone_number)


@auth_router.post("/verify-phone-login")
async def verify_phone_login(body: PhoneLoginVerifyRequest, response: Response):
    runtime = get_runtime()
    pair = await runtime.auth.verify_phone_login(body.phone_number, body.code)
    _set_refresh_cookie(response, pair.refresh_token, runtime.settings)
    return {"message": "Login successful.", "accessToken": pair.access_token}


@user_router.get("/me")
async def get_me(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    return runtime.accounts.get_profile(principal.user_id)


@user_router.put("/update")
async def update_user(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    return runtime.accounts.update_profile(
        principal.user_id,
        name=body.name,
        username=body.username,
        phone_number=body.phone_number,
    )


@user_router.put("/update-password", response_model=MessageResponse)
def update_password(
    body: UpdatePasswordRequest, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    return runtime.accounts.update_password(
        principal.user_id, body.old_password, body.new_password
    )


@user_router.post("/request-email-update", response_model=MessageResponse)
async def request_email_update(
    body: EmailUpdateRequest, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    return await runtime.accounts.request_email_update(principal.user_id, body.new_email)


@user_router.post("/verify-email-update", response_model=MessageResponse)
async def verify_email_update(
    body: EmailUpdateConfirm, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    return await runtime.accounts.verify_email_update(
        principal.user_id, body.code, body.password
    )


@user_router.delete("/delete-account")
async def delete_account(
    body: DeleteAccountRequest, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    result = await runtime.accounts.delete_account(
        principal.user_id, body.password, body.confirmation
    )
    response = JSONResponse(result)
    _clear_auth_cookies(response, runtime.settings, include_access=True)
    return response
