from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

import httpx

from zajel_auth.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "openid email profile"


class GoogleOAuthClient:
    """Authorization-code flow against Google."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Optional[dict]:
        """Trade ``code`` for the Google profile.

        Returns ``{"provider_uid", "email", "name", "picture"}`` or None when
        any step fails; failures are logged.
        """
        if not self.is_configured:
            logger.error("oauth_credentials_missing", provider="google")
            return None
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    return None

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "oauth_exchange_error",
                provider="google",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return None

        if not isinstance(userinfo, dict) or not userinfo.get("id"):
            logger.error("oauth_identity_missing_uid", provider="google")
            return None
        if not userinfo.get("email"):
            logger.error("oauth_identity_missing_email", provider="google")
            return None
        logger.info("oauth_exchange_success", provider="google")
        return {
            "provider_uid": str(userinfo["id"]),
            "email": userinfo["email"],
            "name": userinfo.get("name") or userinfo["email"].split("@")[0],
            "picture": userinfo.get("picture") or "",
        }
