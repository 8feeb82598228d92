from __future__ import annotations

from typing import Optional

import httpx

from zajel_auth.logging import get_logger, sanitize_error_message
from zajel_auth.service.errors import CaptchaFailedError

logger = get_logger(__name__)


class CaptchaVerifier:
    """Google reCAPTCHA server-side check.

    With no secret configured every token passes under TEST_MODE and every
    token fails otherwise.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        test_mode: bool = False,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.test_mode = test_mode
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def verify(self, captcha_token: Optional[str], *, remote_ip: Optional[str] = None) -> None:
        """Raise CaptchaFailedError unless the provider accepts the token."""
        if not self.is_configured:
            if self.test_mode:
                return
            logger.error("captcha_not_configured")
            raise CaptchaFailedError()
        if not captcha_token:
            raise CaptchaFailedError("CAPTCHA token is required.")
        data = {"secret": self.secret_key, "response": captcha_token}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(self.verify_url, data=data)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "captcha_verify_failed",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise CaptchaFailedError() from exc
        if not isinstance(payload, dict) or not payload.get("success"):
            logger.info(
                "captcha_rejected",
                reasons=(payload.get("error-codes") if isinstance(payload, dict) else None),
            )
            raise CaptchaFailedError()
