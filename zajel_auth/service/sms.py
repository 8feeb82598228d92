from __future__ import annotations

from typing import Optional

import httpx

from zajel_auth.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

TWILIO_VERIFY_BASE_URL = "https://verify.twilio.com/v2"


class SmsProviderError(Exception):
    """The SMS provider could not be reached or rejected the request."""


class TwilioVerifyClient:
    """Twilio Verify over its REST API.

    Twilio generates, delivers and checks the OTP; nothing about the code is
    stored locally.
    """

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        service_sid: Optional[str],
        *,
        base_url: str = TWILIO_VERIFY_BASE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.service_sid = service_sid
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.service_sid)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self.account_sid or "", self.auth_token or ""),
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    async def _post(self, path: str, data: dict) -> httpx.Response:
        url = f"{self.base_url}/Services/{self.service_sid}/{path}"
        try:
            async with self._client() as client:
                return await client.post(url, data=data)
        except httpx.HTTPError as exc:
            logger.error(
                "sms_provider_unreachable",
                path=path,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise SmsProviderError(str(exc)) from exc

    async def send_code(self, phone_number: str) -> None:
        """Ask the provider to text a fresh OTP.

        Raises:
            SmsProviderError: transport failure or non-2xx response
        """
        response = await self._post("Verifications", {"To": phone_number, "Channel": "sms"})
        if response.status_code >= 400:
            logger.error(
                "sms_send_rejected",
                status_code=response.status_code,
                error=sanitize_error_message(response.text),
            )
            raise SmsProviderError(f"provider returned {response.status_code}")

    async def check_code(self, phone_number: str, code: str) -> bool:
        """True when the provider approves ``code`` for ``phone_number``."""
        response = await self._post("VerificationCheck", {"To": phone_number, "Code": code})
        # 404 means the verification expired or was already approved
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            logger.error(
                "sms_check_rejected",
                status_code=response.status_code,
                error=sanitize_error_message(response.text),
            )
            raise SmsProviderError(f"provider returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SmsProviderError("provider returned invalid JSON") from exc
        return isinstance(payload, dict) and payload.get("status") == "approved"
