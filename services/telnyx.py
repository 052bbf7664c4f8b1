"""
Telnyx messaging client (outbound SMS).
"""

from typing import Optional

import httpx
import structlog

from logger_config import mask_phone
from services.errors import ProviderSendError
from services.phone import to_e164

logger = structlog.get_logger("telnyx")

TIMEOUT_CODE = "timeout"
TRANSPORT_CODE = "transport"


class TelnyxClient:
    """
    Thin wrapper around POST /v2/messages.

    The httpx client is owned by the application lifespan; pass one in, or
    let the client build (and close) its own.
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.telnyx.com/v2/messages",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=5.0),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
        )

    async def send(self, from_: str, to: str, text: str) -> str:
        """Send one SMS. Returns the provider message id."""
        if not self.api_key:
            raise ProviderSendError("not_configured", "TELNYX_API_KEY is not configured")

        payload = {"from": to_e164(from_), "to": to_e164(to), "text": text}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            response = await self.client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Telnyx timeout", to=mask_phone(to))
            raise ProviderSendError(TIMEOUT_CODE, "Telnyx request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("Telnyx transport error", to=mask_phone(to), error=str(e))
            raise ProviderSendError(TRANSPORT_CODE, str(e)) from e

        if response.status_code >= 400:
            code, detail = _parse_error(response)
            logger.warning("Telnyx rejected message", to=mask_phone(to), status=response.status_code, code=code)
            raise ProviderSendError(code, detail)

        message_id = (response.json().get("data") or {}).get("id")
        logger.info("SMS sent", to=mask_phone(to), provider_message_id=message_id)
        return message_id

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def _parse_error(response: httpx.Response):
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        errors = []

    if errors:
        first = errors[0]
        code = str(first.get("code")) if first.get("code") is not None else str(response.status_code)
        detail = first.get("detail") or first.get("title") or response.text
        return code, detail
    return str(response.status_code), response.text
