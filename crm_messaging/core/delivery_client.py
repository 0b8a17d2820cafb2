from typing import Any, Dict, Optional

import httpx

from crm_messaging.core.config import Settings
from crm_messaging.core.exceptions import DeliveryProviderError
from crm_messaging.core.logging import get_logger

logger = get_logger(__name__)


def extract_provider_message_id(response: Any) -> Optional[str]:
    """Return the provider-assigned id from a send response, if any."""
    if not isinstance(response, dict):
        return None
    key = response.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    if response.get("id"):
        return str(response["id"])
    return None


class EvolutionClient:
    """
    HTTP client for the Evolution WhatsApp API.

    Every call is bounded by ``timeout``; HTTP errors, timeouts and transport
    failures are raised as ``DeliveryProviderError``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, config: Settings) -> "EvolutionClient":
        return cls(
            base_url=config.EVOLUTION_API_URL,
            api_key=config.EVOLUTION_API_KEY,
            timeout=config.EVOLUTION_TIMEOUT_SECONDS,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "apikey": self.api_key,
        }
        try:
            response = await self.client.post(url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise DeliveryProviderError(f"Provider request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryProviderError(f"Provider request failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "Provider rejected request",
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise DeliveryProviderError(
                f"Provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            return {}

    async def send_text(self, instance: str, number: str, text: str) -> Dict[str, Any]:
        return await self._post(f"/message/sendText/{instance}", {"number": number, "text": text})

    async def send_media(self, instance: str, media: Dict[str, Any]) -> Dict[str, Any]:
        """Send an image, video, audio or document.

        ``media`` carries ``number``, ``mediatype``, ``media`` (URL or base64)
        and optionally ``caption``, ``mimetype`` and ``fileName``.
        """
        return await self._post(f"/message/sendMedia/{instance}", media)

    async def health_check(self) -> bool:
        try:
            response = await self.client.get(self.base_url, timeout=self.timeout)
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning(f"Provider health check failed: {e}")
            return False
