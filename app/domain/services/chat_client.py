"""
GetStream REST client for server-side system messages.

Only used for best-effort notifications after payment transitions: callers
log failures and carry on, they never fail the webhook job because of it.
"""
from __future__ import annotations

import httpx
import jwt as pyjwt

from app.core.circuit_breaker import CircuitBreaker, get_getstream_circuit_breaker
from app.core.config import Settings
from app.core.exceptions import ChatProviderError, ServiceTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)


def server_token(api_secret: str) -> str:
    """Server-side JWT accepted by the GetStream API"""
    return pyjwt.encode({"server": True}, api_secret, algorithm="HS256")


class ChatClient:
    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        base_url: str,
        system_user_id: str = "system",
        timeout_seconds: float = 5.0,
        breaker: CircuitBreaker | None = None,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url.rstrip("/")
        self._system_user_id = system_user_id
        self._timeout_seconds = timeout_seconds
        self._breaker = breaker or get_getstream_circuit_breaker()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatClient":
        return cls(
            api_key=settings.GETSTREAM_API_KEY,
            api_secret=settings.GETSTREAM_API_SECRET,
            base_url=settings.GETSTREAM_BASE_URL,
            system_user_id=settings.GETSTREAM_SYSTEM_USER_ID,
            timeout_seconds=settings.GETSTREAM_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._api_secret)

    async def send_system_message(self, channel_type: str, channel_id: str, text: str) -> dict:
        """POST a system message to a channel; raises on any failure."""
        if not self.configured:
            raise ChatProviderError("GetStream credentials not configured")

        async def _send() -> dict:
            url = f"{self._base_url}/channels/{channel_type}/{channel_id}/message"
            headers = {
                "Authorization": server_token(self._api_secret),
                "Stream-Auth-Type": "jwt",
            }
            body = {"message": {"text": text, "user_id": self._system_user_id, "type": "system"}}
            try:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.post(
                        url, params={"api_key": self._api_key}, headers=headers, json=body
                    )
            except httpx.TimeoutException as exc:
                raise ServiceTimeoutError("getstream", self._timeout_seconds) from exc
            if response.status_code >= 400:
                raise ChatProviderError.from_response("sendMessage", response)
            return response.json()

        return await self._breaker.execute(_send)
