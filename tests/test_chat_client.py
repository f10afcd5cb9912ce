"""
Tests for the GetStream REST client - app/domain/services/chat_client.py
"""
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import jwt
import pytest

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from app.core.exceptions import ChatProviderError, CircuitBreakerOpenError, ServiceTimeoutError
from app.domain.services.chat_client import ChatClient, server_token
from tests.helpers import STREAM_KEY, STREAM_SECRET


def _client(**overrides) -> ChatClient:
    options = {
        "api_key": STREAM_KEY,
        "api_secret": STREAM_SECRET,
        "base_url": "https://chat.stream-io-api.com/",
        "system_user_id": "dialist-system",
        "breaker": CircuitBreaker("getstream-test", CircuitBreakerConfig(failure_threshold=2)),
    }
    options.update(overrides)
    return ChatClient(**options)


@contextmanager
def _mock_http(response=None, side_effect=None):
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=response, side_effect=side_effect)
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)
        mock_client.return_value = mock_instance
        yield mock_instance


def _response(status_code: int, body: dict | None = None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body or {}
    response.text = text
    return response


class TestServerToken:

    @pytest.mark.unit
    def test_token_is_signed_with_api_secret(self):
        token = server_token(STREAM_SECRET)
        assert jwt.decode(token, STREAM_SECRET, algorithms=["HS256"]) == {"server": True}


class TestSendSystemMessage:

    @pytest.mark.asyncio
    async def test_posts_system_message(self):
        with _mock_http(_response(201, {"message": {"id": "sys-1"}})) as http:
            result = await _client().send_system_message("messaging", "listing-42", "Paid")

        assert result == {"message": {"id": "sys-1"}}
        call = http.post.call_args
        assert call.args[0] == "https://chat.stream-io-api.com/channels/messaging/listing-42/message"
        assert call.kwargs["params"] == {"api_key": STREAM_KEY}
        assert call.kwargs["headers"]["Stream-Auth-Type"] == "jwt"
        assert call.kwargs["json"] == {
            "message": {"text": "Paid", "user_id": "dialist-system", "type": "system"}
        }

    @pytest.mark.asyncio
    async def test_error_status_raises_with_truncated_body(self):
        with _mock_http(_response(500, text="x" * 2000)):
            with pytest.raises(ChatProviderError) as exc_info:
                await _client().send_system_message("messaging", "c1", "hi")

        assert exc_info.value.details["status_code"] == 500
        assert len(exc_info.value.details["response_text"]) == 500

    @pytest.mark.asyncio
    async def test_timeout(self):
        with _mock_http(side_effect=httpx.ReadTimeout("slow")):
            with pytest.raises(ServiceTimeoutError):
                await _client(timeout_seconds=1.0).send_system_message("messaging", "c1", "hi")

    @pytest.mark.asyncio
    async def test_unconfigured_client_does_not_call_out(self):
        with _mock_http(_response(200)) as http:
            with pytest.raises(ChatProviderError):
                await _client(api_secret="").send_system_message("messaging", "c1", "hi")

        http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_repeated_failures_open_breaker(self):
        client = _client()
        with _mock_http(_response(503)):
            for _ in range(2):
                with pytest.raises(ChatProviderError):
                    await client.send_system_message("messaging", "c1", "hi")

            with pytest.raises(CircuitBreakerOpenError):
                await client.send_system_message("messaging", "c1", "hi")

        assert CircuitState.OPEN == client._breaker.state
