"""
Unit tests for the health check endpoints - liveness and readiness.
"""
from contextlib import ExitStack
from unittest.mock import AsyncMock, patch

import httpx
import pytest

_SERVICE = "app.domain.services.health_service"

QUEUE_COUNTS = {"waiting": 3, "delayed": 1, "active": 0, "completed": 10, "failed": 0, "paused": False}


def _patch_checks(stack: ExitStack, **results: str) -> AsyncMock:
    """Patch every dependency check; returns the queue summary mock."""
    for name in ("db", "redis", "celery"):
        stack.enter_context(
            patch(f"{_SERVICE}._check_{name}", new_callable=AsyncMock, return_value=results.get(name, "ok"))
        )
    return stack.enter_context(
        patch(f"{_SERVICE}._queue_summary", new_callable=AsyncMock, return_value=QUEUE_COUNTS)
    )


def _session_mock(execute: AsyncMock) -> AsyncMock:
    mock_session = AsyncMock()
    mock_session.execute = execute
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


# ============================================================================
# Liveness Probe - GET /health
# ============================================================================


class TestLivenessProbe:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.unit
    async def test_liveness_ignores_dependencies(self, test_client: httpx.AsyncClient) -> None:
        with ExitStack() as stack:
            _patch_checks(stack, db="error: db_unavailable")
            response = await test_client.get("/health")

        assert response.status_code == 200


# ============================================================================
# Readiness Probe - GET /health/ready
# ============================================================================


class TestReadinessProbe:

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        with ExitStack() as stack:
            _patch_checks(stack)
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "db": "ok",
            "redis": "ok",
            "celery": "ok",
            "queue": QUEUE_COUNTS,
        }

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        with ExitStack() as stack:
            queue_summary = _patch_checks(stack, db="error: db_unavailable")
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"
        assert "queue" not in data
        queue_summary.assert_not_awaited()

    @pytest.mark.unit
    async def test_readiness_celery_broker_down(self, test_client: httpx.AsyncClient) -> None:
        with ExitStack() as stack:
            _patch_checks(stack, celery="error: celery_unavailable")
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["celery"] == "error: celery_unavailable"
        # the queue itself is still readable
        assert data["queue"] == QUEUE_COUNTS


# ============================================================================
# Individual checks
# ============================================================================


class TestHealthCheckFunctions:

    @pytest.mark.unit
    async def test_check_db_success(self) -> None:
        with patch(f"{_SERVICE}.AsyncSessionLocal", return_value=_session_mock(AsyncMock())):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_db_failure_is_sanitized(self) -> None:
        failing = AsyncMock(side_effect=ConnectionError("refused by 10.0.0.5:5432"))
        with patch(f"{_SERVICE}.AsyncSessionLocal", return_value=_session_mock(failing)):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_success(self, fake_redis) -> None:
        from app.domain.services.health_service import _check_redis
        assert await _check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self) -> None:
        with patch(
            "app.core.redis_client.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("refused"),
        ):
            from app.domain.services.health_service import _check_redis
            result = await _check_redis()

        assert result == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_check_celery_success(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)
        mock_client.aclose = AsyncMock()

        with patch(f"{_SERVICE}.aioredis.from_url", return_value=mock_client):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "ok"
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        mock_client.aclose = AsyncMock()

        with patch(f"{_SERVICE}.aioredis.from_url", return_value=mock_client):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "error: celery_unavailable"
        mock_client.aclose.assert_awaited_once()
