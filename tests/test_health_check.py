"""
Tests for HTTP health probing.

Probes run against httpx.MockTransport, so no sockets are opened.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from wolfserve_upgrader.upgrades.health_check import HealthCheckResult, HealthProber

URL = "http://127.0.0.1:3000/"


def _prober(handler, **kwargs) -> HealthProber:
    kwargs.setdefault("timeout", 0.5)
    kwargs.setdefault("interval", 0.01)
    kwargs.setdefault("probe_timeout", 0.1)
    return HealthProber(URL, transport=httpx.MockTransport(handler), **kwargs)


class TestHealthCheckResult:
    """Tests for HealthCheckResult."""

    def test_truthiness(self) -> None:
        assert HealthCheckResult("x", True)
        assert not HealthCheckResult("x", False)

    def test_to_dict(self) -> None:
        result = HealthCheckResult("http_health", False, "down", {"attempts": 3})

        assert result.to_dict() == {
            "name": "http_health",
            "passed": False,
            "message": "down",
            "details": {"attempts": 3},
        }


class TestHealthProber:
    """Tests for HealthProber.check()."""

    @pytest.mark.asyncio
    async def test_first_probe_succeeds(self) -> None:
        result = await _prober(lambda request: httpx.Response(200)).check()

        assert result.passed is True
        assert result.details["attempts"] == 1
        assert result.details["status_code"] == 200
        assert result.details["url"] == URL

    @pytest.mark.asyncio
    async def test_any_status_is_healthy_by_default(self) -> None:
        """Test a completed 404/500 exchange still counts as serving."""
        result = await _prober(lambda request: httpx.Response(503)).check()
        assert result.passed is True

    @pytest.mark.asyncio
    async def test_require_success_status(self) -> None:
        result = await _prober(
            lambda request: httpx.Response(500),
            require_success_status=True,
            timeout=0.1,
        ).check()

        assert result.passed is False
        assert result.details["status_code"] == 500

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        """Test connection errors are retried within the budget."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        result = await _prober(handler).check()

        assert result.passed is True
        assert result.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self) -> None:
        """Test the check fails once the full budget is spent."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await _prober(handler, timeout=0.2).check()
        elapsed = loop.time() - started

        assert result.passed is False
        assert result.details["attempts"] > 1
        assert elapsed >= 0.2
        assert elapsed < 2.0

    @pytest.mark.asyncio
    async def test_hung_probe_bounded(self) -> None:
        """Test a request that never answers is cut off by the probe timeout."""

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await _prober(handler, timeout=0.3, probe_timeout=0.05).check()

        assert result.passed is False
        assert result.details["attempts"] >= 2
        assert loop.time() - started < 2.0

    @pytest.mark.asyncio
    async def test_url_override(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200)

        await _prober(handler).check("http://127.0.0.1:9000/health")

        assert seen == ["http://127.0.0.1:9000/health"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_failed_attempt(self) -> None:
        """Test errors httpx does not wrap still count as a failed attempt."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise OverflowError("connect(): port must be 0-65535.")

        result = await _prober(handler, timeout=0.1).check()

        assert result.passed is False
        assert "port must be" in result.details["error"]

    @pytest.mark.asyncio
    async def test_out_of_range_port(self) -> None:
        """Test an unusable URL fails the check instead of raising."""
        prober = HealthProber(
            "http://127.0.0.1:99999/",
            timeout=0.2,
            interval=0.05,
            probe_timeout=0.1,
        )

        result = await prober.check()

        assert result.passed is False
        assert result.details["attempts"] >= 1
