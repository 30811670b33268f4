"""
Health probing for freshly started binaries.

The prober polls the service's liveness URL until a probe succeeds or the
overall budget is spent. Each probe is bounded by its own short timeout so a
single hung connection cannot consume the whole window without retrying.

By default any completed HTTP exchange counts as healthy, whatever the
status code: the question answered here is "is the new binary serving",
not "is every route correct".
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from wolfserve_upgrader.logging import get_logger

logger = get_logger(__name__)


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        name: str,
        passed: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the health check result.

        Args:
            name: Name of the health check.
            passed: Whether the check passed.
            message: Optional message describing the result.
            details: Optional additional details.
        """
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details or {}

    def __bool__(self) -> bool:
        return self.passed

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


class HealthProber:
    """
    Polls an HTTP liveness endpoint with bounded retries.

    Attributes:
        url: Default URL to probe.
        timeout: Default overall budget in seconds.
        interval: Default delay between probes in seconds.
        probe_timeout: Timeout of a single request.
        require_success_status: Only accept 2xx/3xx responses.
    """

    DEFAULT_URL = "http://127.0.0.1:3000/"

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float = 30.0,
        interval: float = 1.0,
        probe_timeout: float = 5.0,
        require_success_status: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the prober.

        Args:
            url: URL to probe when ``check`` is called without one.
            timeout: Overall budget in seconds.
            interval: Delay between probes in seconds.
            probe_timeout: Per-request timeout in seconds.
            require_success_status: Reject 4xx/5xx responses.
            transport: Optional httpx transport (used by tests).
        """
        self.url = url or self.DEFAULT_URL
        self.timeout = timeout
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.require_success_status = require_success_status
        self._transport = transport

    async def probe_once(
        self,
        client: httpx.AsyncClient,
        url: str,
        timeout: float,
    ) -> HealthCheckResult:
        """Perform a single bounded probe."""
        try:
            # httpx timeouts apply per phase; wait_for bounds the whole exchange.
            response = await asyncio.wait_for(
                client.get(url, timeout=timeout), timeout=timeout
            )
        except TimeoutError:
            return HealthCheckResult(
                name="http_health",
                passed=False,
                message=f"Probe timed out after {timeout:.1f}s",
                details={"error": "timeout"},
            )
        except httpx.HTTPError as e:
            return HealthCheckResult(
                name="http_health",
                passed=False,
                message=f"Probe failed: {type(e).__name__}: {e}",
                details={"error": str(e) or type(e).__name__},
            )
        except Exception as e:
            # Invalid URLs and socket-level errors escape httpx unwrapped
            # (e.g. OverflowError for an out-of-range port).
            return HealthCheckResult(
                name="http_health",
                passed=False,
                message=f"Probe error: {type(e).__name__}: {e}",
                details={"error": str(e) or type(e).__name__},
            )

        status = response.status_code
        if self.require_success_status and status >= 400:
            return HealthCheckResult(
                name="http_health",
                passed=False,
                message=f"Probe returned HTTP {status}",
                details={"status_code": status},
            )
        return HealthCheckResult(
            name="http_health",
            passed=True,
            message=f"Probe answered with HTTP {status}",
            details={"status_code": status},
        )

    async def check(
        self,
        url: str | None = None,
        timeout: float | None = None,
        interval: float | None = None,
    ) -> HealthCheckResult:
        """
        Poll *url* until a probe succeeds or *timeout* elapses.

        Args:
            url: URL to probe (defaults to ``self.url``).
            timeout: Overall budget (defaults to ``self.timeout``).
            interval: Delay between probes (defaults to ``self.interval``).

        Returns:
            A passing result on the first successful probe, or a failing
            result once the full budget is spent.
        """
        url = url or self.url
        timeout = self.timeout if timeout is None else timeout
        interval = self.interval if interval is None else interval

        logger.info("Performing health check...", extra={"url": url})

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        attempts = 0
        last: HealthCheckResult | None = None

        async with httpx.AsyncClient(transport=self._transport) as client:
            while True:
                remaining = deadline - loop.time()
                attempts += 1
                last = await self.probe_once(
                    client, url, max(min(self.probe_timeout, remaining), 0.001)
                )
                elapsed = loop.time() - started

                if last.passed:
                    logger.info("Health check passed", extra={"attempts": attempts})
                    return HealthCheckResult(
                        name="http_health",
                        passed=True,
                        message=last.message,
                        details={
                            **last.details,
                            "url": url,
                            "attempts": attempts,
                            "elapsed": round(elapsed, 3),
                        },
                    )

                logger.debug(
                    f"Health probe {attempts} failed: {last.message}",
                    extra={"url": url},
                )

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(interval, remaining))

        logger.error(f"Health check failed after {timeout} seconds")
        return HealthCheckResult(
            name="http_health",
            passed=False,
            message=f"No successful probe of {url} within {timeout}s",
            details={
                **last.details,
                "url": url,
                "attempts": attempts,
                "elapsed": round(loop.time() - started, 3),
            },
        )
