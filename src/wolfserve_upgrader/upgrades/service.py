"""
Service control for the upgrade workflow.

Two layers live here:
- ``ServiceController``: the collaborator interface that actually talks to
  the service manager, with ``SystemdController`` as the systemctl-backed
  implementation.
- ``ServiceSupervisor``: the policy the orchestrator applies on top of a
  controller. Stops are graceful-then-forced and bounded by a timeout;
  starts wait a fixed settle delay and check the run state once.

Start and stop commands are assumed idempotent: stopping a stopped service
or starting a running one is not an error.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Protocol, runtime_checkable

from wolfserve_upgrader.errors import ServiceControlError, ServiceStopTimeoutError
from wolfserve_upgrader.logging import get_logger

logger = get_logger(__name__)


class ServiceRunState(str, Enum):
    """Run state of the managed service as observed by the upgrader."""

    RUNNING = "running"
    NOT_RUNNING = "not_running"
    UNKNOWN = "unknown"


@runtime_checkable
class ServiceController(Protocol):
    """Interface to a service manager capable of controlling a named service."""

    async def start(self, name: str) -> bool:
        """Issue a start command. Returns whether the command was accepted."""
        ...

    async def stop(self, name: str) -> bool:
        """Issue a graceful stop command."""
        ...

    async def is_running(self, name: str) -> bool:
        """Return True if the service is currently running."""
        ...

    async def force_kill(self, name: str) -> bool:
        """Forcibly terminate all processes of the service."""
        ...


class SystemdController:
    """
    ServiceController backed by ``systemctl``.

    Raises ServiceControlError when systemctl is missing or a command does
    not return within ``command_timeout``.
    """

    def __init__(
        self,
        systemctl_bin: str = "systemctl",
        command_timeout: float = 30.0,
    ) -> None:
        self.systemctl_bin = systemctl_bin
        self.command_timeout = command_timeout

    async def _run_systemctl(self, *args: str) -> tuple[int, str, str]:
        """
        Run a systemctl command.

        Returns:
            Tuple of (return_code, stdout, stderr).

        Raises:
            ServiceControlError: If systemctl is not available or times out.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.systemctl_bin,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ServiceControlError(
                f"{self.systemctl_bin} not available",
                details={"hint": "This system may not use systemd"},
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=self.command_timeout,
            )
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ServiceControlError(
                f"systemctl command timed out after {self.command_timeout}s",
                details={"args": list(args)},
            ) from exc

        return (
            proc.returncode or 0,
            stdout.decode() if stdout else "",
            stderr.decode() if stderr else "",
        )

    async def _command(self, verb: str, *args: str) -> bool:
        returncode, stdout, stderr = await self._run_systemctl(verb, *args)
        if returncode != 0:
            logger.error(
                f"systemctl {verb} failed: {(stderr or stdout).strip()}",
                extra={"args": list(args), "returncode": returncode},
            )
            return False
        return True

    async def start(self, name: str) -> bool:
        return await self._command("start", name)

    async def stop(self, name: str) -> bool:
        return await self._command("stop", name)

    async def is_running(self, name: str) -> bool:
        returncode, _, _ = await self._run_systemctl("is-active", "--quiet", name)
        return returncode == 0

    async def force_kill(self, name: str) -> bool:
        return await self._command("kill", "--signal=SIGKILL", name)


class ServiceSupervisor:
    """
    Timeout and force-kill policy applied to a ServiceController.

    Attributes:
        controller: Collaborator issuing the actual commands.
        name: Service name.
        stop_timeout: Default graceful stop budget in seconds.
        poll_interval: Run-state polling interval while stopping.
        settle_delay: Delay between a start command and the run-state check.
    """

    def __init__(
        self,
        controller: ServiceController,
        name: str,
        *,
        stop_timeout: float = 30.0,
        poll_interval: float = 1.0,
        settle_delay: float = 2.0,
    ) -> None:
        self.controller = controller
        self.name = name
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay

    async def run_state(self) -> ServiceRunState:
        """Observe the run state; controller failures map to UNKNOWN."""
        try:
            running = await self.controller.is_running(self.name)
        except ServiceControlError as e:
            logger.warning(f"Cannot determine state of {self.name}: {e.message}")
            return ServiceRunState.UNKNOWN
        return ServiceRunState.RUNNING if running else ServiceRunState.NOT_RUNNING

    async def _wait_stopped(self, timeout: float) -> None:
        """
        Poll until the service is no longer running.

        Raises:
            ServiceStopTimeoutError: If it is still running after *timeout*.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            state = await self.run_state()
            if state is ServiceRunState.NOT_RUNNING:
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ServiceStopTimeoutError(
                    f"Service {self.name} did not stop within {timeout}s",
                    details={"service": self.name, "last_state": state.value},
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def stop(self, timeout: float | None = None) -> bool:
        """
        Stop the service, forcing termination if it will not stop in time.

        Args:
            timeout: Graceful stop budget (defaults to ``stop_timeout``).

        Returns:
            True if termination had to be forced.
        """
        timeout = self.stop_timeout if timeout is None else timeout
        logger.info(f"Stopping {self.name} service...")

        if await self.run_state() is ServiceRunState.NOT_RUNNING:
            logger.info("Service was not running")
            return False

        try:
            accepted = await self.controller.stop(self.name)
        except ServiceControlError as e:
            logger.warning(f"Graceful stop command failed: {e.message}")
            accepted = False
        if not accepted:
            logger.warning(f"Stop command for {self.name} was not accepted")

        try:
            await self._wait_stopped(timeout)
        except ServiceStopTimeoutError as e:
            logger.warning(
                f"{e.message}, forcing...",
                extra={"error_code": e.error_code, "service": self.name},
            )
            try:
                await self.controller.force_kill(self.name)
            except ServiceControlError as kill_error:
                logger.error(f"Forced termination failed: {kill_error.message}")
            logger.info("Service stopped (forced)")
            return True

        logger.info("Service stopped")
        return False

    async def start(self) -> bool:
        """
        Start the service and check once, after the settle delay, that it runs.

        No retries happen here; whether the new version actually serves
        requests is the health prober's concern.

        Returns:
            True if the service is running after the settle delay.
        """
        logger.info(f"Starting {self.name} service...")

        try:
            accepted = await self.controller.start(self.name)
        except ServiceControlError as e:
            logger.error(f"Start command failed: {e.message}")
            return False
        if not accepted:
            logger.error(f"Start command for {self.name} was rejected")
            return False

        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        if await self.run_state() is ServiceRunState.RUNNING:
            logger.info("Service started successfully")
            return True

        logger.error("Service failed to start")
        return False
