"""
Service registration and start-up verification.

A ``ServiceManager`` speaks one service-manager dialect through its native
CLI. The ``ServiceRegistrar`` drives it: submit the descriptor, start the
service, then poll its status at a fixed interval until it runs, the
deadline passes, or the run is cancelled.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from returns.result import Failure, Result, Success
from structlog import get_logger

from .core.command import CommandRunner
from .core.error_handling import CommandError
from .core.result_pattern import (
    FailureKind,
    StageError,
    start_failure,
    with_result,
)
from .models import ServiceDescriptor
from .platforms import PlatformProfile, ServiceDialect

logger = get_logger(__name__)


class CancelToken:
    """
    Shared cancellation flag for a run.

    ``wait`` doubles as the polling sleep: it returns early, with True, as
    soon as the token is cancelled.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled."""
        return self._event.wait(timeout)


class ServiceManager(ABC):
    """ABC that each service-manager dialect implements."""

    dialect: ServiceDialect

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    @abstractmethod
    def install(self, descriptor: ServiceDescriptor) -> None:
        """Submit the installed descriptor to the service manager."""

    @abstractmethod
    def start(self, descriptor: ServiceDescriptor) -> None:
        """Ask the service manager to start the service."""

    @abstractmethod
    def is_running(self, descriptor: ServiceDescriptor) -> bool:
        """Return True if the service manager reports the service running."""


class SystemdManager(ServiceManager):
    dialect = ServiceDialect.SYSTEMD

    def install(self, descriptor: ServiceDescriptor) -> None:
        self.runner.run(["systemctl", "daemon-reload"])
        self.runner.run(
            ["systemctl", "enable", descriptor.identifier],
            description=f"Enabling {descriptor.identifier}",
        )

    def start(self, descriptor: ServiceDescriptor) -> None:
        self.runner.run(
            ["systemctl", "start", descriptor.identifier],
            description=f"Starting {descriptor.identifier}",
        )

    def is_running(self, descriptor: ServiceDescriptor) -> bool:
        result = self.runner.run(
            ["systemctl", "is-active", "--quiet", descriptor.identifier], check=False
        )
        return result.ok


class LaunchdManager(ServiceManager):
    dialect = ServiceDialect.LAUNCHD

    @staticmethod
    def _target(descriptor: ServiceDescriptor) -> str:
        return f"system/{descriptor.identifier}"

    def install(self, descriptor: ServiceDescriptor) -> None:
        # bootstrap refuses an already loaded label, so unload any previous copy first
        self.runner.run(["launchctl", "bootout", self._target(descriptor)], check=False)
        self.runner.run(
            ["launchctl", "bootstrap", "system", str(descriptor.descriptor_path)],
            description=f"Bootstrapping {descriptor.identifier}",
        )
        self.runner.run(["launchctl", "enable", self._target(descriptor)])

    def start(self, descriptor: ServiceDescriptor) -> None:
        self.runner.run(
            ["launchctl", "kickstart", "-k", self._target(descriptor)],
            description=f"Starting {descriptor.identifier}",
        )

    def is_running(self, descriptor: ServiceDescriptor) -> bool:
        result = self.runner.run(["launchctl", "print", self._target(descriptor)], check=False)
        return result.ok and "state = running" in result.stdout


class WinswManager(ServiceManager):
    """Windows services wrapped by WinSW, queried through ``sc.exe``."""

    dialect = ServiceDialect.WINSW

    def __init__(self, runner: CommandRunner, winsw: str = "winsw"):
        super().__init__(runner)
        self.winsw = winsw

    def _query(self, descriptor: ServiceDescriptor):
        return self.runner.run(["sc.exe", "query", descriptor.identifier], check=False)

    def install(self, descriptor: ServiceDescriptor) -> None:
        if self._query(descriptor).ok:
            logger.info("Service already registered", service=descriptor.identifier)
            return
        self.runner.run(
            [self.winsw, "install", str(descriptor.descriptor_path)],
            description=f"Installing {descriptor.identifier}",
        )

    def start(self, descriptor: ServiceDescriptor) -> None:
        self.runner.run(
            [self.winsw, "start", str(descriptor.descriptor_path)],
            description=f"Starting {descriptor.identifier}",
        )

    def is_running(self, descriptor: ServiceDescriptor) -> bool:
        result = self._query(descriptor)
        return result.ok and "RUNNING" in result.stdout


def manager_for(profile: PlatformProfile, runner: CommandRunner, winsw: str = "winsw") -> ServiceManager:
    """Service manager of a profile's dialect."""
    match profile.dialect:
        case ServiceDialect.SYSTEMD:
            return SystemdManager(runner)
        case ServiceDialect.LAUNCHD:
            return LaunchdManager(runner)
        case ServiceDialect.WINSW:
            return WinswManager(runner, winsw)
    raise ValueError(f"Unsupported service dialect: {profile.dialect}")


class ServiceRegistrar:
    """Registers a service, starts it and waits for it to run."""

    def __init__(
        self,
        manager: ServiceManager,
        poll_interval: float = 1.0,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            manager: Dialect-specific service manager
            poll_interval: Seconds between status checks
            timeout: Seconds after the start request before giving up
            clock: Monotonic clock, injectable for tests
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        self.manager = manager
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.clock = clock

    def register_and_start(
        self, descriptor: ServiceDescriptor, cancel: Optional[CancelToken] = None
    ) -> Result[ServiceDescriptor, StageError]:
        """
        Register, start and verify a service.

        Args:
            descriptor: Installed service descriptor
            cancel: Token that aborts the status polling when cancelled

        Returns:
            Success with the descriptor once the service runs; otherwise a
            REGISTRATION failure (submission rejected) or a START failure
            (start rejected, deadline reached, or cancelled)
        """
        cancel = cancel or CancelToken()
        return (
            self.register(descriptor)
            .bind(lambda _: self.start(descriptor))
            .bind(lambda _: self.await_running(descriptor, cancel))
        )

    @with_result(FailureKind.REGISTRATION, message="Service registration failed")
    def register(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        logger.info(
            "Registering service",
            service=descriptor.identifier,
            dialect=self.manager.dialect.value,
        )
        self.manager.install(descriptor)
        return descriptor

    @with_result(FailureKind.START, message="Service start failed")
    def start(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        logger.info("Starting service", service=descriptor.identifier)
        self.manager.start(descriptor)
        return descriptor

    def await_running(
        self, descriptor: ServiceDescriptor, cancel: CancelToken
    ) -> Result[ServiceDescriptor, StageError]:
        """Poll until running; fail at (never before) the deadline."""
        deadline = self.clock() + self.timeout
        polls = 0
        last_error = ""

        while True:
            if cancel.cancelled:
                return Failure(self._cancelled(descriptor, polls))

            polls += 1
            try:
                if self.manager.is_running(descriptor):
                    logger.info("Service is running", service=descriptor.identifier, polls=polls)
                    return Success(descriptor)
            except CommandError as e:
                last_error = e.diagnostic
                logger.debug("Status check failed", service=descriptor.identifier, error=last_error)

            remaining = deadline - self.clock()
            if remaining <= 0:
                return Failure(
                    start_failure(
                        f"{descriptor.identifier} did not reach the running state "
                        f"within {self.timeout:g}s",
                        diagnostic=last_error,
                        service=descriptor.identifier,
                        polls=polls,
                        timeout=self.timeout,
                    )
                )

            if cancel.wait(min(self.poll_interval, remaining)):
                return Failure(self._cancelled(descriptor, polls))

    @staticmethod
    def _cancelled(descriptor: ServiceDescriptor, polls: int) -> StageError:
        logger.warning("Start-up verification cancelled", service=descriptor.identifier)
        return start_failure(
            f"Start-up verification of {descriptor.identifier} was cancelled",
            service=descriptor.identifier,
            polls=polls,
            cancelled=True,
        )
