"""
Principal provisioner: the pre-install step.

Creates the service's system principal if it does not exist yet, then
(re)applies ownership and permissions of its directories. Every step is
idempotent: any number of runs end in the same state as one.
"""

from typing import Iterable, List, Optional, Sequence

from returns.result import Failure, Result, Success
from structlog import get_logger

from ..core.error_handling import (
    CommandError,
    DeployError,
    PrincipalIdConflictError,
    RetryConfig,
    retry,
)
from ..core.result_pattern import StageError, provision_failure
from ..models import InstallRoot, ProvisionedDirectory, SystemPrincipal
from .accounts import PrincipalDirectory
from .filesystem import FileSystem

logger = get_logger(__name__)

DEFAULT_CREATE_RETRY = RetryConfig(
    max_attempts=3,
    initial_delay=0.2,
    jitter=False,
    retry_on=[PrincipalIdConflictError],
)


def next_principal_id(assigned: Iterable[int], floor: int) -> int:
    """One past the highest assigned id, but never below ``floor``."""
    return max(max(assigned, default=0) + 1, floor)


class PrincipalProvisioner:
    """Creates the system principal and owns its directories."""

    def __init__(
        self,
        accounts: PrincipalDirectory,
        filesystem: FileSystem,
        id_floor: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Args:
            accounts: Account backend of the host
            filesystem: Filesystem backend of the host
            id_floor: Lowest id a new principal may get; None lets the
                account tool allocate
            retry_config: Retry policy for id conflicts during creation
        """
        self.accounts = accounts
        self.filesystem = filesystem
        self.id_floor = id_floor
        self._create = retry(retry_config or DEFAULT_CREATE_RETRY)(self._create_once)

    def provision(
        self, principal: SystemPrincipal, directories: Sequence[ProvisionedDirectory]
    ) -> Result[SystemPrincipal, StageError]:
        """
        Ensure the principal exists and owns its directories.

        Returns:
            Success with the principal (numeric id filled in where the platform
            has one), or a PROVISION failure with subtype principal/directory
        """
        return self._ensure_principal(principal).bind(
            lambda ensured: self._ensure_directories(ensured, directories)
        )

    def install_payload(self, root: InstallRoot) -> Result[List, StageError]:
        """Place the install root's files at their final destinations."""
        try:
            return Success(self.filesystem.install_payload(root))
        except (DeployError, OSError) as e:
            return Failure(
                provision_failure(
                    "Failed to place install payload",
                    subtype="payload",
                    diagnostic=self._diagnostic(e),
                )
            )

    def _ensure_principal(self, principal: SystemPrincipal) -> Result[SystemPrincipal, StageError]:
        try:
            existing = self.accounts.lookup(principal.name)
            if existing is not None:
                logger.info(
                    "System principal already exists",
                    principal=principal.name,
                    uid=existing.uid,
                )
                return Success(principal.with_uid(existing.uid))

            created = self._create(principal)
        except (DeployError, OSError) as e:
            return Failure(
                provision_failure(
                    f"Failed to create system principal {principal.name}",
                    subtype="principal",
                    diagnostic=self._diagnostic(e),
                    principal=principal.name,
                )
            )

        logger.info("Created system principal", principal=created.name, uid=created.uid)
        return Success(principal.with_uid(created.uid))

    def _create_once(self, principal: SystemPrincipal) -> SystemPrincipal:
        uid = None
        if self.id_floor is not None:
            uid = next_principal_id(self.accounts.assigned_ids(), self.id_floor)
        return self.accounts.create(principal.with_uid(uid))

    def _ensure_directories(
        self, principal: SystemPrincipal, directories: Sequence[ProvisionedDirectory]
    ) -> Result[SystemPrincipal, StageError]:
        for directory in directories:
            try:
                self.filesystem.ensure_directory(directory)
            except (DeployError, OSError) as e:
                return Failure(
                    provision_failure(
                        f"Failed to provision directory {directory.path}",
                        subtype="directory",
                        diagnostic=self._diagnostic(e),
                        path=str(directory.path),
                    )
                )
        return Success(principal)

    @staticmethod
    def _diagnostic(e: Exception) -> str:
        if isinstance(e, CommandError):
            return e.diagnostic
        return str(e)
