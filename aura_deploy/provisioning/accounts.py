"""
System principal backends, one per platform family.

Each backend answers three questions against the host's account database
(lookup, which ids are taken, create) through native tools. Backends never
decide ids themselves; the provisioner does.
"""

import re
from abc import ABC, abstractmethod
from pathlib import PurePath
from typing import List, Optional

from structlog import get_logger

from ..core.command import CommandRunner
from ..core.error_handling import CommandError, PrincipalIdConflictError
from ..models import SystemPrincipal
from ..platforms import PlatformProfile, PlatformTarget

logger = get_logger(__name__)

# useradd exit codes
_USERADD_UID_IN_USE = 4
_USERADD_NAME_IN_USE = 9


class PrincipalDirectory(ABC):
    """ABC that each OS-specific account backend implements."""

    @abstractmethod
    def lookup(self, name: str) -> Optional[SystemPrincipal]:
        """Return the principal if an account of that name exists."""

    @abstractmethod
    def assigned_ids(self) -> List[int]:
        """Return every numeric id currently assigned to an account."""

    @abstractmethod
    def create(self, principal: SystemPrincipal) -> SystemPrincipal:
        """
        Create the account with a disabled shell and the given home.

        Raises:
            PrincipalIdConflictError: If ``principal.uid`` was taken meanwhile
            CommandError: If the account tool fails for any other reason
        """


class LinuxAccounts(PrincipalDirectory):
    """Accounts via the passwd database and ``useradd``."""

    shell = "/usr/sbin/nologin"

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def lookup(self, name: str) -> Optional[SystemPrincipal]:
        import pwd

        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return None
        return SystemPrincipal(
            name=name,
            home=PurePath(entry.pw_dir),
            uid=entry.pw_uid,
            shell_disabled=entry.pw_shell in ("/usr/sbin/nologin", "/sbin/nologin", "/bin/false"),
        )

    def assigned_ids(self) -> List[int]:
        import pwd

        return [entry.pw_uid for entry in pwd.getpwall()]

    def create(self, principal: SystemPrincipal) -> SystemPrincipal:
        cmd = [
            "useradd",
            "--system",
            "--user-group",
            "--shell",
            self.shell,
            "--home-dir",
            str(principal.home),
            "--no-create-home",
        ]
        if principal.uid is not None:
            cmd += ["--uid", str(principal.uid)]
        cmd.append(principal.name)

        try:
            self.runner.run(cmd, description=f"Creating system user {principal.name}")
        except CommandError as e:
            if e.returncode == _USERADD_UID_IN_USE and principal.uid is not None:
                raise PrincipalIdConflictError(principal.name, principal.uid) from e
            if e.returncode != _USERADD_NAME_IN_USE:
                raise
            logger.info("System user appeared concurrently", principal=principal.name)

        return self.lookup(principal.name) or principal


class MacAccounts(PrincipalDirectory):
    """Accounts via Directory Services (``dscl``)."""

    shell = "/usr/bin/false"
    primary_group_id = 20

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def _record(self, name: str) -> str:
        return f"/Users/{name}"

    def lookup(self, name: str) -> Optional[SystemPrincipal]:
        result = self.runner.run(
            ["dscl", ".", "-read", self._record(name), "UniqueID", "NFSHomeDirectory"],
            check=False,
        )
        if not result.ok:
            return None
        uid_match = re.search(r"UniqueID:\s*(-?\d+)", result.stdout)
        home_match = re.search(r"NFSHomeDirectory:\s*(\S+)", result.stdout)
        return SystemPrincipal(
            name=name,
            home=PurePath(home_match.group(1)) if home_match else PurePath("/var/empty"),
            uid=int(uid_match.group(1)) if uid_match else None,
        )

    def assigned_ids(self) -> List[int]:
        result = self.runner.run(["dscl", ".", "-list", "/Users", "UniqueID"])
        ids = []
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[-1].lstrip("-").isdigit():
                ids.append(int(fields[-1]))
        return ids

    def create(self, principal: SystemPrincipal) -> SystemPrincipal:
        if principal.uid is None:
            raise ValueError("Directory Services accounts need an explicit UniqueID")
        # Re-check right before writing: the id may have been taken since it was computed
        if principal.uid in self.assigned_ids():
            raise PrincipalIdConflictError(principal.name, principal.uid)

        record = self._record(principal.name)
        attributes = [
            ("UserShell", self.shell),
            ("RealName", f"{principal.name} system user"),
            ("UniqueID", str(principal.uid)),
            ("PrimaryGroupID", str(self.primary_group_id)),
            ("NFSHomeDirectory", str(principal.home)),
            ("IsHidden", "1"),
        ]
        self.runner.run(["dscl", ".", "-create", record], description=f"Creating {record}")
        try:
            for key, value in attributes:
                self.runner.run(["dscl", ".", "-create", record, key, value])
        except CommandError:
            # A half-written record would later be taken for an existing principal
            logger.warning("Removing incomplete account record", record=record)
            self.runner.run(["dscl", ".", "-delete", record], check=False)
            raise
        return principal


class WindowsAccounts(PrincipalDirectory):
    """Local accounts via ``net user``. Windows has no numeric ids."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def lookup(self, name: str) -> Optional[SystemPrincipal]:
        result = self.runner.run(["net", "user", name], check=False)
        if not result.ok:
            return None
        return SystemPrincipal(name=name, home=PurePath("."))

    def assigned_ids(self) -> List[int]:
        return []

    def create(self, principal: SystemPrincipal) -> SystemPrincipal:
        self.runner.run(
            [
                "net",
                "user",
                principal.name,
                "/add",
                "/expires:never",
                "/passwordreq:no",
                "/comment:Service account",
            ],
            description=f"Creating service account {principal.name}",
        )
        return principal


def accounts_for(profile: PlatformProfile, runner: CommandRunner) -> PrincipalDirectory:
    """Account backend of a platform family."""
    match profile.target:
        case PlatformTarget.LINUX:
            return LinuxAccounts(runner)
        case PlatformTarget.MACOS:
            return MacAccounts(runner)
        case PlatformTarget.WINDOWS:
            return WindowsAccounts(runner)
    raise ValueError(f"No account backend for {profile.target}")
