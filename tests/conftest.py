"""Shared fixtures: scripted command runner, fake accounts, fake clock."""

from pathlib import Path, PurePath
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from aura_deploy.core.command import CommandResult
from aura_deploy.core.error_handling import CommandError, PrincipalIdConflictError
from aura_deploy.manifest import DeploymentManifest
from aura_deploy.models import SystemPrincipal
from aura_deploy.platforms import PlatformProfile, PlatformTarget
from aura_deploy.provisioning import PosixFileSystem, PrincipalDirectory
from aura_deploy.services import CancelToken


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    ``respond`` registers results for commands starting with a prefix; the
    most recently registered matching rule wins. A rule with several results
    hands them out in order and keeps repeating the last one. Unmatched
    commands succeed with empty output.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self._rules: List[Dict] = []

    def respond(
        self,
        *prefix: str,
        returncode=0,
        stdout: str = "",
        stderr: str = "",
        effect: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        codes = list(returncode) if isinstance(returncode, (list, tuple)) else [returncode]
        self._rules.append(
            {"prefix": tuple(prefix), "codes": codes, "stdout": stdout, "stderr": stderr, "effect": effect}
        )

    def run(self, argv, cwd=None, env=None, check=True, description=None) -> CommandResult:
        command = [str(a) for a in argv]
        self.calls.append(command)

        result = CommandResult(command, 0)
        for rule in reversed(self._rules):
            prefix = rule["prefix"]
            if tuple(command[: len(prefix)]) != prefix:
                continue
            code = rule["codes"].pop(0) if len(rule["codes"]) > 1 else rule["codes"][0]
            if rule["effect"] is not None:
                rule["effect"](command)
            result = CommandResult(command, code, rule["stdout"], rule["stderr"])
            break

        if check and not result.ok:
            raise CommandError(command, result.returncode, result.stdout, result.stderr)
        return result

    def commands(self, program: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == program]


class FakeAccounts(PrincipalDirectory):
    """In-memory account database."""

    def __init__(self, ids: Sequence[int] = (), conflicts: int = 0):
        self.principals: Dict[str, SystemPrincipal] = {}
        self.ids: List[int] = list(ids)
        self.conflicts = conflicts
        self.created: List[SystemPrincipal] = []

    def lookup(self, name: str) -> Optional[SystemPrincipal]:
        return self.principals.get(name)

    def assigned_ids(self) -> List[int]:
        return list(self.ids)

    def create(self, principal: SystemPrincipal) -> SystemPrincipal:
        if self.conflicts:
            # Someone else grabbed the id between computing and creating it
            self.conflicts -= 1
            self.ids.append(principal.uid)
            raise PrincipalIdConflictError(principal.name, principal.uid)
        self.principals[principal.name] = principal
        if principal.uid is not None:
            self.ids.append(principal.uid)
        self.created.append(principal)
        return principal


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ClockedToken(CancelToken):
    """Cancel token whose wait advances a FakeClock instead of sleeping."""

    def __init__(self, clock: FakeClock, cancel_after_waits: Optional[int] = None):
        super().__init__()
        self.clock = clock
        self.waits: List[float] = []
        self.cancel_after_waits = cancel_after_waits

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        self.clock.advance(timeout)
        if self.cancel_after_waits is not None and len(self.waits) >= self.cancel_after_waits:
            self.cancel()
        return self.cancelled


class ChownRecorder:
    def __init__(self):
        self.calls: List[tuple] = []

    def __call__(self, path: Path, user: Optional[str], group: Optional[str]) -> None:
        self.calls.append((Path(path), user, group))

    def owner_of(self, path: Path) -> Optional[str]:
        owners = [user for recorded, user, _ in self.calls if recorded == Path(path)]
        return owners[-1] if owners else None


def cargo_output(workspace: Path, file_name: str, suffix: str = "") -> Path:
    return workspace / "target" / "release" / f"{file_name}{suffix}"


def fake_cargo(runner: FakeRunner, workspace: Path, manifest: DeploymentManifest, suffix: str = ""):
    """Make ``cargo build`` drop the expected executable into target/release."""
    output_names = {b.name: b.output_name for b in manifest.binaries}

    def produce(command: List[str]) -> None:
        name = command[command.index("--bin") + 1]
        path = cargo_output(workspace, output_names[name], suffix)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x7fELF fake binary")

    runner.respond("cargo", "build", effect=produce)


def fake_packager(runner: FakeRunner, program: str, output_index: int = -1):
    """Make a packaging tool write the file named by one of its arguments."""

    def produce(command: List[str]) -> None:
        target = command[output_index] if program != "wix" else command[command.index("-o") + 1]
        Path(target).write_bytes(b"package")

    runner.respond(program, effect=produce)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def manifest():
    return DeploymentManifest()


@pytest.fixture
def linux_profile():
    return PlatformProfile.for_target(PlatformTarget.LINUX)


@pytest.fixture
def macos_profile():
    return PlatformProfile.for_target(PlatformTarget.MACOS)


@pytest.fixture
def windows_profile():
    return PlatformProfile.for_target(PlatformTarget.WINDOWS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def accounts():
    return FakeAccounts(ids=[0, 1, 2, 65534])


@pytest.fixture
def chown():
    return ChownRecorder()


@pytest.fixture
def install_root(tmp_path):
    root = tmp_path / "sysroot"
    root.mkdir()
    return root


@pytest.fixture
def posix_fs(install_root, chown):
    return PosixFileSystem(install_root, chown=chown)


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


def local(root: Path, path: PurePath) -> Path:
    """Path of an absolute install destination below a scratch root."""
    return root / Path(*path.parts[1:])
