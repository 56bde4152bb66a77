"""Artifact builder: invokes the cargo toolchain once per deployed binary."""

from pathlib import Path
from typing import Iterable, List, Optional

from returns.result import Failure, Result, Success
from structlog import get_logger

from .core.command import CommandRunner
from .core.result_pattern import FailureKind, StageError, build_failure, collect_results, with_result
from .manifest import BinarySpec, DeploymentManifest
from .models import BuildArtifact
from .platforms import PlatformProfile

logger = get_logger(__name__)


class ArtifactBuilder:
    """
    Builds release executables and records where the toolchain put them.

    Output stays in cargo's own ``target/`` directory; the builder never
    moves it. The first failing binary aborts the remaining builds.
    """

    def __init__(
        self,
        runner: CommandRunner,
        workspace: Path,
        profile: PlatformProfile,
        manifest: DeploymentManifest,
    ):
        self.runner = runner
        self.workspace = Path(workspace)
        self.profile = profile
        self.manifest = manifest

    @property
    def output_dir(self) -> Path:
        """cargo's release output directory for the configured target."""
        target_dir = self.workspace / "target"
        if self.manifest.cargo_target:
            target_dir = target_dir / self.manifest.cargo_target
        return target_dir / "release"

    def build(
        self, binaries: Optional[Iterable[BinarySpec]] = None
    ) -> Result[List[BuildArtifact], StageError]:
        """
        Build every binary, stopping at the first failure.

        Args:
            binaries: Binaries to build; defaults to all manifest binaries

        Returns:
            Success with one BuildArtifact per binary, or a BUILD failure
        """
        specs = list(binaries if binaries is not None else self.manifest.binaries)
        logger.info(
            "Building release binaries",
            target=self.profile.target.value,
            binaries=[b.name for b in specs],
        )
        return collect_results(self._build_one(spec) for spec in specs)

    def _build_one(self, spec: BinarySpec) -> Result[BuildArtifact, StageError]:
        return self._cargo_build(spec).bind(lambda _: self._locate(spec))

    @with_result(FailureKind.BUILD)
    def _cargo_build(self, spec: BinarySpec) -> None:
        cmd = ["cargo", "build", "--release", "--bin", spec.name]
        if self.manifest.cargo_target:
            cmd += ["--target", self.manifest.cargo_target]
        self.runner.run(cmd, cwd=self.workspace, description=f"Building {spec.name}")

    def _locate(self, spec: BinarySpec) -> Result[BuildArtifact, StageError]:
        path = self.output_dir / f"{spec.output_name}{self.profile.executable_suffix}"
        if not path.is_file():
            return Failure(
                build_failure(
                    f"Build of {spec.name} reported success but produced no executable",
                    diagnostic=f"missing {path}",
                    binary=spec.name,
                )
            )
        logger.info("Built binary", binary=spec.name, path=str(path))
        return Success(BuildArtifact(name=spec.name, path=path))
