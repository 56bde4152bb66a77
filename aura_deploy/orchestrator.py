"""
Deployment orchestrator.

Drives every resolved target through build, stage, package, provision,
register and verify as one ``returns`` Result chain. The first failing step
stops that target only; the others carry on. Outcomes are collected in a
``RunSummary``.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Union

from returns.result import Failure, Result, Success
from structlog import get_logger

from .builder import ArtifactBuilder
from .core.command import CommandRunner
from .core.result_pattern import FailureKind, StageError, with_result
from .lifecycle import LifecycleState, RunSummary, Stage, TargetOutcome
from .manifest import DeploymentManifest
from .models import BuildArtifact, InstallRoot
from .packaging import Emitter, emitter_for, optional_emitters_for
from .platforms import PlatformProfile, PlatformTarget, ServiceDialect, Skip, resolve_all
from .provisioning import PrincipalProvisioner, accounts_for, filesystem_for
from .services import CancelToken, ServiceRegistrar, manager_for
from .staging import assemble

logger = get_logger(__name__)

_STAGE_KINDS = {
    Stage.BUILD: FailureKind.BUILD,
    Stage.STAGE: FailureKind.PACKAGING,
    Stage.PACKAGE: FailureKind.PACKAGING,
    Stage.PROVISION: FailureKind.PROVISION,
    Stage.REGISTER: FailureKind.REGISTRATION,
    Stage.VERIFY: FailureKind.START,
}


@dataclass
class DeployOptions:
    """Run-wide knobs, usually filled from settings and CLI flags."""

    workspace: Path = Path(".")
    output_dir: Path = Path("dist")
    staging_dir: Path = Path("build/staging")
    install_root: Path = Path("/")
    package_only: bool = False
    parallel: bool = False
    start_timeout: float = 30.0
    poll_interval: float = 1.0
    run_timeout: Optional[float] = None
    winsw: str = "winsw"


@dataclass
class TargetToolkit:
    """The collaborators one target's pipeline uses."""

    builder: ArtifactBuilder
    emitter: Emitter
    provisioner: PrincipalProvisioner
    registrar: ServiceRegistrar
    optional_emitters: List[Emitter] = field(default_factory=list)


ToolkitFactory = Callable[[PlatformProfile, Path], TargetToolkit]


@dataclass
class _TargetRun:
    """Mutable bookkeeping of one target while its pipeline runs."""

    target: PlatformTarget
    profile: PlatformProfile
    state: LifecycleState = LifecycleState.UNBUILT
    failed_stage: Optional[Stage] = None
    error: Optional[StageError] = None
    artifacts: List[BuildArtifact] = field(default_factory=list)
    root: Optional[InstallRoot] = None
    package: Optional[Path] = None
    extra_packages: List[Path] = field(default_factory=list)
    status_hint: str = ""

    def advance(self, state: LifecycleState) -> None:
        if state.rank <= self.state.rank:
            raise RuntimeError(f"{self.target.value}: cannot move from {self.state} to {state}")
        self.state = state

    def outcome(self) -> TargetOutcome:
        artifacts = [a.path for a in self.artifacts]
        if self.error is not None:
            return TargetOutcome.failed(
                self.target,
                self.failed_stage,
                self.error,
                self.package,
                artifacts,
                extra_packages=self.extra_packages,
                status_hint=self.status_hint,
            )
        return TargetOutcome(
            target=self.target,
            state=self.state,
            package=self.package,
            artifacts=artifacts,
            extra_packages=list(self.extra_packages),
            status_hint=self.status_hint,
        )


def new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


class Orchestrator:
    """Runs the deployment pipeline for every requested target."""

    def __init__(
        self,
        manifest: DeploymentManifest,
        options: Optional[DeployOptions] = None,
        host_signal: str = "",
        runner: Optional[CommandRunner] = None,
        toolkit_factory: Optional[ToolkitFactory] = None,
        cancel: Optional[CancelToken] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            manifest: Application description
            options: Run-wide options
            host_signal: Platform-identifying string of the host, read once at startup
            runner: Command runner shared by every stage
            toolkit_factory: Builds a target's collaborators from its profile and
                staging directory; defaults to the native tools
            cancel: Cancellation token shared by every target
            clock: Monotonic clock handed to the service registrar
        """
        self.manifest = manifest
        self.options = options or DeployOptions()
        self.host_signal = host_signal
        self.runner = runner or CommandRunner()
        self.toolkit_factory = toolkit_factory or self.default_toolkit
        self.cancel = cancel or CancelToken()
        self.clock = clock

    def default_toolkit(self, profile: PlatformProfile, staging_dir: Path) -> TargetToolkit:
        """Native collaborators of a target."""
        options = self.options
        return TargetToolkit(
            builder=ArtifactBuilder(self.runner, options.workspace, profile, self.manifest),
            emitter=emitter_for(
                profile, self.runner, self.manifest, staging_dir, options.output_dir
            ),
            provisioner=PrincipalProvisioner(
                accounts_for(profile, self.runner),
                filesystem_for(profile, self.runner, options.install_root),
                id_floor=profile.principal_id_floor,
            ),
            registrar=ServiceRegistrar(
                manager_for(profile, self.runner, options.winsw),
                poll_interval=options.poll_interval,
                timeout=options.start_timeout,
                clock=self.clock,
            ),
            optional_emitters=optional_emitters_for(
                profile, self.runner, self.manifest, staging_dir, options.output_dir
            ),
        )

    def status_hint(self, profile: PlatformProfile) -> str:
        """Command an operator runs to check the installed service."""
        match profile.dialect:
            case ServiceDialect.SYSTEMD:
                return f"sudo systemctl status {self.manifest.service_name}"
            case ServiceDialect.LAUNCHD:
                return f"sudo launchctl list {self.manifest.launchd_label}"
            case ServiceDialect.WINSW:
                return f"sc.exe query {self.manifest.windows_service_id}"

    def run(self, requested: Union[None, str, Iterable[str]] = None) -> RunSummary:
        """
        Deploy every requested target.

        Args:
            requested: Target name(s); None, empty or ``all`` mean every family

        Returns:
            RunSummary with one outcome per requested target

        Raises:
            UnknownPlatformError: If a requested name is not a supported family
        """
        resolutions = resolve_all(requested, self.host_signal)
        run_id = new_run_id()
        summary = RunSummary(run_id=run_id, package_only=self.options.package_only)

        runnable: List[PlatformTarget] = []
        for target, resolution in resolutions.items():
            if isinstance(resolution, Skip):
                summary.record(TargetOutcome.skipped(target, resolution.reason))
            else:
                runnable.append(resolution)

        logger.info(
            "Deployment run started",
            run_id=run_id,
            targets=[t.value for t in runnable],
            skipped=[t.value for t in resolutions if t not in runnable],
            package_only=self.options.package_only,
        )

        timer = self._start_run_timer()
        try:
            if self.options.parallel and len(runnable) > 1:
                with ThreadPoolExecutor(
                    max_workers=len(runnable), thread_name_prefix="deploy"
                ) as pool:
                    futures = [
                        pool.submit(self._run_and_record, target, run_id, summary)
                        for target in runnable
                    ]
                    for future in futures:
                        future.result()
            else:
                for target in runnable:
                    self._run_and_record(target, run_id, summary)
        finally:
            if timer is not None:
                timer.cancel()

        logger.info("Deployment run finished", run_id=run_id, succeeded=summary.succeeded)
        return summary

    def _run_and_record(self, target: PlatformTarget, run_id: str, summary: RunSummary) -> None:
        summary.record(self.run_target(target, run_id))

    def _start_run_timer(self) -> Optional[threading.Timer]:
        if not self.options.run_timeout:
            return None

        def expire() -> None:
            logger.warning("Run timeout reached, cancelling", timeout=self.options.run_timeout)
            self.cancel.cancel()

        timer = threading.Timer(self.options.run_timeout, expire)
        timer.daemon = True
        timer.start()
        return timer

    def run_target(self, target: PlatformTarget, run_id: str) -> TargetOutcome:
        """Run one target's pipeline to a terminal state."""
        profile = PlatformProfile.for_target(
            target, app=self.manifest.app, display_name=self.manifest.display_name
        )
        staging_dir = Path(self.options.staging_dir) / run_id / target.value
        tools = self.toolkit_factory(profile, staging_dir)
        run = _TargetRun(target=target, profile=profile, status_hint=self.status_hint(profile))

        result: Result[Any, StageError] = (
            Success(None)
            .bind(self._step(run, Stage.BUILD, LifecycleState.BUILT, lambda _: tools.builder.build()))
            .bind(
                self._step(
                    run,
                    Stage.STAGE,
                    LifecycleState.STAGED,
                    lambda artifacts: self._stage(artifacts, profile),
                )
            )
            .bind(
                self._step(
                    run,
                    Stage.PACKAGE,
                    LifecycleState.PACKAGED,
                    lambda root: self._package(tools, root, profile, run),
                )
            )
        )

        if not self.options.package_only:
            result = (
                result.bind(
                    self._step(
                        run,
                        Stage.PROVISION,
                        LifecycleState.PROVISIONED,
                        lambda _: self._provision(tools.provisioner, run.root),
                    )
                )
                .bind(
                    self._step(
                        run,
                        Stage.REGISTER,
                        LifecycleState.REGISTERED,
                        lambda _: tools.registrar.register(run.root.service),
                    )
                )
                .bind(
                    self._step(
                        run,
                        Stage.VERIFY,
                        LifecycleState.VERIFIED,
                        lambda descriptor: tools.registrar.start(descriptor).bind(
                            lambda started: tools.registrar.await_running(started, self.cancel)
                        ),
                    )
                )
            )

        outcome = run.outcome()
        logger.info(
            "Target finished",
            target=target.value,
            state=outcome.state.value,
            stage=outcome.stage.value if outcome.stage else None,
        )
        return outcome

    def _step(
        self,
        run: _TargetRun,
        stage: Stage,
        state: LifecycleState,
        action: Callable[[Any], Result[Any, StageError]],
    ) -> Callable[[Any], Result[Any, StageError]]:
        def step(value: Any) -> Result[Any, StageError]:
            logger.info("Stage started", target=run.target.value, stage=stage.value)
            try:
                result = action(value)
            except Exception as e:
                # Fails this target only
                logger.exception("Unexpected error", target=run.target.value, stage=stage.value)
                result = Failure(
                    StageError.from_exception(
                        e, _STAGE_KINDS[stage], message=f"Unexpected error during {stage.value}"
                    )
                )
            match result:
                case Success(produced):
                    self._remember(run, stage, produced)
                    run.advance(state)
                case Failure(error):
                    run.failed_stage = stage
                    run.error = error
                    run.state = LifecycleState.FAILED
                    logger.error(
                        "Stage failed",
                        target=run.target.value,
                        stage=stage.value,
                        kind=error.kind.value,
                        message=error.message,
                        diagnostic=error.diagnostic,
                    )
            return result

        return step

    @staticmethod
    def _remember(run: _TargetRun, stage: Stage, produced: Any) -> None:
        match stage:
            case Stage.BUILD:
                run.artifacts = list(produced)
            case Stage.STAGE:
                run.root = produced
            case Stage.PACKAGE:
                run.package = produced

    @staticmethod
    def _package(
        tools: TargetToolkit, root: InstallRoot, profile: PlatformProfile, run: _TargetRun
    ) -> Result[Path, StageError]:
        """Emit the primary package, then each optional one whose tool is installed."""

        def also(emitter: Emitter) -> Callable[[Path], Result[Path, StageError]]:
            def emit(primary: Path) -> Result[Path, StageError]:
                result = emitter.emit(root, profile)
                match result:
                    case Success(extra):
                        run.extra_packages.append(extra)
                return result.map(lambda _: primary)

            return emit

        result = tools.emitter.emit(root, profile)
        for emitter in tools.optional_emitters:
            if emitter.available():
                result = result.bind(also(emitter))
            else:
                logger.warning(
                    "Packaging tool not found, skipping",
                    target=profile.target.value,
                    mechanism=emitter.mechanism.value,
                    tool=emitter.tool,
                )
        return result

    @with_result(FailureKind.PACKAGING, message="Install root assembly failed")
    def _stage(self, artifacts: List[BuildArtifact], profile: PlatformProfile) -> InstallRoot:
        return assemble(
            artifacts,
            profile,
            self.manifest,
            start_timeout=int(self.options.start_timeout),
            winsw=self.options.winsw,
        )

    @staticmethod
    def _provision(
        provisioner: PrincipalProvisioner, root: InstallRoot
    ) -> Result[InstallRoot, StageError]:
        return (
            provisioner.provision(root.principal, root.directories)
            .bind(lambda _: provisioner.install_payload(root))
            .map(lambda _: root)
        )
