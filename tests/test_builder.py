"""Tests for the artifact builder."""

from returns.result import Failure, Success

from aura_deploy.builder import ArtifactBuilder
from aura_deploy.core.result_pattern import FailureKind
from aura_deploy.manifest import DeploymentManifest
from conftest import cargo_output, fake_cargo


def test_builds_every_binary_in_workspace(runner, workspace, manifest, linux_profile):
    fake_cargo(runner, workspace, manifest)
    builder = ArtifactBuilder(runner, workspace, linux_profile, manifest)

    result = builder.build()

    assert isinstance(result, Success)
    artifacts = result.unwrap()
    assert [a.name for a in artifacts] == ["aura-server", "aura-cli"]
    assert artifacts[1].path == cargo_output(workspace, "aura")
    assert runner.calls == [
        ["cargo", "build", "--release", "--bin", "aura-server"],
        ["cargo", "build", "--release", "--bin", "aura-cli"],
    ]


def test_first_failure_aborts_remaining_builds(runner, workspace, manifest, linux_profile):
    runner.respond(
        "cargo", "build", "--release", "--bin", "aura-server",
        returncode=101,
        stderr="error[E0425]: cannot find value `x` in this scope",
    )
    builder = ArtifactBuilder(runner, workspace, linux_profile, manifest)

    result = builder.build()

    assert isinstance(result, Failure)
    error = result.failure()
    assert error.kind == FailureKind.BUILD
    assert "cannot find value" in error.diagnostic
    assert error.details["returncode"] == 101
    assert len(runner.calls) == 1


def test_missing_output_after_success_is_build_failure(runner, workspace, manifest, linux_profile):
    builder = ArtifactBuilder(runner, workspace, linux_profile, manifest)

    result = builder.build()

    assert isinstance(result, Failure)
    assert result.failure().kind == FailureKind.BUILD
    assert result.failure().details["binary"] == "aura-server"


def test_windows_outputs_carry_exe_suffix(runner, workspace, manifest, windows_profile):
    fake_cargo(runner, workspace, manifest, suffix=".exe")
    builder = ArtifactBuilder(runner, workspace, windows_profile, manifest)

    result = builder.build()

    assert [a.path.name for a in result.unwrap()] == ["aura-server.exe", "aura.exe"]


def test_cross_target_triple(runner, workspace, linux_profile):
    manifest = DeploymentManifest(cargo_target="aarch64-unknown-linux-gnu")
    builder = ArtifactBuilder(runner, workspace, linux_profile, manifest)

    builder.build(manifest.binaries[:1])

    assert runner.calls[0][-2:] == ["--target", "aarch64-unknown-linux-gnu"]
    assert builder.output_dir == workspace / "target" / "aarch64-unknown-linux-gnu" / "release"
