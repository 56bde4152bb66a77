"""Tests for lifecycle states and the run summary."""

import threading
from pathlib import Path

import pytest

from aura_deploy.core.result_pattern import build_failure, start_failure
from aura_deploy.lifecycle import LifecycleState, RunSummary, Stage, TargetOutcome
from aura_deploy.platforms import PlatformTarget

LINUX = PlatformTarget.LINUX
MACOS = PlatformTarget.MACOS
WINDOWS = PlatformTarget.WINDOWS


def test_states_rank_forward():
    ranks = [
        LifecycleState.UNBUILT,
        LifecycleState.BUILT,
        LifecycleState.STAGED,
        LifecycleState.PACKAGED,
        LifecycleState.PROVISIONED,
        LifecycleState.REGISTERED,
        LifecycleState.VERIFIED,
    ]
    assert [s.rank for s in ranks] == list(range(7))
    assert LifecycleState.FAILED.rank > LifecycleState.VERIFIED.rank


class TestTargetOutcome:
    def test_failed_carries_stage_and_reason(self):
        outcome = TargetOutcome.failed(
            WINDOWS, Stage.BUILD, build_failure("cargo build failed", diagnostic="link.exe not found")
        )

        assert outcome.describe() == "failed(build, cargo build failed: link.exe not found)"

    def test_skipped_describes_reason(self):
        outcome = TargetOutcome.skipped(MACOS, "host is linux")

        assert outcome.describe() == "skipped (host is linux)"
        assert not outcome.succeeded()

    def test_success_terminal_depends_on_mode(self):
        packaged = TargetOutcome(LINUX, LifecycleState.PACKAGED)

        assert packaged.succeeded(package_only=True)
        assert not packaged.succeeded(package_only=False)


class TestRunSummary:
    """Exit status and the digest."""

    def test_empty_run_succeeds(self):
        assert RunSummary().exit_code() == 0

    def test_skips_do_not_fail_the_run(self):
        summary = RunSummary("r1")
        summary.record(TargetOutcome(LINUX, LifecycleState.VERIFIED))
        summary.record(TargetOutcome.skipped(MACOS, "host is linux"))
        summary.record(TargetOutcome.skipped(WINDOWS, "host is linux"))

        assert summary.succeeded
        assert summary.exit_code() == 0

    def test_any_failure_fails_the_run(self):
        summary = RunSummary("r1")
        summary.record(TargetOutcome(LINUX, LifecycleState.VERIFIED))
        summary.record(
            TargetOutcome.failed(MACOS, Stage.VERIFY, start_failure("aura-server did not start"))
        )

        assert summary.exit_code() == 1

    def test_packaged_is_not_success_outside_package_only(self):
        summary = RunSummary()
        summary.record(TargetOutcome(LINUX, LifecycleState.PACKAGED))

        assert summary.exit_code() == 1

    def test_package_only_mode(self):
        summary = RunSummary(package_only=True)
        summary.record(TargetOutcome(LINUX, LifecycleState.PACKAGED))

        assert summary.exit_code() == 0

    def test_duplicate_outcome_rejected(self):
        summary = RunSummary()
        summary.record(TargetOutcome(LINUX, LifecycleState.VERIFIED))

        with pytest.raises(ValueError):
            summary.record(TargetOutcome.skipped(LINUX, "again"))

    def test_iteration_follows_enumeration_order(self):
        summary = RunSummary()
        for target in (MACOS, LINUX, WINDOWS):
            summary.record(TargetOutcome.skipped(target, "n/a"))

        assert [o.target for o in summary] == list(PlatformTarget)
        assert len(summary) == 3
        assert LINUX in summary

    def test_concurrent_records(self):
        summary = RunSummary()
        threads = [
            threading.Thread(
                target=summary.record, args=(TargetOutcome(t, LifecycleState.VERIFIED),)
            )
            for t in PlatformTarget
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert set(summary.states()) == set(PlatformTarget)

    def test_digest(self):
        summary = RunSummary("20260101T000000Z-abc123")
        summary.record(
            TargetOutcome(
                LINUX,
                LifecycleState.VERIFIED,
                package=Path("dist/aura_0.1.0_amd64.deb"),
                artifacts=[Path("target/release/aura-server")],
            )
        )
        summary.record(TargetOutcome.skipped(MACOS, "host is linux"))

        lines = summary.digest().splitlines()

        assert lines[0] == "Deployment run 20260101T000000Z-abc123"
        assert lines[1].split() == ["linux", "verified"]
        assert lines[2].split() == ["package:", str(Path("dist/aura_0.1.0_amd64.deb"))]
        assert lines[3].split() == ["install:", "sudo", "dpkg", "-i", str(Path("dist/aura_0.1.0_amd64.deb"))]
        assert lines[4].split() == ["artifact:", str(Path("target/release/aura-server"))]
        assert lines[5].strip() == "macos    skipped (host is linux)"
        assert lines[-1] == "Result: success"

    def test_digest_hints_for_every_package(self):
        summary = RunSummary("r2", package_only=True)
        summary.record(
            TargetOutcome(
                LINUX,
                LifecycleState.PACKAGED,
                package=Path("aura_0.1.0_amd64.deb"),
                extra_packages=[Path("aura-0.1.0-1.x86_64.rpm")],
                status_hint="sudo systemctl status aura-server",
            )
        )
        summary.record(
            TargetOutcome.failed(
                MACOS,
                Stage.VERIFY,
                start_failure("did not start"),
                package=Path("aura-0.1.0.pkg"),
                status_hint="sudo launchctl list com.aura.db",
            )
        )

        digest = summary.digest()

        assert "install:  sudo dpkg -i aura_0.1.0_amd64.deb" in digest
        assert "install:  sudo rpm -i aura-0.1.0-1.x86_64.rpm" in digest
        assert "status:   sudo systemctl status aura-server" in digest
        assert "install:  sudo installer -pkg aura-0.1.0.pkg -target /" in digest
        assert "status:   sudo launchctl list com.aura.db" in digest

    def test_no_hints_without_a_package(self):
        summary = RunSummary("r3")
        summary.record(
            TargetOutcome.failed(
                LINUX,
                Stage.BUILD,
                build_failure("boom"),
                status_hint="sudo systemctl status aura-server",
            )
        )

        assert "status:" not in summary.digest()
        assert "install:" not in summary.digest()

    def test_to_dict(self):
        summary = RunSummary("r1")
        summary.record(
            TargetOutcome.failed(LINUX, Stage.BUILD, build_failure("boom", diagnostic="E0432"))
        )

        data = summary.to_dict()

        assert data["succeeded"] is False
        assert data["targets"]["linux"]["stage"] == "build"
        assert data["targets"]["linux"]["error"]["error"] == "build"
