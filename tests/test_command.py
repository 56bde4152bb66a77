"""Tests for the external command runner."""

import sys

import pytest

from aura_deploy.core.command import CommandRunner
from aura_deploy.core.error_handling import CommandError

PY = sys.executable


class TestCommandRunner:
    def test_captures_output(self):
        result = CommandRunner().run([PY, "-c", "print('built')"])

        assert result.ok
        assert result.stdout.strip() == "built"

    def test_nonzero_exit_raises_with_stderr(self):
        with pytest.raises(CommandError) as excinfo:
            CommandRunner().run([PY, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"])

        assert excinfo.value.returncode == 3
        assert excinfo.value.diagnostic == "boom"

    def test_unchecked_failure_returns_result(self):
        result = CommandRunner().run([PY, "-c", "raise SystemExit(4)"], check=False)

        assert result.returncode == 4
        assert not result.ok

    def test_missing_executable(self):
        with pytest.raises(CommandError) as excinfo:
            CommandRunner().run(["definitely-not-an-aura-tool"])

        assert excinfo.value.returncode == 127
        assert "command not found" in excinfo.value.diagnostic

    def test_timeout(self):
        with pytest.raises(CommandError) as excinfo:
            CommandRunner(timeout=0.2).run([PY, "-c", "import time; time.sleep(5)"])

        assert excinfo.value.returncode == 124

    def test_env_is_merged(self, tmp_path):
        result = CommandRunner().run(
            [PY, "-c", "import os; print(os.environ['AURA_TEST'], bool(os.environ.get('PATH')))"],
            cwd=tmp_path,
            env={"AURA_TEST": "yes"},
        )

        assert result.stdout.split() == ["yes", "True"]

    def test_undecodable_output_is_replaced(self):
        script = "import sys; sys.stderr.buffer.write(b'bad \\xff byte'); sys.exit(1)"

        with pytest.raises(CommandError) as excinfo:
            CommandRunner().run([PY, "-c", script])

        assert excinfo.value.returncode == 1
        assert excinfo.value.diagnostic.startswith("bad ")
        assert excinfo.value.diagnostic.endswith(" byte")
