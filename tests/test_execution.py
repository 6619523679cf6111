"""Tests for command execution."""

import logging
import subprocess
from unittest.mock import patch

import pytest

from debsetup.errors import CommandTimeoutError, ExecutionError, NonZeroExit
from debsetup.execution import (
    COMMAND_ENV,
    CommandResult,
    CommandRunner,
    RunOptions,
    format_command,
)


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestCommandResult:
    def test_ok(self):
        assert CommandResult(0, "", "").ok
        assert not CommandResult(1, "", "").ok

    def test_output_joins_streams(self):
        result = CommandResult(1, "  out \n", "err\n")
        assert result.output == "out\nerr"

    def test_output_empty(self):
        assert CommandResult(0, "", "").output == ""


class TestFormatCommand:
    def test_quotes_arguments(self):
        assert format_command(["ufw", "allow", "22/tcp", "comment", "my ssh"]) == (
            "ufw allow 22/tcp comment 'my ssh'"
        )


class TestCommandRunner:
    """Test CommandRunner.run against a mocked subprocess."""

    def test_success_returns_result(self):
        with patch("debsetup.execution.subprocess.run", return_value=completed(0, "hi\n")) as mock_run:
            result = CommandRunner().run(["echo", "hi"])

        assert result == CommandResult(0, "hi\n", "")
        args, kwargs = mock_run.call_args
        assert args[0] == ["echo", "hi"]
        assert "shell" not in kwargs
        assert kwargs["env"]["LC_ALL"] == COMMAND_ENV["LC_ALL"]
        assert kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    def test_passes_timeout_and_input(self):
        with patch("debsetup.execution.subprocess.run", return_value=completed()) as mock_run:
            CommandRunner().run(["chpasswd"], RunOptions(timeout=5), input="a:b\n")

        kwargs = mock_run.call_args.kwargs
        assert kwargs["timeout"] == 5
        assert kwargs["input"] == "a:b\n"

    def test_nonzero_exit_raises_with_result(self):
        with patch(
            "debsetup.execution.subprocess.run",
            return_value=completed(100, "", "E: Unable to locate package nope\n"),
        ):
            with pytest.raises(NonZeroExit) as exc_info:
                CommandRunner().run(["apt-get", "install", "-y", "nope"])

        assert exc_info.value.exit_code == 100
        assert exc_info.value.result.stderr.startswith("E: Unable")
        assert "Unable to locate package" in str(exc_info.value)

    def test_missing_binary_raises_execution_error(self):
        with patch("debsetup.execution.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ExecutionError, match="Command not found: ufw"):
                CommandRunner().run(["ufw", "status"])

    def test_permission_denied_raises_execution_error(self):
        with patch("debsetup.execution.subprocess.run", side_effect=PermissionError()):
            with pytest.raises(ExecutionError, match="Permission denied"):
                CommandRunner().run(["/etc/passwd"])

    def test_timeout_raises_timeout_error(self):
        with patch(
            "debsetup.execution.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="apt-get", timeout=2),
        ):
            with pytest.raises(CommandTimeoutError) as exc_info:
                CommandRunner(RunOptions(timeout=2)).run(["apt-get", "update"])

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout == 2
        assert "timed out after 2 seconds" in str(exc_info.value)

    def test_dry_run_never_executes(self, caplog):
        runner = CommandRunner(RunOptions(dry_run=True))
        with patch("debsetup.execution.subprocess.run") as mock_run:
            with caplog.at_level(logging.INFO, logger="debsetup.execution"):
                result = runner.run(["apt-get", "upgrade", "-y"])

        mock_run.assert_not_called()
        assert result.ok
        assert result.dry_run
        assert "[DRY-RUN] Would execute: apt-get upgrade -y" in caplog.text

    def test_per_call_options_override_defaults(self):
        runner = CommandRunner(RunOptions(dry_run=True))
        with patch("debsetup.execution.subprocess.run", return_value=completed(0, "active\n")) as mock_run:
            result = runner.run(["systemctl", "is-active", "ssh"], RunOptions(dry_run=False))

        mock_run.assert_called_once()
        assert not result.dry_run

    def test_with_options_keeps_dry_run(self):
        runner = CommandRunner(RunOptions(dry_run=True, timeout=10))
        options = runner.with_options(timeout=600)
        assert options == RunOptions(dry_run=True, timeout=600)

    def test_stdin_is_never_logged(self, caplog):
        with patch("debsetup.execution.subprocess.run", return_value=completed()):
            with caplog.at_level(logging.DEBUG, logger="debsetup.execution"):
                CommandRunner().run(["chpasswd"], input="deploy:s3cret-passphrase\n")

        assert "s3cret-passphrase" not in caplog.text


class TestUndecodableOutput:
    """Bytes that are not UTF-8 are replaced, never raised."""

    def test_decoding_errors_are_replaced(self):
        with patch("debsetup.execution.subprocess.run", return_value=completed()) as mock_run:
            CommandRunner().run(["cat", "/etc/fail2ban/jail.d/sshd.local"])

        _, kwargs = mock_run.call_args
        assert kwargs["text"] is True
        assert kwargs["errors"] == "replace"

    def test_latin1_file_is_read(self, temp_dir):
        path = temp_dir / "sshd.local"
        path.write_bytes(b"caf\xe9\n")

        result = CommandRunner().run(["cat", str(path)])

        assert result.stdout == "caf\ufffd\n"

    def test_latin1_file_fails_match_without_crashing(self, temp_dir):
        from debsetup.probe import StateProbe
        from debsetup.provisioner import (
            Condition,
            Orchestrator,
            Outcome,
            ProvisioningStep,
            StepRegistry,
        )

        path = temp_dir / "sshd.local"
        path.write_bytes(b"caf\xe9\n")
        probe = StateProbe(CommandRunner())
        step = ProvisioningStep(
            name="jail",
            precondition=lambda: Condition.of(probe.file_matches(str(path), "café")),
            apply=lambda: None,
            postcondition=lambda: Condition.NOT_SATISFIED,
        )

        report = Orchestrator(StepRegistry([step])).run()

        assert report.results[0].outcome == Outcome.FAILED
        assert "not in the expected state" in report.results[0].detail
