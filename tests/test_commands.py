"""Tests for storage/commands.py - subprocess wrapper and tool preflight."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from board_imager.storage.commands import (
    REQUIRED_TOOLS,
    check_required_tools,
    run_command,
    run_quietly,
)
from board_imager.storage.exceptions import CommandError, MissingToolError


class TestRunCommand:
    """Test cases for run_command."""

    @patch("board_imager.storage.commands.subprocess.run")
    def test_returns_completed_process(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["blkid"], 0, "uuid\n", "")

        result = run_command(["blkid", "/dev/mapper/loop0p1"])

        assert result.stdout == "uuid\n"
        args, kwargs = mock_run.call_args
        assert args[0] == ["blkid", "/dev/mapper/loop0p1"]
        assert kwargs["text"] is True
        assert kwargs["capture_output"] is True
        assert kwargs["check"] is False

    @patch("board_imager.storage.commands.subprocess.run")
    def test_non_zero_exit_raises(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["parted"], 1, "", "Error: bad\n")

        with pytest.raises(CommandError) as exc_info:
            run_command(["parted", "-s", "/dev/loop0"])

        assert exc_info.value.returncode == 1
        assert exc_info.value.stderr == "Error: bad"

    @patch("board_imager.storage.commands.subprocess.run")
    def test_non_zero_exit_without_check(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["losetup"], 1, "", "busy")

        result = run_command(["losetup", "-d", "/dev/loop0"], check=False)

        assert result.returncode == 1

    @patch("board_imager.storage.commands.subprocess.run")
    def test_missing_binary_becomes_command_error(self, mock_run):
        mock_run.side_effect = FileNotFoundError("No such file: 'kpartx'")

        with pytest.raises(CommandError) as exc_info:
            run_command(["kpartx", "-a", "/dev/loop0"], check=False)

        assert exc_info.value.returncode == 127

    @patch("board_imager.storage.commands.subprocess.run")
    def test_passes_input_text(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["chroot"], 0, "", "")

        run_command(["chroot", "/mnt", "/bin/bash", "-e"], input_text="echo hi\n")

        assert mock_run.call_args.kwargs["input"] == "echo hi\n"

    @patch("board_imager.storage.commands.subprocess.run")
    def test_stringifies_arguments(self, mock_run, tmp_path):
        mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")

        run_command(["losetup", "--find", tmp_path])

        assert mock_run.call_args.args[0] == ["losetup", "--find", str(tmp_path)]


class TestRunQuietly:
    def test_true_on_success(self):
        runner = Mock(return_value=subprocess.CompletedProcess(["sync"], 0, "", ""))
        assert run_quietly(runner, ["sync"]) is True
        runner.assert_called_once_with(["sync"], check=False, log_output=False)

    def test_false_on_failure(self):
        runner = Mock(return_value=subprocess.CompletedProcess(["partprobe"], 1, "", "x"))
        assert run_quietly(runner, ["partprobe", "/dev/loop0"]) is False

    def test_false_on_command_error(self):
        runner = Mock(side_effect=CommandError(["udevadm"], 127, "not found"))
        assert run_quietly(runner, ["udevadm", "settle"]) is False


class TestCheckRequiredTools:
    def test_all_present(self):
        check_required_tools(which=lambda tool: f"/usr/sbin/{tool}")

    def test_reports_every_missing_tool(self):
        missing = {"kpartx", "mkfs.vfat"}

        with pytest.raises(MissingToolError) as exc_info:
            check_required_tools(which=lambda tool: None if tool in missing else "/bin/x")

        assert set(exc_info.value.tools) == missing

    def test_default_tools_cover_pipeline(self):
        for tool in ("losetup", "parted", "kpartx", "blkid", "chroot"):
            assert tool in REQUIRED_TOOLS
