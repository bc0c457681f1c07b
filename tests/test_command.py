import subprocess
from unittest.mock import MagicMock

import pytest

from appliance_installer.errors import CommandError, CommandTimeout
from appliance_installer.lib import command
from appliance_installer.lib.command import run_cmd


def test_dry_run_does_not_execute(monkeypatch):
    fake = MagicMock()
    monkeypatch.setattr(subprocess, "run", fake)
    r = run_cmd(["sgdisk", "--zap-all", "/dev/loop0"], dry_run=True)
    assert r.ok
    fake.assert_not_called()


def test_timeout_is_distinct_from_failure(monkeypatch):
    monkeypatch.setattr(
        command.subprocess,
        "run",
        MagicMock(side_effect=subprocess.TimeoutExpired(cmd=["debootstrap"], timeout=5)),
    )
    with pytest.raises(CommandTimeout) as ei:
        run_cmd(["debootstrap", "bookworm", "/mnt"], timeout=5)
    assert not isinstance(ei.value, CommandError)
    assert ei.value.exit_code == 17


def test_nonzero_exit_raises_with_stderr(monkeypatch):
    monkeypatch.setattr(
        command.subprocess,
        "run",
        MagicMock(return_value=subprocess.CompletedProcess(["false"], 3, stdout="", stderr="boom")),
    )
    with pytest.raises(CommandError) as ei:
        run_cmd(["false"])
    assert ei.value.returncode == 3
    assert ei.value.stderr == "boom"

    r = run_cmd(["false"], check=False)
    assert r.returncode == 3 and not r.ok


def test_missing_binary(monkeypatch):
    monkeypatch.setattr(command.subprocess, "run", MagicMock(side_effect=FileNotFoundError("sgdisk")))
    with pytest.raises(CommandError) as ei:
        run_cmd(["sgdisk"])
    assert ei.value.returncode == 127
