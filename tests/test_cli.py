import json
from unittest.mock import MagicMock

import pytest

from appliance_installer import main as cli
from appliance_installer.errors import IntegrityError, ServiceStartError
from appliance_installer.models import (
    ConvergenceReport,
    DeployResult,
    DeployStatus,
    DeviceIdentity,
    FleetSpec,
    StepOutcome,
    StepResult,
)


@pytest.fixture
def run_cli(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    log = str(tmp_path / "installer.log")

    def _run(*argv):
        return cli.main(["--log", log, *argv])

    return _run


@pytest.fixture
def transport(monkeypatch):
    t = MagicMock(label="cam2")
    monkeypatch.setattr(cli, "_transport", lambda cfg, host: t)
    return t


def _report(*outcomes):
    identity = DeviceIdentity.create("CAM2", "10.77.9.62", FleetSpec())
    return ConvergenceReport(
        identity=identity,
        results=[StepResult(name, outcome, detail) for name, outcome, detail in outcomes],
    )


def test_invalid_address_is_config_error(run_cli, transport):
    assert run_cli("converge", "CAM2", "192.168.1.5") == 2
    transport.ping.assert_not_called()


def test_explicit_config_must_exist(run_cli):
    assert run_cli("--config", "missing.yaml", "converge", "CAM2", "10.77.9.62") == 2


def test_converged_device(run_cli, transport, monkeypatch, capsys):
    fake = MagicMock(return_value=_report(("hostname", StepOutcome.APPLIED, "")))
    monkeypatch.setattr(cli, "converge", fake)

    assert run_cli("converge", "CAM2", "10.77.9.62", "--host", "10.77.9.62", "--json") == 0

    transport.ping.assert_called_once()
    identity = fake.call_args.args[0]
    assert identity.name == "CAM2"
    assert identity.stream_id == "cam2"
    out = json.loads(capsys.readouterr().out)
    assert out["device"] == "CAM2"


def test_degraded_device_exit_code(run_cli, transport, monkeypatch, capsys):
    report = _report(
        ("hostname", StepOutcome.ALREADY_SATISFIED, ""),
        ("packages", StepOutcome.TIMED_OUT, "apt-get timed out"),
    )
    monkeypatch.setattr(cli, "converge", MagicMock(return_value=report))

    assert run_cli("converge", "CAM2", "10.77.9.62") == 15
    assert "packages" in capsys.readouterr().out


def test_deploy_reports_every_target(run_cli, monkeypatch, capsys, tmp_path):
    results = [
        DeployResult("cam2"),
        DeployResult("cam3", status=DeployStatus.FAILED, error=IntegrityError("digest mismatch", stage="staged")),
        DeployResult("cam4", status=DeployStatus.FAILED, error=ServiceStartError("failed", stage="running")),
    ]
    fake = MagicMock(return_value=results)
    monkeypatch.setattr(cli, "deploy_many", fake)

    assert run_cli("deploy", "cam2", "cam3", "cam4", "build/camera-box") == 14

    assert fake.call_args.args == (["cam2", "cam3", "cam4"], "build/camera-box")
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "cam2: success"
    assert lines[1].startswith("cam3: failed")


def test_deploy_all_ok(run_cli, monkeypatch):
    fake = MagicMock(return_value=[DeployResult("cam2")])
    monkeypatch.setattr(cli, "deploy_many", fake)

    assert run_cli("deploy", "cam2", "build/camera-box", "--runtime-library", "sdk/libndi.so.6") == 0
    assert fake.call_args.kwargs["runtime_library"] == "sdk/libndi.so.6"


def test_factory_reset_requires_confirmation(run_cli, monkeypatch):
    reset = MagicMock(return_value=3)
    monkeypatch.setattr(cli, "factory_reset", reset)
    monkeypatch.setattr("builtins.input", lambda prompt: "no")

    assert run_cli("factory-reset") == 1
    reset.assert_not_called()

    assert run_cli("factory-reset", "--yes") == 0
    reset.assert_called_once()


def test_interrupt(run_cli, monkeypatch):
    monkeypatch.setattr(cli, "write_image", MagicMock(side_effect=KeyboardInterrupt))
    assert run_cli("write-image", "camera-box-image.img", "/dev/sdz") == 130


def test_unexpected_error(run_cli, monkeypatch):
    monkeypatch.setattr(cli, "write_image", MagicMock(side_effect=RuntimeError("bug")))
    assert run_cli("write-image", "camera-box-image.img", "/dev/sdz") == 1
