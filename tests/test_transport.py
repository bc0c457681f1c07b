from unittest.mock import MagicMock

import pytest

from appliance_installer.errors import CommandError, ConnectivityError
from appliance_installer.lib import transport as transport_mod
from appliance_installer.lib.command import CmdResult
from appliance_installer.lib.transport import LocalTransport, SshTransport


def _result(rc=0, stdout="", stderr=""):
    return CmdResult(argv=[], returncode=rc, stdout=stdout, stderr=stderr)


@pytest.fixture
def ssh_cmd(monkeypatch):
    fake = MagicMock(return_value=_result())
    monkeypatch.setattr(transport_mod, "run_cmd", fake)
    return fake


class TestSshTransport:
    def test_non_interactive_invocation(self, ssh_cmd):
        t = SshTransport("cam2.local", port=2222, identity_file="/home/op/.ssh/fleet")
        t.run(["systemctl", "is-active", "camera-box.service"])

        argv = ssh_cmd.call_args.args[0]
        assert argv[0] == "ssh"
        assert "BatchMode=yes" in argv
        assert argv[argv.index("-i") + 1] == "/home/op/.ssh/fleet"
        assert argv[argv.index("-p") + 1] == "2222"
        assert argv[-3:] == ["root@cam2.local", "--", "systemctl is-active camera-box.service"]

    def test_remote_argv_is_quoted(self, ssh_cmd):
        SshTransport("cam2").run(["cat", "/etc/camera box.toml"], check=False)
        assert ssh_cmd.call_args.args[0][-1] == "cat '/etc/camera box.toml'"

    def test_unreachable_is_connectivity_error(self, ssh_cmd):
        ssh_cmd.return_value = _result(255, stderr="ssh: connect to host cam9 port 22: No route to host")
        with pytest.raises(ConnectivityError, match="No route to host"):
            SshTransport("cam9").run(["true"], check=False)

    def test_remote_failure(self, ssh_cmd):
        ssh_cmd.return_value = _result(1, stderr="no such unit")
        with pytest.raises(CommandError) as ei:
            SshTransport("cam2").run(["systemctl", "start", "x"])
        assert ei.value.returncode == 1
        assert not isinstance(ei.value, ConnectivityError)

        r = SshTransport("cam2").run(["systemctl", "start", "x"], check=False)
        assert r.returncode == 1

    def test_read_missing_file(self, ssh_cmd):
        ssh_cmd.return_value = _result(1, stderr="No such file")
        assert SshTransport("cam2").read_text("/etc/hostname") is None

    def test_write_sends_content_on_stdin(self, ssh_cmd):
        SshTransport("cam2").write_text("/etc/netplan/01-camera-box.yaml", "network: {}\n", mode=0o600)

        kwargs = ssh_cmd.call_args.kwargs
        assert kwargs["input_text"] == "network: {}\n"
        remote = ssh_cmd.call_args.args[0][-1]
        assert "mkdir -p /etc/netplan" in remote
        assert "chmod 600" in remote

    def test_copy_failure(self, ssh_cmd):
        ssh_cmd.return_value = _result(1, stderr="scp: /tmp: Read-only file system")
        with pytest.raises(CommandError) as ei:
            SshTransport("cam2").put_file("/build/camera-box", "/tmp/camera-box.staged")
        assert ei.value.stage == "transfer"
        assert ssh_cmd.call_args.args[0][:2] == ["scp", "-q"]
        assert ssh_cmd.call_args.args[0][-1] == "root@cam2:/tmp/camera-box.staged"


class TestLocalTransport:
    def test_paths_are_rooted(self, tmp_path):
        t = LocalTransport(str(tmp_path))
        t.write_text("/etc/hostname", "CAM2\n", mode=0o600)

        assert (tmp_path / "etc" / "hostname").read_text() == "CAM2\n"
        assert (tmp_path / "etc" / "hostname").stat().st_mode & 0o777 == 0o600
        assert t.exists("/etc/hostname")
        assert t.read_text("/etc/missing") is None

        t.remove("/etc/hostname")
        t.remove("/etc/hostname")
        assert not t.exists("/etc/hostname")

    def test_put_file(self, tmp_path):
        src = tmp_path / "artifact"
        src.write_bytes(b"\x7fELF")
        t = LocalTransport(str(tmp_path / "dev"))
        t.put_file(str(src), "/tmp/artifact.staged")
        assert (tmp_path / "dev" / "tmp" / "artifact.staged").read_bytes() == b"\x7fELF"
