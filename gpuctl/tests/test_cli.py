import pytest

from gpuctl import cli
from gpuctl.modules.cluster.errors import CommandError, RebootRequiredError
from gpuctl.modules.cluster.models import NodeRole


class _Recorder:
    """Stands in for the orchestrator and remembers the configuration it got."""

    instances = []
    error = None

    def __init__(self, config, settings=None):
        self.config = config
        _Recorder.instances.append(self)

    def run(self):
        if _Recorder.error:
            raise _Recorder.error


@pytest.fixture
def recorder(monkeypatch):
    _Recorder.instances = []
    _Recorder.error = None
    monkeypatch.setattr(cli, "PhaseOrchestrator", _Recorder)
    monkeypatch.delenv("GPUCTL_MESH_AUTH_KEY", raising=False)
    return _Recorder


def test_help(capsys):
    assert cli.main(["--help"]) == 0
    out = capsys.readouterr().out
    assert "--coordinator-address" in out
    assert "--dry-run" in out


def test_unknown_flag_fails(capsys, recorder):
    assert cli.main(["--no-such-flag"]) == 1
    assert "--no-such-flag" in capsys.readouterr().err
    assert recorder.instances == []


def test_invalid_role_fails(recorder):
    assert cli.main(["--role", "bogus"]) == 1
    assert recorder.instances == []


def test_worker_without_coordinator_fails(capsys, recorder):
    assert cli.main(["--role", "worker"]) == 1
    assert "coordinator address" in capsys.readouterr().err
    assert recorder.instances == []


def test_invalid_port_fails(capsys, recorder):
    assert cli.main(["--manager-port", "70000"]) == 1
    assert recorder.instances == []


def test_options_build_configuration(tmp_path, recorder):
    argv = [
        "--role", "worker", "--coordinator-address", "10.0.0.1",
        "--etcd-port", "9120", "--install-path", str(tmp_path),
        "--storage-server", "nas.local", "--skip-image-pull", "--dry-run",
    ]
    assert cli.main(argv) == 0

    config = recorder.instances[0].config
    assert config.role == NodeRole.WORKER
    assert config.coordinator_address == "10.0.0.1"
    assert config.ports.etcd == 9120
    assert config.ports.manager == 8091
    assert config.install_path == tmp_path
    assert config.storage.enabled and config.storage.endpoint == "nas.local"
    assert config.skip_image_pull and config.dry_run


def test_mesh_key_from_environment(monkeypatch, recorder):
    monkeypatch.setenv("GPUCTL_MESH_AUTH_KEY", "tskey-env")
    assert cli.main([]) == 0
    assert recorder.instances[0].config.mesh_auth_key == "tskey-env"


def test_reboot_required_exits_nonzero(capsys, recorder):
    recorder.error = RebootRequiredError("module cannot load")
    assert cli.main([]) == 1
    assert "Reboot required" in capsys.readouterr().err


def test_provisioning_failure_exits_nonzero(recorder):
    recorder.error = CommandError(["apt-get", "install"], 100, "E: broken")
    assert cli.main([]) == 1


def test_file_system_error_exits_nonzero(recorder):
    recorder.error = PermissionError(13, "Permission denied", "/etc/systemd/system/backendai-manager.service")
    assert cli.main([]) == 1
