import io

import pytest
from rich.console import Console

from conftest import make_config
from gpuctl.modules.cluster.errors import NetworkError, RebootRequiredError
from gpuctl.modules.cluster.installer.core import PhaseOrchestrator
from gpuctl.modules.cluster.models import NodeRole, ProvisionPhase, StorageOptions


def _orchestrator(config, settings, collaborators):
    console = Console(file=io.StringIO(), width=200)
    return PhaseOrchestrator(config, settings, collaborators, console=console)


def test_coordinator_run_completes(install_path, settings, collaborators):
    config = make_config(install_path, identity=False)
    orchestrator = _orchestrator(config, settings, collaborators)

    state = orchestrator.run()

    assert state.phase == ProvisionPhase.COMPLETED
    assert state.skipped == []
    assert state.completed[0] == ProvisionPhase.VALIDATE
    assert state.completed[-1] == ProvisionPhase.FINALIZE
    assert state.metadata['cuda_package'] == 'cuda-toolkit-12-2'
    assert orchestrator.config.effective_address == '192.168.1.10'

    source = config.source_path
    for name in ('manager.toml', 'agent.toml', 'dev.etcd.volumes.json', 'env-local-admin-api.sh'):
        assert (source / name).exists()
    assert (settings.paths.unit_dir / 'backendai-manager.service').exists()
    assert collaborators.containers.pulled == ['nvcr.io/nvidia/pytorch:25.05-py3']

    output = orchestrator.console.file.getvalue()
    assert "Provisioning summary" in output
    assert "http://192.168.1.10:8090" in output


def test_secrets_are_registered_for_redaction(install_path, settings, collaborators):
    orchestrator = _orchestrator(make_config(install_path, identity=False), settings, collaborators)
    orchestrator.run()
    for name in orchestrator.secrets.names():
        assert orchestrator.secrets[name] in collaborators.runner.secrets


def test_worker_skips_coordinator_phases(install_path, settings, collaborators):
    config = make_config(install_path, role=NodeRole.WORKER, identity=False)
    state = _orchestrator(config, settings, collaborators).run()

    assert state.skipped == [ProvisionPhase.STORAGE_INIT, ProvisionPhase.STATE_INITIALIZATION]
    assert collaborators.control_plane.calls == []
    assert collaborators.containers.compose_calls == []
    assert not (config.source_path / 'manager.toml').exists()
    assert (config.source_path / 'agent.toml').exists()


def test_skip_flags(install_path, settings, collaborators):
    config = make_config(
        install_path, identity=False,
        skip_hardware_setup=True, skip_supervision=True, skip_image_pull=True,
    )
    state = _orchestrator(config, settings, collaborators).run()

    assert ProvisionPhase.HARDWARE_SETUP in state.skipped
    assert ProvisionPhase.SUPERVISION_REGISTRATION in state.skipped
    assert not settings.paths.unit_dir.exists()
    assert collaborators.containers.pulled == []
    assert not collaborators.containers.gpu_runtime


def test_failed_phase_marks_run_failed(install_path, settings, collaborators):
    collaborators.host.addresses = []
    orchestrator = _orchestrator(make_config(install_path, identity=False), settings, collaborators)

    with pytest.raises(NetworkError):
        orchestrator.run()

    assert orchestrator.state.phase == ProvisionPhase.FAILED
    assert orchestrator.state.metadata['failed_phase'] == 'network_setup'
    assert orchestrator.state.completed == [ProvisionPhase.VALIDATE]


def test_reboot_required_stops_before_base_install(install_path, settings, collaborators):
    collaborators.gpu.present = collaborators.gpu.loaded = False
    collaborators.gpu.load_works = False
    orchestrator = _orchestrator(make_config(install_path, identity=False), settings, collaborators)

    with pytest.raises(RebootRequiredError):
        orchestrator.run()

    assert orchestrator.state.metadata['failed_phase'] == 'hardware_setup'
    assert collaborators.packages.installed == []


def test_rerun_is_idempotent(install_path, settings, collaborators):
    config = make_config(install_path, identity=False)
    _orchestrator(config, settings, collaborators).run()
    manager = (config.source_path / 'manager.toml').read_text()
    collaborators.control_plane.calls.clear()
    collaborators.supervisor.started.clear()

    state = _orchestrator(config, settings, collaborators).run()

    assert (config.source_path / 'manager.toml').read_text() == manager
    assert not any(state.metadata['artifacts'].values())
    assert collaborators.control_plane.called('fixture_populate') == []
    assert set(state.metadata['units'].values()) == {'unchanged'}


def test_shared_storage_on_worker_mounts_during_role_setup(install_path, settings, collaborators):
    config = make_config(
        install_path, role=NodeRole.WORKER, identity=False, storage=StorageOptions(enabled=True),
    )
    _orchestrator(config, settings, collaborators).run()
    assert collaborators.file_sharing.mounts[0][0] == f"10.0.0.1:{config.vfolder_path}"


def test_best_effort_failures_become_warnings(install_path, settings, collaborators):
    collaborators.containers.pull_ok = False
    collaborators.containers.smoke_ok = False
    state = _orchestrator(make_config(install_path, identity=False), settings, collaborators).run()
    assert state.phase == ProvisionPhase.COMPLETED
    assert len(state.warnings) == 2


def test_missing_env_script_fixture_is_recorded_as_warning(install_path, settings, collaborators):
    config = make_config(install_path, identity=False)
    (config.source_path / 'fixtures' / 'manager' / 'example-users.json').unlink()
    state = _orchestrator(config, settings, collaborators).run()
    assert state.phase == ProvisionPhase.COMPLETED
    assert any('env-local-admin-session.sh' in w for w in state.warnings)
