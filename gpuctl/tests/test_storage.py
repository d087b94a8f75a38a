from pathlib import Path

import pytest

from conftest import FakeFileSharing, FakeFirewall, make_config
from gpuctl.modules.cluster.errors import NetworkError
from gpuctl.modules.cluster.host.nfs import replace_export_entry, replace_fstab_entry
from gpuctl.modules.cluster.installer.storage import (
    SharedStorageConfigurator, allowed_client_network, write_version_marker,
)
from gpuctl.modules.cluster.models import MESH_CIDR, NodeRole, StorageOptions


def _storage(config, polling, sharing=None, firewall=None):
    return SharedStorageConfigurator(config, sharing or FakeFileSharing(), firewall or FakeFirewall(), polling)


def test_allowed_client_network():
    assert allowed_client_network(True, "192.168.1.10") == MESH_CIDR
    assert allowed_client_network(False, "192.168.1.10") == "192.168.1.0/24"


def test_disabled_storage_does_nothing(install_path, polling):
    sharing = FakeFileSharing()
    _storage(make_config(install_path), polling, sharing).configure()
    assert not sharing.server_installed and not sharing.client_installed


def test_coordinator_exports_vfolder_directory(install_path, polling):
    config = make_config(install_path, storage=StorageOptions(enabled=True))
    sharing = FakeFileSharing()
    firewall = FakeFirewall(active=True)

    _storage(config, polling, sharing, firewall).configure()

    assert sharing.server_installed
    assert sharing.exports == [(config.vfolder_path, "192.168.1.0/24", config.storage.export_options)]
    assert (config.vfolder_path / "version.txt").read_text() == "3\n"
    assert {r.port for r in firewall.rules} == {2049, 111}


def test_export_is_restricted_to_mesh_when_mesh_is_active(install_path, polling):
    config = make_config(install_path, storage=StorageOptions(enabled=True), mesh_auth_key="tskey-abc")
    sharing = FakeFileSharing()
    _storage(config, polling, sharing, FakeFirewall(available=False)).configure()
    assert sharing.exports[0][1] == MESH_CIDR


def test_relative_export_path_resolves_inside_checkout(install_path):
    config = make_config(install_path, storage=StorageOptions(enabled=True, export_path=Path("shared")))
    assert config.storage_export_path == config.source_path / "shared"


def test_worker_mounts_coordinator_export(install_path, polling):
    config = make_config(install_path, role=NodeRole.WORKER, storage=StorageOptions(enabled=True))
    sharing = FakeFileSharing()

    assert _storage(config, polling, sharing).configure() is None
    assert sharing.client_installed
    source = f"10.0.0.1:{config.vfolder_path}"
    assert sharing.mounts == [(source, config.vfolder_path, "rw,hard,intr")]
    assert sharing.persisted == [(source, config.vfolder_path, "rw,hard,intr")]


def test_existing_mount_is_left_alone(install_path, polling):
    config = make_config(install_path, role=NodeRole.WORKER, storage=StorageOptions(enabled=True))
    sharing = FakeFileSharing()
    sharing.mounted.add(config.vfolder_path)

    assert _storage(config, polling, sharing).mount() is False
    assert sharing.mounts == []


def test_external_server_is_mounted_on_coordinator(install_path, polling):
    config = make_config(
        install_path,
        storage=StorageOptions(enabled=True, endpoint="nas.local", export_path=Path("/export/vfroot")),
    )
    sharing = FakeFileSharing()
    _storage(config, polling, sharing).configure()
    assert sharing.exports == []
    assert sharing.mounts[0][0] == "nas.local:/export/vfroot"


def test_unreachable_export_is_fatal(install_path, polling):
    config = make_config(install_path, role=NodeRole.WORKER, storage=StorageOptions(enabled=True))
    sharing = FakeFileSharing()
    sharing.available = False
    with pytest.raises(NetworkError):
        _storage(config, polling, sharing).mount()
    assert sharing.mounts == []


def test_failed_mount_is_fatal(install_path, polling):
    config = make_config(install_path, role=NodeRole.WORKER, storage=StorageOptions(enabled=True))
    sharing = FakeFileSharing()
    sharing.mount_works = False
    with pytest.raises(NetworkError):
        _storage(config, polling, sharing).mount()
    assert sharing.persisted == []


def test_version_marker_is_not_overwritten(tmp_path):
    (tmp_path / "version.txt").write_text("2\n")
    assert write_version_marker(tmp_path) is False
    assert (tmp_path / "version.txt").read_text() == "2\n"
    assert write_version_marker(tmp_path / "new") is True


def test_replace_export_entry_is_idempotent():
    path = Path("/opt/backend.ai/backend.ai/vfroot/local")
    entry = f"{path} 100.64.0.0/10(rw,sync)"
    text = "/srv/other 10.0.0.0/8(ro)\n" + f"{path} 192.168.1.0/24(rw)\n"
    once = replace_export_entry(text, path, entry)
    assert once == "/srv/other 10.0.0.0/8(ro)\n" + entry + "\n"
    assert replace_export_entry(once, path, entry) == once


def test_replace_fstab_entry_keeps_comments_and_other_mounts():
    mount_point = Path("/mnt/vfroot")
    entry = f"coord:/export {mount_point} nfs rw,hard 0 0"
    text = "# /etc/fstab\nUUID=abc / ext4 defaults 0 1\nold:/x /mnt/vfroot nfs ro 0 0\n"
    updated = replace_fstab_entry(text, mount_point, entry)
    assert updated.splitlines() == ["# /etc/fstab", "UUID=abc / ext4 defaults 0 1", entry]
    assert replace_fstab_entry(updated, mount_point, entry) == updated
