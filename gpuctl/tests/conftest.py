import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from gpuctl.modules.cluster.config import HostPathsConfig, InstallerSettings, PollingConfig
from gpuctl.modules.cluster.host import Collaborators, CommandResult
from gpuctl.modules.cluster.models import Configuration, NodeIdentity, NodeRole

FIXTURES = Path(__file__).parent / "fixtures"
PRIMARY_ADDRESS = "192.168.1.10"
MESH_ADDRESS = "100.64.0.7"


class FakeRunner:
    def __init__(self, dry_run=False):
        self.dry_run = dry_run
        self.env: Dict[str, str] = {}
        self.secrets: List[str] = []
        self.commands: List[List[str]] = []

    def add_secret(self, value):
        if value and value not in self.secrets:
            self.secrets.append(value)

    def run(self, argv, check=True, mutating=True, **kwargs):
        args = [str(a) for a in argv]
        self.commands.append(args)
        return CommandResult(args, 0)

    def probe(self, argv, **kwargs):
        return self.run(argv, check=False, mutating=False)

    def succeeds(self, argv, **kwargs):
        return True

    def output(self, argv, **kwargs):
        return ''

    def shell(self, script, check=True, **kwargs):
        return self.run(['sh', '-c', script], check=check)

    @staticmethod
    def which(name):
        return None


class FakeHost:
    def __init__(self):
        self.root = True
        self.release = {'ID': 'ubuntu', 'VERSION_ID': '22.04', 'VERSION_CODENAME': 'jammy'}
        self.arch = 'x86_64'
        self.cpus = 4
        self.addresses = [PRIMARY_ADDRESS]
        self.route = None
        self.reachable = True
        self.cuda_present = False

    def is_root(self):
        return self.root

    def os_release(self):
        return dict(self.release)

    def machine(self):
        return self.arch

    def cpu_count(self):
        return self.cpus

    def interface_addresses(self):
        return list(self.addresses)

    def route_address(self):
        return self.route

    def can_reach(self, host, port, timeout):
        return self.reachable

    def cuda_runtime_present(self):
        return self.cuda_present


class FakePackages:
    def __init__(self):
        self.installed: List[str] = []
        self.repositories: List[str] = []
        self.debs: List[str] = []

    def install(self, *packages):
        self.installed.extend(packages)

    def is_installed(self, package):
        return package in self.installed

    def refresh(self):
        pass

    def add_signed_repository(self, name, key_url, source_line):
        self.repositories.append(name)

    def install_deb_from_url(self, url):
        self.debs.append(url)


class FakeContainers:
    def __init__(self):
        self.installed = True
        self.version = '2.27.0'
        self.pulled: List[str] = []
        self.pull_ok = True
        self.smoke_ok = True
        self.gpu_runtime = False
        self.compose_calls: List[Sequence[str]] = []
        self.names = ['backendai-backendai-half-db-1', 'backendai-backendai-half-redis-1']
        self.exec_calls: List[Sequence[str]] = []
        self.query_results: Dict[str, str] = {}

    def is_installed(self):
        return self.installed

    def install(self, distro_codename):
        self.installed = True

    def ensure_running(self):
        pass

    def compose_version(self):
        return self.version

    def pull(self, image):
        self.pulled.append(image)
        return self.pull_ok

    def run_gpu_smoke_test(self, image):
        return self.smoke_ok

    def compose(self, compose_file, *args, check=True):
        self.compose_calls.append(args)
        return CommandResult(['docker', 'compose', *args], 0)

    def compose_container(self, compose_file, pattern):
        for name in self.names:
            if pattern in name:
                return name
        return None

    def exec(self, container, argv, env=None, check=True):
        self.exec_calls.append(list(argv))
        stdout = ''
        for fragment, result in self.query_results.items():
            if fragment in ' '.join(argv):
                stdout = result
        return CommandResult(list(argv), 0, stdout)

    def configure_gpu_runtime(self):
        self.gpu_runtime = True


class FakeSupervisor:
    def __init__(self):
        self.enabled = set()
        self.active = set()
        self.reloads = 0
        self.started: List[str] = []
        self.restarted: List[str] = []

    def daemon_reload(self):
        self.reloads += 1

    def enable(self, unit, now=True):
        self.enabled.add(unit)
        if now:
            self.active.add(unit)
        self.started.append(unit)

    def restart(self, unit):
        self.restarted.append(unit)

    def is_enabled(self, unit):
        return unit in self.enabled

    def is_active(self, unit):
        return unit in self.active


class FakeMesh:
    """Mesh agent that assigns an address after a number of polls."""

    def __init__(self, address=MESH_ADDRESS, polls_until_assigned=0):
        self.installed = False
        self.connected = False
        self.assigned = address
        self.polls_until_assigned = polls_until_assigned
        self.polls = 0
        self.joined_with: Optional[str] = None

    def is_installed(self):
        return self.installed

    def install(self):
        self.installed = True

    def is_connected(self):
        return self.connected

    def join(self, auth_key):
        self.joined_with = auth_key
        self.connected = True

    def address(self):
        self.polls += 1
        if self.joined_with is None and not self.connected:
            return None
        if self.polls <= self.polls_until_assigned:
            return None
        return self.assigned


class FakeFileSharing:
    def __init__(self):
        self.server_installed = False
        self.client_installed = False
        self.exports: List[tuple] = []
        self.mounts: List[tuple] = []
        self.persisted: List[tuple] = []
        self.mounted = set()
        self.available = True
        self.mount_works = True
        self.reexported = 0

    def install_server(self):
        self.server_installed = True

    def install_client(self):
        self.client_installed = True

    def register_export(self, path, network, options):
        self.exports.append((path, network, options))
        return True

    def reexport(self):
        self.reexported += 1

    def restart_server(self):
        pass

    def export_available(self, server):
        return self.available

    def is_mounted(self, mount_point):
        return mount_point in self.mounted

    def mount(self, source, mount_point, options):
        self.mounts.append((source, mount_point, options))
        if self.mount_works:
            self.mounted.add(mount_point)

    def persist_mount(self, source, mount_point, options):
        self.persisted.append((source, mount_point, options))
        return True


class FakeFirewall:
    def __init__(self, available=True, active=False):
        self.available = available
        self.active = active
        self.rules = []
        self.enabled = False

    def is_available(self):
        return self.available

    def is_active(self):
        return self.active

    def apply(self, rule):
        self.rules.append(rule)

    def enable(self):
        self.enabled = True
        self.active = True


class FakeControlPlane:
    def __init__(self):
        self.calls: List[tuple] = []
        self.failing_fixtures = set()
        self.rescan_ok = True

    def etcd_put(self, key, value):
        self.calls.append(('etcd_put', key, value))

    def etcd_put_json(self, key, path):
        self.calls.append(('etcd_put_json', key, str(path)))

    def schema_oneshot(self):
        self.calls.append(('schema_oneshot',))

    def fixture_populate(self, path):
        self.calls.append(('fixture_populate', Path(path).stem))
        code = 1 if Path(path).stem in self.failing_fixtures else 0
        return CommandResult(['fixture', str(path)], code, '', 'duplicate key' if code else '')

    def image_rescan(self, registry, tag=None, check=True):
        self.calls.append(('image_rescan', registry, tag))
        return CommandResult(['rescan', registry], 0 if self.rescan_ok else 1)

    def image_alias(self, alias, image, architecture):
        self.calls.append(('image_alias', alias, image, architecture))

    def run_python(self, *args):
        self.calls.append(('run_python',) + args)

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeGpu:
    def __init__(self, present=True, loaded=True, version='535.104.05'):
        self.present = present
        self.loaded = loaded
        self.driver_version = version
        self.installs = 0
        self.load_works = True

    def is_present(self):
        return self.present

    def is_loaded(self):
        return self.loaded

    def version(self):
        return self.driver_version if self.loaded else None

    def install(self):
        self.installs += 1
        self.present = True

    def load_modules(self):
        if self.load_works:
            self.loaded = True
        return self.load_works


class FakeSource:
    def __init__(self, exists=True):
        self.present = exists
        self.cloned: List[tuple] = []
        self.updated: List[tuple] = []

    def exists(self, path):
        return self.present

    def clone(self, repository, branch, path):
        self.cloned.append((repository, branch, path))

    def update(self, path, branch):
        self.updated.append((path, branch))

    def lfs_install(self):
        pass

    def lfs_pull(self, path):
        pass


class FakeToolchain:
    def __init__(self, venv: Optional[Path] = None):
        self.venv = venv
        self.interpreters: List[str] = []

    def ensure_pyenv(self):
        pass

    def ensure_interpreter(self, version):
        self.interpreters.append(version)

    def ensure_pants(self, source_path):
        pass

    def export_virtualenv(self, source_path):
        return self.venv


@pytest.fixture
def install_path(tmp_path):
    """An install directory holding a copy of the sample source checkout."""
    path = tmp_path / "opt"
    shutil.copytree(FIXTURES / "backend.ai", path / "backend.ai")
    return path


@pytest.fixture
def polling():
    return PollingConfig(
        mesh_attempts=5, mesh_interval=0,
        storage_attempts=3, storage_interval=0,
        database_attempts=3, database_interval=0,
        reachability_timeout=0.1,
    )


@pytest.fixture
def settings(tmp_path, polling):
    etc = tmp_path / "etc"
    return InstallerSettings(
        polling=polling,
        paths=HostPathsConfig(
            unit_dir=etc / "systemd" / "system",
            exports_file=etc / "exports",
            fstab_file=etc / "fstab",
            limits_file=etc / "security" / "limits.d" / "99-backendai.conf",
            sysctl_file=etc / "sysctl.d" / "99-backendai.conf",
            cuda_ld_conf=etc / "ld.so.conf.d" / "cuda.conf",
            cuda_profile=etc / "profile.d" / "cuda.sh",
            pyenv_profile=etc / "profile.d" / "pyenv.sh",
            os_release=etc / "os-release",
        ),
    )


def make_config(install_path: Path, role=NodeRole.COORDINATOR, identity=True, **options) -> Configuration:
    if role == NodeRole.WORKER:
        options.setdefault('coordinator_address', '10.0.0.1')
    config = Configuration(
        role=role,
        install_path=install_path,
        ipc_base_path=install_path / "ipc",
        **options,
    )
    if identity:
        config = config.with_identity(NodeIdentity(primary_address=PRIMARY_ADDRESS))
    return config


@pytest.fixture
def coordinator(install_path):
    return make_config(install_path)


@pytest.fixture
def worker(install_path):
    return make_config(install_path, role=NodeRole.WORKER)


@pytest.fixture
def collaborators(tmp_path):
    return Collaborators(
        runner=FakeRunner(),
        host=FakeHost(),
        packages=FakePackages(),
        containers=FakeContainers(),
        supervisor=FakeSupervisor(),
        mesh=FakeMesh(),
        file_sharing=FakeFileSharing(),
        firewall=FakeFirewall(),
        control_plane=FakeControlPlane(),
        gpu=FakeGpu(),
        source=FakeSource(),
        toolchain=FakeToolchain(venv=tmp_path / "venvs" / "python-default" / "3.13.3"),
    )
