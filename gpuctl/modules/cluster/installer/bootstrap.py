"""Host preparation shared by both roles, and the coordinator's halfstack.

:class:`BaseInstaller` covers the hardware and base-install phases: CUDA
toolkit and container toolkit, system packages and kernel tuning, the
container engine, the source checkout and the Python environment exported by
pants. :class:`Halfstack` brings up the PostgreSQL, Redis and etcd containers
on the coordinator from the compose file shipped in the checkout.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..config import InstallerSettings
from ..errors import ConfigurationError, PrerequisiteError
from ..host import Collaborators
from ..host.files import ensure_directory, write_json_file, write_text_file
from ..host.source import python_version_from_pants
from ..models import Configuration, VersionResolution
from .utils import read_yaml_file, render_template, write_yaml_file
from .verification import verify_gpu_runtime

logger = logging.getLogger("gpuctl.installer.bootstrap")

SYSTEM_PACKAGES = (
    'git', 'git-lfs', 'jq', 'curl', 'wget', 'build-essential', 'libssl-dev', 'libffi-dev',
    'pkg-config', 'ca-certificates', 'gnupg', 'lsb-release', 'software-properties-common',
    'netcat-openbsd',
)

NOFILE_LIMIT = 512000
NPROC_LIMIT = 65536
SYSCTL_SETTINGS = {
    'fs.file-max': '2048000',
    'net.core.somaxconn': '1024',
    'net.ipv4.tcp_max_syn_backlog': '1024',
    'net.ipv4.tcp_slow_start_after_idle': '0',
    'net.ipv4.tcp_fin_timeout': '10',
    'net.ipv4.tcp_window_scaling': '1',
    'net.ipv4.tcp_tw_reuse': '1',
    'net.ipv4.tcp_early_retrans': '1',
    'net.ipv4.ip_local_port_range': '10000 65000',
    'net.core.rmem_max': '16777216',
    'net.core.wmem_max': '16777216',
    'net.ipv4.tcp_rmem': '4096 12582912 16777216',
    'net.ipv4.tcp_wmem': '4096 12582912 16777216',
    'vm.overcommit_memory': '1',
}

CUDA_REPO_RELEASES = {'22.04': 'ubuntu2204', '24.04': 'ubuntu2404'}
CUDA_REPO_ARCHES = {'x86_64': 'x86_64', 'aarch64': 'sbsa'}
CUDA_KEYRING_URL = "https://developer.download.nvidia.com/compute/cuda/repos/{release}/{arch}/cuda-keyring_1.1-1_all.deb"
CUDA_KEYRING_PATH = Path("/usr/share/keyrings/cuda-archive-keyring.gpg")
CUDA_LD_PATHS = "/usr/local/cuda/lib64\n/usr/local/cuda/extras/CUPTI/lib64\n"
CUDA_PROFILE = '''export PATH="/usr/local/cuda/bin:$PATH"
export LD_LIBRARY_PATH="/usr/local/cuda/lib64:${LD_LIBRARY_PATH:-}"
'''

CONTAINER_TOOLKIT_PACKAGE = 'nvidia-container-toolkit'
CONTAINER_TOOLKIT_KEY_URL = "https://nvidia.github.io/libnvidia-container/gpgkey"
CONTAINER_TOOLKIT_SOURCE = (
    "deb [signed-by={keyring}] https://nvidia.github.io/libnvidia-container/stable/deb/$(ARCH) /"
)

NVCR_FIXTURE = Path("fixtures/manager/example-container-registries-nvcr.json")
NVCR_REGISTRY = {
    "container_registries": [
        {
            "id": "a1b2c3d4-5678-90ab-cdef-1234567890ab",
            "registry_name": "nvcr.io",
            "url": "https://nvcr.io",
            "type": "docker",
            "project": "nvidia",
        }
    ]
}


class BaseInstaller:
    """Installs everything a node needs before its services are configured.

    Args:
        config: Provisioning configuration
        settings: Installer settings (system file locations)
        collaborators: Host collaborators
    """

    def __init__(self, config: Configuration, settings: InstallerSettings, collaborators: Collaborators):
        self.config = config
        self.paths = settings.paths
        self.host = collaborators
        self.dry_run = config.dry_run

    def install_cuda_toolkit(self, resolution: VersionResolution, release: str, machine: str) -> bool:
        """Install the resolved CUDA toolkit unless a CUDA runtime is already present.

        Returns:
            bool: False when the toolkit was already installed
        """
        if self.host.host.cuda_runtime_present():
            logger.info("✅ CUDA runtime already present, skipping toolkit installation")
            return False

        if not CUDA_KEYRING_PATH.exists():
            url = CUDA_KEYRING_URL.format(
                release=CUDA_REPO_RELEASES.get(release, 'ubuntu2204'),
                arch=CUDA_REPO_ARCHES.get(machine, 'x86_64'),
            )
            logger.info("📦 Adding NVIDIA CUDA repository")
            self.host.packages.install_deb_from_url(url)

        logger.info(f"📦 Installing {resolution.package} (this may take a while)")
        self.host.packages.install(resolution.package)

        write_text_file(self.paths.cuda_ld_conf, CUDA_LD_PATHS, dry_run=self.dry_run)
        write_text_file(self.paths.cuda_profile, CUDA_PROFILE, dry_run=self.dry_run)
        self.host.runner.run(['ldconfig'])
        return True

    def install_container_toolkit(self) -> None:
        self.host.packages.add_signed_repository(
            CONTAINER_TOOLKIT_PACKAGE, CONTAINER_TOOLKIT_KEY_URL, CONTAINER_TOOLKIT_SOURCE
        )
        self.host.packages.install(CONTAINER_TOOLKIT_PACKAGE)

    def install_system_packages(self) -> None:
        logger.info("📦 Installing system packages")
        self.host.packages.install(*SYSTEM_PACKAGES)
        self.host.source.lfs_install()

    def tune_kernel(self) -> None:
        """Raise process limits and apply network tuning for the services."""
        write_text_file(
            self.paths.limits_file,
            render_template('limits.conf.j2', nofile=NOFILE_LIMIT, nproc=NPROC_LIMIT),
            dry_run=self.dry_run,
        )
        changed = write_text_file(
            self.paths.sysctl_file,
            render_template('sysctl.conf.j2', settings=SYSCTL_SETTINGS),
            dry_run=self.dry_run,
        )
        if changed:
            result = self.host.runner.run(['sysctl', '-p', self.paths.sysctl_file], check=False)
            if not result.ok:
                logger.warning("⚠️  Some kernel parameters could not be applied")

    def install_container_engine(self, codename: str) -> str:
        """Install and start Docker, requiring the compose v2 plugin.

        Returns:
            str: the compose plugin version

        Raises:
            PrerequisiteError: If ``docker compose`` is not available
        """
        if self.host.containers.is_installed():
            logger.info("✅ Docker already installed")
        else:
            logger.info("📦 Installing Docker")
            self.host.containers.install(codename)
        self.host.containers.ensure_running()

        version = self.host.containers.compose_version()
        if not version:
            raise PrerequisiteError("Docker Compose v2 not found; install the docker-compose-plugin package")
        logger.info(f"✅ Docker Compose {version}")
        return version

    def configure_gpu_runtime(self) -> bool:
        """Make the NVIDIA runtime the container default and smoke-test it.

        Returns:
            bool: whether containers could see the GPU
        """
        self.host.containers.configure_gpu_runtime()
        if self.dry_run:
            return True
        return verify_gpu_runtime(self.host.containers)

    def checkout_source(self) -> Path:
        """Clone or update the platform source and add the NGC registry fixture."""
        path = self.config.source_path
        if self.host.source.exists(path):
            logger.info(f"Repository already exists at {path}, updating")
            self.host.source.update(path, self.config.branch)
        else:
            logger.info(f"📦 Cloning {self.config.repository} ({self.config.branch})")
            ensure_directory(self.config.install_path, dry_run=self.dry_run)
            self.host.source.clone(self.config.repository, self.config.branch, path)
        self.host.source.lfs_pull(path)

        write_json_file(path / NVCR_FIXTURE, NVCR_REGISTRY, dry_run=self.dry_run)
        logger.info(f"✅ Repository ready at {path}")
        return path

    def prepare_python_environment(self) -> Optional[Path]:
        """Install the pinned interpreter, export the virtualenv and link it to ``.venv``.

        Raises:
            PrerequisiteError: If pants did not produce a virtualenv
        """
        source = self.config.source_path
        toolchain = self.host.toolchain
        toolchain.ensure_pyenv()
        version = python_version_from_pants(source)
        logger.info(f"Target Python version: {version}")
        toolchain.ensure_interpreter(version)
        toolchain.ensure_pants(source)

        venv = toolchain.export_virtualenv(source)
        if venv is None:
            if self.dry_run:
                logger.info(f"[DRY RUN] Would link the exported virtualenv to {self.config.venv_path}")
                return None
            raise PrerequisiteError(
                "Could not find the exported virtualenv "
                "(expected dist/export/python/virtualenvs/python-default/<version>/bin/activate)"
            )
        link_virtualenv(self.config.venv_path, venv, dry_run=self.dry_run)
        return venv


def link_virtualenv(link: Path, target: Path, dry_run: bool = False) -> bool:
    """Point the ``.venv`` symlink at the exported virtualenv."""
    if link.is_symlink() and Path(os.readlink(link)) == target:
        return False
    if dry_run:
        logger.info(f"[DRY RUN] Would link {link} -> {target}")
        return True
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(target)
    logger.info(f"🔗 Virtual environment linked: {link} -> {target}")
    return True


HALFSTACK_TEMPLATE = 'docker-compose.halfstack-main.yml'
HALFSTACK_COMPOSE = 'docker-compose.halfstack.current.yml'
HALFSTACK_VOLUMES = ('postgres-data', 'redis-data', 'etcd-data')
SUPPORTING_FILES = (
    ('configs/prometheus/prometheus.yaml', 'prometheus.yaml'),
    ('configs/grafana/dashboards', 'grafana-dashboards'),
    ('configs/grafana/provisioning', 'grafana-provisioning'),
    ('configs/otel/otel-collector-config.yaml', 'otel-collector-config.yaml'),
    ('configs/loki/loki-config.yaml', 'loki-config.yaml'),
    ('configs/tempo/tempo-config.yaml', 'tempo-config.yaml'),
    ('configs/graphql/gateway.config.ts', 'gateway.config.ts'),
)
POSTGRES_CONTAINER_PORT = 5432
REDIS_CONTAINER_PORT = 6379
ETCD_CONTAINER_PORT = 2379


def _remap_port(entry: Any, mapping: Dict[int, int]) -> Any:
    if isinstance(entry, dict):
        target = entry.get('target')
        if isinstance(target, int) and target in mapping:
            return {**entry, 'published': mapping[target]}
        return entry

    parts = str(entry).split(':')
    if len(parts) < 2:
        return entry
    try:
        container_port = int(parts[-1].partition('/')[0])
    except ValueError:
        return entry
    if container_port not in mapping:
        return entry
    parts[-2] = str(mapping[container_port])
    return ':'.join(parts)


def remap_published_ports(compose: Dict[str, Any], mapping: Dict[int, int]) -> Dict[str, Any]:
    """Publish the given container ports on new host ports, in every service."""
    for service in (compose.get('services') or {}).values():
        if isinstance(service, dict) and service.get('ports'):
            service['ports'] = [_remap_port(entry, mapping) for entry in service['ports']]
    return compose


class Halfstack:
    """The coordinator's PostgreSQL, Redis and etcd containers."""

    def __init__(self, config: Configuration, collaborators: Collaborators):
        self.config = config
        self.containers = collaborators.containers
        self.source = config.source_path

    @property
    def compose_file(self) -> Path:
        return self.source / HALFSTACK_COMPOSE

    def port_mapping(self) -> Dict[int, int]:
        ports = self.config.ports
        return {
            POSTGRES_CONTAINER_PORT: ports.postgres,
            REDIS_CONTAINER_PORT: ports.redis,
            ETCD_CONTAINER_PORT: ports.etcd,
        }

    def prepare(self) -> bool:
        """Write the compose file with our ports and copy its supporting files.

        Returns:
            bool: whether the compose file changed

        Raises:
            ConfigurationError: If the checkout has no halfstack compose file
        """
        dry_run = self.config.dry_run
        for volume in HALFSTACK_VOLUMES:
            ensure_directory(self.source / 'volumes' / volume, dry_run=dry_run)

        template = self.source / HALFSTACK_TEMPLATE
        try:
            compose = read_yaml_file(template)
        except FileNotFoundError:
            if dry_run:
                logger.info(f"[DRY RUN] Would generate {self.compose_file} from {template}")
                return True
            raise ConfigurationError(f"Halfstack compose file not found: {template}") from None
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid halfstack compose file {template}: {e}") from e

        compose = remap_published_ports(compose, self.port_mapping())
        changed = write_yaml_file(self.compose_file, compose, dry_run=dry_run)
        self.copy_supporting_files()
        return changed

    def copy_supporting_files(self) -> List[str]:
        copied = []
        for src, dest in SUPPORTING_FILES:
            source = self.source / src
            target = self.source / dest
            if not source.exists():
                logger.debug(f"Supporting file {source} not present, skipping")
                continue
            if self.config.dry_run:
                logger.info(f"[DRY RUN] Would copy {source} to {target}")
            elif source.is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            else:
                shutil.copyfile(source, target)
            copied.append(dest)
        return copied

    def start(self) -> None:
        """Pull (unless skipped) and start the containers, waiting until healthy."""
        if self.config.skip_image_pull:
            logger.info("Skipping halfstack image pull")
        else:
            logger.info("📦 Pulling halfstack images")
            self.containers.compose(self.compose_file, 'pull')

        logger.info("🚀 Starting halfstack services")
        self.containers.compose(self.compose_file, 'up', '-d', '--wait')
        self.containers.compose(self.compose_file, 'ps', check=False)
        logger.info("✅ Halfstack services started")

    def setup(self) -> None:
        self.prepare()
        self.start()
