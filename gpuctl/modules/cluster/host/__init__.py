"""Host collaborators: the external systems a provisioning run drives."""

from dataclasses import dataclass

from ..config import InstallerSettings
from ..models import Configuration
from .control_plane import BackendAiCli
from .docker import DockerEngine
from .firewall import UfwFirewall
from .gpu import NvidiaDriver
from .interfaces import (
    ContainerEngine, ControlPlane, FileSharingService, FirewallManager, GpuDriver,
    HostInspector, MeshAgent, PackageManager, ProcessSupervisor, PythonToolchain,
    SourceCheckout,
)
from .mesh import TailscaleAgent
from .nfs import NfsService
from .packages import AptPackageManager
from .probe import HostProbe
from .shell import CommandResult, CommandRunner
from .source import GitCheckout, PantsToolchain
from .systemd import SystemdSupervisor


@dataclass
class Collaborators:
    """Everything outside the process that the installer talks to."""
    runner: CommandRunner
    host: HostInspector
    packages: PackageManager
    containers: ContainerEngine
    supervisor: ProcessSupervisor
    mesh: MeshAgent
    file_sharing: FileSharingService
    firewall: FirewallManager
    control_plane: ControlPlane
    gpu: GpuDriver
    source: SourceCheckout
    toolchain: PythonToolchain


def build_collaborators(config: Configuration, settings: InstallerSettings) -> Collaborators:
    """Wire the real, subprocess-backed collaborators for this host."""
    runner = CommandRunner(dry_run=config.dry_run)
    runner.add_secret(config.mesh_auth_key)
    packages = AptPackageManager(runner)
    return Collaborators(
        runner=runner,
        host=HostProbe(runner, settings.paths.os_release),
        packages=packages,
        containers=DockerEngine(runner, packages),
        supervisor=SystemdSupervisor(runner),
        mesh=TailscaleAgent(runner),
        file_sharing=NfsService(runner, packages, settings.paths.exports_file, settings.paths.fstab_file),
        firewall=UfwFirewall(runner),
        control_plane=BackendAiCli(runner, config.source_path, config.venv_path),
        gpu=NvidiaDriver(runner, packages),
        source=GitCheckout(runner),
        toolchain=PantsToolchain(runner, packages, profile_path=settings.paths.pyenv_profile),
    )


__all__ = [
    'Collaborators',
    'build_collaborators',
    'CommandResult',
    'CommandRunner',
    'AptPackageManager',
    'BackendAiCli',
    'DockerEngine',
    'GitCheckout',
    'HostProbe',
    'NfsService',
    'NvidiaDriver',
    'PantsToolchain',
    'SystemdSupervisor',
    'TailscaleAgent',
    'UfwFirewall',
]
