"""Interfaces of the external systems the installer drives.

The installer components depend only on these protocols. Real implementations
live in the sibling modules and shell out through :class:`CommandRunner`;
tests substitute in-memory fakes.
"""

from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from ..models import NetworkRule
from .shell import CommandResult


class PackageManager(Protocol):
    def install(self, *packages: str) -> None: ...
    def is_installed(self, package: str) -> bool: ...
    def refresh(self) -> None: ...
    def add_signed_repository(self, name: str, key_url: str, source_line: str) -> None: ...
    def install_deb_from_url(self, url: str) -> None: ...


class ContainerEngine(Protocol):
    def is_installed(self) -> bool: ...
    def install(self, distro_codename: str) -> None: ...
    def ensure_running(self) -> None: ...
    def compose_version(self) -> Optional[str]: ...
    def pull(self, image: str) -> bool: ...
    def run_gpu_smoke_test(self, image: str) -> bool: ...
    def compose(self, compose_file: Path, *args: str, check: bool = True) -> CommandResult: ...
    def compose_container(self, compose_file: Path, pattern: str) -> Optional[str]: ...
    def exec(self, container: str, argv: Sequence[str], env: Optional[Dict[str, str]] = None,
             check: bool = True) -> CommandResult: ...
    def configure_gpu_runtime(self) -> None: ...


class ProcessSupervisor(Protocol):
    def daemon_reload(self) -> None: ...
    def enable(self, unit: str, now: bool = True) -> None: ...
    def restart(self, unit: str) -> None: ...
    def is_enabled(self, unit: str) -> bool: ...
    def is_active(self, unit: str) -> bool: ...


class MeshAgent(Protocol):
    def is_installed(self) -> bool: ...
    def install(self) -> None: ...
    def is_connected(self) -> bool: ...
    def join(self, auth_key: str) -> None: ...
    def address(self) -> Optional[str]: ...


class FileSharingService(Protocol):
    def install_server(self) -> None: ...
    def install_client(self) -> None: ...
    def register_export(self, path: Path, network: str, options: str) -> bool: ...
    def reexport(self) -> None: ...
    def restart_server(self) -> None: ...
    def export_available(self, server: str) -> bool: ...
    def is_mounted(self, mount_point: Path) -> bool: ...
    def mount(self, source: str, mount_point: Path, options: str) -> None: ...
    def persist_mount(self, source: str, mount_point: Path, options: str) -> bool: ...


class FirewallManager(Protocol):
    def is_available(self) -> bool: ...
    def is_active(self) -> bool: ...
    def apply(self, rule: NetworkRule) -> None: ...
    def enable(self) -> None: ...


class ControlPlane(Protocol):
    def etcd_put(self, key: str, value: str) -> None: ...
    def etcd_put_json(self, key: str, path: Path) -> None: ...
    def schema_oneshot(self) -> None: ...
    def fixture_populate(self, path: Path) -> CommandResult: ...
    def image_rescan(self, registry: str, tag: Optional[str] = None, check: bool = True) -> CommandResult: ...
    def image_alias(self, alias: str, image: str, architecture: str) -> None: ...
    def run_python(self, *args: str) -> None: ...


class GpuDriver(Protocol):
    def is_present(self) -> bool: ...
    def is_loaded(self) -> bool: ...
    def version(self) -> Optional[str]: ...
    def install(self) -> None: ...
    def load_modules(self) -> bool: ...


class SourceCheckout(Protocol):
    def exists(self, path: Path) -> bool: ...
    def clone(self, repository: str, branch: str, path: Path) -> None: ...
    def update(self, path: Path, branch: str) -> None: ...
    def lfs_install(self) -> None: ...
    def lfs_pull(self, path: Path) -> None: ...


class PythonToolchain(Protocol):
    def ensure_pyenv(self) -> None: ...
    def ensure_interpreter(self, version: str) -> None: ...
    def ensure_pants(self, source_path: Path) -> None: ...
    def export_virtualenv(self, source_path: Path) -> Optional[Path]: ...


class HostInspector(Protocol):
    def is_root(self) -> bool: ...
    def os_release(self) -> Dict[str, str]: ...
    def machine(self) -> str: ...
    def cpu_count(self) -> int: ...
    def interface_addresses(self) -> List[str]: ...
    def route_address(self) -> Optional[str]: ...
    def can_reach(self, host: str, port: int, timeout: float) -> bool: ...
    def cuda_runtime_present(self) -> bool: ...
