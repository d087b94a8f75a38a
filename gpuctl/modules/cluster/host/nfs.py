"""NFS server exports and client mounts."""

import logging
from pathlib import Path

from .files import edit_lines
from .packages import AptPackageManager
from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.nfs")


def replace_export_entry(text: str, export_path: Path, entry: str) -> str:
    """Return exports content with exactly one entry for ``export_path``."""
    kept = [
        line for line in text.splitlines()
        if not (line.split() and line.split()[0] == str(export_path))
    ]
    kept.append(entry)
    return "\n".join(kept) + "\n"


def replace_fstab_entry(text: str, mount_point: Path, entry: str) -> str:
    """Return fstab content with exactly one entry mounted at ``mount_point``."""
    kept = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) >= 2 and not line.lstrip().startswith('#') and fields[1] == str(mount_point):
            continue
        kept.append(line)
    kept.append(entry)
    return "\n".join(kept) + "\n"


class NfsService:
    """Network file sharing through nfs-kernel-server and nfs-common."""

    def __init__(self, runner: CommandRunner, packages: AptPackageManager,
                 exports_file: Path = Path("/etc/exports"),
                 fstab_file: Path = Path("/etc/fstab")):
        self.runner = runner
        self.packages = packages
        self.exports_file = exports_file
        self.fstab_file = fstab_file

    def install_server(self) -> None:
        self.packages.install('nfs-kernel-server', 'nfs-common')

    def install_client(self) -> None:
        self.packages.install('nfs-common')

    def register_export(self, path: Path, network: str, options: str) -> bool:
        entry = f"{path} {network}({options})"
        return edit_lines(
            self.exports_file,
            lambda text: replace_export_entry(text, path, entry),
            dry_run=self.runner.dry_run,
        )

    def reexport(self) -> None:
        self.runner.run(['exportfs', '-ra'])

    def restart_server(self) -> None:
        self.runner.run(['systemctl', 'enable', 'nfs-kernel-server'])
        self.runner.run(['systemctl', 'restart', 'nfs-kernel-server'])

    def export_available(self, server: str) -> bool:
        return self.runner.succeeds(['showmount', '-e', server])

    def is_mounted(self, mount_point: Path) -> bool:
        return self.runner.succeeds(['mountpoint', '-q', mount_point])

    def mount(self, source: str, mount_point: Path, options: str) -> None:
        self.runner.run(['mount', '-t', 'nfs', '-o', options, source, mount_point])

    def persist_mount(self, source: str, mount_point: Path, options: str) -> bool:
        entry = f"{source} {mount_point} nfs {options} 0 0"
        return edit_lines(
            self.fstab_file,
            lambda text: replace_fstab_entry(text, mount_point, entry),
            dry_run=self.runner.dry_run,
        )
