"""Shared vfolder storage over NFS.

A coordinator without an external storage endpoint exports its vfolder
directory; workers (and a coordinator pointed at an external server) mount it
at the same local path so every agent sees identical vfolder contents.
"""

import ipaddress
import logging
from pathlib import Path
from typing import Optional

from ..config import PollingConfig
from ..errors import NetworkError
from ..host.files import ensure_directory, write_text_file
from ..host.interfaces import FileSharingService, FirewallManager
from ..models import MESH_CIDR, Configuration, NetworkRule
from .utils import poll

logger = logging.getLogger("gpuctl.installer.storage")

VERSION_MARKER = "version.txt"
VFOLDER_SCHEMA_VERSION = "3"
NFS_PORTS = ((2049, "NFS"), (111, "NFS portmapper"))


def allowed_client_network(mesh_active: bool, primary_address: str) -> str:
    """Network allowed to mount the export: the mesh, else the local /24."""
    if mesh_active:
        return MESH_CIDR
    return str(ipaddress.ip_network(f"{primary_address}/24", strict=False))


def write_version_marker(directory: Path, dry_run: bool = False) -> bool:
    """Write the vfolder schema marker unless one already exists.

    Returns:
        bool: True if the marker was written by this call
    """
    marker = directory / VERSION_MARKER
    if marker.exists():
        logger.debug(f"Version marker already present at {marker}")
        return False
    return write_text_file(marker, VFOLDER_SCHEMA_VERSION + "\n", dry_run=dry_run)


class SharedStorageConfigurator:
    def __init__(
        self,
        config: Configuration,
        file_sharing: FileSharingService,
        firewall: FirewallManager,
        polling: Optional[PollingConfig] = None,
    ):
        self.config = config
        self.file_sharing = file_sharing
        self.firewall = firewall
        self.polling = polling or PollingConfig()

    @property
    def is_exporter(self) -> bool:
        return self.config.is_coordinator and not self.config.storage.endpoint

    def configure(self) -> None:
        if not self.config.storage.enabled:
            logger.info("Shared storage not enabled, skipping")
            return
        if self.is_exporter:
            self.export()
        else:
            self.mount()

    def export(self) -> str:
        """Export the vfolder directory to the cluster.

        Returns:
            str: The client network the export is restricted to
        """
        path = self.config.storage_export_path
        logger.info(f"📂 Setting up NFS export {path}")
        self.file_sharing.install_server()
        ensure_directory(path, dry_run=self.config.dry_run)
        write_version_marker(path, dry_run=self.config.dry_run)

        network = allowed_client_network(
            self.config.mesh_enabled, self.config.identity.primary_address
        )
        self.file_sharing.register_export(path, network, self.config.storage.export_options)
        self.file_sharing.reexport()
        self.file_sharing.restart_server()

        if self.firewall.is_available() and self.firewall.is_active():
            for port, label in NFS_PORTS:
                self.firewall.apply(NetworkRule(network, port, comment=label))

        logger.info(f"✅ NFS export ready: {self.config.effective_address}:{path} for {network}")
        return network

    def mount(self) -> bool:
        """Mount the shared export at the vfolder path.

        Returns:
            bool: False if the target was already mounted and nothing changed

        Raises:
            NetworkError: If the export never becomes reachable or the mount fails
        """
        mount_point = self.config.vfolder_path
        if self.file_sharing.is_mounted(mount_point):
            logger.info(f"✅ Shared storage already mounted at {mount_point}")
            return False

        server = self.config.storage.endpoint or self.config.coordinator_address
        source = f"{server}:{self.config.storage_export_path}"
        options = self.config.storage.mount_options

        self.file_sharing.install_client()
        ensure_directory(mount_point, dry_run=self.config.dry_run)

        if not self.config.dry_run:
            poll(
                lambda: self.file_sharing.export_available(server),
                attempts=self.polling.storage_attempts,
                interval=self.polling.storage_interval,
                description=f"NFS server {server}",
            )

        self.file_sharing.mount(source, mount_point, options)
        if not self.config.dry_run and not self.file_sharing.is_mounted(mount_point):
            raise NetworkError(f"Failed to mount {source} at {mount_point}")

        self.file_sharing.persist_mount(source, mount_point, options)
        logger.info(f"✅ Shared storage {source} mounted at {mount_point}")
        return True
