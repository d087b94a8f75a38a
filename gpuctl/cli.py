import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console

from gpuctl.config import Config
from gpuctl.logging import setup_logging
from gpuctl.modules.cluster.config import InstallerSettings
from gpuctl.modules.cluster.errors import ProvisioningError, RebootRequiredError
from gpuctl.modules.cluster.installer import PhaseOrchestrator
from gpuctl.modules.cluster.models import (
    DEFAULT_BRANCH, DEFAULT_INSTALL_PATH, Configuration, NodeRole, Ports, StorageOptions,
)
from gpuctl.utils import redact_sensitive_data

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Provision a GPU compute cluster node (coordinator or worker).",
)

logger = logging.getLogger("gpuctl.cli")
err_console = Console(stderr=True)

_DEFAULT_PORTS = Ports()
USAGE_ERROR = 2


@app.command()
def provision(
    role: NodeRole = typer.Option(NodeRole.COORDINATOR, "--role", help="Node role: coordinator or worker"),
    coordinator_address: Optional[str] = typer.Option(
        None, "--coordinator-address", help="Address of the coordinator node (required for workers)"
    ),
    manager_port: int = typer.Option(_DEFAULT_PORTS.manager, "--manager-port", help="Manager API port"),
    webserver_port: int = typer.Option(_DEFAULT_PORTS.webserver, "--webserver-port", help="Webserver port"),
    postgres_port: int = typer.Option(_DEFAULT_PORTS.postgres, "--postgres-port", help="PostgreSQL port"),
    redis_port: int = typer.Option(_DEFAULT_PORTS.redis, "--redis-port", help="Redis port"),
    etcd_port: int = typer.Option(_DEFAULT_PORTS.etcd, "--etcd-port", help="etcd port"),
    install_path: Path = typer.Option(DEFAULT_INSTALL_PATH, "--install-path", help="Installation directory"),
    branch: str = typer.Option(DEFAULT_BRANCH, "--branch", help="Source branch to check out"),
    mesh_auth_key: Optional[str] = typer.Option(
        None, "--mesh-auth-key", envvar="GPUCTL_MESH_AUTH_KEY",
        help="Tailscale auth key; nodes then talk over the mesh", show_default=False,
    ),
    enable_shared_storage: bool = typer.Option(
        False, "--enable-shared-storage", help="Share vfolders between nodes over NFS"
    ),
    storage_server: Optional[str] = typer.Option(
        None, "--storage-server", help="External NFS server (implies --enable-shared-storage)"
    ),
    storage_export_path: Optional[Path] = typer.Option(
        None, "--storage-export-path", help="NFS export path (default: the vfolder directory)"
    ),
    storage_mount_options: str = typer.Option(
        StorageOptions().mount_options, "--storage-mount-options", help="NFS client mount options"
    ),
    skip_hardware_setup: bool = typer.Option(
        False, "--skip-hardware-setup", help="Skip NVIDIA driver, CUDA and container toolkit setup"
    ),
    skip_supervision: bool = typer.Option(False, "--skip-supervision", help="Do not create systemd units"),
    skip_image_pull: bool = typer.Option(False, "--skip-image-pull", help="Do not pre-fetch container images"),
    skip_agent: bool = typer.Option(False, "--skip-agent", help="Do not run an agent on the coordinator"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without changing the host"),
    rotate_secrets: bool = typer.Option(False, "--rotate-secrets", help="Regenerate persisted service secrets"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="Installer settings file (YAML)"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Provision this host as a coordinator or worker node."""
    settings = InstallerSettings.load(config_file or Config.SETTINGS_FILE or None)
    setup_logging(
        debug,
        level=settings.logging.level,
        log_file=settings.logging.file,
        max_size_mb=settings.logging.max_size_mb,
        backup_count=settings.logging.backup_count,
    )

    try:
        config = Configuration.from_options(
            role=role,
            coordinator_address=coordinator_address,
            ports=Ports(
                **{
                    **_DEFAULT_PORTS.model_dump(),
                    'manager': manager_port,
                    'webserver': webserver_port,
                    'postgres': postgres_port,
                    'redis': redis_port,
                    'etcd': etcd_port,
                }
            ),
            install_path=install_path,
            branch=branch,
            mesh_auth_key=mesh_auth_key,
            storage=StorageOptions(
                enabled=enable_shared_storage or bool(storage_server),
                endpoint=storage_server,
                export_path=storage_export_path,
                mount_options=storage_mount_options,
            ),
            skip_hardware_setup=skip_hardware_setup,
            skip_supervision=skip_supervision,
            skip_image_pull=skip_image_pull,
            skip_agent=skip_agent,
            dry_run=dry_run,
            rotate_secrets=rotate_secrets,
        )
    except (ProvisioningError, ValueError) as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    logger.debug(f"Configuration: {redact_sensitive_data(config.model_dump(mode='json'))}")

    try:
        PhaseOrchestrator(config, settings).run()
    except RebootRequiredError as e:
        logger.error(f"❌ {e}")
        err_console.print(
            "[yellow]Reboot required:[/yellow] reboot this machine, then run the same "
            "command again to continue the installation."
        )
        raise typer.Exit(code=1)
    except (ProvisioningError, OSError) as e:
        logger.error(f"❌ Provisioning failed: {e}")
        if debug:
            logger.exception("Traceback")
        raise typer.Exit(code=1)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and return its exit status instead of exiting.

    Usage errors (status 2) are reported as a plain failure.
    """
    command = typer.main.get_command(app)
    try:
        command.main(args=argv, prog_name="gpuctl", standalone_mode=True)
    except SystemExit as e:
        code = e.code
        if code is None:
            return 0
        if not isinstance(code, int):
            err_console.print(str(code))
            return 1
        return 1 if code == USAGE_ERROR else code
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
