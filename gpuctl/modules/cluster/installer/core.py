"""Phase sequencing for provisioning one node.

The orchestrator runs the phases in a fixed order, skipping the ones the role
or the skip flags exclude. The first failing phase marks the run FAILED and
its exception propagates; nothing already applied is rolled back. Every phase
is idempotent, so recovering from a failure means running the installer again.
"""

import logging
from typing import Callable, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from ..config import InstallerSettings
from ..host import Collaborators, build_collaborators
from ..models import Configuration, ProvisionPhase, ProvisionState, SecretBundle
from .bootstrap import BaseInstaller, Halfstack
from .configuration import ConfigurationTemplater
from .network import NetworkTopologyConfigurator
from .secrets import SecretsGenerator
from .service import ServiceSupervisorRegistrar
from .state import StateInitializer, write_env_scripts
from .storage import SharedStorageConfigurator
from .verification import PrerequisiteValidator
from .versions import VersionResolver

logger = logging.getLogger("gpuctl.installer.core")

KERNEL_IMAGE = "nvcr.io/nvidia/pytorch:25.05-py3"

COORDINATOR_ONLY = (ProvisionPhase.STORAGE_INIT, ProvisionPhase.STATE_INITIALIZATION)


class PhaseOrchestrator:
    """Drives a provisioning run to completion or to the first fatal error.

    Args:
        config: Provisioning configuration built from the command line
        settings: Installer settings (defaults when omitted)
        collaborators: Host collaborators (subprocess-backed when omitted)
        console: Where the final summary is printed
    """

    def __init__(
        self,
        config: Configuration,
        settings: Optional[InstallerSettings] = None,
        collaborators: Optional[Collaborators] = None,
        console: Optional[Console] = None,
    ):
        self.config = config
        self.settings = settings or InstallerSettings()
        self.collaborators = collaborators or build_collaborators(config, self.settings)
        self.console = console or Console()
        self.state = ProvisionState()
        self.validator = PrerequisiteValidator(
            config, self.collaborators.host, self.collaborators.gpu, self.settings.polling
        )
        self.resolver = VersionResolver()
        self.secrets: Optional[SecretBundle] = None

    def phases(self) -> List[Tuple[ProvisionPhase, Callable[[], None]]]:
        return [
            (ProvisionPhase.VALIDATE, self.validate),
            (ProvisionPhase.NETWORK_SETUP, self.setup_network),
            (ProvisionPhase.HARDWARE_SETUP, self.setup_hardware),
            (ProvisionPhase.BASE_INSTALL, self.install_base),
            (ProvisionPhase.ROLE_SPECIFIC_SETUP, self.setup_role),
            (ProvisionPhase.CONFIG_GENERATION, self.generate_configuration),
            (ProvisionPhase.STORAGE_INIT, self.initialize_storage),
            (ProvisionPhase.STATE_INITIALIZATION, self.initialize_state),
            (ProvisionPhase.SUPERVISION_REGISTRATION, self.register_services),
            (ProvisionPhase.FINALIZE, self.finalize),
        ]

    def skip_reason(self, phase: ProvisionPhase) -> Optional[str]:
        """Why a phase does not run on this node, or None if it does."""
        if phase in COORDINATOR_ONLY and not self.config.is_coordinator:
            return "coordinator only"
        if phase == ProvisionPhase.HARDWARE_SETUP and self.config.skip_hardware_setup:
            return "--skip-hardware-setup"
        if phase == ProvisionPhase.SUPERVISION_REGISTRATION and self.config.skip_supervision:
            return "--skip-supervision"
        return None

    def run(self) -> ProvisionState:
        """Run every applicable phase in order.

        Raises:
            ProvisioningError: From the first phase that fails
        """
        mode = " (dry run)" if self.config.dry_run else ""
        logger.info(f"🚀 Provisioning {self.config.role.value} node{mode}")

        for phase, step in self.phases():
            reason = self.skip_reason(phase)
            if reason:
                logger.info(f"⏭️  Skipping {phase.value} ({reason})")
                self.state.mark_skipped(phase)
                continue

            self.state.update_phase(phase)
            logger.info(f"▶️  Phase: {phase.value}")
            try:
                step()
            except Exception:
                self.state.metadata['failed_phase'] = phase.value
                self.state.update_phase(ProvisionPhase.FAILED)
                logger.error(f"❌ Phase {phase.value} failed")
                raise
            self.state.mark_completed(phase)

        self.state.update_phase(ProvisionPhase.COMPLETED)
        self.print_summary()
        return self.state

    def _warn(self, message: str) -> None:
        self.state.add_warning(message)

    def _warn_all(self, messages: List[str]) -> None:
        for message in messages:
            self.state.add_warning(message)

    def validate(self) -> None:
        self._warn_all(self.validator.validate())

    def setup_network(self) -> None:
        c = self.collaborators
        configurator = NetworkTopologyConfigurator(
            self.config, c.mesh, c.firewall, c.host, self.settings.polling
        )
        identity = configurator.configure()
        self.config = self.config.with_identity(identity)

    def setup_hardware(self) -> None:
        base = BaseInstaller(self.config, self.settings, self.collaborators)
        version = self.validator.ensure_driver()
        if version is None:
            logger.info("[DRY RUN] CUDA toolkit is selected once the driver reports its version")
        else:
            resolution = self.resolver.resolve(version)
            self.state.metadata['cuda_package'] = resolution.package
            if resolution.degraded:
                self._warn(f"Driver {version} predates every known toolkit; using {resolution.package}")
            base.install_cuda_toolkit(resolution, self.validator.release, self.validator.machine)
        base.install_container_toolkit()

    def install_base(self) -> None:
        base = BaseInstaller(self.config, self.settings, self.collaborators)
        base.install_system_packages()
        base.tune_kernel()
        base.install_container_engine(self.validator.codename)
        if not self.config.skip_hardware_setup and not base.configure_gpu_runtime():
            self._warn("Containers could not access the GPU")
        base.checkout_source()
        base.prepare_python_environment()

    def _storage(self) -> SharedStorageConfigurator:
        c = self.collaborators
        return SharedStorageConfigurator(self.config, c.file_sharing, c.firewall, self.settings.polling)

    def setup_role(self) -> None:
        if self.config.is_coordinator:
            Halfstack(self.config, self.collaborators).setup()
        else:
            self._storage().configure()

    def generate_configuration(self) -> None:
        generator = SecretsGenerator(self.config.state_path, dry_run=self.config.dry_run)
        self.secrets = generator.obtain(rotate=self.config.rotate_secrets)
        for name in self.secrets.names():
            self.collaborators.runner.add_secret(self.secrets[name])

        templater = ConfigurationTemplater(
            self.config, self.secrets, cpu_count=self.collaborators.host.cpu_count()
        )
        changes = templater.write_all(dry_run=self.config.dry_run)
        self.state.metadata['artifacts'] = changes

    def initialize_storage(self) -> None:
        self._storage().configure()

    def initialize_state(self) -> None:
        initializer = StateInitializer(
            self.config,
            self.collaborators,
            self.secrets,
            machine=self.validator.machine or 'x86_64',
            polling=self.settings.polling,
        )
        self._warn_all(initializer.initialize())

    def register_services(self) -> None:
        registrar = ServiceSupervisorRegistrar(
            self.config, self.collaborators.supervisor, self.settings.paths.unit_dir
        )
        self.state.metadata['units'] = registrar.register()

    def finalize(self) -> None:
        if self.config.is_coordinator:
            write_env_scripts(self.config, dry_run=self.config.dry_run, warnings=self.state.warnings)

        if self.config.skip_image_pull:
            logger.info(f"Skipping pre-fetch of {KERNEL_IMAGE}")
        else:
            logger.info(f"📦 Pre-fetching kernel image {KERNEL_IMAGE} (this may take a while)")
            if not self.collaborators.containers.pull(KERNEL_IMAGE):
                self._warn(f"Failed to pull {KERNEL_IMAGE}; it will be pulled on first use")

    def service_endpoints(self) -> List[Tuple[str, str]]:
        ports = self.config.ports
        address = self.config.effective_address if self.config.identity else "127.0.0.1"
        if not self.config.is_coordinator:
            return [
                ("Agent RPC", f"{address}:{ports.agent_rpc}"),
                ("Coordinator etcd", f"{self.config.coordinator_address}:{ports.etcd}"),
            ]
        return [
            ("Web UI", f"http://{address}:{ports.webserver}"),
            ("Manager API", f"http://{address}:{ports.manager}"),
            ("Storage proxy", f"http://{address}:{ports.storage_proxy_client}"),
            ("App proxy", f"http://{address}:{ports.appproxy_coordinator}"),
            ("PostgreSQL", f"{address}:{ports.postgres}"),
            ("Redis", f"{address}:{ports.redis}"),
            ("etcd", f"{address}:{ports.etcd}"),
        ]

    def summary_table(self) -> Table:
        config = self.config
        table = Table(title="Provisioning summary")
        table.add_column("Item", style="bold")
        table.add_column("Value")

        table.add_row("Role", config.role.value)
        table.add_row("Install path", str(config.install_path))
        table.add_row("Source", str(config.source_path))
        if config.identity:
            table.add_row("Primary address", config.identity.primary_address)
            if config.identity.mesh_address:
                table.add_row("Mesh address", config.identity.mesh_address)
        if 'cuda_package' in self.state.metadata:
            table.add_row("CUDA toolkit", self.state.metadata['cuda_package'])
        for label, endpoint in self.service_endpoints():
            table.add_row(label, endpoint)
        if config.storage.enabled:
            table.add_row("Shared storage", str(config.vfolder_path))
        if self.state.skipped:
            table.add_row("Skipped phases", ", ".join(p.value for p in self.state.skipped))
        for warning in self.state.warnings:
            table.add_row("[yellow]Warning[/yellow]", warning)
        return table

    def print_summary(self) -> None:
        self.console.print(self.summary_table())
        if self.config.is_coordinator:
            self.console.print(
                f"Source [bold]{self.config.source_path}/env-local-admin-api.sh[/bold] "
                f"to use the admin API keypair."
            )
