"""Prerequisite checks gating a provisioning run.

The host checks (privilege, OS release, architecture) run before anything is
changed. The driver checks belong to hardware setup: they may install the
driver, and they stop the run when the freshly installed kernel module cannot
be loaded without a reboot.
"""

import logging
from typing import List, Optional

from ..config import PollingConfig
from ..errors import PrerequisiteError, RebootRequiredError, ValidationError
from ..host.interfaces import ContainerEngine, GpuDriver, HostInspector
from ..models import Configuration

logger = logging.getLogger("gpuctl.installer.verification")

SUPPORTED_DISTRIBUTION = 'ubuntu'
SUPPORTED_RELEASES = ('22.04', '24.04')
SUPPORTED_MACHINES = ('x86_64', 'aarch64')
GPU_SMOKE_TEST_IMAGE = "nvidia/cuda:12.0.0-base-ubuntu22.04"


class PrerequisiteValidator:
    """Checks the host can be provisioned.

    Args:
        config: Provisioning configuration
        host: Read-only host facts
        gpu: GPU driver tooling
        polling: Timeouts for the coordinator reachability probe
    """

    def __init__(
        self,
        config: Configuration,
        host: HostInspector,
        gpu: Optional[GpuDriver] = None,
        polling: Optional[PollingConfig] = None,
    ):
        self.config = config
        self.host = host
        self.gpu = gpu
        self.polling = polling or PollingConfig()
        self.warnings: List[str] = []
        self.release: Optional[str] = None
        self.codename: Optional[str] = None
        self.machine: Optional[str] = None

    def validate(self) -> List[str]:
        """Run every side-effect free check.

        Returns:
            list: warnings for conditions that do not stop the run

        Raises:
            ValidationError: If the host cannot be provisioned
        """
        self.warnings = []
        self.check_privilege()
        self.codename = self.check_os_release()
        self.machine = self.check_architecture()
        logger.info(f"✅ Host checks passed (Ubuntu {self.release}, {self.machine})")
        if not self.config.is_coordinator:
            self.check_coordinator_reachable()
        return list(self.warnings)

    def _warn(self, message: str) -> None:
        logger.warning(f"⚠️  {message}")
        self.warnings.append(message)

    def check_privilege(self) -> None:
        if self.host.is_root():
            return
        if self.config.dry_run:
            self._warn("Not running as root; a real run would be refused")
            return
        raise ValidationError("This installer must be run as root (use sudo)")

    def check_os_release(self) -> str:
        """Verify the distribution and release; returns the release codename."""
        release = self.host.os_release()
        distro = release.get('ID', '').lower()
        version = release.get('VERSION_ID', '')
        if distro != SUPPORTED_DISTRIBUTION:
            raise ValidationError(
                f"Unsupported distribution '{distro or 'unknown'}'; Ubuntu "
                f"{' or '.join(SUPPORTED_RELEASES)} is required"
            )
        if version not in SUPPORTED_RELEASES:
            raise ValidationError(
                f"Unsupported Ubuntu release {version or 'unknown'}; "
                f"supported releases are {', '.join(SUPPORTED_RELEASES)}"
            )
        self.release = version
        return release.get('VERSION_CODENAME') or release.get('UBUNTU_CODENAME') or version

    def check_architecture(self) -> str:
        machine = self.host.machine()
        if machine not in SUPPORTED_MACHINES:
            raise ValidationError(
                f"Unsupported architecture {machine}; expected one of {', '.join(SUPPORTED_MACHINES)}"
            )
        return machine

    def check_coordinator_reachable(self) -> bool:
        """Probe the coordinator's etcd port; an unreachable coordinator is only a warning."""
        address = self.config.coordinator_address
        port = self.config.ports.etcd
        if self.host.can_reach(address, port, self.polling.reachability_timeout):
            logger.info(f"✅ Coordinator {address}:{port} is reachable")
            return True
        self._warn(f"Cannot reach coordinator at {address}:{port}; make sure it is provisioned first")
        return False

    def ensure_driver(self) -> Optional[str]:
        """Make sure an NVIDIA driver is installed and loaded.

        Returns:
            str: the loaded driver version (None only in dry-run before installation)

        Raises:
            RebootRequiredError: If the driver is installed but its module cannot load
            PrerequisiteError: If the loaded driver does not report a version
        """
        if self.gpu is None:
            raise PrerequisiteError("No GPU driver tooling configured")

        if self.gpu.is_present() and self.gpu.is_loaded():
            version = self.gpu.version()
            logger.info(f"✅ NVIDIA driver {version} already loaded")
        else:
            if not self.gpu.is_present():
                logger.info("📦 Installing NVIDIA driver")
                self.gpu.install()

            if self.config.dry_run and not self.gpu.is_loaded():
                logger.info("[DRY RUN] Driver would be loaded after installation")
                return None

            if not self.gpu.is_loaded():
                logger.info("Loading NVIDIA kernel modules")
                if not self.gpu.load_modules() or not self.gpu.is_loaded():
                    raise RebootRequiredError(
                        "The NVIDIA driver is installed but its kernel module cannot be loaded "
                        "until the system is rebooted"
                    )
            version = self.gpu.version()
            logger.info(f"✅ NVIDIA driver {version} loaded")

        if not version:
            raise PrerequisiteError("NVIDIA driver is loaded but nvidia-smi reports no driver version")
        return version


def verify_gpu_runtime(containers: ContainerEngine, image: str = GPU_SMOKE_TEST_IMAGE) -> bool:
    """Run nvidia-smi inside a container to confirm GPUs are exposed to containers."""
    logger.info("🔍 Verifying GPU access from containers")
    if containers.run_gpu_smoke_test(image):
        logger.info("✅ Containers can access the GPU")
        return True
    logger.warning("⚠️  GPU container test failed; check the NVIDIA container toolkit configuration")
    return False
