"""NVIDIA driver tooling."""

import logging
from typing import Optional

from .packages import AptPackageManager
from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.gpu")


class NvidiaDriver:
    def __init__(self, runner: CommandRunner, packages: AptPackageManager):
        self.runner = runner
        self.packages = packages

    def is_present(self) -> bool:
        return self.runner.which('nvidia-smi') is not None

    def is_loaded(self) -> bool:
        return self.runner.succeeds(['nvidia-smi'])

    def version(self) -> Optional[str]:
        """Driver version reported for the first GPU."""
        output = self.runner.output(['nvidia-smi', '--query-gpu=driver_version', '--format=csv,noheader'])
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        return lines[0] if lines else None

    def install(self) -> None:
        """Install the recommended driver, falling back to the GPGPU selection."""
        self.packages.install('ubuntu-drivers-common')
        if not self.runner.run(['ubuntu-drivers', 'install'], check=False).ok:
            logger.warning("⚠️  Standard driver installation failed, trying GPGPU install")
            self.runner.run(['ubuntu-drivers', 'install', '--gpgpu'])

    def load_modules(self) -> bool:
        """Swap nouveau for the nvidia kernel modules without rebooting."""
        self.runner.run(['modprobe', '-r', 'nouveau'], check=False)
        if not self.runner.run(['modprobe', 'nvidia'], check=False).ok:
            return False
        for module in ('nvidia_uvm', 'nvidia_drm'):
            self.runner.run(['modprobe', module], check=False)
        return True
