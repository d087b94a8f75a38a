"""Tailscale overlay mesh agent."""

import logging
from typing import Optional

from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.mesh")

INSTALL_SCRIPT_URL = "https://tailscale.com/install.sh"


class TailscaleAgent:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def is_installed(self) -> bool:
        return self.runner.which('tailscale') is not None

    def install(self) -> None:
        logger.info("📦 Installing Tailscale")
        self.runner.shell(f"curl -fsSL {INSTALL_SCRIPT_URL} | sh")

    def is_connected(self) -> bool:
        return self.is_installed() and self.runner.succeeds(['tailscale', 'status'])

    def join(self, auth_key: str) -> None:
        self.runner.add_secret(auth_key)
        self.runner.run(['tailscale', 'up', f'--auth-key={auth_key}'])

    def address(self) -> Optional[str]:
        """First IPv4 address assigned by the mesh, if any yet."""
        output = self.runner.output(['tailscale', 'ip', '-4'])
        for line in output.splitlines():
            if line.strip():
                return line.strip()
        return None
