"""Read-only facts about the local host."""

import ipaddress
import logging
import os
import platform
import socket
from pathlib import Path
from typing import Dict, List, Optional

from .files import read_text
from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.probe")


def parse_os_release(text: str) -> Dict[str, str]:
    """Parse ``/etc/os-release`` KEY=value lines."""
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, _, value = line.partition('=')
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def parse_route_source(output: str) -> Optional[str]:
    """Source address from ``ip route get`` output."""
    fields = output.split()
    for i, field in enumerate(fields[:-1]):
        if field == 'src':
            return fields[i + 1]
    return None


class HostProbe:
    def __init__(self, runner: CommandRunner, os_release_path: Path = Path("/etc/os-release")):
        self.runner = runner
        self.os_release_path = os_release_path

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def os_release(self) -> Dict[str, str]:
        return parse_os_release(read_text(self.os_release_path))

    def machine(self) -> str:
        return platform.machine()

    def cpu_count(self) -> int:
        return os.cpu_count() or 1

    def interface_addresses(self) -> List[str]:
        """Non-loopback addresses in the order ``hostname -I`` reports them."""
        addresses = []
        for candidate in self.runner.output(['hostname', '-I']).split():
            try:
                if not ipaddress.ip_address(candidate).is_loopback:
                    addresses.append(candidate)
            except ValueError:
                continue
        return addresses

    def route_address(self) -> Optional[str]:
        return parse_route_source(self.runner.output(['ip', 'route', 'get', '1']))

    def can_reach(self, host: str, port: int, timeout: float) -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    def cuda_runtime_present(self) -> bool:
        return 'libcudart' in self.runner.output(['ldconfig', '-p'])
