"""Docker engine and compose plugin."""

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

from .packages import AptPackageManager
from .shell import CommandResult, CommandRunner

logger = logging.getLogger("gpuctl.host.docker")

DOCKER_PACKAGES = (
    'docker-ce', 'docker-ce-cli', 'containerd.io',
    'docker-buildx-plugin', 'docker-compose-plugin',
)
DOCKER_KEY_URL = "https://download.docker.com/linux/ubuntu/gpg"


class DockerEngine:
    """Container engine driven through the docker CLI."""

    def __init__(self, runner: CommandRunner, packages: AptPackageManager):
        self.runner = runner
        self.packages = packages

    def is_installed(self) -> bool:
        return self.runner.which('docker') is not None

    def install(self, distro_codename: str) -> None:
        arch = self.runner.output(['dpkg', '--print-architecture']) or 'amd64'
        self.packages.add_signed_repository(
            'docker',
            DOCKER_KEY_URL,
            f"deb [arch={arch} signed-by={{keyring}}] https://download.docker.com/linux/ubuntu "
            f"{distro_codename} stable",
        )
        self.packages.install(*DOCKER_PACKAGES)

    def ensure_running(self) -> None:
        self.runner.run(['systemctl', 'enable', 'docker'])
        self.runner.run(['systemctl', 'start', 'docker'])

    def compose_version(self) -> Optional[str]:
        """Version of the compose v2 plugin, or None when it is missing."""
        result = self.runner.probe(['docker', 'compose', 'version', '--short'])
        if self.runner.dry_run and not result.ok:
            return 'unknown'
        return result.stdout.strip() if result.ok else None

    def configure_gpu_runtime(self) -> None:
        self.runner.run(['nvidia-ctk', 'runtime', 'configure', '--runtime=docker', '--set-as-default'])
        self.runner.run(['systemctl', 'restart', 'docker'])

    def pull(self, image: str) -> bool:
        return self.runner.run(['docker', 'pull', image], check=False).ok

    def run_gpu_smoke_test(self, image: str) -> bool:
        return self.runner.run(
            ['docker', 'run', '--rm', '--gpus', 'all', image, 'nvidia-smi'], check=False
        ).ok

    def compose(self, compose_file: Path, *args: str, check: bool = True) -> CommandResult:
        return self.runner.run(
            ['docker', 'compose', '-f', compose_file.name, *args],
            check=check,
            cwd=compose_file.parent,
        )

    def compose_container(self, compose_file: Path, pattern: str) -> Optional[str]:
        """Name of the first compose container whose name contains a pattern."""
        result = self.runner.probe(
            ['docker', 'compose', '-f', compose_file.name, 'ps', '--format', '{{.Name}}'],
            cwd=compose_file.parent,
        )
        names = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        for name in names:
            if pattern in name:
                return name
        return None

    def exec(self, container: str, argv: Sequence[str], env: Optional[Dict[str, str]] = None,
             check: bool = True) -> CommandResult:
        cmd = ['docker', 'exec']
        for key, value in (env or {}).items():
            cmd += ['-e', f"{key}={value}"]
        return self.runner.run([*cmd, container, *argv], check=check)
