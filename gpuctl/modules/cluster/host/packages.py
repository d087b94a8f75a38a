"""apt package management."""

import logging
import tempfile
from pathlib import Path

from .files import write_text_file
from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.packages")

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class AptPackageManager:
    """Installs Debian packages, refreshing the index at most once per run."""

    def __init__(self, runner: CommandRunner, keyring_dir: Path = Path("/etc/apt/keyrings"),
                 sources_dir: Path = Path("/etc/apt/sources.list.d")):
        self.runner = runner
        self.keyring_dir = keyring_dir
        self.sources_dir = sources_dir
        self._refreshed = False

    def refresh(self) -> None:
        self.runner.run(['apt-get', 'update'], env=APT_ENV)
        self._refreshed = True

    def is_installed(self, package: str) -> bool:
        status = self.runner.output(['dpkg-query', '-W', '-f=${Status}', package])
        return status == 'install ok installed'

    def install(self, *packages: str) -> None:
        missing = [p for p in packages if not self.is_installed(p)]
        if not missing:
            logger.debug(f"Packages already installed: {', '.join(packages)}")
            return
        if not self._refreshed:
            self.refresh()
        logger.info(f"📦 Installing {', '.join(missing)}")
        self.runner.run(['apt-get', 'install', '-y', *missing], env=APT_ENV)

    def add_signed_repository(self, name: str, key_url: str, source_line: str) -> None:
        """Register an apt source signed by a downloaded key.

        ``source_line`` may reference the keyring as ``{keyring}``.
        """
        keyring = self.keyring_dir / f"{name}.gpg"
        if not keyring.exists():
            key = self.runner.run(['curl', '-fsSL', key_url], mutating=False)
            self.runner.run(['install', '-m', '0755', '-d', self.keyring_dir])
            self.runner.run(['gpg', '--batch', '--yes', '--dearmor', '-o', keyring], input=key.stdout)
        changed = write_text_file(
            self.sources_dir / f"{name}.list",
            source_line.format(keyring=keyring) + "\n",
            dry_run=self.runner.dry_run,
        )
        if changed:
            self.refresh()

    def install_deb_from_url(self, url: str) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            deb = Path(tmp) / Path(url).name
            self.runner.run(['wget', '-q', '-O', deb, url])
            self.runner.run(['dpkg', '-i', deb])
        self.refresh()
