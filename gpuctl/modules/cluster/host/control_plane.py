"""The installed platform's own management CLI (``./backend.ai``)."""

import logging
from pathlib import Path
from typing import Optional

from .shell import CommandResult, CommandRunner

logger = logging.getLogger("gpuctl.host.control_plane")


class BackendAiCli:
    """Runs ``./backend.ai`` and ``./py`` from the source checkout with the exported venv."""

    def __init__(self, runner: CommandRunner, source_path: Path, venv_path: Path):
        self.runner = runner
        self.source_path = source_path
        self.venv_path = venv_path

    def _env(self):
        return {
            'VIRTUAL_ENV': str(self.venv_path),
            'PATH': f"{self.venv_path / 'bin'}:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        }

    def _run(self, *args: str, check: bool = True) -> CommandResult:
        return self.runner.run(['./backend.ai', *args], check=check, cwd=self.source_path, env=self._env())

    def etcd_put(self, key: str, value: str) -> None:
        self._run('mgr', 'etcd', 'put', key, value)

    def etcd_put_json(self, key: str, path: Path) -> None:
        self._run('mgr', 'etcd', 'put-json', key, str(path))

    def schema_oneshot(self) -> None:
        self._run('mgr', 'schema', 'oneshot')

    def fixture_populate(self, path: Path) -> CommandResult:
        return self._run('mgr', 'fixture', 'populate', str(path), check=False)

    def image_rescan(self, registry: str, tag: Optional[str] = None, check: bool = True) -> CommandResult:
        args = ['mgr', 'image', 'rescan', registry]
        if tag:
            args += ['-t', tag]
        return self._run(*args, check=check)

    def image_alias(self, alias: str, image: str, architecture: str) -> None:
        self._run('mgr', 'image', 'alias', alias, image, architecture)

    def run_python(self, *args: str) -> None:
        self.runner.run(['./py', *args], cwd=self.source_path, env=self._env())
