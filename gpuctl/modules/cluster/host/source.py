"""Source checkout (git) and Python build toolchain (pyenv + pants)."""

import logging
import os
import re
from pathlib import Path
from typing import Optional

import tomlkit
from tomlkit.exceptions import TOMLKitError

from .files import ensure_directory, read_text, write_text_file
from .packages import AptPackageManager
from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.source")

DEFAULT_PYTHON_VERSION = "3.12.0"
PANTS_EXEC_ROOT = Path("/tmp/pants-cache")
PYENV_BUILD_DEPS = (
    'build-essential', 'libssl-dev', 'zlib1g-dev', 'libbz2-dev', 'libreadline-dev',
    'libsqlite3-dev', 'libncursesw5-dev', 'xz-utils', 'tk-dev', 'libxml2-dev',
    'libxmlsec1-dev', 'libffi-dev', 'liblzma-dev',
)
PYENV_PROFILE = '''export PYENV_ROOT="$HOME/.pyenv"
export PATH="$PYENV_ROOT/bin:$PATH"
eval "$(pyenv init -)"
'''

_CPYTHON_PIN = re.compile(r'CPython==([0-9][0-9.]*)')


def python_version_from_pants(source_path: Path) -> str:
    """Interpreter version pinned by ``pants.toml`` (``CPython==X.Y.Z``)."""
    text = read_text(source_path / 'pants.toml')
    try:
        constraints = tomlkit.parse(text).get('python', {}).get('interpreter_constraints', [])
    except TOMLKitError:
        constraints = []
    for constraint in list(constraints) + [text]:
        match = _CPYTHON_PIN.search(str(constraint))
        if match:
            return match.group(1).rstrip('.')
    logger.warning(f"⚠️  Could not detect Python version from pants.toml, defaulting to {DEFAULT_PYTHON_VERSION}")
    return DEFAULT_PYTHON_VERSION


class GitCheckout:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def exists(self, path: Path) -> bool:
        return (path / '.git').exists()

    def clone(self, repository: str, branch: str, path: Path) -> None:
        self.runner.run(['git', 'clone', '--branch', branch, repository, path])

    def update(self, path: Path, branch: str) -> None:
        self.runner.run(['git', 'fetch', 'origin'], cwd=path)
        self.runner.run(['git', 'checkout', branch], cwd=path)
        self.runner.run(['git', 'pull', 'origin', branch], cwd=path)

    def lfs_install(self) -> None:
        self.runner.run(['git', 'lfs', 'install'])

    def lfs_pull(self, path: Path) -> None:
        self.runner.run(['git', 'lfs', 'pull'], cwd=path)


class PantsToolchain:
    """pyenv-managed interpreter plus a pants-exported virtualenv."""

    def __init__(self, runner: CommandRunner, packages: AptPackageManager,
                 home: Optional[Path] = None, profile_path: Path = Path("/etc/profile.d/pyenv.sh")):
        self.runner = runner
        self.packages = packages
        self.home = home or Path(os.path.expanduser('~'))
        self.profile_path = profile_path
        self.pyenv_root = self.home / '.pyenv'
        extra_path = [self.pyenv_root / 'bin', self.pyenv_root / 'shims', self.home / '.local' / 'bin']
        self.runner.env.setdefault('PYENV_ROOT', str(self.pyenv_root))
        self.runner.env['PATH'] = os.pathsep.join(
            [str(p) for p in extra_path] + [self.runner.env.get('PATH', os.environ.get('PATH', ''))]
        )

    def _pyenv(self) -> str:
        binary = self.pyenv_root / 'bin' / 'pyenv'
        if binary.exists():
            return str(binary)
        return 'pyenv'

    def ensure_pyenv(self) -> None:
        if self.runner.which('pyenv') or (self.pyenv_root / 'bin' / 'pyenv').exists():
            logger.info("✅ pyenv already installed")
        else:
            self.packages.install(*PYENV_BUILD_DEPS)
            self.runner.shell("curl -fsSL https://pyenv.run | bash")
        write_text_file(self.profile_path, PYENV_PROFILE, dry_run=self.runner.dry_run)

    def ensure_interpreter(self, version: str) -> None:
        installed = self.runner.output([self._pyenv(), 'versions', '--bare']).splitlines()
        if version in (v.strip() for v in installed):
            logger.info(f"✅ Python {version} already installed via pyenv")
        else:
            logger.info(f"📦 Installing Python {version} via pyenv (this may take a while)")
            self.runner.run([self._pyenv(), 'install', version])
        self.runner.run([self._pyenv(), 'global', version])
        self.runner.run([self._pyenv(), 'rehash'])

    def ensure_pants(self, source_path: Path) -> None:
        if self.runner.which('pants') or (self.home / '.local' / 'bin' / 'pants').exists():
            logger.info("✅ Pants already installed")
        else:
            self.runner.shell(
                "curl --proto '=https' --tlsv1.2 -fsSL "
                "https://static.pantsbuild.org/setup/get-pants.sh | bash",
                cwd=source_path,
            )
        self.runner.run(['pants', 'version'], cwd=source_path)

    def export_virtualenv(self, source_path: Path) -> Optional[Path]:
        """Export the default resolve and return the virtualenv it produced."""
        ensure_directory(PANTS_EXEC_ROOT, dry_run=self.runner.dry_run)
        logger.info("📦 Running pants export (this may download and compile packages)")
        self.runner.run(['pants', 'export', '--resolve=python-default'], cwd=source_path)
        return find_exported_virtualenv(source_path)


def find_exported_virtualenv(source_path: Path) -> Optional[Path]:
    """Locate ``dist/export/python/virtualenvs/<resolve>/<version>`` with a bin/activate."""
    base = source_path / 'dist' / 'export' / 'python' / 'virtualenvs'
    for resolve_dir in [base / 'python-default', base]:
        if not resolve_dir.is_dir():
            continue
        for activate in sorted(resolve_dir.glob('**/bin/activate')):
            if len(activate.relative_to(resolve_dir).parts) <= 4:
                return activate.parent.parent
    return None
