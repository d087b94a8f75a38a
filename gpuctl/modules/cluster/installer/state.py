"""Coordinator state initialization and client environment scripts.

Once the halfstack is up and the artifacts are written, the coordinator's
database and etcd are seeded through the platform's own management CLI.
Fixture population is recorded in ``<install>/.gpuctl/state.json`` so a rerun
skips fixtures that were already applied instead of guessing from the
populate command's failure output.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import PollingConfig
from ..errors import NetworkError
from ..host import Collaborators
from ..host.files import read_json_file, write_json_file, write_text_file
from ..models import Configuration, SecretBundle
from .bootstrap import HALFSTACK_COMPOSE
from .secrets import APPPROXY_API
from .storage import write_version_marker
from .utils import poll, render_template

logger = logging.getLogger("gpuctl.installer.state")

STATE_FILE = "state.json"
DB_SERVICE = 'backendai-half-db'
DB_USER = 'postgres'
DB_PASSWORD = 'develove'
MAIN_DATABASE = 'backend'
APPPROXY_DATABASE = 'appproxy'

FIXTURES = (
    'example-container-registries-harbor',
    'example-container-registries-nvcr',
    'example-users',
    'example-keypairs',
    'example-set-user-main-access-keys',
    'example-resource-presets',
    'example-roles',
)
FIXTURE_DIR = Path('fixtures/manager')

VFOLDER_HOST_PERMISSIONS = [
    'create-vfolder', 'modify-vfolder', 'delete-vfolder', 'mount-in-session',
    'upload-file', 'download-file', 'invite-others', 'set-user-specific-permission',
]
VFOLDER_PERMISSION_TABLES = ('domains', 'groups', 'keypair_resource_policies')

IMAGE_REGISTRY = 'cr.backend.ai'
NGC_REGISTRY = 'nvcr.io'
NGC_IMAGE = 'nvidia/pytorch:25.05-py3'
PYTHON_IMAGES = {
    'aarch64': 'cr.backend.ai/multiarch/python:3.9-ubuntu20.04',
    'x86_64': 'cr.backend.ai/stable/python:3.9-ubuntu20.04',
}

APPPROXY_ROLE_SQL = f"""DO $$
BEGIN
   IF NOT EXISTS (SELECT FROM pg_catalog.pg_roles WHERE rolname = '{APPPROXY_DATABASE}') THEN
      CREATE ROLE {APPPROXY_DATABASE} WITH LOGIN PASSWORD '{DB_PASSWORD}';
   ELSE
      ALTER ROLE {APPPROXY_DATABASE} WITH LOGIN PASSWORD '{DB_PASSWORD}';
   END IF;
END
$$;"""


class StateLedger:
    """Record of one-shot initialization steps already applied on this node."""

    def __init__(self, state_path: Path, dry_run: bool = False):
        self.path = state_path / STATE_FILE
        self.dry_run = dry_run
        data = read_json_file(self.path) or {}
        self.fixtures: List[str] = list(data.get('fixtures', []))

    def has_fixture(self, name: str) -> bool:
        return name in self.fixtures

    def record_fixture(self, name: str) -> None:
        if name not in self.fixtures:
            self.fixtures.append(name)
            self.save()

    def save(self) -> None:
        write_json_file(self.path, {'fixtures': self.fixtures}, mode=0o600, dry_run=self.dry_run)


class StateInitializer:
    """Seeds the coordinator's database and etcd.

    Args:
        config: Provisioning configuration (with identity)
        collaborators: Host collaborators
        secrets: Secret bundle of this run
        machine: Host architecture, selects the default image alias
        polling: Database readiness polling budget
    """

    def __init__(
        self,
        config: Configuration,
        collaborators: Collaborators,
        secrets: SecretBundle,
        machine: str = 'x86_64',
        polling: Optional[PollingConfig] = None,
    ):
        self.config = config
        self.containers = collaborators.containers
        self.control = collaborators.control_plane
        self.secrets = secrets
        self.machine = machine
        self.polling = polling or PollingConfig()
        self.compose_file = config.source_path / HALFSTACK_COMPOSE
        self.ledger = StateLedger(config.state_path, dry_run=config.dry_run)
        self.warnings: List[str] = []

    def _warn(self, message: str) -> None:
        logger.warning(f"⚠️  {message}")
        self.warnings.append(message)

    def initialize(self) -> List[str]:
        """Run every initialization step in order.

        Returns:
            list: warnings for best-effort steps that did not succeed
        """
        self.wait_for_database()
        self.configure_etcd()
        logger.info("Running database migrations")
        self.control.schema_oneshot()
        self.populate_fixtures()
        self.control.etcd_put_json('volumes', Path('dev.etcd.volumes.json'))
        self.initialize_appproxy_database()
        self.configure_scaling_group()
        self.grant_vfolder_hosts()
        write_version_marker(self.config.vfolder_path, dry_run=self.config.dry_run)
        self.scan_images()
        logger.info("✅ Coordinator state initialized")
        return list(self.warnings)

    def wait_for_database(self) -> None:
        if self.config.dry_run:
            logger.info("[DRY RUN] Would wait for PostgreSQL to accept connections")
            return
        logger.info("Waiting for PostgreSQL to be ready")
        poll(
            lambda: self.containers.compose(
                self.compose_file, 'exec', '-T', DB_SERVICE, 'pg_isready', '-U', DB_USER, check=False
            ).ok,
            attempts=self.polling.database_attempts,
            interval=self.polling.database_interval,
            description="PostgreSQL",
        )

    def configure_etcd(self) -> None:
        logger.info("Configuring etcd")
        self.control.etcd_put('config/redis/addr', f"{self.config.effective_address}:{self.config.ports.redis}")
        self.control.etcd_put_json(
            'config/redis/redis_helper_config', Path('./configs/manager/sample.etcd.redis-helper.json')
        )

    def populate_fixtures(self) -> List[str]:
        """Populate fixtures not yet recorded as applied.

        Returns:
            list: fixtures applied by this call
        """
        applied = []
        for name in FIXTURES:
            if self.ledger.has_fixture(name):
                logger.debug(f"Fixture {name} already applied")
                continue
            result = self.control.fixture_populate(FIXTURE_DIR / f"{name}.json")
            if result.ok:
                self.ledger.record_fixture(name)
                applied.append(name)
                logger.info(f"✅ Fixture {name} populated")
            else:
                self._warn(f"Fixture {name} could not be populated: {result.stderr.strip() or 'unknown error'}")
        return applied

    def database_container(self) -> str:
        container = self.containers.compose_container(self.compose_file, 'db')
        if container is None:
            container = self.containers.compose_container(self.compose_file, 'postgres')
        if container is None:
            if self.config.dry_run:
                return DB_SERVICE
            raise NetworkError("Could not find the PostgreSQL container")
        return container

    def psql(self, sql: str, database: str = MAIN_DATABASE, container: Optional[str] = None):
        return self.containers.exec(
            container or self.database_container(),
            ['psql', '-U', DB_USER, '-d', database, '-q', '-tA', '-c', sql],
            env={'PGPASSWORD': DB_PASSWORD},
        )

    def initialize_appproxy_database(self) -> None:
        logger.info("Initializing app-proxy database")
        container = self.database_container()
        self.psql(APPPROXY_ROLE_SQL, container=container)

        exists = self.psql(
            f"SELECT 1 FROM pg_database WHERE datname = '{APPPROXY_DATABASE}'", container=container
        )
        if exists.stdout.strip() != '1':
            self.psql(f"CREATE DATABASE {APPPROXY_DATABASE}", container=container)

        self.psql(
            f"GRANT ALL PRIVILEGES ON DATABASE {APPPROXY_DATABASE} TO {APPPROXY_DATABASE};", container=container
        )
        self.psql(
            f"GRANT ALL ON SCHEMA public TO {APPPROXY_DATABASE};", database=APPPROXY_DATABASE, container=container
        )
        self.control.run_python('-m', 'alembic', '-c', 'alembic-appproxy.ini', 'upgrade', 'head')

    def configure_scaling_group(self) -> None:
        self.psql(
            f"UPDATE scaling_groups SET "
            f"wsproxy_api_token = '{self.secrets[APPPROXY_API]}', "
            f"wsproxy_addr = 'http://localhost:{self.config.ports.appproxy_coordinator}' "
            f"WHERE name = 'default';"
        )

    def grant_vfolder_hosts(self) -> None:
        permissions = json.dumps({self.config.volume_host: VFOLDER_HOST_PERMISSIONS})
        container = self.database_container()
        for table in VFOLDER_PERMISSION_TABLES:
            self.psql(f"UPDATE {table} SET allowed_vfolder_hosts = '{permissions}';", container=container)
        logger.info(f"✅ Granted vfolder host {self.config.volume_host}")

    def scan_images(self) -> None:
        logger.info("Scanning container image registry")
        self.control.image_rescan(IMAGE_REGISTRY)
        result = self.control.image_rescan(NGC_REGISTRY, tag=NGC_IMAGE, check=False)
        if not result.ok:
            self._warn("NGC image rescan failed (registry may not be accessible)")

        machine = self.machine if self.machine in PYTHON_IMAGES else 'x86_64'
        self.control.image_alias('python', PYTHON_IMAGES[machine], machine)


def _find(records: List[Dict[str, Any]], key: str, value: str) -> Optional[Dict[str, Any]]:
    for record in records:
        if record.get(key) == value:
            return record
    return None


def write_env_scripts(
    config: Configuration, dry_run: bool = False, warnings: Optional[List[str]] = None
) -> Dict[str, bool]:
    """Write the ``env-local-*.sh`` helpers from the example fixtures.

    Scripts whose fixture data is missing are skipped; the warning is also
    appended to ``warnings`` when given.

    Returns:
        dict: script name to whether it was written or changed
    """
    source = config.source_path
    keypairs = (read_json_file(source / FIXTURE_DIR / 'example-keypairs.json') or {}).get('keypairs', [])
    users = (read_json_file(source / FIXTURE_DIR / 'example-users.json') or {}).get('users', [])
    ports = config.ports

    scripts: Dict[str, Optional[Dict[str, Any]]] = {}
    for script, user_id in (('env-local-admin-api.sh', 'admin@lablup.com'),
                            ('env-local-user-api.sh', 'user@lablup.com')):
        keypair = _find(keypairs, 'user_id', user_id)
        scripts[script] = keypair and {
            'manager_port': ports.manager,
            'access_key': keypair.get('access_key'),
            'secret_key': keypair.get('secret_key'),
        }
    admin = _find(users, 'username', 'admin')
    scripts['env-local-admin-session.sh'] = admin and {
        'webserver_port': ports.webserver,
        'username': admin.get('email'),
        'password': admin.get('password'),
    }

    results = {}
    for script, context in scripts.items():
        if not context:
            message = f"Fixture data for {script} not found, skipping"
            logger.warning(f"⚠️  {message}")
            if warnings is not None:
                warnings.append(message)
            continue
        results[script] = write_text_file(
            source / script, render_template(f"{script}.j2", **context), mode=0o755, dry_run=dry_run
        )
    return results
