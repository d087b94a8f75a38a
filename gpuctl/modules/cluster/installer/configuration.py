"""Per-service configuration generation.

Every artifact starts from the halfstack sample shipped in the source
checkout and is edited field by field: TOML through tomlkit (keeping the
upstream comments and layout), JSON through json, INI through configparser.
A field is addressed by its dotted path (``agent.rpc-listen-addr.port``;
for INI files ``section.key`` split on the first dot). Writing a path that the
base template does not contain raises :class:`ConfigurationError`, because it
means the checkout and this installer disagree about the file layout.

Rendering is a pure function of the Configuration, the SecretBundle and the
base template, so re-running always rewrites the same bytes.
"""

import configparser
import io
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import tomlkit
from tomlkit.exceptions import TOMLKitError

from ..errors import ConfigurationError
from ..host.files import ensure_directory, read_text, write_text_file
from ..models import Configuration, FieldAssignment, SecretBundle, ServiceConfigArtifact, TrustPair
from .secrets import (
    APPPROXY_API, APPPROXY_JWT, APPPROXY_PERMIT_HASH, MANAGER_STORAGE_PROXY, STORAGE_PROXY_PRIVATE,
)

logger = logging.getLogger("gpuctl.installer.configuration")

BIND_ALL = "0.0.0.0"
LOOPBACK = "127.0.0.1"
CUDA_PLUGIN = "ai.backend.accelerator.cuda_open"
OTEL_PORT = 4317
PYROSCOPE_PORT = 4040


class _Missing(KeyError):
    pass


def replace_url_port(url: str, port: int) -> str:
    """Swap the port inside a URL, keeping scheme, credentials, host and path."""
    parts = urlsplit(str(url))
    if not parts.hostname:
        raise ConfigurationError(f"Expected a URL with a host, got {url!r}")
    userinfo, sep, hostport = parts.netloc.rpartition('@')
    host = hostport
    if hostport.startswith('['):
        host = hostport[:hostport.index(']') + 1]
    elif ':' in hostport:
        host = hostport.rsplit(':', 1)[0]
    netloc = f"{userinfo}{sep}{host}:{port}"
    return urlunsplit(parts._replace(netloc=netloc))


def _port_of(port: int):
    return lambda url: replace_url_port(url, port)


def _address(host: str, port: int) -> Dict[str, Any]:
    return {"host": host, "port": port}


def _toml_value(value: Any) -> Any:
    if isinstance(value, dict):
        if any(isinstance(v, dict) for v in value.values()):
            table = tomlkit.table()
            for key, item in value.items():
                table.add(key, _toml_value(item))
            return table
        inline = tomlkit.inline_table()
        inline.update(value)
        return inline
    return value


def _unwrap(value: Any) -> Any:
    return value.unwrap() if hasattr(value, 'unwrap') else value


class _TomlDocument:
    def __init__(self, text: str):
        self.doc = tomlkit.parse(text)

    def set(self, path: str, value: Any, insert: bool) -> None:
        *parents, last = path.split('.')
        container = self.doc
        for part in parents:
            if part not in container:
                if not insert:
                    raise _Missing(path)
                container[part] = tomlkit.table()
            container = container[part]
        if last not in container:
            if not insert:
                raise _Missing(path)
            container[last] = _toml_value(value(None) if callable(value) else value)
            return
        if callable(value):
            value = value(_unwrap(container[last]))
        if isinstance(value, dict):
            del container[last]
        container[last] = _toml_value(value)

    def dumps(self) -> str:
        return tomlkit.dumps(self.doc)


class _JsonDocument:
    def __init__(self, text: str):
        self.data = json.loads(text)

    def set(self, path: str, value: Any, insert: bool) -> None:
        *parents, last = path.split('.')
        container = self.data
        for part in parents:
            if not isinstance(container.get(part), dict):
                if not insert:
                    raise _Missing(path)
                container[part] = {}
            container = container[part]
        if last not in container and not insert:
            raise _Missing(path)
        container[last] = value(container.get(last)) if callable(value) else value

    def dumps(self) -> str:
        return json.dumps(self.data, indent=4) + "\n"


class _IniDocument:
    def __init__(self, text: str):
        self.parser = configparser.ConfigParser(interpolation=None)
        self.parser.optionxform = str
        self.parser.read_string(text)

    def set(self, path: str, value: Any, insert: bool) -> None:
        section, _, key = path.partition('.')
        if not self.parser.has_section(section):
            if not insert:
                raise _Missing(path)
            self.parser.add_section(section)
        if not self.parser.has_option(section, key) and not insert:
            raise _Missing(path)
        if callable(value):
            value = value(self.parser.get(section, key, fallback=None))
        self.parser.set(section, key, str(value))

    def dumps(self) -> str:
        out = io.StringIO()
        self.parser.write(out)
        return out.getvalue()


_DOCUMENT_TYPES = {'toml': _TomlDocument, 'json': _JsonDocument, 'ini': _IniDocument}


def trust_pairs(config: Configuration) -> List[TrustPair]:
    """Artifact fields that must carry the same secret on both sides."""
    return [
        TrustPair(
            MANAGER_STORAGE_PROXY,
            ('storage-proxy.toml', 'api.manager.secret'),
            ('dev.etcd.volumes.json', f'proxies.{config.storage_proxy_name}.secret'),
        ),
        TrustPair(
            APPPROXY_API,
            ('app-proxy-coordinator.toml', 'secrets.api_secret'),
            ('app-proxy-worker.toml', 'secrets.api_secret'),
        ),
        TrustPair(
            APPPROXY_JWT,
            ('app-proxy-coordinator.toml', 'secrets.jwt_secret'),
            ('app-proxy-worker.toml', 'secrets.jwt_secret'),
        ),
        TrustPair(
            APPPROXY_PERMIT_HASH,
            ('app-proxy-coordinator.toml', 'permit_hash.secret'),
            ('app-proxy-worker.toml', 'permit_hash.secret'),
        ),
    ]


class ConfigurationTemplater:
    """Renders the configuration artifacts for this node's role.

    Args:
        config: Configuration with its network identity resolved
        secrets: Secret bundle shared by all artifacts of this run
        cpu_count: Worker processes for the manager
        template_root: Directory holding the ``configs/`` samples (defaults to the checkout)
    """

    def __init__(
        self,
        config: Configuration,
        secrets: SecretBundle,
        cpu_count: int = 1,
        template_root: Optional[Path] = None,
    ):
        self.config = config
        self.secrets = secrets
        self.cpu_count = cpu_count
        self.template_root = template_root or config.source_path
        self.output_dir = config.source_path

    def artifacts(self) -> List[ServiceConfigArtifact]:
        """Artifact definitions for the configured role (not yet rendered)."""
        if not self.config.is_coordinator:
            return [self._agent()]
        artifacts = [
            self._manager(),
            self._manager_alembic(),
            self._storage_proxy(),
            self._webserver(),
            self._appproxy_coordinator(),
            self._appproxy_alembic(),
            self._appproxy_worker(),
            self._volumes(),
        ]
        if self.config.runs_local_agent:
            artifacts.append(self._agent())
        return artifacts

    def render(self, artifact: ServiceConfigArtifact) -> str:
        """Apply an artifact's assignments to its base template.

        Raises:
            ConfigurationError: If the template is missing, unparsable or lacks a field
        """
        template_path = self.template_root / artifact.template
        if not template_path.exists():
            raise ConfigurationError(f"Base template not found: {template_path}")

        try:
            document = _DOCUMENT_TYPES[artifact.format](read_text(template_path))
        except (TOMLKitError, json.JSONDecodeError, configparser.Error) as e:
            raise ConfigurationError(f"Cannot parse base template {template_path}: {e}") from e

        for assignment in artifact.assignments:
            value = self.secrets[assignment.secret] if assignment.secret else assignment.value
            try:
                document.set(assignment.path, value, assignment.insert)
            except _Missing:
                raise ConfigurationError(
                    f"Field '{assignment.path}' not found in {template_path}; "
                    f"the template does not match this installer"
                ) from None
        return document.dumps()

    def render_all(self) -> List[ServiceConfigArtifact]:
        artifacts = self.artifacts()
        for artifact in artifacts:
            artifact.content = self.render(artifact)
        return artifacts

    def write_all(self, dry_run: bool = False) -> Dict[str, bool]:
        """Render and write every artifact, then create the runtime directories.

        Returns:
            dict: artifact file name to whether its content changed
        """
        changes = {}
        for artifact in self.render_all():
            path = self.output_dir / artifact.filename
            changes[artifact.filename] = write_text_file(path, artifact.content, mode=0o600, dry_run=dry_run)
            state = "updated" if changes[artifact.filename] else "unchanged"
            logger.info(f"📝 {artifact.service} configuration {state}: {path}")

        for directory in self.runtime_directories():
            ensure_directory(directory, dry_run=dry_run)
        return changes

    def runtime_directories(self) -> List[Path]:
        dirs = [self.config.vfolder_path]
        if self.config.runs_local_agent:
            dirs += [self.config.var_base_path, self.config.scratch_path, self.config.ipc_base_path]
        return dirs

    def _manager(self) -> ServiceConfigArtifact:
        ports = self.config.ports
        return ServiceConfigArtifact('manager', 'manager.toml', 'configs/manager/halfstack.toml', 'toml', [
            FieldAssignment('manager.num-proc', self.cpu_count),
            FieldAssignment('etcd.addr.port', ports.etcd),
            FieldAssignment('db.addr.port', ports.postgres),
            FieldAssignment('manager.service-addr.host', BIND_ALL),
            FieldAssignment('manager.service-addr.port', ports.manager),
            FieldAssignment('manager.ipc-base-path', str(self.config.ipc_base_path), insert=True),
        ])

    def _manager_alembic(self) -> ServiceConfigArtifact:
        return ServiceConfigArtifact('manager', 'alembic.ini', 'configs/manager/halfstack.alembic.ini', 'ini', [
            FieldAssignment('alembic.sqlalchemy.url', _port_of(self.config.ports.postgres)),
        ])

    def _agent(self) -> ServiceConfigArtifact:
        config = self.config
        ports = config.ports
        if config.is_coordinator:
            advertised = LOOPBACK
        else:
            advertised = config.effective_address

        assignments = [
            FieldAssignment('etcd.addr.port', ports.etcd),
            FieldAssignment('agent.rpc-listen-addr.host', BIND_ALL),
            FieldAssignment('agent.rpc-listen-addr.port', ports.agent_rpc),
            FieldAssignment('agent.advertised-rpc-addr', _address(advertised, ports.agent_rpc), insert=True),
            FieldAssignment('agent.service-addr.port', ports.agent_service),
            FieldAssignment('agent.ipc-base-path', str(config.ipc_base_path), insert=True),
            FieldAssignment('agent.var-base-path', str(config.var_base_path)),
            FieldAssignment('agent.mount-path', str(config.vfolder_path)),
            FieldAssignment('watcher.service-addr.port', ports.agent_watcher),
            FieldAssignment('container.bind-host', BIND_ALL),
        ]
        if not config.skip_hardware_setup:
            assignments.append(FieldAssignment('agent.allow-compute-plugins', [CUDA_PLUGIN], insert=True))

        if not config.is_coordinator:
            coordinator = config.coordinator_address
            assignments += [
                FieldAssignment('etcd.addr.host', coordinator),
                FieldAssignment('agent.announce-internal-addr',
                                _address(config.effective_address, ports.agent_service), insert=True),
                FieldAssignment('agent.cohabiting-storage-proxy', False),
                FieldAssignment('otel.endpoint', f"http://{coordinator}:{OTEL_PORT}"),
                FieldAssignment('pyroscope.server-addr', f"http://{coordinator}:{PYROSCOPE_PORT}"),
            ]
        return ServiceConfigArtifact('agent', 'agent.toml', 'configs/agent/halfstack.toml', 'toml', assignments)

    def _storage_proxy(self) -> ServiceConfigArtifact:
        config = self.config
        ports = config.ports
        volume = {config.volume_name: {"backend": "vfs", "path": str(config.vfolder_path)}}
        return ServiceConfigArtifact(
            'storage-proxy', 'storage-proxy.toml', 'configs/storage-proxy/halfstack.toml', 'toml', [
                FieldAssignment('etcd.addr.port', ports.etcd),
                FieldAssignment('storage-proxy.secret', None, secret=STORAGE_PROXY_PRIVATE),
                FieldAssignment('storage-proxy.ipc-base-path', str(config.ipc_base_path), insert=True),
                FieldAssignment('api.client.service-addr.host', BIND_ALL),
                FieldAssignment('api.client.service-addr.port', ports.storage_proxy_client),
                FieldAssignment('api.manager.service-addr.host', BIND_ALL),
                FieldAssignment('api.manager.service-addr.port', ports.storage_proxy_manager),
                FieldAssignment('api.manager.secret', None, secret=MANAGER_STORAGE_PROXY),
                FieldAssignment('volume', volume, insert=True),
            ])

    def _webserver(self) -> ServiceConfigArtifact:
        ports = self.config.ports
        return ServiceConfigArtifact('webserver', 'webserver.conf', 'configs/webserver/halfstack.conf', 'toml', [
            FieldAssignment('service.ip', BIND_ALL),
            FieldAssignment('service.port', ports.webserver),
            FieldAssignment('api.endpoint', f"http://{LOOPBACK}:{ports.manager}"),
            FieldAssignment('session.redis.addr', f"localhost:{ports.redis}"),
        ])

    def _appproxy_coordinator(self) -> ServiceConfigArtifact:
        ports = self.config.ports
        return ServiceConfigArtifact(
            'app-proxy-coordinator', 'app-proxy-coordinator.toml',
            'configs/app-proxy-coordinator/halfstack.toml', 'toml', [
                FieldAssignment('db.addr.port', ports.postgres),
                FieldAssignment('redis.addr.port', ports.redis),
                FieldAssignment('proxy_coordinator.bind_addr.host', BIND_ALL),
                FieldAssignment('proxy_coordinator.bind_addr.port', ports.appproxy_coordinator),
                FieldAssignment('secrets.api_secret', None, secret=APPPROXY_API),
                FieldAssignment('secrets.jwt_secret', None, secret=APPPROXY_JWT),
                FieldAssignment('permit_hash.secret', None, secret=APPPROXY_PERMIT_HASH),
            ])

    def _appproxy_alembic(self) -> ServiceConfigArtifact:
        return ServiceConfigArtifact(
            'app-proxy-coordinator', 'alembic-appproxy.ini',
            'configs/app-proxy-coordinator/halfstack.alembic.ini', 'ini', [
                FieldAssignment('alembic.sqlalchemy.url', _port_of(self.config.ports.postgres)),
            ])

    def _appproxy_worker(self) -> ServiceConfigArtifact:
        ports = self.config.ports
        return ServiceConfigArtifact(
            'app-proxy-worker', 'app-proxy-worker.toml',
            'configs/app-proxy-worker/halfstack.toml', 'toml', [
                FieldAssignment('redis.addr.port', ports.redis),
                FieldAssignment('proxy_worker.coordinator_endpoint', _port_of(ports.appproxy_coordinator)),
                FieldAssignment('proxy_worker.api_bind_addr.host', BIND_ALL),
                FieldAssignment('proxy_worker.api_bind_addr.port', ports.appproxy_worker),
                FieldAssignment('secrets.api_secret', None, secret=APPPROXY_API),
                FieldAssignment('secrets.jwt_secret', None, secret=APPPROXY_JWT),
                FieldAssignment('permit_hash.secret', None, secret=APPPROXY_PERMIT_HASH),
            ])

    def _volumes(self) -> ServiceConfigArtifact:
        config = self.config
        ports = config.ports
        address = config.effective_address
        proxy = f"proxies.{config.storage_proxy_name}"
        return ServiceConfigArtifact(
            'manager', 'dev.etcd.volumes.json', 'configs/manager/sample.etcd.volumes.json', 'json', [
                FieldAssignment('default_host', config.volume_host),
                FieldAssignment(f'{proxy}.client_api', f"http://{address}:{ports.storage_proxy_client}"),
                FieldAssignment(f'{proxy}.manager_api', f"https://{address}:{ports.storage_proxy_manager}"),
                FieldAssignment(f'{proxy}.secret', None, secret=MANAGER_STORAGE_PROXY),
            ])
