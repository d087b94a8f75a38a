"""Shared secrets between dependent services.

Each secret backs one trust relationship and is copied verbatim into both
sides' configuration files. Secrets are persisted under the install path and
reused on later runs so that re-provisioning a node does not invalidate the
credentials already baked into running services; ``rotate`` regenerates them.
"""

import json
import logging
import secrets
from pathlib import Path
from typing import Dict, Optional, Sequence

from ..errors import ConfigurationError
from ..host.files import ensure_directory, read_json_file, write_json_file
from ..models import SecretBundle, SecretSpec

logger = logging.getLogger("gpuctl.installer.secrets")

SECRET_BYTES = 32
SECRETS_FILE = "secrets.json"

MANAGER_STORAGE_PROXY = "manager_storage_proxy"
STORAGE_PROXY_PRIVATE = "storage_proxy_private"
APPPROXY_API = "appproxy_api"
APPPROXY_JWT = "appproxy_jwt"
APPPROXY_PERMIT_HASH = "appproxy_permit_hash"

SECRET_SPECS = (
    SecretSpec(MANAGER_STORAGE_PROXY, 'hex', "manager and storage-proxy manager API"),
    SecretSpec(STORAGE_PROXY_PRIVATE, 'hex', "storage-proxy private signing key"),
    SecretSpec(APPPROXY_API, 'urlsafe', "app-proxy coordinator and worker API"),
    SecretSpec(APPPROXY_JWT, 'urlsafe', "app-proxy coordinator and worker JWT"),
    SecretSpec(APPPROXY_PERMIT_HASH, 'urlsafe', "app-proxy permit hash"),
)


def generate_secret(spec: SecretSpec, nbytes: int = SECRET_BYTES) -> str:
    if spec.encoding == 'hex':
        return secrets.token_hex(nbytes)
    if spec.encoding == 'urlsafe':
        return secrets.token_urlsafe(nbytes)
    raise ValueError(f"Unknown secret encoding: {spec.encoding}")


class SecretsGenerator:
    """Produces the secret bundle, reusing persisted values where present."""

    def __init__(self, state_path: Path, specs: Sequence[SecretSpec] = SECRET_SPECS, dry_run: bool = False):
        self.path = state_path / SECRETS_FILE
        self.specs = tuple(specs)
        self.dry_run = dry_run

    def generate(self) -> SecretBundle:
        """A fresh bundle with one new value per secret."""
        return SecretBundle({spec.name: generate_secret(spec) for spec in self.specs})

    def load(self) -> Dict[str, str]:
        """Previously persisted secrets, empty if none were saved.

        Raises:
            ConfigurationError: If the secrets file exists but cannot be read
        """
        try:
            data = read_json_file(self.path)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Cannot read persisted secrets at {self.path}: {e}. "
                f"Fix or remove the file, or re-run with --rotate-secrets"
            ) from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Persisted secrets at {self.path} are not a JSON object")
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str) and v}

    def obtain(self, rotate: bool = False) -> SecretBundle:
        """Return the bundle for this run and persist it.

        Args:
            rotate: Discard persisted values and generate new ones

        Returns:
            SecretBundle: persisted values for every known secret, new values for the rest
        """
        stored: Dict[str, str] = {} if rotate else self.load()
        values: Dict[str, str] = {}
        generated = []
        for spec in self.specs:
            if spec.name in stored:
                values[spec.name] = stored[spec.name]
            else:
                values[spec.name] = generate_secret(spec)
                generated.append(spec.name)

        if rotate:
            logger.warning("⚠️  Rotating service secrets; running services will need a restart")
        if generated:
            logger.info(f"🔑 Generated secrets: {', '.join(generated)}")
            self.save(values)
        else:
            logger.info(f"🔑 Reusing persisted secrets from {self.path}")
        return SecretBundle(values)

    def save(self, values: Dict[str, str]) -> None:
        ensure_directory(self.path.parent, mode=0o700, dry_run=self.dry_run)
        write_json_file(self.path, values, mode=0o600, dry_run=self.dry_run)
