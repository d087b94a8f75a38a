"""Data models for GPU cluster provisioning."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError, ValidationError

DEFAULT_INSTALL_PATH = Path("/opt/backend.ai")
DEFAULT_REPOSITORY = "https://github.com/lablup/backend.ai.git"
DEFAULT_BRANCH = "main"
DEFAULT_IPC_BASE_PATH = Path("/tmp/backend.ai/ipc")
MESH_CIDR = "100.64.0.0/10"
CONTAINER_BRIDGE_CIDR = "172.16.0.0/12"
VFOLDER_REL_PATH = "vfroot/local"


class NodeRole(str, Enum):
    """Node roles in the compute cluster."""
    COORDINATOR = 'coordinator'
    WORKER = 'worker'


class ProvisionPhase(str, Enum):
    """Phases of a provisioning run, in execution order."""
    NOT_STARTED = 'not_started'
    VALIDATE = 'validate'
    NETWORK_SETUP = 'network_setup'
    HARDWARE_SETUP = 'hardware_setup'
    BASE_INSTALL = 'base_install'
    ROLE_SPECIFIC_SETUP = 'role_specific_setup'
    CONFIG_GENERATION = 'config_generation'
    STORAGE_INIT = 'storage_init'
    STATE_INITIALIZATION = 'state_initialization'
    SUPERVISION_REGISTRATION = 'supervision_registration'
    FINALIZE = 'finalize'
    COMPLETED = 'completed'
    FAILED = 'failed'


class RuleAction(str, Enum):
    ALLOW = 'allow'
    DENY = 'deny'


class Ports(BaseModel):
    """Listening ports of every provisioned service."""
    model_config = ConfigDict(frozen=True)

    manager: int = 8091
    webserver: int = 8090
    postgres: int = 8100
    redis: int = 8111
    etcd: int = 8120
    agent_rpc: int = 6001
    agent_watcher: int = 6009
    agent_service: int = 6003
    storage_proxy_client: int = 6021
    storage_proxy_manager: int = 6022
    appproxy_coordinator: int = 10200
    appproxy_worker: int = 10201
    object_storage: int = 9000

    @field_validator('*')
    @classmethod
    def check_port_range(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError(f"port {v} is outside 1-65535")
        return v


class StorageOptions(BaseModel):
    """Shared vfolder storage settings."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    endpoint: Optional[str] = None
    export_path: Optional[Path] = None
    mount_options: str = "rw,hard,intr"
    export_options: str = "rw,sync,no_subtree_check,no_root_squash"


class NodeIdentity(BaseModel):
    """Addresses discovered for this node during network setup."""
    model_config = ConfigDict(frozen=True)

    primary_address: str
    mesh_address: Optional[str] = None

    @property
    def effective_address(self) -> str:
        """Address other nodes should use to reach this one."""
        return self.mesh_address or self.primary_address


class Configuration(BaseModel):
    """Immutable description of one provisioning run.

    Built once from the parsed command line. The only field filled in later
    is ``identity``, which is attached by returning a new copy through
    :meth:`with_identity` once network setup has resolved the node address.
    """
    model_config = ConfigDict(frozen=True)

    role: NodeRole = NodeRole.COORDINATOR
    coordinator_address: Optional[str] = None
    ports: Ports = Field(default_factory=Ports)
    install_path: Path = DEFAULT_INSTALL_PATH
    repository: str = DEFAULT_REPOSITORY
    branch: str = DEFAULT_BRANCH
    mesh_auth_key: Optional[str] = Field(default=None, repr=False)
    storage: StorageOptions = Field(default_factory=StorageOptions)
    skip_hardware_setup: bool = False
    skip_supervision: bool = False
    skip_image_pull: bool = False
    skip_agent: bool = False
    dry_run: bool = False
    rotate_secrets: bool = False
    ipc_base_path: Path = DEFAULT_IPC_BASE_PATH
    storage_proxy_name: str = "local"
    volume_name: str = "volume1"
    identity: Optional[NodeIdentity] = None

    @field_validator('coordinator_address', 'mesh_auth_key')
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @model_validator(mode='after')
    def check_role(self) -> 'Configuration':
        if self.role == NodeRole.WORKER:
            if not self.coordinator_address:
                raise ValueError("a coordinator address is required for the worker role")
            if self.skip_agent:
                raise ValueError("skipping the agent only applies to the coordinator role")
        return self

    @classmethod
    def from_options(cls, **options: Any) -> 'Configuration':
        """Build a configuration, reporting bad input as a ValidationError."""
        try:
            return cls(**options)
        except PydanticValidationError as e:
            messages = []
            for error in e.errors():
                location = '.'.join(str(part) for part in error.get('loc', ()))
                message = error.get('msg', '').replace('Value error, ', '')
                messages.append(f"{location}: {message}" if location else message)
            raise ValidationError("; ".join(messages)) from e

    def with_identity(self, identity: NodeIdentity) -> 'Configuration':
        return self.model_copy(update={'identity': identity})

    @property
    def is_coordinator(self) -> bool:
        return self.role == NodeRole.COORDINATOR

    @property
    def mesh_enabled(self) -> bool:
        return bool(self.mesh_auth_key)

    @property
    def runs_local_agent(self) -> bool:
        return not (self.is_coordinator and self.skip_agent)

    @property
    def effective_address(self) -> str:
        if self.identity is None:
            raise ConfigurationError("Node address is not known before network setup")
        return self.identity.effective_address

    @property
    def source_path(self) -> Path:
        return self.install_path / "backend.ai"

    @property
    def venv_path(self) -> Path:
        return self.install_path / ".venv"

    @property
    def var_base_path(self) -> Path:
        return self.install_path / "var" / "lib" / "backend.ai"

    @property
    def vfolder_path(self) -> Path:
        return self.source_path / VFOLDER_REL_PATH

    @property
    def scratch_path(self) -> Path:
        return self.source_path / "scratches"

    @property
    def state_path(self) -> Path:
        return self.install_path / ".gpuctl"

    @property
    def storage_export_path(self) -> Path:
        path = self.storage.export_path
        if path is None:
            return self.vfolder_path
        return path if path.is_absolute() else self.source_path / path

    @property
    def volume_host(self) -> str:
        return f"{self.storage_proxy_name}:{self.volume_name}"


@dataclass(frozen=True)
class VersionCompatibilityEntry:
    """Minimum driver version required by a CUDA toolkit package."""
    min_driver_version: str
    package: str

    @property
    def threshold(self) -> Tuple[int, int]:
        major, minor = self.min_driver_version.split('.')
        return int(major), int(minor)


@dataclass(frozen=True)
class VersionResolution:
    """Outcome of matching a driver version against the compatibility table."""
    driver_version: str
    entry: VersionCompatibilityEntry
    degraded: bool = False

    @property
    def package(self) -> str:
        return self.entry.package


@dataclass(frozen=True)
class SecretSpec:
    """A generated secret and the encoding its consumers expect."""
    name: str
    encoding: str  # 'hex' or 'urlsafe'
    description: str = ''


@dataclass(frozen=True)
class TrustPair:
    """Two artifact fields that must carry the same secret value."""
    secret: str
    first: Tuple[str, str]
    second: Tuple[str, str]


@dataclass
class SecretBundle:
    """Named secret values for one installation."""
    values: Dict[str, str] = field(default_factory=dict)

    def __getitem__(self, name: str) -> str:
        try:
            return self.values[name]
        except KeyError:
            raise ConfigurationError(f"Secret '{name}' has not been generated") from None

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def names(self) -> List[str]:
        return sorted(self.values)


# A field value is either a literal or a function of the template's current value.
FieldValue = Union[Any, Callable[[Any], Any]]


@dataclass(frozen=True)
class FieldAssignment:
    """One field-targeted substitution into a base template.

    ``insert`` allows the key to be created when the template does not carry
    it (keys that ship commented out upstream).
    """
    path: str
    value: FieldValue
    insert: bool = False
    secret: Optional[str] = None


@dataclass
class ServiceConfigArtifact:
    """A per-service configuration file rendered from a base template."""
    service: str
    filename: str
    template: str
    format: str  # 'toml', 'json' or 'ini'
    assignments: List[FieldAssignment] = field(default_factory=list)
    content: str = ''

    @property
    def fields(self) -> Dict[str, Any]:
        return {a.path: a.value for a in self.assignments if a.secret is None}

    @property
    def secret_refs(self) -> Dict[str, str]:
        return {a.path: a.secret for a in self.assignments if a.secret is not None}


@dataclass(frozen=True)
class NetworkRule:
    """A single firewall rule.

    ``source`` is a CIDR or ``'any'``. A rule with no port opens every port.
    """
    source: str
    port: Optional[int]
    action: RuleAction = RuleAction.ALLOW
    port_end: Optional[int] = None
    proto: Optional[str] = None
    comment: str = ''

    @property
    def port_spec(self) -> Optional[str]:
        if self.port is None:
            return None
        if self.port_end is not None:
            return f"{self.port}:{self.port_end}"
        return str(self.port)

    @property
    def is_allow_all(self) -> bool:
        return self.action == RuleAction.ALLOW and self.port is None


@dataclass
class ProvisionState:
    """Tracks the progress of a provisioning run."""
    phase: ProvisionPhase = ProvisionPhase.NOT_STARTED
    completed: List[ProvisionPhase] = field(default_factory=list)
    skipped: List[ProvisionPhase] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def update_phase(self, phase: ProvisionPhase) -> None:
        """Update the current phase."""
        self.phase = phase
        self.metadata[f'phase_{phase.value}_start'] = time.time()

    def mark_completed(self, phase: ProvisionPhase) -> None:
        self.completed.append(phase)

    def mark_skipped(self, phase: ProvisionPhase) -> None:
        self.skipped.append(phase)

    def add_warning(self, warning: str) -> None:
        """Record a best-effort step that did not succeed."""
        self.warnings.append(warning)
