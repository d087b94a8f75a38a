"""Node provisioning.

This package is organized into focused modules:

- core: Phase sequencing
- verification: Host and driver prerequisites
- versions: CUDA toolkit selection
- network: Node address and firewall scoping
- storage: Shared vfolder storage
- secrets: Shared service secrets
- configuration: Per-service configuration artifacts
- service: systemd supervision
- bootstrap: Base installation and the halfstack
- state: Coordinator state initialization
- utils: Utility functions
"""

from .configuration import ConfigurationTemplater, trust_pairs
from .core import PhaseOrchestrator
from .network import NetworkTopologyConfigurator, plan_firewall_rules
from .secrets import SecretsGenerator
from .service import ServiceSupervisorRegistrar
from .storage import SharedStorageConfigurator
from .verification import PrerequisiteValidator
from .versions import VersionResolver
from .utils import poll, read_yaml_file, render_template, write_yaml_file

__all__ = [
    'PhaseOrchestrator',
    'PrerequisiteValidator',
    'VersionResolver',
    'NetworkTopologyConfigurator',
    'plan_firewall_rules',
    'SharedStorageConfigurator',
    'SecretsGenerator',
    'ConfigurationTemplater',
    'trust_pairs',
    'ServiceSupervisorRegistrar',
    'poll',
    'render_template',
    'write_yaml_file',
    'read_yaml_file',
]
