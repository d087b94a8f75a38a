"""
GPU Cluster Provisioning Module

This package turns fresh Ubuntu GPU hosts into nodes of a compute cluster.

Key Features:
- Coordinator and worker roles from one installer
- CUDA toolkit selection from the installed NVIDIA driver
- Optional Tailscale mesh with firewall scoping
- Shared vfolder storage over NFS
- Consistent per-service configuration and secrets
- systemd supervision with idempotent re-runs
"""

from .config import InstallerSettings
from .errors import (
    CommandError, ConfigurationError, NetworkError, PrerequisiteError, ProvisioningError,
    RebootRequiredError, ValidationError,
)
from .models import Configuration, NodeIdentity, NodeRole, Ports, ProvisionPhase, ProvisionState, StorageOptions

__all__ = [
    # Configuration
    'Configuration',
    'InstallerSettings',

    # Models
    'NodeIdentity',
    'NodeRole',
    'Ports',
    'ProvisionPhase',
    'ProvisionState',
    'StorageOptions',

    # Errors
    'CommandError',
    'ConfigurationError',
    'NetworkError',
    'PrerequisiteError',
    'ProvisioningError',
    'RebootRequiredError',
    'ValidationError',
]
