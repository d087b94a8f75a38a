"""Exception hierarchy for node provisioning.

Every fatal condition raised by the installer derives from
:class:`ProvisioningError`, so the CLI can turn any of them into a non-zero
exit without catching unrelated bugs.
"""

from typing import Optional, Sequence


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""
    pass


class ValidationError(ProvisioningError):
    """Raised for bad or missing options, unsupported OS or architecture."""
    pass


class PrerequisiteError(ProvisioningError):
    """Raised when a required host component (GPU driver, compose plugin, virtualenv) is unusable."""
    pass


class RebootRequiredError(PrerequisiteError):
    """Raised when the driver was installed but its kernel module cannot load yet."""
    pass


class NetworkError(ProvisioningError):
    """Raised when a bounded network wait is exhausted or no address is found."""
    pass


class ConfigurationError(ProvisioningError):
    """Raised when a base template is missing or lacks an expected field."""
    pass


class CommandError(ProvisioningError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: Optional[str] = None):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        message = f"Command failed with exit code {returncode}: {' '.join(self.argv)}"
        if self.stderr:
            message += f"\n{self.stderr}"
        super().__init__(message)
