"""CUDA toolkit selection from the installed NVIDIA driver version.

Thresholds follow the CUDA toolkit release notes: each entry is the minimum
driver needed by that toolkit, newest first.
"""

import logging
import re
from typing import Optional, Sequence, Tuple

from ..errors import PrerequisiteError
from ..models import VersionCompatibilityEntry, VersionResolution

logger = logging.getLogger("gpuctl.installer.versions")

CUDA_COMPATIBILITY: Tuple[VersionCompatibilityEntry, ...] = tuple(
    VersionCompatibilityEntry(driver, package) for driver, package in (
        ("590.48", "cuda-toolkit-13-1"),
        ("590.44", "cuda-toolkit-13-1"),
        ("580.65", "cuda-toolkit-13-0"),
        ("575.51", "cuda-toolkit-12-9"),
        ("570.26", "cuda-toolkit-12-8"),
        ("560.28", "cuda-toolkit-12-6"),
        ("555.42", "cuda-toolkit-12-5"),
        ("550.54", "cuda-toolkit-12-4"),
        ("545.23", "cuda-toolkit-12-3"),
        ("535.54", "cuda-toolkit-12-2"),
        ("530.30", "cuda-toolkit-12-1"),
        ("525.60", "cuda-toolkit-12-0"),
        ("520.61", "cuda-toolkit-11-8"),
        ("515.43", "cuda-toolkit-11-7"),
        ("510.39", "cuda-toolkit-11-6"),
        ("495.29", "cuda-toolkit-11-5"),
        ("470.42", "cuda-toolkit-11-4"),
        ("465.19", "cuda-toolkit-11-3"),
        ("460.27", "cuda-toolkit-11-2"),
        ("455.23", "cuda-toolkit-11-1"),
        ("450.51", "cuda-toolkit-11-0"),
        ("440.33", "cuda-toolkit-10-2"),
        ("418.39", "cuda-toolkit-10-1"),
        ("410.48", "cuda-toolkit-10-0"),
    )
)

_VERSION_PATTERN = re.compile(r'^\d+(\.\d+)*$')


def parse_driver_version(version: Optional[str]) -> Tuple[int, int]:
    """Normalize a dotted driver version to a numeric ``(major, minor)`` pair.

    ``"535.104.05"`` becomes ``(535, 104)``; a bare major version gets minor 0.

    Raises:
        PrerequisiteError: If the version is missing or not dotted digits
    """
    if version is None or not version.strip():
        raise PrerequisiteError("NVIDIA driver version could not be determined")
    version = version.strip()
    if not _VERSION_PATTERN.match(version):
        raise PrerequisiteError(f"Unparsable NVIDIA driver version: {version!r}")
    parts = [int(p) for p in version.split('.')[:2]]
    if len(parts) == 1:
        parts.append(0)
    return parts[0], parts[1]


class VersionResolver:
    """Picks the newest toolkit whose minimum driver is satisfied."""

    def __init__(self, table: Sequence[VersionCompatibilityEntry] = CUDA_COMPATIBILITY):
        if not table:
            raise ValueError("compatibility table must not be empty")
        self.table = sorted(table, key=lambda entry: entry.threshold, reverse=True)

    def resolve(self, driver_version: Optional[str]) -> VersionResolution:
        """Resolve a driver version to a toolkit package.

        Args:
            driver_version: Version string as reported by nvidia-smi

        Returns:
            VersionResolution: the matching entry; ``degraded`` is set when the
            driver is older than every threshold and the oldest package is used

        Raises:
            PrerequisiteError: If the driver version is missing or unparsable
        """
        detected = parse_driver_version(driver_version)
        for entry in self.table:
            if entry.threshold <= detected:
                logger.info(f"✅ Driver {driver_version} supports {entry.package}")
                return VersionResolution(driver_version, entry)

        fallback = self.table[-1]
        logger.warning(
            f"⚠️  Driver {driver_version} is older than every known CUDA toolkit requirement, "
            f"falling back to {fallback.package}"
        )
        return VersionResolution(driver_version, fallback, degraded=True)

    __call__ = resolve
