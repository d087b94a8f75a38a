"""gpuctl - GPU compute cluster node provisioner."""

__version__ = "0.1.0"
