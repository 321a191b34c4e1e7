"""Network drivers realising the topology in the kernel."""

from .base import NetworkDriver  # noqa: F401
from .linux import LinuxNetworkDriver, run_command  # noqa: F401

__all__ = [
    "LinuxNetworkDriver",
    "NetworkDriver",
    "run_command",
]
