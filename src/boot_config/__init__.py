"""Boot Configuration Module.

Idempotent management of kernel boot parameters across GRUB and
/etc/kernel/cmdline hosts.
"""

from .backends import BootBackend, GrubDefaultBackend, KernelCmdlineFileBackend, detect_backend
from .manager import (
    ApplyResult, BootParameterManager, BootParameterSet, GTT_KEYS, gtt_parameters,
)

__all__ = [
    # Backends
    "BootBackend",
    "GrubDefaultBackend",
    "KernelCmdlineFileBackend",
    "detect_backend",
    # Manager
    "ApplyResult",
    "BootParameterManager",
    "BootParameterSet",
    "GTT_KEYS",
    "gtt_parameters",
]
