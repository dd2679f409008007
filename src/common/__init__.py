"""
Common Utilities

Shared error types, logging, decorators, settings and host facts for the
GPU passthrough tools.
"""

from .exceptions import (
    GpuSetupError, HardwareError, HardwareNotFound, AmbiguousGpuSelection,
    DriverNotLoaded, DeviceNodeMissing, DeviceNodeUnresolvable, PermissionDenied,
    ToolError, ToolMissing, ToolNonFunctional, ConfigError, InvalidConfigError,
    SandboxConfigWriteFailed, BootBackendNotFound, BootConfigError,
)
from .decorators import handle_errors, retry, require_root, timed
from .logging_config import setup_logging, get_logger, LogContext
from .settings import Settings, load_settings
from .host import HostFacts

__all__ = [
    # Exceptions
    "GpuSetupError", "HardwareError", "HardwareNotFound", "AmbiguousGpuSelection",
    "DriverNotLoaded", "DeviceNodeMissing", "DeviceNodeUnresolvable", "PermissionDenied",
    "ToolError", "ToolMissing", "ToolNonFunctional", "ConfigError", "InvalidConfigError",
    "SandboxConfigWriteFailed", "BootBackendNotFound", "BootConfigError",
    # Decorators
    "handle_errors", "retry", "require_root", "timed",
    # Logging
    "setup_logging", "get_logger", "LogContext",
    # Settings
    "Settings", "load_settings",
    "HostFacts",
]
