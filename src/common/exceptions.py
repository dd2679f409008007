"""
GPU Passthrough Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, user feedback, and programmatic error handling.
"""

from typing import Optional, Dict, Any, List


class GpuSetupError(Exception):
    """
    Base exception for all GPU passthrough errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Hardware-related errors
# =============================================================================

class HardwareError(GpuSetupError):
    """Base for hardware-related errors."""
    pass


class HardwareNotFound(HardwareError):
    """No GPU of the requested vendor is present."""
    def __init__(self, vendor: str, reason: str = ""):
        super().__init__(
            reason or f"No {vendor} GPU detected",
            code="HARDWARE_NOT_FOUND",
            details={"vendor": vendor},
            recoverable=False,
        )


class AmbiguousGpuSelection(HardwareError):
    """More than one GPU matches and no explicit choice was made."""
    def __init__(self, vendor: str, candidates: List[str]):
        super().__init__(
            f"{len(candidates)} {vendor} GPUs found; choose one with --pci",
            code="AMBIGUOUS_GPU_SELECTION",
            details={"vendor": vendor, "candidates": candidates},
        )


class DriverNotLoaded(HardwareError):
    """Vendor kernel module is not active."""
    def __init__(self, module: str):
        super().__init__(
            f"Kernel module '{module}' is not loaded",
            code="DRIVER_NOT_LOADED",
            details={"module": module},
        )


class DeviceNodeMissing(HardwareError):
    """An expected device file does not exist."""
    def __init__(self, path: str):
        super().__init__(
            f"Device node not found: {path}",
            code="DEVICE_NODE_MISSING",
            details={"path": path},
        )


class DeviceNodeUnresolvable(HardwareError):
    """The by-path lookup for a PCI address failed."""
    def __init__(self, pci_address: str, reason: str = ""):
        message = f"No /dev/dri/by-path entries for {pci_address}"
        if reason:
            message += f": {reason}"
        super().__init__(
            message,
            code="DEVICE_NODE_UNRESOLVABLE",
            details={"pci_address": pci_address},
            recoverable=False,
        )


class PermissionDenied(HardwareError):
    """Device node exists but is not accessible."""
    def __init__(self, path: str, operation: str = "read/write"):
        super().__init__(
            f"Permission denied: {operation} on {path}",
            code="PERMISSION_DENIED",
            details={"path": path, "operation": operation},
        )


# =============================================================================
# Tool errors
# =============================================================================

class ToolError(GpuSetupError):
    """Base for external tool errors."""
    pass


class ToolMissing(ToolError):
    """Required executable is not installed."""
    def __init__(self, tool: str, package: Optional[str] = None):
        super().__init__(
            f"Required tool not found: {tool}",
            code="TOOL_MISSING",
            details={"tool": tool, "package": package},
        )


class ToolNonFunctional(ToolError):
    """Tool ran but did not report a usable device."""
    def __init__(self, tool: str, reason: str):
        super().__init__(
            f"{tool} is not functional: {reason}",
            code="TOOL_NON_FUNCTIONAL",
            details={"tool": tool, "reason": reason},
        )


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigError(GpuSetupError):
    """Base for configuration errors."""
    pass


class InvalidConfigError(ConfigError):
    """Invalid configuration."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
        )


class SandboxConfigWriteFailed(ConfigError):
    """Container configuration could not be updated."""
    def __init__(self, path: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Failed to update container config {path}: {reason}",
            code="SANDBOX_CONFIG_WRITE_FAILED",
            details={"path": path, "reason": reason},
            cause=cause,
        )


class BootBackendNotFound(ConfigError):
    """Neither bootloader backend was detected."""
    def __init__(self, searched: List[str]):
        super().__init__(
            "No supported boot configuration found",
            code="BOOT_BACKEND_NOT_FOUND",
            details={"searched": searched},
            recoverable=False,
        )


class BootConfigError(ConfigError):
    """Boot configuration could not be read, written or applied."""
    def __init__(self, path: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Boot configuration error in {path}: {reason}",
            code="BOOT_CONFIG_ERROR",
            details={"path": path, "reason": reason},
            cause=cause,
        )
