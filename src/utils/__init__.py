"""
Utility Modules

File and process helpers shared by every component.
"""

from .atomic_write import atomic_write_text, safe_backup, update_file
from .process import CommandRunner, CommandResult

__all__ = [
    "atomic_write_text",
    "safe_backup",
    "update_file",
    "CommandRunner",
    "CommandResult",
]
