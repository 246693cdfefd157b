"""
Storage Layer.

This package handles all persistence: the progress ledger, its daily backups,
the working-directory lock and the settings-backed configuration.
"""

from .backup import BackupManager
from .config_manager import ConfigManager
from .ledger import ProgressLedger
from .lock import LockManager, SharedSessionLock

__all__ = [
    "BackupManager",
    "ConfigManager",
    "LockManager",
    "ProgressLedger",
    "SharedSessionLock",
]
