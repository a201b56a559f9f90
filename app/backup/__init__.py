"""
Backup module for the finance tracker.

This module handles the core backup functionality including:
- Snapshot export of the finance data store
- Storage (S3 and local)
- The append-only backup log
- Tiered backup execution
- Retention policy enforcement
"""

from .exporter import DatabaseExporter, ExportResult, ExportError
from .storage import S3Storage, LocalStorage, StorageError, DeleteError, create_storage
from .log import BackupLog, LogWriteError
from .executor import run_tiered_backup
from .retention import RetentionEngine, RetentionPolicy, SweepResult, DEFAULT_POLICIES

__all__ = [
    'DatabaseExporter',
    'ExportResult',
    'ExportError',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'DeleteError',
    'create_storage',
    'BackupLog',
    'LogWriteError',
    'run_tiered_backup',
    'RetentionEngine',
    'RetentionPolicy',
    'SweepResult',
    'DEFAULT_POLICIES'
]
