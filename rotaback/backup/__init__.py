"""
Backup engine for rotaback.

This module handles the core backup functionality including:
- Archive naming (timestamped, reversible filenames)
- Atomic archive creation
- Count-based retention
- Run orchestration with per-source isolation
"""

from .orchestrator import BackupOrchestrator, BackupRequest, BackupOutcome, BackupRunResult, OutcomeStatus
from .compression import TarArchiveCreator
from .storage import ArchiveStore
from .retention import RetentionPolicy, select_for_deletion
from .naming import ArchiveRecord, build_name, parse_name

__all__ = [
    'BackupOrchestrator',
    'BackupRequest',
    'BackupOutcome',
    'BackupRunResult',
    'OutcomeStatus',
    'TarArchiveCreator',
    'ArchiveStore',
    'RetentionPolicy',
    'select_for_deletion',
    'ArchiveRecord',
    'build_name',
    'parse_name'
]
