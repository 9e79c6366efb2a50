"""
Backup module for tenant backups.

This module handles the core export functionality including:
- Source catalog (record sets and storage containers)
- Record set export from the tenant database
- Object enumeration and fetching from S3-compatible storage
- Streaming ZIP assembly
- Orchestration and run history
"""

from .archive import ArchiveAssembler, generate_archive_filename
from .catalog import SourceCatalog, build_catalog, catalog_from_config
from .executor import BackupExecutor, build_orchestrator, export_backup
from .orchestrator import BackupOrchestrator, JobResult
from .records import RecordSetExporter, SqlRecordStore
from .storage import S3ObjectStore

__all__ = [
    'ArchiveAssembler',
    'generate_archive_filename',
    'SourceCatalog',
    'build_catalog',
    'catalog_from_config',
    'BackupExecutor',
    'build_orchestrator',
    'export_backup',
    'BackupOrchestrator',
    'JobResult',
    'RecordSetExporter',
    'SqlRecordStore',
    'S3ObjectStore'
]
