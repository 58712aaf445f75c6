"""
Backup module for mongobackup.

This module handles the core backup functionality including:
- Secondary replica selection
- Concurrent dump/export jobs
- Archive building
- Storage (S3) and notification mail
- Run orchestration
"""

from .executor import BackupRun
from .replica import ReplicaSelector, SelectionError, enumerate_projects
from .exports import ExportCoordinator, ExportJob, ExportError, MongoSource
from .compression import create_archive, build_variant, purge_directory, CompressionError
from .storage import S3Storage, Uploader, StorageError
from .notify import Mailer, MailError

__all__ = [
    'BackupRun',
    'ReplicaSelector',
    'SelectionError',
    'enumerate_projects',
    'ExportCoordinator',
    'ExportJob',
    'ExportError',
    'MongoSource',
    'create_archive',
    'build_variant',
    'purge_directory',
    'CompressionError',
    'S3Storage',
    'Uploader',
    'StorageError',
    'Mailer',
    'MailError'
]
