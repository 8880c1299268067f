"""
Pipeline module for pgshuttle.

This module handles the backup/restore workflow including:
- Process execution for psql, pg_dump and pg_restore
- Artifact listing, selection and transfer (S3)
- Retry with backoff
- Orchestration and temp file cleanup
"""

from .executor import (
    PipelineExecutor,
    RestorePipeline,
    BackupPipeline,
    PipelineResult,
    RunStatus,
    CleanupError,
    create_pipeline,
    run_pipeline
)
from .process import ProcessRunner, ExecutionResult, ProcessError, TimeoutExceeded, PipelineCancelled
from .retry import RetryPolicy, with_retry
from .settings import PipelineSettings, ConfigurationError
from .storage import (
    S3ArtifactStore,
    BackupArtifact,
    StorageError,
    StoreUnavailable,
    TransferError,
    NoArtifactsFound,
    NoEligibleArtifact,
    select_latest
)

__all__ = [
    'PipelineExecutor',
    'RestorePipeline',
    'BackupPipeline',
    'PipelineResult',
    'RunStatus',
    'CleanupError',
    'create_pipeline',
    'run_pipeline',
    'ProcessRunner',
    'ExecutionResult',
    'ProcessError',
    'TimeoutExceeded',
    'PipelineCancelled',
    'RetryPolicy',
    'with_retry',
    'PipelineSettings',
    'ConfigurationError',
    'S3ArtifactStore',
    'BackupArtifact',
    'StorageError',
    'StoreUnavailable',
    'TransferError',
    'NoArtifactsFound',
    'NoEligibleArtifact',
    'select_latest'
]
