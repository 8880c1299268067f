"""
Pipeline executor - orchestrates backup and restore runs.

Restore workflow:
1. Select the latest eligible artifact in the bucket
2. Download it to a run-scoped temporary file
3. Verify connectivity and reset the target schema (point of no return)
4. Restore the dump with pg_restore
5. Remove the temporary file

Backup workflow:
1. Dump the source database to a run-scoped temporary file
2. Upload it to the bucket under a fresh artifact name
3. Remove the temporary file

Every network and subprocess step goes through with_retry. Cleanup runs on
every exit path once a temporary file has been assigned.
"""

import os
import uuid
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from .database import (
    DatabaseTarget,
    connection_test_command,
    reset_schema_command,
    restore_command,
    dump_command
)
from .process import ProcessRunner, PipelineCancelled
from .retry import with_retry
from .settings import PipelineSettings
from .storage import (
    S3ArtifactStore,
    BackupArtifact,
    NoArtifactsFound,
    select_latest,
    generate_artifact_name
)

logger = logging.getLogger(__name__)


def _size_mb(path: str) -> float:
    try:
        return os.path.getsize(path) / 1024 / 1024
    except OSError:
        return 0.0


class CleanupError(Exception):
    """Raised when a temporary file cannot be removed."""
    pass


class RunStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


# Step names, in execution order
SELECTING_ARTIFACT = 'selecting_artifact'
TRANSFERRING = 'transferring'
PREPARING_TARGET = 'preparing_target'
RESTORING = 'restoring'
DUMPING = 'dumping'
UPLOADING = 'uploading'
CLEANING_UP = 'cleaning_up'

RESTORE_STEPS = (SELECTING_ARTIFACT, TRANSFERRING, PREPARING_TARGET, RESTORING, CLEANING_UP)
BACKUP_STEPS = (DUMPING, UPLOADING, CLEANING_UP)


@dataclass
class PipelineResult:
    """Outcome of one pipeline run, handed back to the scheduler."""

    run_id: str
    kind: str
    status: RunStatus = RunStatus.PENDING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    current_step: Optional[str] = None
    failed_step: Optional[str] = None
    artifact_name: Optional[str] = None
    error: Optional[BaseException] = None
    attempts: Dict[str, int] = field(default_factory=dict)
    target_cleared: bool = False
    cleanup_error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


class PipelineExecutor:
    """
    Shared run lifecycle for backup and restore pipelines.

    Subclasses implement _execute_workflow() and set self.temp_path before
    the first step that writes to disk.
    """

    kind = None
    steps = ()

    def __init__(
        self,
        settings: PipelineSettings,
        store: Optional[S3ArtifactStore] = None,
        runner: Optional[ProcessRunner] = None,
        cancel_event: Optional[threading.Event] = None,
        listener: Optional[Callable[[PipelineResult], None]] = None,
        wait: Optional[Callable[[float], None]] = None
    ):
        """
        Initialize pipeline executor.

        Args:
            settings: Resolved settings for this run
            store: Artifact store (built from settings when omitted)
            runner: Process runner for the database tools
            cancel_event: Set from outside to cancel the run cooperatively
            listener: Called with the result on every state change
            wait: Sleep function for retry backoff (cancellation-aware by default)
        """
        self.settings = settings
        self.store = store or S3ArtifactStore(
            bucket_name=settings.bucket_name,
            region=settings.s3_region,
            access_key=settings.aws_access_key_id,
            secret_key=settings.aws_secret_access_key,
            endpoint_url=settings.s3_endpoint_url
        )
        self.runner = runner or ProcessRunner(max_output_bytes=settings.max_output_bytes)
        self.cancel_event = cancel_event or threading.Event()
        self.listener = listener
        self._wait_fn = wait
        self.run_id = uuid.uuid4().hex
        self.temp_path = None
        self.result = PipelineResult(run_id=self.run_id, kind=self.kind)

    def execute(self) -> PipelineResult:
        """
        Execute the pipeline.

        Never raises for step failures; the outcome is in the returned
        PipelineResult.
        """
        self._log(f"Starting {self.kind} run {self.run_id}")
        self.result.status = RunStatus.RUNNING
        self._notify()

        error = None
        try:
            self._execute_workflow()
        except Exception as e:
            error = e
            self.result.failed_step = self.result.current_step
        finally:
            self._cleanup()

        self._finish(error)
        return self.result

    def _execute_workflow(self):
        raise NotImplementedError

    def _finish(self, error: Optional[Exception]):
        self.result.completed_at = datetime.now(timezone.utc)
        self.result.error = error

        if error is None:
            self.result.status = RunStatus.SUCCEEDED
            self._log(f"{self.kind.capitalize()} completed successfully")
        elif isinstance(error, PipelineCancelled):
            self.result.status = RunStatus.CANCELLED
            self._log(f"{self.kind.capitalize()} cancelled during {self.result.failed_step}", level=logging.WARNING)
        else:
            self.result.status = RunStatus.FAILED
            self._log(
                f"{self.kind.capitalize()} failed at step {self.result.failed_step} "
                f"({self._attempt_summary()}): {self.result.error_message}",
                level=logging.ERROR
            )
            logger.debug(f"Run {self.run_id} failure details", exc_info=error)

        self._notify()

    def _attempt_summary(self) -> str:
        if not self.result.attempts:
            return 'no attempts'
        return ', '.join(f"{name}: {count}" for name, count in self.result.attempts.items())

    # -- steps ---------------------------------------------------------

    def _enter_step(self, step: str):
        self._check_cancelled()
        if step not in self.steps:
            raise ValueError(f"Unknown {self.kind} step: {step}")
        current = self.result.current_step
        if current in self.steps and self.steps.index(step) <= self.steps.index(current):
            raise RuntimeError(f"Step {step} cannot follow {current}")
        self.result.current_step = step
        self._log(f"Step: {step}")
        self._notify()

    def _retry(self, operation, name: str):
        """Run one operation of the current step under the retry policy."""
        def record(attempt):
            self.result.attempts[name] = attempt
            if attempt > 1:
                self._log(f"{name}: attempt {attempt}/{self.settings.retry_policy.max_attempts}")

        return with_retry(
            operation,
            self.settings.retry_policy,
            description=f"{self.kind} {name}",
            wait=self._wait,
            on_attempt=record
        )

    def _run_tool(self, command: List[str], database: DatabaseTarget, timeout: float):
        self._log(f"Running {command[0]} against {database.describe()}")
        result = self.runner.run(
            command,
            env=database.environment(),
            timeout=timeout,
            max_output_bytes=self.settings.max_output_bytes,
            on_output=self._on_output,
            cancellation_check=self._check_cancelled
        )
        if result.truncated:
            self._log(f"{command[0]} output exceeded the capture limit and was truncated", level=logging.WARNING)
        return result

    def _temp_path_for(self, artifact_name: str) -> str:
        return os.path.join(self.settings.temp_dir, self.run_id, os.path.basename(artifact_name))

    def _cleanup(self):
        """Remove the run's temporary file. Failures are logged, not raised."""
        if self.temp_path is None:
            return

        self.result.current_step = CLEANING_UP
        self._log(f"Deleting temporary file: {self.temp_path}")

        try:
            self._remove_temp_files()
        except CleanupError as e:
            self.result.cleanup_error = str(e)
            self._log(f"Warning: {e}", level=logging.WARNING)

    def _remove_temp_files(self):
        try:
            if os.path.exists(self.temp_path):
                os.remove(self.temp_path)
        except OSError as e:
            raise CleanupError(f"Failed to delete temporary file {self.temp_path}: {e}") from e

        run_dir = os.path.dirname(self.temp_path)
        try:
            if os.path.isdir(run_dir) and not os.listdir(run_dir):
                os.rmdir(run_dir)
        except OSError as e:
            raise CleanupError(f"Failed to remove temporary directory {run_dir}: {e}") from e

    # -- cancellation and logging --------------------------------------

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise PipelineCancelled(f"{self.kind} run {self.run_id} cancelled")

    def _wait(self, delay: float):
        if self._wait_fn is not None:
            self._wait_fn(delay)
            self._check_cancelled()
        elif self.cancel_event.wait(delay):
            raise PipelineCancelled(f"{self.kind} run {self.run_id} cancelled during retry wait")

    def _on_output(self, stream: str, line: str):
        if not line:
            return
        if stream == 'stderr':
            logger.info(f"[{self.kind}:{self.result.current_step}] {line}")
        else:
            logger.debug(f"[{self.kind}:{self.result.current_step}] {line}")

    def _notify(self):
        if not self.listener:
            return
        try:
            self.listener(self.result)
        except Exception as e:
            logger.error(f"Run listener failed for {self.run_id}: {e}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a timestamped line to the run log and the application log.

        Args:
            message: Log message
            level: logging level for the application log
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.kind} {self.run_id[:8]}] {message}")


class RestorePipeline(PipelineExecutor):
    """
    Restores the newest eligible dump into the target database.

    Resetting the target schema cannot be undone. If the restore fails
    afterwards the database is left empty or partially restored and the run
    ends failed; recovering is an operator decision or a repeat run.
    """

    kind = 'restore'
    steps = RESTORE_STEPS

    def _execute_workflow(self):
        target = self.settings.target
        if target is None:
            raise ValueError("Restore run requires a target database")

        artifact = self._select_artifact()

        # Step 2: download into the run's own temp path
        self._enter_step(TRANSFERRING)
        self.temp_path = self._temp_path_for(artifact.name)
        self._log(f"Downloading {artifact.name} to {self.temp_path}")
        self._retry(
            lambda: self.store.download(artifact, self.temp_path, cancellation_check=self._check_cancelled),
            'download'
        )
        self._log(f"Downloaded {artifact.name} ({_size_mb(self.temp_path):.2f} MB)")

        # Step 3: connectivity check, then the destructive reset
        self._enter_step(PREPARING_TARGET)
        if self.settings.verify_connection:
            self._retry(
                lambda: self._run_tool(connection_test_command(target), target, self.settings.command_timeout),
                'connection_test'
            )
        self._retry(
            lambda: self._run_tool(
                reset_schema_command(target, self.settings.target_schema),
                target,
                self.settings.command_timeout
            ),
            'reset_schema'
        )
        self.result.target_cleared = True
        self._log(f"Schema {self.settings.target_schema} on {target.describe()} cleared")

        # Step 4: restore
        self._enter_step(RESTORING)
        try:
            self._retry(
                lambda: self._run_tool(restore_command(target, self.temp_path), target, self.settings.restore_timeout),
                'restore'
            )
        except PipelineCancelled:
            raise
        except Exception:
            self._log(
                f"Restore failed after {target.describe()} was cleared. The database is empty or "
                f"partially restored and needs manual intervention or a new run.",
                level=logging.ERROR
            )
            raise

    def _select_artifact(self) -> BackupArtifact:
        self._enter_step(SELECTING_ARTIFACT)
        self._retry(self.store.test_connection, 'connect')
        # Unfiltered, so an empty bucket and a bucket without eligible names stay distinct
        artifacts = self._retry(self.store.list_artifacts, 'list')

        if not artifacts:
            raise NoArtifactsFound(f"No backup files found in bucket {self.settings.bucket_name}")

        artifact = select_latest(artifacts, self.settings.artifact_prefix, self.settings.artifact_suffix)
        self.result.artifact_name = artifact.name
        self._log(f"Latest backup file: {artifact.name} (created {artifact.created_at.isoformat()})")
        return artifact


class BackupPipeline(PipelineExecutor):
    """Dumps the source database and uploads it as a new artifact."""

    kind = 'backup'
    steps = BACKUP_STEPS

    def _execute_workflow(self):
        source = self.settings.source
        if source is None:
            raise ValueError("Backup run requires a source database")

        artifact_name = generate_artifact_name(self.settings.artifact_prefix, self.settings.artifact_suffix)
        self.result.artifact_name = artifact_name

        # Step 1: dump, once the bucket is known to be reachable
        self._enter_step(DUMPING)
        self._retry(self.store.test_connection, 'connect')
        self.temp_path = self._temp_path_for(artifact_name)
        os.makedirs(os.path.dirname(self.temp_path), exist_ok=True)
        self._retry(
            lambda: self._run_tool(dump_command(source, self.temp_path), source, self.settings.dump_timeout),
            'dump'
        )
        self._log(f"Dump created: {artifact_name} ({_size_mb(self.temp_path):.2f} MB)")

        # Step 2: upload, the moment the artifact comes into existence
        self._enter_step(UPLOADING)
        key = self._retry(
            lambda: self.store.upload(self.temp_path, artifact_name, cancellation_check=self._check_cancelled),
            'upload'
        )
        self._log(f"Uploaded to s3://{self.settings.bucket_name}/{key}")


PIPELINES = {
    'restore': RestorePipeline,
    'backup': BackupPipeline,
}


def create_pipeline(settings: PipelineSettings, **kwargs) -> PipelineExecutor:
    """
    Build the pipeline matching settings.kind.

    Raises:
        ValueError: If the kind is unknown
    """
    try:
        pipeline_class = PIPELINES[settings.kind]
    except KeyError:
        raise ValueError(f"Unknown pipeline kind: {settings.kind}")
    return pipeline_class(settings, **kwargs)


def run_pipeline(settings: PipelineSettings, **kwargs) -> PipelineResult:
    """Build and execute a pipeline in one call."""
    return create_pipeline(settings, **kwargs).execute()
