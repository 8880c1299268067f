"""
Persists pipeline runs to the run history table.
"""

import json
from datetime import datetime
import logging

from sqlalchemy import inspect

from pgshuttle import db
from pgshuttle.models import PipelineRunRecord
from pgshuttle.pipeline.executor import PipelineResult

logger = logging.getLogger(__name__)


def _naive_utc(value):
    # SQLite DateTime columns store naive timestamps
    return value.replace(tzinfo=None) if value is not None and value.tzinfo else value


class RunRecorder:
    """
    Pipeline listener that mirrors a run into PipelineRunRecord.

    Must be called inside a Flask app context. The record is created on the
    first notification and updated on every state change, so a running
    pipeline is visible through the history API while it runs.
    """

    def __init__(self):
        self.record = None

    def __call__(self, result: PipelineResult):
        if self.record is None:
            self.record = PipelineRunRecord(
                run_id=result.run_id,
                kind=result.kind,
                status=result.status.value,
                started_at=_naive_utc(result.started_at)
            )
            db.session.add(self.record)

        apply_result(self.record, result)

        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            # rollback expunges a record that was never committed
            if inspect(self.record).transient:
                self.record = None
            raise


def apply_result(record: PipelineRunRecord, result: PipelineResult):
    """Copy the current state of a run onto its history record."""
    record.status = result.status.value
    record.current_step = result.current_step
    record.failed_step = result.failed_step
    record.artifact_name = result.artifact_name
    record.target_cleared = result.target_cleared
    record.attempts = json.dumps(result.attempts)
    record.completed_at = _naive_utc(result.completed_at)
    record.cleanup_error = result.cleanup_error
    record.logs = '\n'.join(result.logs)

    if result.error is not None:
        record.error_type = type(result.error).__name__
        record.error_message = str(result.error)


def mark_interrupted_runs() -> int:
    """
    Mark runs left in pending/running by a previous process as failed.

    Returns:
        Number of records updated
    """
    stale = PipelineRunRecord.query.filter(
        PipelineRunRecord.status.in_(['pending', 'running'])
    ).all()

    for record in stale:
        record.status = 'failed'
        record.error_type = 'Interrupted'
        record.error_message = 'Process stopped before the run finished'
        record.completed_at = datetime.utcnow()
        logger.warning(f"Marking interrupted {record.kind} run {record.run_id} as failed")

    if stale:
        db.session.commit()
    return len(stale)
