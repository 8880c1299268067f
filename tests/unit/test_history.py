"""
Unit tests for run history (pgshuttle/history.py and pgshuttle/models.py).
"""

import json
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from pgshuttle.history import RunRecorder, mark_interrupted_runs
from pgshuttle.models import PipelineRunRecord
from pgshuttle.pipeline.executor import RestorePipeline, BackupPipeline, PipelineResult, RunStatus
from pgshuttle.pipeline.process import ExecutionResult
from pgshuttle.pipeline.storage import TransferError


class TestRunRecorder:
    """Test mirroring pipeline runs into the database."""

    def test_successful_restore_recorded(self, db, restore_settings, fake_store, fake_runner):
        recorder = RunRecorder()
        result = RestorePipeline(restore_settings, store=fake_store, runner=fake_runner, listener=recorder).execute()

        record = PipelineRunRecord.query.filter_by(run_id=result.run_id).one()
        assert record.kind == 'restore'
        assert record.status == 'succeeded'
        assert record.artifact_name == 'backup-2024-02-01T00-00-00.sql.gz'
        assert record.target_cleared is True
        assert record.completed_at is not None
        assert record.error_message is None
        assert 'Restore completed successfully' in record.logs
        assert record.attempts_dict['restore'] == 1

    def test_failed_backup_recorded(self, db, backup_settings, fake_store, fake_runner):
        fake_store.upload.side_effect = TransferError('bucket policy denies PutObject')

        result = BackupPipeline(backup_settings, store=fake_store, runner=fake_runner, listener=RunRecorder()).execute()

        record = PipelineRunRecord.query.filter_by(run_id=result.run_id).one()
        assert record.status == 'failed'
        assert record.failed_step == 'uploading'
        assert record.error_type == 'TransferError'
        assert 'PutObject' in record.error_message
        assert json.loads(record.attempts)['upload'] == 3

    def test_record_visible_while_running(self, db, restore_settings, fake_store, fake_runner):
        seen_statuses = []
        recorder = RunRecorder()

        def run(command, **kwargs):
            seen_statuses.append(PipelineRunRecord.query.one().status)
            return ExecutionResult(exit_code=0, stdout='', stderr='')

        fake_runner.run.side_effect = run

        RestorePipeline(restore_settings, store=fake_store, runner=fake_runner, listener=recorder).execute()

        assert seen_statuses and all(status == 'running' for status in seen_statuses)
        assert PipelineRunRecord.query.count() == 1

    def test_record_recreated_after_failed_first_commit(self, db):
        recorder = RunRecorder()
        result = PipelineResult(run_id='d' * 32, kind='restore', status=RunStatus.RUNNING)
        locked = OperationalError('INSERT INTO pipeline_runs', {}, Exception('database is locked'))

        def flush_then_fail():
            db.session.flush()
            raise locked

        with patch.object(db.session, 'commit', side_effect=flush_then_fail):
            with pytest.raises(OperationalError):
                recorder(result)

        assert recorder.record is None

        result.status = RunStatus.SUCCEEDED
        recorder(result)

        record = PipelineRunRecord.query.filter_by(run_id='d' * 32).one()
        assert record.status == 'succeeded'


class TestMarkInterruptedRuns:
    """Test recovery of runs left behind by a dead process."""

    def test_marks_running_records_failed(self, db):
        db.session.add(PipelineRunRecord(run_id='a' * 32, kind='restore', status='running', started_at=datetime(2024, 1, 1)))
        db.session.add(PipelineRunRecord(run_id='b' * 32, kind='backup', status='succeeded', started_at=datetime(2024, 1, 1)))
        db.session.commit()

        assert mark_interrupted_runs() == 1

        record = PipelineRunRecord.query.filter_by(run_id='a' * 32).one()
        assert record.status == 'failed'
        assert record.error_type == 'Interrupted'
        assert record.completed_at is not None
        assert record.duration_seconds is not None
        assert PipelineRunRecord.query.filter_by(run_id='b' * 32).one().status == 'succeeded'

    def test_nothing_to_mark(self, db):
        assert mark_interrupted_runs() == 0


class TestPipelineRunRecord:
    """Test model helpers."""

    def test_to_dict(self, db):
        record = PipelineRunRecord(
            run_id='c' * 32,
            kind='restore',
            status='failed',
            failed_step='restoring',
            attempts=json.dumps({'restore': 3}),
            started_at=datetime(2024, 1, 1, 3, 0, 0),
            completed_at=datetime(2024, 1, 1, 3, 20, 0),
            logs='[2024-01-01 03:00:00 UTC] Starting restore run'
        )
        db.session.add(record)
        db.session.commit()

        data = record.to_dict()
        assert data['duration_seconds'] == 1200
        assert data['attempts'] == {'restore': 3}
        assert data['has_logs'] is True
        assert 'logs' not in data

        assert record.to_dict(include_logs=True)['logs'].startswith('[2024-01-01')
