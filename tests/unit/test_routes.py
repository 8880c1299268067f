"""
Unit tests for HTTP routes (pgshuttle/routes/runs_routes.py and /health).
"""

import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from pgshuttle import scheduler as scheduler_module
from pgshuttle.models import PipelineRunRecord


@pytest.fixture(autouse=True)
def reset_scheduler_globals():
    yield
    scheduler_module.scheduler = None
    if scheduler_module._run_lock.locked():
        scheduler_module._run_lock.release()


@pytest.fixture
def run_records(db):
    records = [
        PipelineRunRecord(run_id='1' * 32, kind='restore', status='succeeded',
                          started_at=datetime(2024, 1, 1), completed_at=datetime(2024, 1, 1, 0, 5),
                          attempts=json.dumps({'restore': 1}), logs='line one'),
        PipelineRunRecord(run_id='2' * 32, kind='restore', status='failed',
                          started_at=datetime(2024, 1, 2), failed_step='restoring',
                          error_type='ProcessError', error_message='pg_restore exited with code 1'),
        PipelineRunRecord(run_id='3' * 32, kind='backup', status='succeeded',
                          started_at=datetime(2024, 1, 3)),
    ]
    for record in records:
        db.session.add(record)
    db.session.commit()
    return records


class TestHealth:
    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestListRuns:
    """Test GET /api/runs/."""

    def test_list_newest_first(self, client, run_records):
        response = client.get('/api/runs/')

        data = response.get_json()
        assert response.status_code == 200
        assert data['total'] == 3
        assert [r['run_id'][0] for r in data['records']] == ['3', '2', '1']

    def test_filter_by_status(self, client, run_records):
        data = client.get('/api/runs/?status=failed').get_json()

        assert data['total'] == 1
        assert data['records'][0]['error_type'] == 'ProcessError'

    def test_filter_by_kind(self, client, run_records):
        data = client.get('/api/runs/?kind=backup').get_json()

        assert data['total'] == 1
        assert data['records'][0]['kind'] == 'backup'

    def test_invalid_status(self, client, db):
        assert client.get('/api/runs/?status=exploded').status_code == 400

    def test_invalid_kind(self, client, db):
        assert client.get('/api/runs/?kind=migrate').status_code == 400

    def test_pagination_limits(self, client, run_records):
        data = client.get('/api/runs/?limit=500&offset=-3').get_json()

        assert data['limit'] == 200
        assert data['offset'] == 0

        data = client.get('/api/runs/?limit=1&offset=1').get_json()
        assert len(data['records']) == 1
        assert data['records'][0]['run_id'][0] == '2'


class TestRunDetail:
    """Test GET /api/runs/<id>."""

    def test_detail_includes_logs(self, client, run_records):
        response = client.get(f'/api/runs/{run_records[0].id}')

        data = response.get_json()
        assert response.status_code == 200
        assert data['logs'] == 'line one'
        assert data['duration_seconds'] == 300

    def test_detail_not_found(self, client, db):
        assert client.get('/api/runs/9999').status_code == 404


class TestTrigger:
    """Test POST /api/runs/trigger."""

    def test_trigger_without_scheduler(self, client, db):
        response = client.post('/api/runs/trigger')

        assert response.status_code == 503

    def test_trigger_queues_run(self, client, db):
        scheduler_module.scheduler = MagicMock()

        response = client.post('/api/runs/trigger')

        assert response.status_code == 202
        assert response.get_json()['job_id'].startswith('manual_')

    def test_trigger_conflict(self, client, db):
        scheduler_module.scheduler = MagicMock()
        scheduler_module._run_lock.acquire()

        response = client.post('/api/runs/trigger')

        assert response.status_code == 409


class TestSchedulerStatus:
    def test_status_when_not_initialized(self, client, db):
        data = client.get('/api/runs/scheduler').get_json()

        assert data['initialized'] is False
        assert data['run_in_progress'] is False
