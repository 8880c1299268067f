"""
Run history routes - View pipeline runs and trigger new ones.
"""

from flask import Blueprint, jsonify, request

from pgshuttle.models import PipelineRunRecord
from pgshuttle.scheduler import get_scheduler_diagnostics, trigger_run_now, RunInProgress


bp = Blueprint('runs', __name__, url_prefix='/api/runs')

VALID_STATUSES = ['pending', 'running', 'succeeded', 'failed', 'cancelled']
VALID_KINDS = ['backup', 'restore']


@bp.route('/', methods=['GET'])
def list_runs():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by status
        - kind: Filter by backup/restore
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    kind_filter = request.args.get('kind')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1
    if offset < 0:
        offset = 0

    query = PipelineRunRecord.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(PipelineRunRecord.status == status_filter)

    if kind_filter:
        if kind_filter not in VALID_KINDS:
            return jsonify({'error': 'Invalid kind filter'}), 400
        query = query.filter(PipelineRunRecord.kind == kind_filter)

    total_count = query.count()

    records = query.order_by(
        PipelineRunRecord.started_at.desc(),
        PipelineRunRecord.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:record_id>', methods=['GET'])
def get_run_detail(record_id):
    """Get one run including its logs."""
    record = PipelineRunRecord.query.get_or_404(record_id)
    return jsonify(record.to_dict(include_logs=True))


@bp.route('/trigger', methods=['POST'])
def trigger_run():
    """Queue an immediate run of the configured pipeline."""
    try:
        job_id = trigger_run_now()
    except RunInProgress as e:
        return jsonify({'error': str(e)}), 409
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({'message': 'Run queued', 'job_id': job_id}), 202


@bp.route('/scheduler', methods=['GET'])
def scheduler_status():
    """Scheduler diagnostics."""
    return jsonify(get_scheduler_diagnostics())
