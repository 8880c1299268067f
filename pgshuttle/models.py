import json
from datetime import datetime
from pgshuttle import db


class PipelineRunRecord(db.Model):
    """Backup/restore run history and logs"""
    __tablename__ = 'pipeline_runs'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(32), unique=True, nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)  # backup or restore
    status = db.Column(db.String(20), nullable=False)  # pending, running, succeeded, failed, cancelled
    current_step = db.Column(db.String(50))
    failed_step = db.Column(db.String(50))
    artifact_name = db.Column(db.String(1024))
    target_cleared = db.Column(db.Boolean, default=False, nullable=False)  # restore passed the point of no return
    error_type = db.Column(db.String(100))
    error_message = db.Column(db.Text)
    cleanup_error = db.Column(db.Text)
    attempts = db.Column(db.Text)  # JSON object: operation -> attempts used
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    logs = db.Column(db.Text)  # Detailed execution logs

    @property
    def attempts_dict(self):
        return json.loads(self.attempts) if self.attempts else {}

    @property
    def duration_seconds(self):
        if not self.completed_at:
            return None
        return int((self.completed_at - self.started_at).total_seconds())

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'run_id': self.run_id,
            'kind': self.kind,
            'status': self.status,
            'current_step': self.current_step,
            'failed_step': self.failed_step,
            'artifact_name': self.artifact_name,
            'target_cleared': self.target_cleared,
            'error_type': self.error_type,
            'error_message': self.error_message,
            'cleanup_error': self.cleanup_error,
            'attempts': self.attempts_dict,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': self.duration_seconds,
        }
        if include_logs:
            data['logs'] = self.logs
        else:
            data['has_logs'] = bool(self.logs)
        return data

    def __repr__(self):
        return f'<PipelineRunRecord {self.kind} run_id={self.run_id} status={self.status}>'
