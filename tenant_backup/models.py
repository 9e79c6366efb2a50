import json
from datetime import datetime
from tenant_backup import db


class User(db.Model):
    """Operator account allowed to request backups"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='staff')  # 'admin' or 'staff'
    active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_admin(self):
        return self.role == 'admin'

    def __repr__(self):
        return f'<User {self.username} role={self.role}>'


class BackupRun(db.Model):
    """One backup export and its outcome"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed, cancelled
    requested_by = db.Column(db.String(80), nullable=False)
    archive_name = db.Column(db.String(255))
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    entries_written = db.Column(db.Integer, default=0, nullable=False)
    entries_failed = db.Column(db.Text)  # JSON list of {path, reason}
    bytes_sent = db.Column(db.BigInteger, default=0, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    @property
    def failures(self):
        return json.loads(self.entries_failed) if self.entries_failed else []

    def __repr__(self):
        return f'<BackupRun id={self.id} status={self.status}>'
