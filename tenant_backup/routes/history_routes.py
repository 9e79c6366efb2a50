"""
Backup history routes - View past backup runs.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from tenant_backup import db
from tenant_backup.models import BackupRun


bp = Blueprint('history', __name__, url_prefix='/admin')

VALID_STATUSES = ['running', 'success', 'partial', 'failed', 'cancelled']


def _run_summary(record):
    return {
        'id': record.id,
        'status': record.status,
        'requested_by': record.requested_by,
        'archive_name': record.archive_name,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'entries_written': record.entries_written,
        'entries_failed_count': len(record.failures),
        'size_mb': round(record.bytes_sent / 1024 / 1024, 2) if record.bytes_sent else None,
        'error_message': record.error_message
    }


def _forbidden():
    return jsonify({'error': 'Forbidden'}), 403


@bp.route('/backups', methods=['GET'])
@login_required
def list_runs():
    """
    Get backup runs, most recent first.

    Query params:
        - status: Filter by status (running/success/partial/failed/cancelled)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and paging metadata
    """
    if not current_user.is_admin:
        return _forbidden()

    status_filter = request.args.get('status')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1
    if offset < 0:
        offset = 0

    query = BackupRun.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    total_count = query.count()

    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_run_summary(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/backups/<int:run_id>', methods=['GET'])
@login_required
def get_run(run_id):
    """
    Get one backup run including its failures and logs.

    Args:
        run_id: BackupRun ID

    Returns:
        JSON with the full run record
    """
    if not current_user.is_admin:
        return _forbidden()

    record = db.get_or_404(BackupRun, run_id)

    duration_seconds = None
    if record.completed_at:
        duration_seconds = int((record.completed_at - record.started_at).total_seconds())

    details = _run_summary(record)
    details.update({
        'duration_seconds': duration_seconds,
        'bytes_sent': record.bytes_sent,
        'entries_failed': record.failures,
        'logs': record.logs
    })
    return jsonify(details)
