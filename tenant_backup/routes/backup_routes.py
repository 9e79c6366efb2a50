"""
Backup routes - stream a full tenant backup to an administrator.
"""

from flask import Blueprint, Response, current_app, jsonify, stream_with_context
from flask_login import current_user, login_required

from tenant_backup.backup.executor import BackupExecutor, BackupInProgress, build_orchestrator
from tenant_backup.backup.orchestrator import BackupError, Unauthorized


bp = Blueprint('backup', __name__, url_prefix='/admin')


def _prepend(first, chunks):
    try:
        yield first
        yield from chunks
    finally:
        chunks.close()


@bp.route('/backup', methods=['POST'])
@login_required
def create_backup():
    """
    Export every record set and stored object as one ZIP download.

    The first archive chunk is produced before the response starts, so failures
    that happen before any byte exists (including an empty backup) still get a
    JSON error. Once streaming has begun, a failure can only cut the download short.

    Returns:
        200 with the archive, 403 for non-admins, 409 if a backup is already
        running for this user, 500 with {error} on failure
    """
    if not current_user.is_admin:
        return jsonify({'error': 'Forbidden'}), 403

    try:
        orchestrator = build_orchestrator(current_app.config)
        executor = BackupExecutor(orchestrator, requested_by=current_user.username)
        chunks = executor.stream(is_admin=current_user.is_admin)
        first = next(chunks)

    except Unauthorized:
        return jsonify({'error': 'Forbidden'}), 403
    except BackupInProgress as e:
        return jsonify({'error': str(e)}), 409
    except BackupError as e:
        current_app.logger.error(f"Backup failed before streaming: {e}")
        return jsonify({'error': str(e)}), 500
    except Exception as e:
        current_app.logger.exception(f"Backup failed before streaming: {e}")
        return jsonify({'error': 'Backup failed'}), 500

    response = Response(
        stream_with_context(_prepend(first, chunks)),
        mimetype='application/zip'
    )
    response.headers['Content-Disposition'] = f'attachment; filename="{executor.archive_name}"'
    response.headers['X-Backup-Run-Id'] = str(executor.run_id)
    return response
