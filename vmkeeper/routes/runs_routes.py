"""
Backup run routes - View backup run history and trigger a run.
"""

from flask import Blueprint, jsonify, request

from vmkeeper.models import BackupRun


bp = Blueprint('runs', __name__, url_prefix='/api/runs')

RUN_STATUSES = ['running', 'success', 'nothing_to_do', 'failed']


def _serialize_run(record: BackupRun) -> dict:
    return {
        'id': record.id,
        'run_id': record.run_id,
        'status': record.status,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'vm_count': record.vm_count,
        'archive_count': record.archive_count,
        'rotation_performed': record.rotation_performed,
        'error_message': record.error_message
    }


@bp.route('/', methods=['GET'])
def list_runs():
    """
    Get backup runs with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/nothing_to_do/failed)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    total_count = query.count()
    records = query.order_by(BackupRun.run_id.desc()).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_serialize_run(r) for r in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<run_id>', methods=['GET'])
def get_run_detail(run_id):
    """
    Get detailed information for one run including archives and logs.

    Args:
        run_id: Run ID (YYYYMMDD_HHMMSS)
    """
    record = BackupRun.query.filter_by(run_id=run_id).first_or_404()

    detail = _serialize_run(record)
    detail['archives'] = [
        {
            'file_name': a.file_name,
            'vm_id': a.vm_id,
            'vm_name': a.vm_name,
            'size_bytes': a.size_bytes,
            'checksum': a.checksum,
            'verification': a.verification
        }
        for a in record.archives
    ]
    detail['logs'] = record.logs
    return jsonify(detail)


@bp.route('/trigger', methods=['POST'])
def trigger_run():
    """Schedule an immediate backup run."""
    from vmkeeper.scheduler import trigger_backup_now

    try:
        job_id = trigger_backup_now()
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify({'message': 'Backup run triggered', 'job_id': job_id}), 202


@bp.route('/schedule', methods=['GET'])
def get_schedule():
    """List the scheduled backup jobs and their next run times."""
    from vmkeeper.scheduler import get_scheduled_jobs

    return jsonify({'jobs': get_scheduled_jobs()})
