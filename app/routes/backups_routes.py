"""
Backup routes - read-only backup log, schedule status and manual triggers.
"""

from datetime import timedelta
from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required

from app import db
from app.backup.log import BackupLog
from app.models import BackupEntry, BackupStatus, BackupTier, utcnow
from app.scheduler import CLEANUP


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _get_scheduler():
    return current_app.extensions.get('backup_scheduler')


@bp.route('/', methods=['GET'])
@login_required
def list_backups():
    """
    Get backup log entries with filtering, newest first.

    Query params:
        - tier: Filter by tier (daily/weekly/monthly)
        - status: Filter by status (success/failed)
        - days: Only show attempts from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with entries and metadata
    """
    tier_filter = request.args.get('tier')
    status_filter = request.args.get('status')
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = db.session.query(BackupEntry)

    if tier_filter:
        if tier_filter not in BackupTier.ALL:
            return jsonify({'error': 'Invalid tier filter'}), 400
        query = query.filter(BackupEntry.tier == tier_filter)

    if status_filter:
        if status_filter not in BackupStatus.ALL:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupEntry.status == status_filter)

    if days_filter and days_filter > 0:
        cutoff_date = utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupEntry.started_at >= cutoff_date)

    total_count = query.count()

    entries = query.order_by(
        BackupEntry.started_at.desc(), BackupEntry.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [entry.to_dict() for entry in entries],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:entry_id>', methods=['GET'])
@login_required
def get_backup(entry_id):
    """Get a single backup log entry."""
    entry = db.session.get(BackupEntry, entry_id)
    if entry is None:
        return jsonify({'error': 'Backup entry not found'}), 404
    return jsonify(entry.to_dict())


@bp.route('/schedule', methods=['GET'])
@login_required
def schedule_status():
    """
    Get scheduler state: jobs, next run times, tiers currently running
    and the most recent attempt of each tier.
    """
    log = BackupLog(db.session)
    last_runs = {}
    for tier in BackupTier.ALL:
        entry = log.latest(tier)
        last_runs[tier] = entry.to_dict() if entry else None

    backup_scheduler = _get_scheduler()
    if backup_scheduler is None:
        return jsonify({'initialized': False, 'running': False, 'last_runs': last_runs}), 200

    status = backup_scheduler.diagnostics()
    status['initialized'] = True
    status['last_runs'] = last_runs
    return jsonify(status)


@bp.route('/<name>/run', methods=['POST'])
@login_required
def run_now(name):
    """
    Manually trigger a tier backup or the retention cleanup.

    Args:
        name: daily, weekly, monthly or cleanup

    Returns:
        202 when queued, 409 when that tier is already running
    """
    if name not in BackupTier.ALL and name != CLEANUP:
        return jsonify({'error': f'Unknown backup tier: {name}'}), 400

    backup_scheduler = _get_scheduler()
    if backup_scheduler is None or not backup_scheduler.running:
        return jsonify({'error': 'Scheduler is not running in this process'}), 503

    if not backup_scheduler.run_now(name):
        return jsonify({'error': f'{name} is already running', 'queued': False}), 409

    return jsonify({'message': f'{name} run queued', 'queued': True}), 202
