"""
Scheduled job endpoints.

Each job is reachable with GET or POST and requires
`Authorization: Bearer <CRON_SECRET>`. A job that fails returns 500 with
the error; partial failures inside a job are reported in its result.
"""

from flask import Blueprint, jsonify, current_app

from legacyguard import db
from legacyguard.security import csrf, cron_secret_required
from legacyguard.dead_mans_switch import perform_check
from legacyguard.notifications import check_expirations
from legacyguard.time_capsules import deliver_due_capsules
from legacyguard.backup_manager import BackupManager, BackupError

cron_bp = Blueprint('cron', __name__, url_prefix='/api/cron')
csrf.exempt(cron_bp)


def _job_failed(job: str, error: Exception):
    db.session.rollback()
    current_app.logger.error(f'Cron job {job} failed: {error}')
    return jsonify({'ok': False, 'error': f'{job} failed', 'details': str(error)}), 500


@cron_bp.route('/dead-mans-switch', methods=['GET', 'POST'])
@cron_secret_required
def dead_mans_switch():
    """Daily inactivity check and guardian escalation."""
    try:
        results = perform_check()
    except Exception as e:
        return _job_failed('dead-mans-switch', e)
    return jsonify({'ok': True, 'message': "Dead man's switch check completed", 'results': results}), 200


@cron_bp.route('/check-expirations', methods=['GET', 'POST'])
@cron_secret_required
def expirations():
    """Document expiry, will review and guardian review reminders."""
    try:
        results = check_expirations()
    except Exception as e:
        return _job_failed('check-expirations', e)
    return jsonify({'ok': True, 'results': results}), 200


@cron_bp.route('/deliver-time-capsules', methods=['GET', 'POST'])
@cron_secret_required
def time_capsules():
    try:
        results = deliver_due_capsules()
    except Exception as e:
        return _job_failed('deliver-time-capsules', e)
    return jsonify({'ok': True, **results}), 200


@cron_bp.route('/backups', methods=['GET', 'POST'])
@cron_secret_required
def backups():
    """Nightly database backup and retention cleanup."""
    try:
        results = BackupManager().run_scheduled_backup()
    except BackupError as e:
        return jsonify({'ok': False, 'error': e.message}), e.status_code
    except Exception as e:
        return _job_failed('backups', e)
    return jsonify({'ok': True, **results}), 200
