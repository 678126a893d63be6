"""
Admin API.

Session based (DB-backed AdminSession) and CSRF protected: clients fetch
a token from /admin/csrf-token and send it in the X-CSRFToken header.
"""

from datetime import datetime, timedelta

from flask import Blueprint, request, jsonify, current_app, g
from flask_wtf.csrf import generate_csrf

from legacyguard import db
from legacyguard.models import (
    User, Guardian, Document, Will, EmergencyActivation, SupportTicket, AuditLog, ActivationStatus
)
from legacyguard.security import (
    rate_limit, admin_required, verify_admin_password, create_admin_session,
    terminate_admin_session, get_client_ip, sanitize_payload
)
from legacyguard.audit_logger import (
    log_admin_login, log_admin_logout, log_action, verify_audit_integrity,
    AuditAction, AuditCategory
)
from legacyguard.backup_manager import BackupManager, DisasterRecovery, BackupError
from legacyguard.trust_seal import (
    TrustSealError, revoke_trust_seal, renew_trust_seal, get_trust_seal_statistics,
    get_verification_history, SEAL_VALIDITY_DAYS
)
from legacyguard.support import (
    SupportError, list_tickets, update_ticket_status, get_support_statistics
)
from legacyguard.validation import coerce_to_bool

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


def handle_admin_error(error):
    return jsonify({'ok': False, 'error': error.message}), error.status_code


for _error_class in (BackupError, TrustSealError, SupportError):
    admin_bp.register_error_handler(_error_class, handle_admin_error)


def _payload():
    payload = request.get_json(silent=True)
    return sanitize_payload(payload) if isinstance(payload, dict) else {}


def _count_by(column):
    return dict(db.session.query(column, db.func.count()).group_by(column).all())


@admin_bp.route('/csrf-token')
def csrf_token():
    return jsonify({'ok': True, 'csrf_token': generate_csrf()}), 200


@admin_bp.route('/login', methods=['POST'])
@rate_limit('admin_login')
def login():
    admin_user = current_app.config.get('ADMIN_USERNAME', '')
    admin_pass = current_app.config.get('ADMIN_PASSWORD_HASH', '')

    if not admin_user or not admin_pass:
        return jsonify({'ok': False, 'error': 'Admin access is not configured'}), 503

    # Passwords are compared as sent, never sanitized
    credentials = request.get_json(silent=True)
    if not isinstance(credentials, dict):
        credentials = {}
    username = str(credentials.get('username') or '')
    password = str(credentials.get('password') or '')

    if username != admin_user or not verify_admin_password(password, admin_pass):
        log_admin_login(username, success=False, error='Invalid credentials')
        return jsonify({'ok': False, 'error': 'Invalid username or password'}), 401

    create_admin_session(
        username=username,
        ip_address=get_client_ip(),
        user_agent=request.headers.get('User-Agent', 'unknown')
    )
    log_admin_login(username, success=True)
    return jsonify({'ok': True, 'username': username}), 200


@admin_bp.route('/logout', methods=['POST'])
@admin_required
def logout():
    terminate_admin_session('logout')
    log_admin_logout(g.admin_username)
    return jsonify({'ok': True}), 200


# ---------------------------------------------------------------------------
# Audit and statistics
# ---------------------------------------------------------------------------

@admin_bp.route('/audit-logs')
@admin_required
def list_audit_logs():
    """List audit logs with pagination."""
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('per_page', 50, type=int), 100)
    action_filter = request.args.get('action', '')
    user_filter = request.args.get('user_id', '')

    query = AuditLog.query
    if action_filter:
        query = query.filter(AuditLog.action == action_filter)
    if user_filter:
        query = query.filter(AuditLog.user_id == user_filter)

    pagination = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    log_action(
        action=AuditAction.ADMIN_AUDIT_LOG_VIEWED,
        action_category=AuditCategory.READ,
        resource_type='audit_log',
        actor_type='admin',
        actor_id=g.admin_username,
        details={'page': page, 'action': action_filter or None, 'user_id': user_filter or None}
    )

    actions = [a[0] for a in db.session.query(AuditLog.action).distinct().all()]
    return jsonify({
        'ok': True,
        'audit_logs': [log.to_dict() for log in pagination.items],
        'page': pagination.page,
        'pages': pagination.pages,
        'total': pagination.total,
        'actions': sorted(actions),
    }), 200


@admin_bp.route('/audit-logs/integrity')
@admin_required
def audit_integrity():
    valid_count, invalid_count, invalid_ids = verify_audit_integrity()
    return jsonify({
        'ok': True,
        'valid': valid_count,
        'invalid': invalid_count,
        'invalid_ids': invalid_ids,
    }), 200


@admin_bp.route('/stats')
@admin_required
def admin_stats():
    """System statistics."""
    day_ago = datetime.utcnow() - timedelta(days=1)

    stats = {
        'users': {
            'total': User.query.count(),
            'active': User.query.filter_by(is_active=True).count(),
            'by_tier': _count_by(User.tier),
            'recent_24h': User.query.filter(User.created_at >= day_ago).count(),
        },
        'guardians': {'by_status': _count_by(Guardian.status)},
        'documents': {
            'total': Document.query.count(),
            'encrypted': Document.query.filter_by(is_encrypted=True).count(),
        },
        'wills': {
            'by_status': _count_by(Will.status),
            'locked': Will.query.filter_by(is_locked=True).count(),
        },
        'emergency': {
            'open_activations': EmergencyActivation.query.filter(EmergencyActivation.status.in_(
                [ActivationStatus.PENDING.value, ActivationStatus.CONFIRMED.value]
            )).count(),
            'by_status': _count_by(EmergencyActivation.status),
        },
        'support': {'open_tickets': SupportTicket.query.filter_by(status='open').count()},
        'trust_seals': get_trust_seal_statistics(),
        'backups': BackupManager().get_backup_statistics(),
        'audit': {
            'total_logs': AuditLog.query.count(),
            'failed_actions': AuditLog.query.filter_by(success=False).count(),
        },
    }
    return jsonify({'ok': True, 'stats': stats}), 200


# ---------------------------------------------------------------------------
# Backups and disaster recovery
# ---------------------------------------------------------------------------

@admin_bp.route('/backups')
@admin_required
def backups_index():
    backups = BackupManager().list_backups(
        backup_type=request.args.get('type'),
        status=request.args.get('status'),
        limit=min(request.args.get('limit', 50, type=int), 200),
    )
    return jsonify({'ok': True, 'backups': [b.to_dict() for b in backups]}), 200


@admin_bp.route('/backups', methods=['POST'])
@admin_required
@rate_limit('admin_actions')
def backups_create():
    payload = _payload()
    compress = coerce_to_bool(payload.get('compress'))
    record = BackupManager().create_backup(
        backup_type=payload.get('backup_type') or 'database',
        compress=True if compress is None else compress,
        actor_id=g.admin_username,
    )
    return jsonify({'ok': True, 'backup': record.to_dict()}), 201


@admin_bp.route('/backups/statistics')
@admin_required
def backups_statistics():
    return jsonify({'ok': True, 'statistics': BackupManager().get_backup_statistics()}), 200


@admin_bp.route('/backups/cleanup', methods=['POST'])
@admin_required
@rate_limit('admin_actions')
def backups_cleanup():
    return jsonify({'ok': True, **BackupManager().cleanup_old_backups()}), 200


@admin_bp.route('/backups/<backup_id>/verify', methods=['POST'])
@admin_required
def backups_verify(backup_id: str):
    result = BackupManager().verify_backup_integrity(backup_id, actor_id=g.admin_username)
    return jsonify({'ok': True, **result}), 200


@admin_bp.route('/backups/<backup_id>/restore', methods=['POST'])
@admin_required
@rate_limit('admin_actions')
def backups_restore(backup_id: str):
    """
    Restore tables from a backup.

    Body (all optional): tables (list), verify_integrity (default true),
    dry_run (default false)
    """
    payload = _payload()
    tables = payload.get('tables')
    if tables is not None and not isinstance(tables, list):
        return jsonify({'ok': False, 'error': 'tables must be a list'}), 400

    verify = coerce_to_bool(payload.get('verify_integrity'))
    restore = BackupManager().restore_from_backup(
        backup_id,
        tables=tables,
        verify_integrity=True if verify is None else verify,
        dry_run=coerce_to_bool(payload.get('dry_run')) or False,
        actor_id=g.admin_username,
    )
    return jsonify({'ok': True, 'restore': restore.to_dict()}), 200


@admin_bp.route('/disaster-recovery/plan')
@admin_required
def disaster_recovery_plan():
    return jsonify({'ok': True, 'plan': DisasterRecovery().get_plan()}), 200


@admin_bp.route('/disaster-recovery/execute', methods=['POST'])
@admin_required
@rate_limit('admin_actions')
def disaster_recovery_execute():
    payload = _payload()
    result = DisasterRecovery().execute_disaster_recovery(
        reason=payload.get('reason', ''),
        dry_run=coerce_to_bool(payload.get('dry_run')) or False,
        actor_id=g.admin_username,
    )
    return jsonify({'ok': result['success'], 'result': result}), 200 if result['success'] else 500


# ---------------------------------------------------------------------------
# Trust seals
# ---------------------------------------------------------------------------

@admin_bp.route('/trust-seals/statistics')
@admin_required
def trust_seal_statistics():
    return jsonify({'ok': True, 'statistics': get_trust_seal_statistics()}), 200


@admin_bp.route('/trust-seals/<seal_id>/revoke', methods=['POST'])
@admin_required
def trust_seal_revoke(seal_id: str):
    reason = _payload().get('reason')
    if not reason:
        return jsonify({'ok': False, 'error': 'A revocation reason is required'}), 400

    seal = revoke_trust_seal(seal_id, reason, revoked_by=g.admin_username)
    return jsonify({'ok': True, 'trust_seal': seal.to_dict()}), 200


@admin_bp.route('/trust-seals/<seal_id>/renew', methods=['POST'])
@admin_required
def trust_seal_renew(seal_id: str):
    extension_days = _payload().get('extension_days', SEAL_VALIDITY_DAYS)
    if isinstance(extension_days, bool) or not isinstance(extension_days, int):
        return jsonify({'ok': False, 'error': 'extension_days must be an integer'}), 400

    seal = renew_trust_seal(seal_id, extension_days, renewed_by=g.admin_username)
    return jsonify({'ok': True, 'trust_seal': seal.to_dict()}), 200


@admin_bp.route('/trust-seals/<seal_id>/history')
@admin_required
def trust_seal_history(seal_id: str):
    return jsonify({'ok': True, 'history': get_verification_history(seal_id)}), 200


# ---------------------------------------------------------------------------
# Support tickets
# ---------------------------------------------------------------------------

@admin_bp.route('/support/tickets')
@admin_required
def support_tickets():
    tickets = list_tickets(status=request.args.get('status'))
    return jsonify({'ok': True, 'tickets': [t.to_dict() for t in tickets]}), 200


@admin_bp.route('/support/tickets/<int:ticket_id>', methods=['PATCH'])
@admin_required
def support_ticket_update(ticket_id: int):
    status = _payload().get('status')
    if not status:
        return jsonify({'ok': False, 'error': 'status is required'}), 400

    ticket = update_ticket_status(ticket_id, status)
    return jsonify({'ok': True, 'ticket': ticket.to_dict()}), 200


@admin_bp.route('/support/statistics')
@admin_required
def support_statistics():
    return jsonify({'ok': True, 'statistics': get_support_statistics()}), 200
