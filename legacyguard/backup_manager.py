"""
Backup and disaster recovery.

Backups are JSON snapshots of the priority tables (and/or the redacted
application configuration), optionally gzip-compressed, stored under
BACKUP_DIR/<type>/<YYYY-MM-DD>/ and tracked as BackupRecord rows with a
SHA-256 checksum of the stored bytes.

A restore replaces the rows of the selected tables, and of every table
referencing them, with the rows in the backup, in a single transaction,
and is logged in RestoreLog.
"""

import os
import gzip
import json
import secrets
import threading
from datetime import datetime, date, timedelta
from typing import Dict, List, Any, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from legacyguard import db
from legacyguard.models import (
    User, Guardian, Document, GuardianDocumentAccess, Will, TrustSeal, EmergencyActivation,
    EmergencyNotification, TimeCapsule, SupportTicket, SupportInteraction, AuditLog,
    BackupRecord, BackupStatus, RestoreLog
)
from legacyguard.audit_logger import (
    log_action, log_backup_event, verify_audit_integrity, AuditAction, AuditCategory
)
from legacyguard.email_service import send_template_email
from legacyguard.utils import calculate_sha256

BACKUP_TYPES = ['database', 'configuration', 'full']
BACKUP_FORMAT_VERSION = '1.1'

# Insert order; deletes run in reverse
PRIORITY_TABLES = {
    'users': User,
    'guardians': Guardian,
    'documents': Document,
    'guardian_document_access': GuardianDocumentAccess,
    'wills': Will,
    'trust_seals': TrustSeal,
    'emergency_activations': EmergencyActivation,
    'emergency_notifications': EmergencyNotification,
    'time_capsules': TimeCapsule,
    'support_tickets': SupportTicket,
    'support_interactions': SupportInteraction,
    'audit_logs': AuditLog,
}

# Foreign keys between snapshot tables (child -> parents)
TABLE_REFERENCES = {
    'guardians': ('users',),
    'documents': ('users',),
    'guardian_document_access': ('guardians', 'documents'),
    'wills': ('users',),
    'trust_seals': ('users', 'wills'),
    'emergency_activations': ('users',),
    'emergency_notifications': ('emergency_activations', 'guardians'),
    'time_capsules': ('users',),
    'support_tickets': ('users',),
    'support_interactions': ('support_tickets',),
}

REDACTED_CONFIG_MARKERS = ('SECRET', 'PASSWORD', 'TOKEN', 'KEY')

_backup_lock = threading.Lock()


class BackupError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f'Cannot serialize {type(value).__name__}')


def _redacted_config() -> Dict[str, Any]:
    config = {}
    for key, value in sorted(current_app.config.items()):
        if not key.isupper():
            continue
        if any(marker in key for marker in REDACTED_CONFIG_MARKERS):
            config[key] = '***' if value else ''
        elif isinstance(value, (str, int, float, bool)) or value is None:
            config[key] = value
    return config


def _dump_table(model) -> List[Dict[str, Any]]:
    table = model.__table__
    rows = db.session.execute(table.select().order_by(*table.primary_key.columns)).mappings().all()
    return [dict(row) for row in rows]


def with_dependent_tables(tables: List[str]) -> List[str]:
    """
    The requested tables plus every snapshot table that references them,
    in insert order.
    """
    selected = set(tables)
    changed = True
    while changed:
        changed = False
        for child, parents in TABLE_REFERENCES.items():
            if child not in selected and selected.intersection(parents):
                selected.add(child)
                changed = True
    return [name for name in PRIORITY_TABLES if name in selected]


def _coerce_row(model, row: Dict[str, Any]) -> Dict[str, Any]:
    """Turn ISO strings from a backup back into date/datetime column values."""
    coerced = {}
    for column in model.__table__.columns:
        if column.name not in row:
            continue
        value = row[column.name]
        if isinstance(value, str):
            if isinstance(column.type, db.DateTime):
                value = datetime.fromisoformat(value)
            elif isinstance(column.type, db.Date):
                value = date.fromisoformat(value)
        coerced[column.name] = value
    return coerced


class BackupManager:
    """Creates, verifies, restores and expires backups."""

    def __init__(self, backup_dir: Optional[str] = None):
        self.backup_dir = backup_dir or current_app.config['BACKUP_DIR']

    def _backup_path(self, backup_type: str, now: datetime) -> str:
        directory = os.path.join(self.backup_dir, backup_type, now.strftime('%Y-%m-%d'))
        os.makedirs(directory, exist_ok=True)
        return os.path.join(directory, f'{now.strftime("%H%M%S")}_{secrets.token_hex(4)}.backup')

    def _build_payload(self, record: BackupRecord) -> Dict[str, Any]:
        payload = {
            'metadata': {
                'backup_id': record.id,
                'backup_type': record.backup_type,
                'created_at': record.created_at.isoformat(),
                'version': BACKUP_FORMAT_VERSION,
            },
        }
        if record.backup_type in ('database', 'full'):
            payload['tables'] = {name: _dump_table(model) for name, model in PRIORITY_TABLES.items()}
        if record.backup_type in ('configuration', 'full'):
            payload['configuration'] = _redacted_config()
        return payload

    def create_backup(self, backup_type: str = 'database', compress: bool = True,
                      retention_days: int = 30, actor_id: Optional[str] = None) -> BackupRecord:
        """
        Write a backup of the given type.

        Raises:
            BackupError: unknown type (400), another backup running (409),
                         write failure (500; the record is marked failed)
        """
        if backup_type not in BACKUP_TYPES:
            raise BackupError(f'Unknown backup type: {backup_type}')
        if not _backup_lock.acquire(blocking=False):
            raise BackupError('Backup is already in progress', 409)

        try:
            record = BackupRecord(
                backup_type=backup_type,
                status=BackupStatus.CREATING.value,
                compressed=compress,
                retention_days=retention_days,
                created_at=datetime.utcnow(),
            )
            db.session.add(record)
            db.session.commit()

            try:
                payload = self._build_payload(record)
                data = json.dumps(payload, sort_keys=True, default=_json_default).encode('utf-8')
                if compress:
                    data = gzip.compress(data, mtime=0)

                path = self._backup_path(backup_type, record.created_at)
                with open(path, 'wb') as f:
                    f.write(data)
            except (OSError, SQLAlchemyError, TypeError) as e:
                db.session.rollback()
                current_app.logger.error(f'Backup {record.id} failed: {e}')
                record.status = BackupStatus.FAILED.value
                record.error_message = str(e)
                record.completed_at = datetime.utcnow()
                db.session.commit()
                log_backup_event(AuditAction.BACKUP_FAILED, record.id, success=False,
                                 error=str(e), actor_id=actor_id)
                raise BackupError('Backup failed', 500) from e

            record.location = path
            record.size = len(data)
            record.checksum = calculate_sha256(data)
            record.record_counts_json = json.dumps(
                {name: len(rows) for name, rows in payload.get('tables', {}).items()}, sort_keys=True
            )
            record.status = BackupStatus.COMPLETED.value
            record.completed_at = datetime.utcnow()
            db.session.commit()
        finally:
            _backup_lock.release()

        log_backup_event(AuditAction.BACKUP_CREATED, record.id, actor_id=actor_id,
                         details={'backup_type': backup_type, 'size': record.size})
        current_app.logger.info(f'Backup {record.id} ({backup_type}) completed, {record.size} bytes')
        return record

    def get_backup(self, backup_id: str) -> BackupRecord:
        record = db.session.get(BackupRecord, backup_id)
        if record is None:
            raise BackupError('Backup not found', 404)
        return record

    def list_backups(self, backup_type: Optional[str] = None, status: Optional[str] = None,
                     limit: int = 50) -> List[BackupRecord]:
        query = BackupRecord.query
        if backup_type:
            query = query.filter_by(backup_type=backup_type)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(BackupRecord.created_at.desc()).limit(limit).all()

    def verify_backup_integrity(self, backup_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Recompute the checksum of the stored file. A missing file or a
        mismatch marks the backup corrupted.
        """
        record = self.get_backup(backup_id)
        if record.status == BackupStatus.FAILED.value:
            return {'backup_id': record.id, 'valid': False, 'error': 'Backup did not complete'}

        error = None
        actual = None
        if not record.location or not os.path.exists(record.location):
            error = 'Backup file not found'
        else:
            with open(record.location, 'rb') as f:
                actual = calculate_sha256(f.read())
            if actual != record.checksum:
                error = 'Checksum mismatch'

        if error:
            record.status = BackupStatus.CORRUPTED.value
            record.error_message = error
            db.session.commit()
            current_app.logger.warning(f'Backup {record.id} failed verification: {error}')

        log_backup_event(AuditAction.BACKUP_VERIFIED, record.id, success=error is None,
                         error=error, actor_id=actor_id)
        return {
            'backup_id': record.id,
            'valid': error is None,
            'expected_checksum': record.checksum,
            'actual_checksum': actual,
            'error': error,
        }

    def load_backup(self, record: BackupRecord) -> Dict[str, Any]:
        with open(record.location, 'rb') as f:
            data = f.read()
        if record.compressed:
            data = gzip.decompress(data)
        return json.loads(data.decode('utf-8'))

    def get_latest_valid_backup(self) -> Optional[BackupRecord]:
        """Newest completed database or full backup that passes verification."""
        candidates = BackupRecord.query.filter(
            BackupRecord.status == BackupStatus.COMPLETED.value,
            BackupRecord.backup_type.in_(['database', 'full'])
        ).order_by(BackupRecord.created_at.desc()).all()

        for record in candidates:
            if self.verify_backup_integrity(record.id)['valid']:
                return record
        return None

    def restore_from_backup(self, backup_id: str, tables: Optional[List[str]] = None,
                            verify_integrity: bool = True, dry_run: bool = False,
                            actor_id: Optional[str] = None) -> RestoreLog:
        """
        Replace the rows of the selected tables (all priority tables by
        default) with the rows stored in a backup.

        Raises:
            BackupError: unknown backup (404), not restorable (400/409),
                         restore failure (500; logged as failed)
        """
        record = self.get_backup(backup_id)
        if record.status != BackupStatus.COMPLETED.value:
            raise BackupError(f'Backup is not restorable (status: {record.status})', 409)
        if record.backup_type == 'configuration':
            raise BackupError('Backup contains no database tables')

        selected = list(tables) if tables else list(PRIORITY_TABLES)
        unknown = [name for name in selected if name not in PRIORITY_TABLES]
        if unknown:
            raise BackupError(f'Unknown tables: {", ".join(unknown)}')
        selected = with_dependent_tables(selected)

        if verify_integrity and not self.verify_backup_integrity(record.id, actor_id)['valid']:
            raise BackupError('Backup failed integrity verification', 409)

        restore = RestoreLog(
            backup_id=record.id,
            status='started',
            dry_run=dry_run,
            tables_json=json.dumps(selected),
            started_at=datetime.utcnow(),
        )
        db.session.add(restore)
        db.session.commit()

        try:
            payload = self.load_backup(record)
            backup_tables = payload.get('tables', {})
            counts = {}

            for name in reversed(selected):
                if not dry_run:
                    db.session.execute(PRIORITY_TABLES[name].__table__.delete())

            for name in selected:
                model = PRIORITY_TABLES[name]
                rows = [_coerce_row(model, row) for row in backup_tables.get(name, [])]
                if rows and not dry_run:
                    db.session.execute(model.__table__.insert(), rows)
                counts[name] = len(rows)

            restore.restored_counts_json = json.dumps(counts, sort_keys=True)
            restore.status = 'completed'
            restore.completed_at = datetime.utcnow()
            db.session.commit()
            if not dry_run:
                # Loaded objects still describe the replaced rows
                restored_models = tuple(PRIORITY_TABLES[name] for name in selected)
                for instance in list(db.session.identity_map.values()):
                    if isinstance(instance, restored_models):
                        db.session.expunge(instance)
        except (OSError, ValueError, SQLAlchemyError) as e:
            db.session.rollback()
            current_app.logger.error(f'Restore from backup {record.id} failed: {e}')
            restore.status = 'failed'
            restore.error_message = str(e)
            restore.completed_at = datetime.utcnow()
            db.session.commit()
            log_action(
                action=AuditAction.RESTORE_EXECUTED,
                action_category=AuditCategory.SYSTEM,
                resource_type='backup',
                resource_id=record.id,
                actor_type='admin' if actor_id else 'system',
                actor_id=actor_id,
                success=False,
                error_message=str(e)
            )
            raise BackupError('Restore failed', 500) from e

        log_action(
            action=AuditAction.RESTORE_EXECUTED,
            action_category=AuditCategory.SYSTEM,
            resource_type='backup',
            resource_id=record.id,
            actor_type='admin' if actor_id else 'system',
            actor_id=actor_id,
            details={'tables': selected, 'dry_run': dry_run, 'counts': counts}
        )
        current_app.logger.info(
            f'Restore from backup {record.id} {"simulated" if dry_run else "completed"}: {counts}'
        )
        return restore

    def cleanup_old_backups(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Delete backups older than their retention period (file and record)."""
        now = now or datetime.utcnow()
        deleted = []
        freed = 0

        for record in BackupRecord.query.all():
            if record.created_at + timedelta(days=record.retention_days) >= now:
                continue
            if record.location and os.path.exists(record.location):
                os.remove(record.location)
            freed += record.size or 0
            deleted.append(record.id)
            db.session.delete(record)

        db.session.commit()
        for backup_id in deleted:
            log_backup_event(AuditAction.BACKUP_DELETED, backup_id, details={'reason': 'retention'})

        if deleted:
            current_app.logger.info(f'Removed {len(deleted)} expired backup(s)')
        return {'deleted': len(deleted), 'deleted_ids': deleted, 'freed_bytes': freed}

    def get_backup_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        records = BackupRecord.query.order_by(BackupRecord.created_at.asc()).all()

        by_status: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for record in records:
            by_status[record.status] = by_status.get(record.status, 0) + 1
            by_type[record.backup_type] = by_type.get(record.backup_type, 0) + 1

        completed = [r for r in records if r.status == BackupStatus.COMPLETED.value]
        recent = [r for r in completed if r.created_at >= now - timedelta(days=7)]

        return {
            'total_backups': len(records),
            'by_status': by_status,
            'by_type': by_type,
            'total_size': sum(r.size or 0 for r in completed),
            'oldest_backup': records[0].created_at.isoformat() if records else None,
            'newest_backup': records[-1].created_at.isoformat() if records else None,
            'last_successful_backup': completed[-1].created_at.isoformat() if completed else None,
            'backup_frequency_per_day': round(len(recent) / 7, 2),
        }

    def run_scheduled_backup(self) -> Dict[str, Any]:
        """Nightly job: a database backup followed by retention cleanup."""
        record = self.create_backup('database')
        cleanup = self.cleanup_old_backups()
        return {'backup': record.to_dict(), 'cleanup': cleanup}


# ---------------------------------------------------------------------------
# Disaster recovery
# ---------------------------------------------------------------------------

CRITICAL_FUNCTIONS = {
    'user_authentication': 'Users can be looked up for token authentication',
    'will_generation': 'Will storage is writable',
    'document_access': 'Document storage is writable',
    'audit_trail': 'Audit records pass their integrity check',
    'emergency_notifications': 'Outbound email is configured',
}

ESCALATION_STEPS = [
    {'level': 1, 'after_minutes': 0, 'role': 'Technical lead',
     'action': 'Investigate the failed recovery and retry from an older backup'},
    {'level': 2, 'after_minutes': 30, 'role': 'System administrator',
     'action': 'Switch to the standby database and restore manually'},
    {'level': 3, 'after_minutes': 60, 'role': 'Executive team',
     'action': 'Notify affected customers and regulators'},
]


class DisasterRecovery:
    """Restores service from the newest valid backup and reports on it."""

    RTO_MINUTES = 60
    RPO_MINUTES = 15

    def __init__(self, backup_manager: Optional[BackupManager] = None):
        self.backup_manager = backup_manager or BackupManager()

    def emergency_contacts(self) -> List[str]:
        contacts = current_app.config.get('DISASTER_RECOVERY_CONTACTS') or current_app.config['SUPPORT_EMAIL']
        return [c.strip() for c in contacts.split(',') if c.strip()]

    def get_plan(self) -> Dict[str, Any]:
        return {
            'priority_tables': list(PRIORITY_TABLES),
            'rto_minutes': self.RTO_MINUTES,
            'rpo_minutes': self.RPO_MINUTES,
            'critical_functions': dict(CRITICAL_FUNCTIONS),
            'emergency_contacts': self.emergency_contacts(),
            'escalation_steps': [dict(step) for step in ESCALATION_STEPS],
        }

    def _alert(self, stage: str, message: str) -> int:
        sent = 0
        for contact in self.emergency_contacts():
            ok, error = send_template_email(contact, 'disaster_recovery_alert', {
                'stage': stage,
                'timestamp': datetime.utcnow().strftime('%Y-%m-%d %H:%M UTC'),
                'message': message,
            })
            if ok:
                sent += 1
            else:
                current_app.logger.error(f'Disaster recovery alert to {contact} failed: {error}')
        return sent

    def verify_critical_functions(self) -> Dict[str, bool]:
        results = {}

        try:
            User.query.limit(1).all()
            results['user_authentication'] = True
        except SQLAlchemyError as e:
            current_app.logger.error(f'Critical function check (database) failed: {e}')
            db.session.rollback()
            results['user_authentication'] = False

        results['will_generation'] = os.access(current_app.config['WILL_STORAGE_DIR'], os.W_OK)
        results['document_access'] = os.access(current_app.config['DOCUMENT_STORAGE_DIR'], os.W_OK)

        try:
            _, invalid_count, _ = verify_audit_integrity()
            results['audit_trail'] = invalid_count == 0
        except SQLAlchemyError as e:
            current_app.logger.error(f'Critical function check (audit) failed: {e}')
            db.session.rollback()
            results['audit_trail'] = False

        results['emergency_notifications'] = bool(
            current_app.config.get('MAIL_SUPPRESS_SEND') or current_app.config.get('SMTP_HOST')
        )
        return results

    def execute_disaster_recovery(self, reason: str = '', dry_run: bool = False,
                                  actor_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Restore the newest valid backup, then check the critical functions.
        Contacts are alerted at the start and the end; a failure escalates.
        """
        started = datetime.utcnow()
        self._alert('started', f'Disaster recovery started. Reason: {reason or "not given"}.')

        backup = self.backup_manager.get_latest_valid_backup()
        restore = None
        error = None
        if backup is None:
            error = 'No valid backup available'
        else:
            try:
                restore = self.backup_manager.restore_from_backup(
                    backup.id, verify_integrity=False, dry_run=dry_run, actor_id=actor_id
                )
            except BackupError as e:
                error = e.message

        checks = self.verify_critical_functions() if error is None else {}
        failed_checks = [name for name, ok in checks.items() if not ok]
        if error is None and failed_checks:
            error = f'Critical functions failing: {", ".join(failed_checks)}'

        success = error is None
        duration = (datetime.utcnow() - started).total_seconds()

        escalation = []
        if success:
            self._alert('completed', f'Recovered from backup {backup.id} in {duration:.0f} seconds.')
        else:
            current_app.logger.critical(f'Disaster recovery failed: {error}')
            escalation = [dict(step) for step in ESCALATION_STEPS]
            steps = '\n'.join(f'Level {s["level"]} ({s["role"]}): {s["action"]}' for s in escalation)
            self._alert('escalated', f'Disaster recovery failed: {error}\n\n{steps}')

        log_action(
            action=AuditAction.DISASTER_RECOVERY_EXECUTED,
            action_category=AuditCategory.SYSTEM,
            resource_type='backup',
            resource_id=backup.id if backup else None,
            actor_type='admin' if actor_id else 'system',
            actor_id=actor_id,
            details={'reason': reason, 'dry_run': dry_run, 'critical_functions': checks},
            success=success,
            error_message=error
        )

        return {
            'success': success,
            'backup_id': backup.id if backup else None,
            'restore': restore.to_dict() if restore else None,
            'critical_functions': checks,
            'duration_seconds': round(duration, 3),
            'rto_met': duration <= self.RTO_MINUTES * 60,
            'escalation': escalation,
            'error': error,
        }
