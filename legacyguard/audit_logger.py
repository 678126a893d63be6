"""
Audit logging module for immutable audit trail.

All significant actions are logged with integrity verification.
This module is append-only - records are never modified or deleted.
"""

import json
from datetime import datetime
from typing import Dict, Any, Optional, List
from flask import request, current_app

from legacyguard import db
from legacyguard.models import AuditLog


class AuditAction:
    """Constants for audit actions."""
    # Account actions
    USER_REGISTERED = 'user_registered'
    USER_CHECKED_IN = 'user_checked_in'
    RECOVERY_KIT_GENERATED = 'recovery_kit_generated'
    RECOVERY_KIT_VERIFIED = 'recovery_kit_verified'

    # Guardian actions
    GUARDIAN_INVITED = 'guardian_invited'
    GUARDIAN_ACCEPTED = 'guardian_accepted'
    GUARDIAN_DECLINED = 'guardian_declined'
    GUARDIAN_UPDATED = 'guardian_updated'
    GUARDIAN_REVOKED = 'guardian_revoked'
    GUARDIAN_DELETED = 'guardian_deleted'
    DOCUMENT_ACCESS_GRANTED = 'document_access_granted'
    DOCUMENT_ACCESS_REVOKED = 'document_access_revoked'

    # Document actions
    DOCUMENT_UPLOADED = 'document_uploaded'
    DOCUMENT_UPDATED = 'document_updated'
    DOCUMENT_DOWNLOADED = 'document_downloaded'
    DOCUMENT_DELETED = 'document_deleted'

    # Will and trust seal actions
    VALIDATION_PASSED = 'validation_passed'
    VALIDATION_FAILED = 'validation_failed'
    WILL_GENERATED = 'will_generated'
    WILL_REGENERATED = 'will_regenerated'
    TRUST_SEAL_ISSUED = 'trust_seal_issued'
    TRUST_SEAL_VERIFIED = 'trust_seal_verified'
    TRUST_SEAL_REVOKED = 'trust_seal_revoked'
    TRUST_SEAL_RENEWED = 'trust_seal_renewed'

    # Dead man's switch
    INACTIVITY_CHECK = 'inactivity_check'
    EMERGENCY_ESCALATED = 'emergency_escalated'
    EMERGENCY_CANCELLED = 'emergency_cancelled'
    EMERGENCY_ACCESS_GRANTED = 'emergency_access_granted'

    # Time capsules
    TIME_CAPSULE_CREATED = 'time_capsule_created'
    TIME_CAPSULE_DELIVERED = 'time_capsule_delivered'

    # Support
    SUPPORT_TICKET_CREATED = 'support_ticket_created'

    # Email actions
    EMAIL_SENT = 'email_sent'
    EMAIL_FAILED = 'email_failed'

    # Backup and recovery
    BACKUP_CREATED = 'backup_created'
    BACKUP_FAILED = 'backup_failed'
    BACKUP_VERIFIED = 'backup_verified'
    BACKUP_DELETED = 'backup_deleted'
    RESTORE_EXECUTED = 'restore_executed'
    DISASTER_RECOVERY_EXECUTED = 'disaster_recovery_executed'

    # Admin actions
    ADMIN_LOGIN = 'admin_login'
    ADMIN_LOGIN_FAILED = 'admin_login_failed'
    ADMIN_LOGOUT = 'admin_logout'
    ADMIN_AUDIT_LOG_VIEWED = 'admin_audit_log_viewed'

    ERROR_OCCURRED = 'error_occurred'


class AuditCategory:
    """Constants for audit action categories."""
    CREATE = 'create'
    READ = 'read'
    UPDATE = 'update'
    DELETE = 'delete'
    GENERATE = 'generate'
    SEND = 'send'
    AUTH = 'auth'
    SYSTEM = 'system'


def log_action(
    action: str,
    action_category: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    user_id: Optional[str] = None,
    actor_type: str = 'system',
    actor_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_message: Optional[str] = None
) -> AuditLog:
    """
    Log an action to the audit trail.

    Args:
        action: The action performed (use AuditAction constants)
        action_category: Category of action (use AuditCategory constants)
        resource_type: Type of resource affected
        resource_id: Identifier of the resource
        user_id: Account the action concerns, if any
        actor_type: Type of actor ('user', 'guardian', 'admin', 'system', 'public')
        actor_id: Identifier of the actor (user id, IP, admin username)
        details: Additional structured details
        success: Whether the action succeeded
        error_message: Error message if action failed

    Returns:
        The created AuditLog record, or None if it could not be written
    """
    try:
        ip_address = None
        user_agent = None

        try:
            if request:
                ip_address = request.remote_addr
                user_agent = request.headers.get('User-Agent')

                if actor_type in ('user', 'public') and not actor_id:
                    actor_id = ip_address
        except RuntimeError:
            # Outside request context
            pass

        audit_log = AuditLog(
            timestamp=datetime.utcnow(),
            action=action,
            action_category=action_category,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            user_id=user_id,
            actor_type=actor_type,
            actor_id=actor_id,
            details_json=json.dumps(details, sort_keys=True, default=str) if details else None,
            success=success,
            error_message=error_message,
            ip_address=ip_address,
            user_agent=user_agent
        )

        audit_log.integrity_hash = audit_log.compute_integrity_hash()

        db.session.add(audit_log)
        db.session.commit()

        return audit_log

    except Exception as e:
        # Audit logging must not break the calling operation
        db.session.rollback()
        current_app.logger.error(f'Failed to create audit log: {str(e)}')
        return None


def log_user_registered(user_id: str) -> AuditLog:
    return log_action(
        action=AuditAction.USER_REGISTERED,
        action_category=AuditCategory.CREATE,
        resource_type='user',
        resource_id=user_id,
        user_id=user_id,
        actor_type='user',
        actor_id=user_id
    )


def log_guardian_event(action: str, user_id: str, guardian_id: int, actor_type: str = 'user',
                       details: Dict[str, Any] = None) -> AuditLog:
    """Log a guardian lifecycle change."""
    categories = {
        AuditAction.GUARDIAN_INVITED: AuditCategory.CREATE,
        AuditAction.GUARDIAN_DELETED: AuditCategory.DELETE,
    }
    return log_action(
        action=action,
        action_category=categories.get(action, AuditCategory.UPDATE),
        resource_type='guardian',
        resource_id=guardian_id,
        user_id=user_id,
        actor_type=actor_type,
        actor_id=user_id if actor_type == 'user' else None,
        details=details
    )


def log_document_event(action: str, user_id: str, document_id: int,
                       details: Dict[str, Any] = None, actor_type: str = 'user') -> AuditLog:
    categories = {
        AuditAction.DOCUMENT_UPLOADED: AuditCategory.CREATE,
        AuditAction.DOCUMENT_DOWNLOADED: AuditCategory.READ,
        AuditAction.DOCUMENT_DELETED: AuditCategory.DELETE,
    }
    return log_action(
        action=action,
        action_category=categories.get(action, AuditCategory.UPDATE),
        resource_type='document',
        resource_id=document_id,
        user_id=user_id,
        actor_type=actor_type,
        actor_id=user_id if actor_type == 'user' else None,
        details=details
    )


def log_validation_result(user_id: str, passed: bool, errors: list = None) -> AuditLog:
    """Log will validation result."""
    return log_action(
        action=AuditAction.VALIDATION_PASSED if passed else AuditAction.VALIDATION_FAILED,
        action_category=AuditCategory.SYSTEM,
        resource_type='will',
        user_id=user_id,
        actor_type='user',
        actor_id=user_id,
        details={'error_count': len(errors), 'fields': [e['field'] for e in errors]} if errors else None,
        success=passed
    )


def log_will_generated(user_id: str, will_id: int, pdf_hash: str, is_regeneration: bool = False) -> AuditLog:
    return log_action(
        action=AuditAction.WILL_REGENERATED if is_regeneration else AuditAction.WILL_GENERATED,
        action_category=AuditCategory.GENERATE,
        resource_type='will',
        resource_id=will_id,
        user_id=user_id,
        actor_type='user',
        actor_id=user_id,
        details={'pdf_hash': pdf_hash, 'is_regeneration': is_regeneration}
    )


def log_email_sent(recipient: str, template: str, success: bool, error: str = None,
                   user_id: str = None) -> AuditLog:
    """Log email delivery."""
    return log_action(
        action=AuditAction.EMAIL_SENT if success else AuditAction.EMAIL_FAILED,
        action_category=AuditCategory.SEND,
        resource_type='email',
        resource_id=template,
        user_id=user_id,
        actor_type='system',
        details={'recipient': recipient, 'template': template},
        success=success,
        error_message=error
    )


def log_emergency_event(action: str, user_id: str, activation_id: int,
                        details: Dict[str, Any] = None, actor_type: str = 'system') -> AuditLog:
    return log_action(
        action=action,
        action_category=AuditCategory.SYSTEM if actor_type == 'system' else AuditCategory.UPDATE,
        resource_type='emergency_activation',
        resource_id=activation_id,
        user_id=user_id,
        actor_type=actor_type,
        details=details
    )


def log_backup_event(action: str, backup_id: str, success: bool = True,
                     details: Dict[str, Any] = None, error: str = None, actor_id: str = None) -> AuditLog:
    return log_action(
        action=action,
        action_category=AuditCategory.SYSTEM,
        resource_type='backup',
        resource_id=backup_id,
        actor_type='admin' if actor_id else 'system',
        actor_id=actor_id,
        details=details,
        success=success,
        error_message=error
    )


def log_admin_login(username: str, success: bool, error: str = None) -> AuditLog:
    """Log admin login attempt."""
    return log_action(
        action=AuditAction.ADMIN_LOGIN if success else AuditAction.ADMIN_LOGIN_FAILED,
        action_category=AuditCategory.AUTH,
        resource_type='admin_session',
        resource_id=username,
        actor_type='admin',
        actor_id=username,
        success=success,
        error_message=error
    )


def log_admin_logout(username: str) -> AuditLog:
    return log_action(
        action=AuditAction.ADMIN_LOGOUT,
        action_category=AuditCategory.AUTH,
        resource_type='admin_session',
        resource_id=username,
        actor_type='admin',
        actor_id=username
    )


def verify_audit_integrity() -> tuple:
    """
    Verify integrity of all audit log records.

    Returns:
        Tuple of (valid_count, invalid_count, invalid_ids)
    """
    logs = AuditLog.query.all()
    valid_count = 0
    invalid_count = 0
    invalid_ids = []

    for log in logs:
        if log.verify_integrity():
            valid_count += 1
        else:
            invalid_count += 1
            invalid_ids.append(log.id)

    return valid_count, invalid_count, invalid_ids


def get_audit_trail_for_user(user_id: str, limit: int = 200) -> List[Dict[str, Any]]:
    """Audit entries for an account, oldest first."""
    logs = AuditLog.query.filter_by(user_id=user_id) \
                         .order_by(AuditLog.timestamp.asc()) \
                         .limit(limit) \
                         .all()
    return [log.to_dict() for log in logs]
