"""
Dead man's switch.

A daily job measures how long each account has been inactive and walks it
through three escalation levels:

    warning   (DMS_WARNING_DAYS)    -> level 1: the user and guardians are told
    critical  (DMS_CRITICAL_DAYS)   -> level 2: guardians are alerted again
    emergency (DMS_EMERGENCY_DAYS)  -> level 3: emergency guardians get access
                                       to the documents, on_death time
                                       capsules are released

Progress is persisted in EmergencyActivation so a restart never repeats or
loses an escalation. Each level is notified once. Any sign of life from the
user (API activity, check-in, the cancellation link) cancels the activation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional

from flask import current_app

from legacyguard import db
from legacyguard.models import (
    User, Guardian, GuardianStatus, EmergencyActivation, EmergencyNotification, ActivationStatus
)
from legacyguard.security import generate_token
from legacyguard.email_service import send_template_email
from legacyguard.audit_logger import log_emergency_event, AuditAction
from legacyguard.guardians import grant_emergency_access, revoke_emergency_access
from legacyguard.time_capsules import deliver_on_death_capsules

INACTIVITY_LEVELS = ['warning', 'critical', 'emergency']

ESCALATION_LEVELS = {
    'warning': 1,
    'critical': 2,
    'emergency': 3,
}

FINAL_ESCALATION_LEVEL = 3


class DeadMansSwitchError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class InactiveUser:
    user: User
    days_inactive: int
    inactivity_level: str
    guardians: List[Guardian] = field(default_factory=list)

    @property
    def escalation_level(self) -> int:
        return ESCALATION_LEVELS[self.inactivity_level]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.user.id,
            'email': self.user.email,
            'days_inactive': self.days_inactive,
            'inactivity_level': self.inactivity_level,
            'last_active_at': self.user.last_active_at.isoformat() if self.user.last_active_at else None,
            'guardians': len(self.guardians),
        }


def get_config() -> Dict[str, int]:
    config = current_app.config
    return {
        'warning_days': config['DMS_WARNING_DAYS'],
        'critical_days': config['DMS_CRITICAL_DAYS'],
        'emergency_days': config['DMS_EMERGENCY_DAYS'],
        'max_inactivity_days': config['DMS_MAX_INACTIVITY_DAYS'],
        'cancellation_hours': config['DMS_CANCELLATION_HOURS'],
    }


def classify_inactivity(days_inactive: int, config: Optional[Dict[str, int]] = None) -> Optional[str]:
    """Inactivity level for a number of days, or None below the warning threshold."""
    config = config or get_config()
    if days_inactive >= config['emergency_days']:
        return 'emergency'
    if days_inactive >= config['critical_days']:
        return 'critical'
    if days_inactive >= config['warning_days']:
        return 'warning'
    return None


def get_active_guardians(user_id: str) -> List[Guardian]:
    return Guardian.query.filter_by(
        user_id=user_id, status=GuardianStatus.ACTIVE.value
    ).order_by(Guardian.priority_order.asc(), Guardian.id.asc()).all()


def detect_inactive_users(now: Optional[datetime] = None) -> List[InactiveUser]:
    now = now or datetime.utcnow()
    config = get_config()
    inactive = []

    for user in User.query.filter_by(is_active=True).order_by(User.created_at.asc()).all():
        days = user.days_inactive(now)
        level = classify_inactivity(days, config)
        if level is None:
            continue
        inactive.append(InactiveUser(
            user=user,
            days_inactive=days,
            inactivity_level=level,
            guardians=get_active_guardians(user.id),
        ))

    current_app.logger.info(f'Found {len(inactive)} inactive users requiring attention')
    return inactive


def get_open_activation(user_id: str) -> Optional[EmergencyActivation]:
    return EmergencyActivation.query.filter(
        EmergencyActivation.user_id == user_id,
        EmergencyActivation.status.in_([ActivationStatus.PENDING.value, ActivationStatus.CONFIRMED.value])
    ).order_by(EmergencyActivation.triggered_at.desc()).first()


def _cancel_url(token: str) -> str:
    base = current_app.config['APP_BASE_URL'].rstrip('/')
    return f'{base}/api/emergency/cancel/{token}'


def _record_notification(activation: EmergencyActivation, recipient: str, template: str,
                         success: bool, error: Optional[str], guardian_id: Optional[int] = None):
    db.session.add(EmergencyNotification(
        activation_id=activation.id,
        guardian_id=guardian_id,
        recipient_email=recipient,
        escalation_level=activation.escalation_level,
        template=template,
        success=success,
        error_message=error,
    ))


def _notify_level(activation: EmergencyActivation, user: User, guardians: List[Guardian],
                  days_inactive: int, level_name: str) -> int:
    """Email the user and their guardians for the activation's current level."""
    sent = 0

    success, error = send_template_email(user.email, 'user_inactivity_warning', {
        'user_name': user.full_name,
        'days': days_inactive,
        'level': activation.escalation_level,
        'cancel_url': _cancel_url(activation.cancellation_token),
        'expires_at': activation.cancellation_expires_at.strftime('%d.%m.%Y %H:%M UTC'),
    }, user_id=user.id)
    _record_notification(activation, user.email, 'user_inactivity_warning', success, error)
    sent += int(success)

    template = f'crisis_{level_name}'
    for guardian in guardians:
        success, error = send_template_email(guardian.email, template, {
            'guardian_name': guardian.name,
            'user_name': user.full_name,
            'user_email': user.email,
            'days': days_inactive,
        }, user_id=user.id)
        _record_notification(activation, guardian.email, template, success, error, guardian_id=guardian.id)
        sent += int(success)

    db.session.commit()
    return sent


def _release_emergency_access(activation: EmergencyActivation, user: User) -> Dict[str, Any]:
    activation.status = ActivationStatus.CONFIRMED.value
    activation.documents_accessible = True
    granted = grant_emergency_access(user.id)
    capsules = deliver_on_death_capsules(user.id)
    activation.append_log('emergency_access_granted', document_grants=granted,
                          capsules_delivered=capsules['delivered'])
    db.session.commit()

    log_emergency_event(AuditAction.EMERGENCY_ACCESS_GRANTED, user.id, activation.id, details={
        'document_grants': granted,
        'capsules_delivered': capsules['delivered'],
    })
    return {'document_grants': granted, 'capsules_delivered': capsules['delivered']}


def escalate(inactive: InactiveUser, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Open or advance the user's activation to the level their inactivity warrants.

    Returns:
        Dict with the activation, whether the level advanced and notifications sent
    """
    now = now or datetime.utcnow()
    user = inactive.user
    level = inactive.escalation_level
    activation = get_open_activation(user.id)
    created = activation is None

    if created:
        activation = EmergencyActivation(
            user_id=user.id,
            trigger_type='inactivity',
            status=ActivationStatus.PENDING.value,
            escalation_level=level,
            triggered_at=now,
        )
        db.session.add(activation)
    elif level <= activation.escalation_level:
        activation.days_inactive = inactive.days_inactive
        db.session.commit()
        return {'activation': activation, 'advanced': False, 'notifications_sent': 0}
    else:
        activation.escalation_level = level

    activation.inactivity_level = inactive.inactivity_level
    activation.days_inactive = inactive.days_inactive
    activation.last_escalated_at = now
    activation.cancellation_token = generate_token()
    activation.cancellation_expires_at = now + timedelta(hours=current_app.config['DMS_CANCELLATION_HOURS'])
    activation.append_log('escalated', level=level, days_inactive=inactive.days_inactive,
                          guardians=[g.email for g in inactive.guardians])
    db.session.commit()

    sent = _notify_level(activation, user, inactive.guardians, inactive.days_inactive,
                         inactive.inactivity_level)

    log_emergency_event(AuditAction.EMERGENCY_ESCALATED, user.id, activation.id, details={
        'level': level,
        'days_inactive': inactive.days_inactive,
        'new_activation': created,
        'notifications_sent': sent,
    })

    if level >= FINAL_ESCALATION_LEVEL:
        _release_emergency_access(activation, user)

    return {'activation': activation, 'advanced': True, 'notifications_sent': sent}


def perform_check(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Run the daily dead man's switch check."""
    now = now or datetime.utcnow()
    current_app.logger.info(f"Starting dead man's switch check with {get_config()}")

    results = {
        'timestamp': now.isoformat(),
        'users_checked': User.query.filter_by(is_active=True).count(),
        'inactive_users': [],
        'notifications_sent': 0,
        'escalations_triggered': 0,
        'crisis_levels': {level: 0 for level in INACTIVITY_LEVELS},
        'errors': [],
    }

    for inactive in detect_inactive_users(now):
        results['inactive_users'].append(inactive.to_dict())
        results['crisis_levels'][inactive.inactivity_level] += 1

        if not inactive.guardians:
            current_app.logger.warning(f'No guardians configured for user {inactive.user.id}')

        try:
            outcome = escalate(inactive, now)
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f'Escalation failed for user {inactive.user.id}: {e}')
            results['errors'].append({'user_id': inactive.user.id, 'error': str(e)})
            continue

        results['notifications_sent'] += outcome['notifications_sent']
        if outcome['advanced'] and inactive.inactivity_level in ('critical', 'emergency'):
            results['escalations_triggered'] += 1

    current_app.logger.info(
        f"Dead man's switch check done: {len(results['inactive_users'])} inactive, "
        f"{results['notifications_sent']} notifications, "
        f"{results['escalations_triggered']} escalations"
    )
    return results


def cancel_open_activations(user_id: str, reason: str, actor_type: str = 'user') -> int:
    """
    Cancel every open activation of a user and withdraw emergency document grants.

    Returns:
        Number of activations cancelled
    """
    now = datetime.utcnow()
    open_activations = EmergencyActivation.query.filter(
        EmergencyActivation.user_id == user_id,
        EmergencyActivation.status.in_([ActivationStatus.PENDING.value, ActivationStatus.CONFIRMED.value])
    ).all()
    if not open_activations:
        return 0

    had_access = any(a.documents_accessible for a in open_activations)
    for activation in open_activations:
        activation.status = ActivationStatus.CANCELLED.value
        activation.cancelled_at = now
        activation.cancellation_token = None
        activation.documents_accessible = False
        activation.append_log('cancelled', reason=reason)
    db.session.commit()

    if had_access:
        revoke_emergency_access(user_id)

    for activation in open_activations:
        log_emergency_event(AuditAction.EMERGENCY_CANCELLED, user_id, activation.id,
                            details={'reason': reason}, actor_type=actor_type)
    return len(open_activations)


def cancel_activation(token: str) -> EmergencyActivation:
    """
    Cancel an activation with the link sent to the user.

    Raises:
        DeadMansSwitchError: unknown token (404), closed activation (409),
                             expired link (410)
    """
    activation = EmergencyActivation.query.filter_by(cancellation_token=token).first() if token else None
    if activation is None:
        raise DeadMansSwitchError('Invalid cancellation token', 404)
    if not activation.is_open:
        raise DeadMansSwitchError(f'Activation is already {activation.status}', 409)
    if activation.cancellation_expires_at and activation.cancellation_expires_at < datetime.utcnow():
        raise DeadMansSwitchError('Cancellation link has expired', 410)

    user = activation.user
    now = datetime.utcnow()
    user.last_active_at = now
    user.last_sign_in_at = now
    db.session.commit()

    cancel_open_activations(user.id, reason='cancellation_link')
    return activation


def trigger_activation(user: User, activation_type: str = 'manual') -> EmergencyActivation:
    """
    Start an activation outside the daily check.

    'manual' runs the full emergency protocol immediately (level 3).
    'test' sends the level 1 notice to the user only and closes at once, so
    the user can confirm that messages reach them.
    """
    if activation_type not in ('manual', 'test'):
        raise DeadMansSwitchError('Activation type must be manual or test')

    now = datetime.utcnow()
    if activation_type == 'manual':
        if get_open_activation(user.id) is not None:
            raise DeadMansSwitchError('An emergency activation is already in progress', 409)
        activation = EmergencyActivation(
            user_id=user.id,
            trigger_type='manual',
            status=ActivationStatus.PENDING.value,
            inactivity_level='emergency',
            escalation_level=FINAL_ESCALATION_LEVEL,
            days_inactive=user.days_inactive(now),
            triggered_at=now,
            last_escalated_at=now,
            cancellation_token=generate_token(),
            cancellation_expires_at=now + timedelta(hours=current_app.config['DMS_CANCELLATION_HOURS']),
        )
        activation.append_log('manual_activation')
        db.session.add(activation)
        db.session.commit()

        _notify_level(activation, user, get_active_guardians(user.id), activation.days_inactive, 'emergency')
        log_emergency_event(AuditAction.EMERGENCY_ESCALATED, user.id, activation.id,
                            details={'level': FINAL_ESCALATION_LEVEL, 'trigger': 'manual'},
                            actor_type='user')
        _release_emergency_access(activation, user)
        return activation

    activation = EmergencyActivation(
        user_id=user.id,
        trigger_type='test',
        status=ActivationStatus.PENDING.value,
        inactivity_level='warning',
        escalation_level=1,
        days_inactive=user.days_inactive(now),
        triggered_at=now,
        cancellation_token=generate_token(),
        cancellation_expires_at=now + timedelta(hours=current_app.config['DMS_CANCELLATION_HOURS']),
    )
    activation.append_log('test_activation')
    db.session.add(activation)
    db.session.commit()

    _notify_level(activation, user, [], activation.days_inactive, 'warning')
    activation.status = ActivationStatus.COMPLETED.value
    activation.completed_at = datetime.utcnow()
    activation.cancellation_token = None
    db.session.commit()
    return activation


def get_emergency_status(user: User) -> Dict[str, Any]:
    config = get_config()
    days = user.days_inactive()
    activation = get_open_activation(user.id)
    next_level = None
    for level in INACTIVITY_LEVELS:
        threshold = config[f'{level}_days']
        if days < threshold:
            next_level = {'level': level, 'days_remaining': threshold - days}
            break

    return {
        'days_inactive': days,
        'inactivity_level': classify_inactivity(days, config),
        'next_level': next_level,
        'active_activation': activation.to_dict() if activation else None,
        'emergency_guardians': len([g for g in get_active_guardians(user.id) if g.is_emergency_contact]),
    }
