"""
Time capsules: messages delivered on a chosen date or after the owner's
death (released by the dead man's switch).
"""

from datetime import datetime, date, timedelta
from typing import Dict, List, Any, Optional

from flask import current_app

from legacyguard import db
from legacyguard.models import User, TimeCapsule
from legacyguard.email_service import send_template_email
from legacyguard.audit_logger import log_action, AuditAction, AuditCategory
from legacyguard.utils import parse_date

# None means unlimited
TIME_CAPSULE_LIMITS = {
    'free': 1,
    'premium': 10,
    'enterprise': None,
}


class TimeCapsuleError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def capsule_limit(tier: str) -> Optional[int]:
    return TIME_CAPSULE_LIMITS.get(tier, TIME_CAPSULE_LIMITS['free'])


def create_time_capsule(user: User, data: Dict[str, Any]) -> TimeCapsule:
    """
    Create a capsule from a validated payload.

    Raises:
        TimeCapsuleError: tier limit reached (403)
    """
    limit = capsule_limit(user.tier)
    if limit is not None and user.time_capsules.count() >= limit:
        raise TimeCapsuleError(
            f'Your {user.tier} plan allows {limit} time capsule(s). Upgrade to add more.', 403
        )

    condition = data.get('delivery_condition') or 'on_date'
    capsule = TimeCapsule(
        user_id=user.id,
        title=data['title'].strip(),
        message=data.get('message'),
        message_type=data.get('message_type') or 'text',
        file_url=data.get('file_url'),
        recipient_email=(data.get('recipient_email') or '').strip().lower() or None,
        recipient_name=data.get('recipient_name'),
        delivery_condition=condition,
        delivery_date=parse_date(data.get('delivery_date')) if condition == 'on_date' else None,
    )
    db.session.add(capsule)
    db.session.commit()

    log_action(
        action=AuditAction.TIME_CAPSULE_CREATED,
        action_category=AuditCategory.CREATE,
        resource_type='time_capsule',
        resource_id=capsule.id,
        user_id=user.id,
        actor_type='user',
        actor_id=user.id,
        details={'delivery_condition': condition, 'message_type': capsule.message_type}
    )
    return capsule


def list_time_capsules(user_id: str, delivered: Optional[bool] = None) -> List[TimeCapsule]:
    query = TimeCapsule.query.filter_by(user_id=user_id)
    if delivered is not None:
        query = query.filter(TimeCapsule.is_delivered == delivered)
    return query.order_by(TimeCapsule.created_at.desc()).all()


def get_time_capsule(user_id: str, capsule_id: int) -> TimeCapsule:
    capsule = TimeCapsule.query.filter_by(id=capsule_id, user_id=user_id).first()
    if capsule is None:
        raise TimeCapsuleError('Time capsule not found', 404)
    return capsule


def delete_time_capsule(user_id: str, capsule_id: int):
    capsule = get_time_capsule(user_id, capsule_id)
    if capsule.is_delivered:
        raise TimeCapsuleError('A delivered time capsule cannot be deleted', 409)
    db.session.delete(capsule)
    db.session.commit()


def get_time_capsule_analytics(user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or datetime.utcnow().date()
    capsules = TimeCapsule.query.filter_by(user_id=user_id).all()

    delivered = [c for c in capsules if c.is_delivered]
    failed = [c for c in capsules if not c.is_delivered and c.last_delivery_error]
    scheduled = [c for c in capsules if not c.is_delivered]
    horizon = today + timedelta(days=30)
    upcoming = [
        c for c in scheduled
        if c.delivery_condition == 'on_date' and c.delivery_date and c.delivery_date <= horizon
    ]

    attempted = len(delivered) + len(failed)
    return {
        'total_capsules': len(capsules),
        'scheduled_capsules': len(scheduled),
        'delivered_capsules': len(delivered),
        'failed_deliveries': len(failed),
        'on_death_capsules': sum(1 for c in capsules if c.delivery_condition == 'on_death'),
        'upcoming_deliveries': [c.to_dict() for c in sorted(upcoming, key=lambda c: c.delivery_date)],
        'delivery_success_rate': round(len(delivered) / attempted * 100, 1) if attempted else 0.0,
    }


def deliver_capsule(capsule: TimeCapsule) -> Dict[str, Any]:
    """
    Email one capsule. The recipient defaults to the owner.

    Returns:
        Result dict with id, title, status and optional error
    """
    owner = capsule.user
    recipient_email = capsule.recipient_email or owner.email
    recipient_name = capsule.recipient_name or owner.full_name

    capsule.delivery_attempts += 1
    success, error = send_template_email(recipient_email, 'time_capsule_delivery', {
        'recipient_name': recipient_name,
        'sender_name': owner.full_name,
        'title': capsule.title,
        'message': capsule.message or '',
        'message_type': capsule.message_type,
        'file_url': capsule.file_url,
    }, user_id=owner.id)

    if success:
        capsule.is_delivered = True
        capsule.delivered_at = datetime.utcnow()
        capsule.last_delivery_error = None
    else:
        capsule.last_delivery_error = error
    db.session.commit()

    if not success:
        current_app.logger.warning(f'Time capsule {capsule.id} delivery failed: {error}')
        return {'id': capsule.id, 'title': capsule.title, 'status': 'email_failed', 'error': error}

    log_action(
        action=AuditAction.TIME_CAPSULE_DELIVERED,
        action_category=AuditCategory.SEND,
        resource_type='time_capsule',
        resource_id=capsule.id,
        user_id=owner.id,
        details={'delivery_condition': capsule.delivery_condition, 'attempts': capsule.delivery_attempts}
    )
    return {'id': capsule.id, 'title': capsule.title, 'status': 'delivered'}


def _deliver_all(capsules: List[TimeCapsule]) -> Dict[str, Any]:
    results = []
    for capsule in capsules:
        try:
            results.append(deliver_capsule(capsule))
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f'Error processing time capsule {capsule.id}: {e}')
            results.append({
                'id': capsule.id,
                'title': capsule.title,
                'status': 'processing_failed',
                'error': str(e),
            })

    delivered = sum(1 for r in results if r['status'] == 'delivered')
    return {
        'message': f'Processed {len(capsules)} time capsules, delivered {delivered}',
        'total': len(capsules),
        'delivered': delivered,
        'results': results,
    }


def deliver_due_capsules(today: Optional[date] = None) -> Dict[str, Any]:
    """Deliver undelivered on_date capsules whose delivery date has come."""
    today = today or datetime.utcnow().date()
    due = TimeCapsule.query.filter(
        TimeCapsule.delivery_condition == 'on_date',
        TimeCapsule.is_delivered.is_(False),
        TimeCapsule.delivery_date <= today
    ).order_by(TimeCapsule.delivery_date.asc(), TimeCapsule.id.asc()).all()

    if not due:
        return {'message': 'No time capsules to deliver today', 'total': 0, 'delivered': 0, 'results': []}

    current_app.logger.info(f'Delivering {len(due)} time capsule(s) due by {today.isoformat()}')
    return _deliver_all(due)


def deliver_on_death_capsules(user_id: str) -> Dict[str, Any]:
    """Release a user's on_death capsules once emergency access is confirmed."""
    capsules = TimeCapsule.query.filter(
        TimeCapsule.user_id == user_id,
        TimeCapsule.delivery_condition == 'on_death',
        TimeCapsule.is_delivered.is_(False)
    ).order_by(TimeCapsule.id.asc()).all()
    return _deliver_all(capsules)
