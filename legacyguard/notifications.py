"""
Scheduled reminder notifications.

The daily expiration check finds documents about to expire, wills that
have not been reviewed for a year and guardians whose assignment needs a
review, then emails the account owners. A failed send is recorded in the
results and never stops the rest of the batch.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Union

from flask import current_app

from legacyguard import db
from legacyguard.models import User, Will, Guardian, GuardianStatus, WillStatus
from legacyguard.documents import find_expiring_documents as _find_expiring_document_records
from legacyguard.email_service import send_template_email
from legacyguard.utils import format_date


@dataclass
class ExpiringDocument:
    id: int
    user_id: str
    user_email: str
    user_name: str
    file_name: str
    expires_at: datetime
    days_until_expiry: int


@dataclass
class ExpiringWill:
    id: int
    user_id: str
    user_email: str
    user_name: str
    last_updated: datetime
    days_since_update: int


@dataclass
class ExpiringGuardian:
    id: int
    user_id: str
    user_email: str
    user_name: str
    guardian_name: str
    guardian_email: str
    last_reviewed_at: datetime
    days_since_review: int


NotificationItem = Union[ExpiringDocument, ExpiringWill, ExpiringGuardian]


@dataclass
class NotificationResult:
    type: str
    item_id: int
    recipient_email: str
    template: str
    sent: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def find_expiring_documents(within_days: Optional[int] = None,
                            now: Optional[datetime] = None) -> List[ExpiringDocument]:
    now = now or datetime.utcnow()
    if within_days is None:
        within_days = current_app.config['DOCUMENT_EXPIRY_WARNING_DAYS']

    items = []
    for document in _find_expiring_document_records(within_days, now=now):
        owner = document.user
        if owner is None or not owner.is_active:
            continue
        items.append(ExpiringDocument(
            id=document.id,
            user_id=owner.id,
            user_email=owner.email,
            user_name=owner.full_name,
            file_name=document.title or document.file_name,
            expires_at=document.expires_at,
            days_until_expiry=(document.expires_at - now).days,
        ))
    return items


def find_wills_needing_update(review_days: Optional[int] = None,
                              now: Optional[datetime] = None) -> List[ExpiringWill]:
    """Most recently generated completed will per user, if not updated for review_days."""
    now = now or datetime.utcnow()
    if review_days is None:
        review_days = current_app.config['WILL_REVIEW_DAYS']
    cutoff = now - timedelta(days=review_days)

    latest = db.session.query(
        db.func.max(Will.id).label('id')
    ).filter(
        Will.status.in_([WillStatus.COMPLETED.value, WillStatus.LOCKED.value])
    ).group_by(Will.user_id).subquery()

    wills = Will.query.join(latest, Will.id == latest.c.id).filter(
        Will.updated_at <= cutoff
    ).order_by(Will.id).all()

    items = []
    for will in wills:
        owner = will.user
        if owner is None or not owner.is_active:
            continue
        items.append(ExpiringWill(
            id=will.id,
            user_id=owner.id,
            user_email=owner.email,
            user_name=owner.full_name,
            last_updated=will.updated_at,
            days_since_update=(now - will.updated_at).days,
        ))
    return items


def find_expiring_guardians(review_days: Optional[int] = None,
                            now: Optional[datetime] = None) -> List[ExpiringGuardian]:
    """Active guardians whose assignment has not been reviewed for review_days."""
    now = now or datetime.utcnow()
    if review_days is None:
        review_days = current_app.config['GUARDIAN_REVIEW_DAYS']
    cutoff = now - timedelta(days=review_days)

    guardians = Guardian.query.filter(
        Guardian.status == GuardianStatus.ACTIVE.value,
        Guardian.last_reviewed_at <= cutoff
    ).all()

    items = []
    for guardian in guardians:
        owner = db.session.get(User, guardian.user_id)
        if owner is None or not owner.is_active:
            continue
        items.append(ExpiringGuardian(
            id=guardian.id,
            user_id=owner.id,
            user_email=owner.email,
            user_name=owner.full_name,
            guardian_name=guardian.name,
            guardian_email=guardian.email,
            last_reviewed_at=guardian.last_reviewed_at,
            days_since_review=(now - guardian.last_reviewed_at).days,
        ))
    return items


def _notification_for(item: NotificationItem):
    """Map an item to (type, template, context)."""
    if isinstance(item, ExpiringDocument):
        return 'document', 'document_expiration', {
            'user_name': item.user_name,
            'document_name': item.file_name,
            'expires_on': format_date(item.expires_at),
            'days': item.days_until_expiry,
        }
    if isinstance(item, ExpiringWill):
        return 'will', 'will_update_reminder', {
            'user_name': item.user_name,
            'days': item.days_since_update,
        }
    return 'guardian', 'guardian_expiration', {
        'user_name': item.user_name,
        'guardian_name': item.guardian_name,
        'days': item.days_since_review,
    }


def send_notification(item: NotificationItem) -> NotificationResult:
    kind, template, context = _notification_for(item)
    sent, error = send_template_email(item.user_email, template, context, user_id=item.user_id)
    return NotificationResult(
        type=kind,
        item_id=item.id,
        recipient_email=item.user_email,
        template=template,
        sent=sent,
        error=error,
    )


def send_batch_notifications(items: List[NotificationItem]) -> List[NotificationResult]:
    results = []
    for item in items:
        try:
            results.append(send_notification(item))
        except Exception as e:
            current_app.logger.error(f'Notification for {type(item).__name__} {item.id} failed: {e}')
            kind, template, _ = _notification_for(item)
            results.append(NotificationResult(
                type=kind,
                item_id=item.id,
                recipient_email=item.user_email,
                template=template,
                sent=False,
                error=str(e),
            ))
    return results


def check_expirations(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Daily expiration job."""
    now = now or datetime.utcnow()
    current_app.logger.info('Starting expiration check')

    documents = find_expiring_documents(now=now)
    wills = find_wills_needing_update(now=now)
    guardians = find_expiring_guardians(now=now)

    results = send_batch_notifications([*documents, *wills, *guardians])
    sent = sum(1 for r in results if r.sent)

    current_app.logger.info(
        f'Expiration check done: {len(documents)} documents, {len(wills)} wills, '
        f'{len(guardians)} guardians, {sent} notifications sent'
    )
    return {
        'timestamp': now.isoformat(),
        'expiring_documents': len(documents),
        'expiring_wills': len(wills),
        'expiring_guardians': len(guardians),
        'notifications_sent': sent,
        'notification_results': [r.to_dict() for r in results],
    }
