"""
Guardians: family members and emergency contacts a user trusts.

Guardians are invited by email, accept or decline with a one-time token,
and receive document access either from the owner or automatically when
the dead man's switch reaches its final level.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Tuple

from flask import current_app

from legacyguard import db
from legacyguard.models import (
    User, Guardian, GuardianStatus, Document, GuardianDocumentAccess
)
from legacyguard.security import generate_token, hash_token
from legacyguard.email_service import send_template_email
from legacyguard.audit_logger import log_guardian_event, AuditAction

INVITATION_VALIDITY = timedelta(days=7)

# None means unlimited
GUARDIAN_LIMITS = {
    'free': 1,
    'premium': 5,
    'enterprise': None,
}

DEFAULT_PERMISSIONS = {
    'view': {
        'can_view_documents': True,
        'can_download_documents': False,
        'can_access_emergency': False,
        'can_view_will': False,
    },
    'emergency': {
        'can_view_documents': True,
        'can_download_documents': True,
        'can_access_emergency': True,
        'can_view_will': True,
    },
    'full': {
        'can_view_documents': True,
        'can_download_documents': True,
        'can_access_emergency': True,
        'can_view_will': True,
        'can_manage_time_capsules': True,
    },
}

UPDATABLE_FIELDS = ('name', 'phone', 'relationship', 'access_level', 'is_emergency_contact',
                    'priority_order', 'contact_method', 'permissions')


class GuardianError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _open_statuses():
    return [GuardianStatus.PENDING.value, GuardianStatus.ACTIVE.value]


def guardian_limit(tier: str) -> Optional[int]:
    return GUARDIAN_LIMITS.get(tier, GUARDIAN_LIMITS['free'])


def count_open_guardians(user_id: str) -> int:
    return Guardian.query.filter(
        Guardian.user_id == user_id,
        Guardian.status.in_(_open_statuses())
    ).count()


def _invitation_urls(token: str) -> Dict[str, str]:
    base = current_app.config['APP_BASE_URL'].rstrip('/')
    return {
        'accept_url': f'{base}/api/invitations/{token}/accept',
        'decline_url': f'{base}/api/invitations/{token}/decline',
    }


def _send_invitation(user: User, guardian: Guardian) -> tuple:
    context = {
        'user_name': user.full_name,
        'guardian_name': guardian.name,
        'access_level': guardian.access_level,
        'expires_at': guardian.invitation_expires_at.strftime('%d.%m.%Y %H:%M UTC'),
    }
    context.update(_invitation_urls(guardian.invitation_token))
    success, error = send_template_email(guardian.email, 'guardian_invitation', context, user_id=user.id)
    if success:
        guardian.invitation_sent_at = datetime.utcnow()
        db.session.commit()
    else:
        current_app.logger.warning(f'Guardian invitation email to {guardian.email} failed: {error}')
    return success, error


def invite_guardian(user: User, data: Dict[str, Any]) -> Guardian:
    """
    Invite a guardian. The payload must already be validated.

    Raises:
        GuardianError: limit reached (403), own email or duplicate (409)
    """
    email = data['email'].strip().lower()

    if email == user.email.lower():
        raise GuardianError('You cannot invite yourself as a guardian', 409)

    limit = guardian_limit(user.tier)
    if limit is not None and count_open_guardians(user.id) >= limit:
        raise GuardianError(f'Your {user.tier} plan allows {limit} guardian(s). Upgrade to add more.', 403)

    duplicate = Guardian.query.filter(
        Guardian.user_id == user.id,
        db.func.lower(Guardian.email) == email,
        Guardian.status.in_(_open_statuses())
    ).first()
    if duplicate:
        raise GuardianError('This person is already your guardian or has a pending invitation', 409)

    access_level = data.get('access_level') or 'view'
    guardian = Guardian(
        user_id=user.id,
        name=data['name'].strip(),
        email=email,
        phone=data.get('phone'),
        relationship=data['relationship'],
        access_level=access_level,
        is_emergency_contact=bool(data.get('is_emergency_contact', access_level == 'emergency')),
        priority_order=int(data.get('priority_order') or 1),
        contact_method=data.get('contact_method') or 'email',
        status=GuardianStatus.PENDING.value,
        invitation_token=generate_token(),
        invitation_expires_at=datetime.utcnow() + INVITATION_VALIDITY,
    )
    guardian.set_permissions(data.get('permissions') or DEFAULT_PERMISSIONS[access_level])
    db.session.add(guardian)
    db.session.commit()

    log_guardian_event(AuditAction.GUARDIAN_INVITED, user.id, guardian.id,
                       details={'access_level': access_level})
    _send_invitation(user, guardian)
    return guardian


def get_guardians(user_id: str, include_inactive: bool = False) -> List[Guardian]:
    query = Guardian.query.filter_by(user_id=user_id)
    if not include_inactive:
        query = query.filter(Guardian.status.in_(_open_statuses()))
    return query.order_by(Guardian.priority_order.asc(), Guardian.created_at.asc()).all()


def get_guardian(user_id: str, guardian_id: int) -> Guardian:
    guardian = Guardian.query.filter_by(id=guardian_id, user_id=user_id).first()
    if guardian is None:
        raise GuardianError('Guardian not found', 404)
    return guardian


def update_guardian(user_id: str, guardian_id: int, data: Dict[str, Any]) -> Guardian:
    guardian = get_guardian(user_id, guardian_id)
    if guardian.status in (GuardianStatus.REVOKED.value, GuardianStatus.DECLINED.value):
        raise GuardianError(f'Cannot update a {guardian.status} guardian', 409)

    changed = []
    for key in UPDATABLE_FIELDS:
        if key not in data:
            continue
        if key == 'permissions':
            guardian.set_permissions(data['permissions'])
        else:
            setattr(guardian, key, data[key])
        changed.append(key)

    if 'access_level' in data and 'permissions' not in data:
        guardian.set_permissions(DEFAULT_PERMISSIONS[data['access_level']])

    guardian.updated_at = datetime.utcnow()
    guardian.last_reviewed_at = guardian.updated_at
    db.session.commit()

    log_guardian_event(AuditAction.GUARDIAN_UPDATED, user_id, guardian.id, details={'fields': changed})
    return guardian


def _get_by_token(token: str) -> Guardian:
    guardian = Guardian.query.filter_by(invitation_token=token).first() if token else None
    if guardian is None:
        raise GuardianError('Invitation not found', 404)
    if guardian.status != GuardianStatus.PENDING.value:
        raise GuardianError(f'Invitation has already been {guardian.status}', 409)
    if guardian.invitation_expired():
        raise GuardianError('Invitation has expired', 410)
    return guardian


def get_invitation_details(token: str) -> Dict[str, Any]:
    """Public summary of a pending invitation."""
    guardian = _get_by_token(token)
    owner = db.session.get(User, guardian.user_id)
    return {
        'guardian_name': guardian.name,
        'invited_by': owner.full_name,
        'relationship': guardian.relationship,
        'access_level': guardian.access_level,
        'permissions': guardian.get_permissions(),
        'expires_at': guardian.invitation_expires_at.isoformat(),
    }


def accept_invitation(token: str) -> Tuple[Guardian, str]:
    """
    Accept a pending invitation.

    Returns:
        Tuple of (guardian, access_token). The guardian uses the access token
        to read documents shared with them.
    """
    guardian = _get_by_token(token)
    access_token = generate_token()
    guardian.status = GuardianStatus.ACTIVE.value
    guardian.accepted_at = datetime.utcnow()
    guardian.invitation_token = None
    guardian.access_token_hash = hash_token(access_token)
    guardian.last_reviewed_at = guardian.accepted_at
    db.session.commit()

    log_guardian_event(AuditAction.GUARDIAN_ACCEPTED, guardian.user_id, guardian.id, actor_type='guardian')

    owner = db.session.get(User, guardian.user_id)
    send_template_email(owner.email, 'guardian_accepted', {
        'user_name': owner.full_name,
        'guardian_name': guardian.name,
        'access_level': guardian.access_level,
    }, user_id=owner.id)
    return guardian, access_token


def authenticate_guardian(access_token: str) -> Optional[Guardian]:
    if not access_token:
        return None
    return Guardian.query.filter_by(
        access_token_hash=hash_token(access_token),
        status=GuardianStatus.ACTIVE.value
    ).first()


def get_shared_documents(guardian: Guardian) -> List[Document]:
    """Documents the guardian has been given access to."""
    return Document.query.join(
        GuardianDocumentAccess, GuardianDocumentAccess.document_id == Document.id
    ).filter(
        GuardianDocumentAccess.guardian_id == guardian.id
    ).order_by(Document.created_at.desc()).all()


def decline_invitation(token: str) -> Guardian:
    guardian = _get_by_token(token)
    guardian.status = GuardianStatus.DECLINED.value
    guardian.invitation_token = None
    guardian.updated_at = datetime.utcnow()
    db.session.commit()

    log_guardian_event(AuditAction.GUARDIAN_DECLINED, guardian.user_id, guardian.id, actor_type='guardian')
    return guardian


def resend_invitation(user: User, guardian_id: int) -> Guardian:
    """Issue a fresh token and expiry for a pending invitation and email it again."""
    guardian = get_guardian(user.id, guardian_id)
    if guardian.status != GuardianStatus.PENDING.value:
        raise GuardianError('Only pending invitations can be resent', 409)

    guardian.invitation_token = generate_token()
    guardian.invitation_expires_at = datetime.utcnow() + INVITATION_VALIDITY
    db.session.commit()

    _send_invitation(user, guardian)
    return guardian


def revoke_guardian(user_id: str, guardian_id: int) -> Guardian:
    guardian = get_guardian(user_id, guardian_id)
    if guardian.status == GuardianStatus.REVOKED.value:
        return guardian

    guardian.status = GuardianStatus.REVOKED.value
    guardian.invitation_token = None
    guardian.updated_at = datetime.utcnow()
    removed = GuardianDocumentAccess.query.filter_by(guardian_id=guardian.id).delete()
    db.session.commit()

    log_guardian_event(AuditAction.GUARDIAN_REVOKED, user_id, guardian.id,
                       details={'document_access_removed': removed})
    return guardian


def delete_guardian(user_id: str, guardian_id: int):
    guardian = get_guardian(user_id, guardian_id)
    db.session.delete(guardian)
    db.session.commit()
    log_guardian_event(AuditAction.GUARDIAN_DELETED, user_id, guardian_id)


def get_emergency_guardians(user_id: str) -> List[Guardian]:
    """Active emergency contacts, highest priority (lowest number) first."""
    return Guardian.query.filter_by(
        user_id=user_id,
        status=GuardianStatus.ACTIVE.value,
        is_emergency_contact=True
    ).order_by(Guardian.priority_order.asc(), Guardian.id.asc()).all()


def _owned_document(user_id: str, document_id: int) -> Document:
    document = Document.query.filter_by(id=document_id, user_id=user_id).first()
    if document is None:
        raise GuardianError('Document not found', 404)
    return document


def grant_document_access(user_id: str, guardian_id: int, document_id: int,
                          granted_by: str = 'owner') -> GuardianDocumentAccess:
    guardian = get_guardian(user_id, guardian_id)
    if guardian.status != GuardianStatus.ACTIVE.value:
        raise GuardianError('Only active guardians can be given document access', 409)

    document = _owned_document(user_id, document_id)
    access = GuardianDocumentAccess.query.filter_by(guardian_id=guardian.id, document_id=document.id).first()
    if access:
        return access

    access = GuardianDocumentAccess(guardian_id=guardian.id, document_id=document.id, granted_by=granted_by)
    db.session.add(access)
    db.session.commit()

    log_guardian_event(AuditAction.DOCUMENT_ACCESS_GRANTED, user_id, guardian.id,
                       actor_type='user' if granted_by == 'owner' else 'system',
                       details={'document_id': document.id, 'granted_by': granted_by})
    return access


def revoke_document_access(user_id: str, guardian_id: int, document_id: int) -> bool:
    guardian = get_guardian(user_id, guardian_id)
    _owned_document(user_id, document_id)

    removed = GuardianDocumentAccess.query.filter_by(
        guardian_id=guardian.id, document_id=document_id
    ).delete()
    db.session.commit()

    if removed:
        log_guardian_event(AuditAction.DOCUMENT_ACCESS_REVOKED, user_id, guardian.id,
                           details={'document_id': document_id})
    return bool(removed)


def grant_emergency_access(user_id: str) -> int:
    """
    Give every active emergency guardian access to all of the user's documents.

    Returns:
        Number of new access grants
    """
    guardians = get_emergency_guardians(user_id)
    documents = Document.query.filter_by(user_id=user_id).all()
    granted = 0

    for guardian in guardians:
        existing = {a.document_id for a in guardian.document_access}
        for document in documents:
            if document.id in existing:
                continue
            db.session.add(GuardianDocumentAccess(
                guardian_id=guardian.id, document_id=document.id, granted_by='emergency'
            ))
            granted += 1

    db.session.commit()
    return granted


def revoke_emergency_access(user_id: str) -> int:
    """Remove the grants made by the dead man's switch for this user's documents."""
    document_ids = [d.id for d in Document.query.filter_by(user_id=user_id).with_entities(Document.id)]
    if not document_ids:
        return 0
    removed = GuardianDocumentAccess.query.filter(
        GuardianDocumentAccess.document_id.in_(document_ids),
        GuardianDocumentAccess.granted_by == 'emergency'
    ).delete(synchronize_session=False)
    db.session.commit()
    return removed
