"""
Accounts: registration, API token authentication, activity tracking
and the Recovery Kit.

The Recovery Kit is a one-time secret shown to the user once. Only its
SHA-256 digest is stored, so the kit proves possession without the
service being able to reproduce it.
"""

import hmac
import secrets
from datetime import datetime
from typing import Optional, Tuple

from flask import current_app

from legacyguard import db
from legacyguard.models import User
from legacyguard.security import generate_token, hash_token
from legacyguard.audit_logger import log_action, log_user_registered, AuditAction, AuditCategory
from legacyguard.dead_mans_switch import cancel_open_activations

# Unambiguous alphabet (no 0/O, 1/I/L)
RECOVERY_KIT_ALPHABET = 'ABCDEFGHJKMNPQRSTUVWXYZ23456789'
RECOVERY_KIT_GROUPS = 8
RECOVERY_KIT_GROUP_SIZE = 5


class AccountError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def create_user(email: str, full_name: str, tier: str = 'free',
                jurisdiction: str = 'SK') -> Tuple[User, str]:
    """
    Register a new account.

    Returns:
        Tuple of (user, api_token). The plain token is only returned here.
    """
    normalized = email.strip().lower()
    if User.query.filter(db.func.lower(User.email) == normalized).first():
        raise AccountError('An account with this email already exists', 409)

    api_token = generate_token()
    now = datetime.utcnow()
    user = User(
        email=normalized,
        full_name=full_name.strip(),
        tier=tier,
        jurisdiction=jurisdiction,
        api_token_hash=hash_token(api_token),
        last_sign_in_at=now,
        last_active_at=now,
    )
    db.session.add(user)
    db.session.commit()

    log_user_registered(user.id)
    current_app.logger.info(f'Registered user {user.id}')
    return user, api_token


def authenticate_token(token: str) -> Optional[User]:
    if not token:
        return None
    user = User.query.filter_by(api_token_hash=hash_token(token)).first()
    if user is None or not user.is_active:
        return None
    return user


def rotate_api_token(user: User) -> str:
    api_token = generate_token()
    user.api_token_hash = hash_token(api_token)
    db.session.commit()
    return api_token


def record_activity(user: User, sign_in: bool = False) -> int:
    """
    Record that the user is alive and active.

    Any open emergency activation is cancelled. Returns the number of
    activations cancelled.
    """
    now = datetime.utcnow()
    user.last_active_at = now
    if sign_in:
        user.last_sign_in_at = now
    db.session.commit()

    return cancel_open_activations(user.id, reason='user_activity')


def check_in(user: User) -> int:
    """Explicit 'I am alive' check-in."""
    cancelled = record_activity(user, sign_in=True)
    log_action(
        action=AuditAction.USER_CHECKED_IN,
        action_category=AuditCategory.UPDATE,
        resource_type='user',
        resource_id=user.id,
        user_id=user.id,
        actor_type='user',
        actor_id=user.id,
        details={'cancelled_activations': cancelled}
    )
    return cancelled


def _normalize_kit(kit: str) -> str:
    return ''.join(ch for ch in (kit or '').upper() if ch.isalnum())


def generate_recovery_kit(user: User) -> str:
    """
    Create a new Recovery Kit for the user, invalidating any previous one.

    Returns:
        The kit formatted as dash-separated groups (shown to the user once).
    """
    groups = [
        ''.join(secrets.choice(RECOVERY_KIT_ALPHABET) for _ in range(RECOVERY_KIT_GROUP_SIZE))
        for _ in range(RECOVERY_KIT_GROUPS)
    ]
    kit = '-'.join(groups)

    user.recovery_kit_hash = hash_token(_normalize_kit(kit))
    user.recovery_kit_created_at = datetime.utcnow()
    db.session.commit()

    log_action(
        action=AuditAction.RECOVERY_KIT_GENERATED,
        action_category=AuditCategory.CREATE,
        resource_type='recovery_kit',
        resource_id=user.id,
        user_id=user.id,
        actor_type='user',
        actor_id=user.id
    )
    return kit


def verify_recovery_kit(user: User, kit: str) -> bool:
    """Constant-time check of a presented kit; case and separators are ignored."""
    if not user.recovery_kit_hash or not kit:
        return False

    valid = hmac.compare_digest(hash_token(_normalize_kit(kit)), user.recovery_kit_hash)
    log_action(
        action=AuditAction.RECOVERY_KIT_VERIFIED,
        action_category=AuditCategory.AUTH,
        resource_type='recovery_kit',
        resource_id=user.id,
        user_id=user.id,
        actor_type='user',
        actor_id=user.id,
        success=valid
    )
    return valid
