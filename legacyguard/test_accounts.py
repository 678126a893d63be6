"""
Account Tests

Tests for registration, API tokens, activity tracking and the Recovery Kit.
"""

from datetime import datetime, timedelta

from legacyguard import db
from legacyguard.accounts import (
    AccountError, create_user, authenticate_token, rotate_api_token, check_in,
    generate_recovery_kit, verify_recovery_kit, RECOVERY_KIT_GROUPS, RECOVERY_KIT_GROUP_SIZE
)
from legacyguard.audit_logger import AuditAction
from legacyguard.models import AuditLog, EmergencyActivation, ActivationStatus
from legacyguard.testing import AppTestCase


class TestRegistration(AppTestCase):

    def test_create_user_returns_token(self):
        user, token = create_user(' Jan@Example.com ', ' Jan Novak ')
        self.assertEqual(user.email, 'jan@example.com')
        self.assertEqual(user.full_name, 'Jan Novak')
        self.assertEqual(user.tier, 'free')
        self.assertEqual(authenticate_token(token).id, user.id)
        self.assertNotEqual(user.api_token_hash, token)

    def test_duplicate_email_rejected(self):
        create_user('jan@example.com', 'Jan Novak')
        with self.assertRaises(AccountError) as ctx:
            create_user('JAN@example.com', 'Someone Else')
        self.assertEqual(ctx.exception.status_code, 409)

    def test_registration_is_audited(self):
        user, _ = create_user('jan@example.com', 'Jan Novak')
        log = AuditLog.query.filter_by(action=AuditAction.USER_REGISTERED).one()
        self.assertEqual(log.resource_id, user.id)

    def test_rotate_token_invalidates_old(self):
        user, token = create_user('jan@example.com', 'Jan Novak')
        new_token = rotate_api_token(user)
        self.assertIsNone(authenticate_token(token))
        self.assertEqual(authenticate_token(new_token).id, user.id)

    def test_authenticate_empty_token(self):
        self.assertIsNone(authenticate_token(''))


class TestActivity(AppTestCase):

    def test_check_in_updates_activity(self):
        user, _ = self.create_user()
        user.last_active_at = datetime.utcnow() - timedelta(days=40)
        db.session.commit()
        self.assertEqual(user.days_inactive(), 40)

        self.assertEqual(check_in(user), 0)
        self.assertEqual(user.days_inactive(), 0)
        self.assertEqual(AuditLog.query.filter_by(action=AuditAction.USER_CHECKED_IN).count(), 1)

    def test_check_in_cancels_open_activation(self):
        user, _ = self.create_user()
        activation = EmergencyActivation(user_id=user.id, status=ActivationStatus.PENDING.value,
                                         cancellation_token='cancel-token')
        db.session.add(activation)
        db.session.commit()

        self.assertEqual(check_in(user), 1)
        self.assertEqual(activation.status, ActivationStatus.CANCELLED.value)
        self.assertIsNone(activation.cancellation_token)


class TestRecoveryKit(AppTestCase):

    def test_kit_format(self):
        user, _ = self.create_user()
        kit = generate_recovery_kit(user)
        groups = kit.split('-')
        self.assertEqual(len(groups), RECOVERY_KIT_GROUPS)
        self.assertTrue(all(len(group) == RECOVERY_KIT_GROUP_SIZE for group in groups))
        self.assertNotIn('0', kit)
        self.assertNotIn('O', kit)
        self.assertTrue(user.to_dict()['has_recovery_kit'])

    def test_verify_ignores_case_and_separators(self):
        user, _ = self.create_user()
        kit = generate_recovery_kit(user)
        self.assertTrue(verify_recovery_kit(user, kit))
        self.assertTrue(verify_recovery_kit(user, kit.lower().replace('-', ' ')))
        self.assertFalse(verify_recovery_kit(user, 'ABCDE-FGHJK'))
        self.assertFalse(verify_recovery_kit(user, ''))

    def test_new_kit_replaces_old(self):
        user, _ = self.create_user()
        old_kit = generate_recovery_kit(user)
        new_kit = generate_recovery_kit(user)
        self.assertFalse(verify_recovery_kit(user, old_kit))
        self.assertTrue(verify_recovery_kit(user, new_kit))

    def test_verify_without_kit(self):
        user, _ = self.create_user()
        self.assertFalse(verify_recovery_kit(user, 'ABCDE'))

    def test_verification_is_audited(self):
        user, _ = self.create_user()
        kit = generate_recovery_kit(user)
        verify_recovery_kit(user, kit)
        verify_recovery_kit(user, 'wrong')
        results = [log.success for log in AuditLog.query.filter_by(
            action=AuditAction.RECOVERY_KIT_VERIFIED).order_by(AuditLog.id)]
        self.assertEqual(results, [True, False])
