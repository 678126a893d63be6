"""
Dead Man's Switch Tests

Tests for inactivity detection and escalation:
- Threshold classification
- Each escalation level notifies once and survives repeated checks
- Level 3 releases documents to emergency guardians and on_death capsules
- Activity, the cancellation link and manual/test activations
"""

import unittest
from datetime import datetime, timedelta

from legacyguard import db
from legacyguard.accounts import check_in
from legacyguard.dead_mans_switch import (
    DeadMansSwitchError, classify_inactivity, perform_check, cancel_activation,
    trigger_activation, get_emergency_status, get_open_activation
)
from legacyguard.documents import upload_document
from legacyguard.guardians import invite_guardian, accept_invitation, get_shared_documents
from legacyguard.models import EmergencyActivation, EmergencyNotification, ActivationStatus
from legacyguard.time_capsules import create_time_capsule
from legacyguard.testing import AppTestCase

THRESHOLDS = {'warning_days': 30, 'critical_days': 60, 'emergency_days': 90}


class TestClassification(unittest.TestCase):

    def test_levels(self):
        self.assertIsNone(classify_inactivity(29, THRESHOLDS))
        self.assertEqual(classify_inactivity(30, THRESHOLDS), 'warning')
        self.assertEqual(classify_inactivity(59, THRESHOLDS), 'warning')
        self.assertEqual(classify_inactivity(60, THRESHOLDS), 'critical')
        self.assertEqual(classify_inactivity(90, THRESHOLDS), 'emergency')
        self.assertEqual(classify_inactivity(400, THRESHOLDS), 'emergency')


class SwitchTestCase(AppTestCase):

    def setUp(self):
        super().setUp()
        self.user, self.token = self.create_user(tier='premium')
        guardian = invite_guardian(self.user, {'name': 'Maria Novakova', 'email': 'maria@example.com',
                                               'relationship': 'spouse', 'access_level': 'emergency'})
        self.guardian, _ = accept_invitation(guardian.invitation_token)
        self.document = upload_document(self.user.id, 'passport.pdf', b'%PDF-passport')
        self.capsule = create_time_capsule(self.user, {
            'title': 'Goodbye', 'message': 'Look after each other.',
            'recipient_email': 'peter@example.com', 'delivery_condition': 'on_death',
        })

    def make_inactive(self, days):
        self.user.last_active_at = datetime.utcnow() - timedelta(days=days, hours=1)
        db.session.commit()

    def templates(self):
        return [m['template'] for m in self.outbox()]


class TestPerformCheck(SwitchTestCase):

    def test_active_user_ignored(self):
        results = perform_check()
        self.assertEqual(results['users_checked'], 1)
        self.assertEqual(results['inactive_users'], [])
        self.assertIsNone(get_open_activation(self.user.id))

    def test_warning_level_notifies_once(self):
        self.make_inactive(35)
        results = perform_check()

        self.assertEqual(results['crisis_levels'], {'warning': 1, 'critical': 0, 'emergency': 0})
        self.assertEqual(results['notifications_sent'], 2)
        self.assertEqual(results['escalations_triggered'], 0)
        self.assertEqual(results['inactive_users'][0]['days_inactive'], 35)

        activation = get_open_activation(self.user.id)
        self.assertEqual(activation.escalation_level, 1)
        self.assertIsNotNone(activation.cancellation_token)
        self.assertIn('user_inactivity_warning', self.templates())
        self.assertIn('crisis_warning', self.templates())

        again = perform_check()
        self.assertEqual(again['notifications_sent'], 0)
        self.assertEqual(EmergencyNotification.query.count(), 2)

    def test_escalates_through_levels(self):
        self.make_inactive(35)
        perform_check()
        self.make_inactive(65)
        results = perform_check()
        self.assertEqual(results['escalations_triggered'], 1)
        self.assertEqual(get_open_activation(self.user.id).escalation_level, 2)
        self.assertIn('crisis_critical', self.templates())
        self.assertEqual(get_shared_documents(self.guardian), [])

        self.make_inactive(95)
        perform_check()
        activation = get_open_activation(self.user.id)
        self.assertEqual(activation.escalation_level, 3)
        self.assertEqual(activation.status, ActivationStatus.CONFIRMED.value)
        self.assertTrue(activation.documents_accessible)
        self.assertEqual([d.id for d in get_shared_documents(self.guardian)], [self.document.id])
        self.assertTrue(self.capsule.is_delivered)
        self.assertEqual(EmergencyActivation.query.count(), 1)

    def test_emergency_level_skips_straight_to_access(self):
        self.make_inactive(120)
        results = perform_check()
        self.assertEqual(results['crisis_levels']['emergency'], 1)
        self.assertEqual(results['escalations_triggered'], 1)
        self.assertTrue(self.capsule.is_delivered)
        self.assertIn('crisis_emergency', self.templates())

    def test_deactivated_users_skipped(self):
        self.make_inactive(95)
        self.user.is_active = False
        db.session.commit()
        self.assertEqual(perform_check()['inactive_users'], [])


class TestCancellation(SwitchTestCase):

    def test_check_in_cancels_and_withdraws_access(self):
        self.make_inactive(95)
        perform_check()
        self.assertEqual(len(get_shared_documents(self.guardian)), 1)

        self.assertEqual(check_in(self.user), 1)
        self.assertIsNone(get_open_activation(self.user.id))
        self.assertEqual(get_shared_documents(self.guardian), [])

    def test_cancellation_link(self):
        self.make_inactive(35)
        perform_check()
        activation = get_open_activation(self.user.id)
        token = activation.cancellation_token

        cancel_activation(token)
        self.assertEqual(activation.status, ActivationStatus.CANCELLED.value)
        self.assertEqual(self.user.days_inactive(), 0)

        with self.assertRaises(DeadMansSwitchError) as ctx:
            cancel_activation(token)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_expired_link(self):
        self.make_inactive(35)
        perform_check()
        activation = get_open_activation(self.user.id)
        activation.cancellation_expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()

        with self.assertRaises(DeadMansSwitchError) as ctx:
            cancel_activation(activation.cancellation_token)
        self.assertEqual(ctx.exception.status_code, 410)

    def test_closed_activation(self):
        activation = EmergencyActivation(user_id=self.user.id, status=ActivationStatus.COMPLETED.value,
                                         cancellation_token='stale-token')
        db.session.add(activation)
        db.session.commit()

        with self.assertRaises(DeadMansSwitchError) as ctx:
            cancel_activation('stale-token')
        self.assertEqual(ctx.exception.status_code, 409)


class TestTriggerActivation(SwitchTestCase):

    def test_manual_runs_full_protocol(self):
        activation = trigger_activation(self.user, 'manual')
        self.assertEqual(activation.escalation_level, 3)
        self.assertEqual(activation.status, ActivationStatus.CONFIRMED.value)
        self.assertEqual(len(get_shared_documents(self.guardian)), 1)

        with self.assertRaises(DeadMansSwitchError) as ctx:
            trigger_activation(self.user, 'manual')
        self.assertEqual(ctx.exception.status_code, 409)

    def test_test_activation_only_reaches_user(self):
        activation = trigger_activation(self.user, 'test')
        self.assertEqual(activation.status, ActivationStatus.COMPLETED.value)
        self.assertIsNone(get_open_activation(self.user.id))
        recipients = [m['recipient'] for m in self.outbox() if m['template'] == 'user_inactivity_warning']
        self.assertEqual(recipients, [self.user.email])
        self.assertNotIn('crisis_warning', self.templates())

    def test_unknown_type(self):
        with self.assertRaises(DeadMansSwitchError) as ctx:
            trigger_activation(self.user, 'automatic')
        self.assertEqual(ctx.exception.status_code, 400)


class TestEmergencyStatus(SwitchTestCase):

    def test_status(self):
        self.make_inactive(40)
        status = get_emergency_status(self.user)
        self.assertEqual(status['days_inactive'], 40)
        self.assertEqual(status['inactivity_level'], 'warning')
        self.assertEqual(status['next_level'], {'level': 'critical', 'days_remaining': 20})
        self.assertIsNone(status['active_activation'])
        self.assertEqual(status['emergency_guardians'], 1)


if __name__ == '__main__':
    unittest.main()
