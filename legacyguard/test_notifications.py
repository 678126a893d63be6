"""
Notification Tests

Tests for the daily expiration check: expiring documents, wills due for
review and guardian assignments due for review.
"""

import unittest
from datetime import datetime, timedelta

from legacyguard import db
from legacyguard.documents import upload_document
from legacyguard.guardians import invite_guardian, accept_invitation
from legacyguard.notifications import (
    check_expirations, find_expiring_documents, find_wills_needing_update, find_expiring_guardians
)
from legacyguard.will_generator import generate_will, regenerate_will
from legacyguard.testing import AppTestCase, valid_will_payload


class TestExpirationCheck(AppTestCase):

    def setUp(self):
        super().setUp()
        self.now = datetime.utcnow()
        self.user, self.token = self.create_user()

    def add_document(self, days_until_expiry):
        document = upload_document(self.user.id, 'notes.txt', b'data', {'title': 'Notes'})
        document.expires_at = self.now + timedelta(days=days_until_expiry, hours=1)
        db.session.commit()
        return document

    def add_guardian(self, days_since_review):
        guardian = invite_guardian(self.user, {'name': 'Maria Novakova', 'email': 'maria@example.com',
                                               'relationship': 'spouse'})
        guardian, _ = accept_invitation(guardian.invitation_token)
        guardian.last_reviewed_at = self.now - timedelta(days=days_since_review)
        db.session.commit()
        return guardian

    def test_nothing_due(self):
        self.add_document(90)
        results = check_expirations(self.now)
        self.assertEqual(results['expiring_documents'], 0)
        self.assertEqual(results['notifications_sent'], 0)
        self.assertEqual(results['notification_results'], [])

    def test_expiring_document(self):
        document = self.add_document(10)
        items = find_expiring_documents(now=self.now)
        self.assertEqual([item.id for item in items], [document.id])
        self.assertEqual(items[0].days_until_expiry, 10)
        self.assertEqual(items[0].file_name, 'Notes')

    def test_expired_document_not_reminded(self):
        self.add_document(-5)
        self.assertEqual(find_expiring_documents(now=self.now), [])

    def test_will_review(self):
        will, _ = generate_will(self.user, valid_will_payload())
        self.assertEqual(find_wills_needing_update(now=self.now), [])

        will.updated_at = self.now - timedelta(days=400)
        db.session.commit()
        items = find_wills_needing_update(now=self.now)
        self.assertEqual([item.id for item in items], [will.id])
        self.assertEqual(items[0].days_since_update, 400)

    def test_only_latest_will_version_reviewed(self):
        will, _ = generate_will(self.user, valid_will_payload())
        will.updated_at = self.now - timedelta(days=400)
        db.session.commit()
        regenerate_will(self.user, will.id)
        self.assertEqual(find_wills_needing_update(now=self.now), [])

    def test_fresh_will_replaces_old_versions(self):
        will, _ = generate_will(self.user, valid_will_payload())
        new_version, _ = regenerate_will(self.user, will.id)
        for old in (will, new_version):
            old.updated_at = self.now - timedelta(days=400)
        db.session.commit()
        self.assertEqual([item.id for item in find_wills_needing_update(now=self.now)], [new_version.id])

        generate_will(self.user, valid_will_payload())
        self.assertEqual(find_wills_needing_update(now=self.now), [])

    def test_guardian_review(self):
        guardian = self.add_guardian(400)
        items = find_expiring_guardians(now=self.now)
        self.assertEqual([item.id for item in items], [guardian.id])
        self.assertEqual(items[0].guardian_name, 'Maria Novakova')

    def test_recent_guardian_not_reminded(self):
        self.add_guardian(10)
        self.assertEqual(find_expiring_guardians(now=self.now), [])

    def test_inactive_owner_skipped(self):
        self.add_document(10)
        self.user.is_active = False
        db.session.commit()
        self.assertEqual(find_expiring_documents(now=self.now), [])

    def test_check_emails_owner(self):
        self.add_document(10)
        self.add_guardian(400)
        before = len(self.outbox())

        results = check_expirations(self.now)
        self.assertEqual(results['expiring_documents'], 1)
        self.assertEqual(results['expiring_guardians'], 1)
        self.assertEqual(results['notifications_sent'], 2)

        sent = self.outbox()[before:]
        self.assertEqual([m['template'] for m in sent], ['document_expiration', 'guardian_expiration'])
        self.assertTrue(all(m['recipient'] == self.user.email for m in sent))
        self.assertIn('Notes', sent[0]['text'])

    def test_failed_send_recorded(self):
        self.add_document(10)
        self.app.config['MAIL_SUPPRESS_SEND'] = False
        self.app.config['SMTP_HOST'] = ''

        results = check_expirations(self.now)
        self.assertEqual(results['notifications_sent'], 0)
        result = results['notification_results'][0]
        self.assertFalse(result['sent'])
        self.assertEqual(result['type'], 'document')
        self.assertEqual(result['error'], 'Email service not configured')


if __name__ == '__main__':
    unittest.main()
