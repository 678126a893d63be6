"""
Document Vault Tests

Tests for document storage:
- Upload checks (extension, empty file, size limit)
- Rule-based categorization and suggested expiry
- Integrity check on read
- Listing, search, statistics and deletion
"""

import os
import unittest
from datetime import datetime, timedelta

from legacyguard import db
from legacyguard.documents import (
    DocumentError, categorize_document, upload_document, list_documents, get_document,
    update_document, delete_document, read_document, download_document, get_document_stats,
    get_shared_document, find_expiring_documents, file_extension
)
from legacyguard.guardians import invite_guardian, accept_invitation, grant_document_access
from legacyguard.models import Document
from legacyguard.testing import AppTestCase

NOW = datetime(2026, 3, 1, 12, 0, 0)


class TestCategorization(unittest.TestCase):

    def test_passport(self):
        result = categorize_document('passport_scan.jpg', now=NOW)
        self.assertEqual(result['category'], 'identity')
        self.assertEqual(result['document_type'], 'identification')
        self.assertEqual(result['legal_significance'], 'low')
        self.assertEqual(result['suggested_expiry'], NOW + timedelta(days=3650))

    def test_will_requires_witnesses(self):
        result = categorize_document('scan.pdf', title='Last Will and Testament')
        self.assertEqual(result['document_type'], 'will')
        self.assertEqual(result['legal_significance'], 'critical')
        self.assertTrue(result['requires_witnesses'])
        self.assertIsNone(result['suggested_expiry'])

    def test_living_will_is_a_directive(self):
        result = categorize_document('living will.pdf')
        self.assertEqual(result['document_type'], 'medical_directive')
        self.assertEqual(result['category'], 'medical')

    def test_insurance_expiry(self):
        result = categorize_document('poistka_auto.pdf', now=NOW)
        self.assertEqual(result['category'], 'insurance')
        self.assertEqual(result['suggested_expiry'], NOW + timedelta(days=365))

    def test_description_is_considered(self):
        result = categorize_document('scan1.pdf', description='Bank statement for March')
        self.assertEqual(result['category'], 'financial')

    def test_unknown(self):
        result = categorize_document('holiday.png')
        self.assertEqual(result['category'], 'other')
        self.assertEqual(result['legal_significance'], 'none')

    def test_file_extension(self):
        self.assertEqual(file_extension('Scan.PDF'), 'pdf')
        self.assertEqual(file_extension('README'), '')


class TestUpload(AppTestCase):

    def setUp(self):
        super().setUp()
        self.user, self.token = self.create_user()

    def test_upload_stores_file_and_digest(self):
        document = upload_document(self.user.id, 'deed.pdf', b'%PDF-deed', {'title': 'House deed', 'tags': ['home']})
        self.assertTrue(os.path.exists(document.file_path))
        self.assertEqual(document.mime_type, 'application/pdf')
        self.assertEqual(document.file_size, 9)
        self.assertEqual(document.category, 'property')
        self.assertEqual(document.get_tags(), ['home'])
        self.assertEqual(read_document(document), b'%PDF-deed')

    def test_file_name_is_sanitized(self):
        document = upload_document(self.user.id, '../../etc/passwd.txt', b'data')
        self.assertEqual(document.file_name, 'etc_passwd.txt')
        self.assertTrue(document.file_path.startswith(self.app.config['DOCUMENT_STORAGE_DIR']))

    def test_disallowed_extension(self):
        with self.assertRaises(DocumentError) as ctx:
            upload_document(self.user.id, 'script.exe', b'MZ')
        self.assertEqual(ctx.exception.status_code, 400)

    def test_empty_file(self):
        with self.assertRaises(DocumentError) as ctx:
            upload_document(self.user.id, 'empty.pdf', b'')
        self.assertEqual(ctx.exception.status_code, 400)

    def test_too_large(self):
        self.app.config['MAX_DOCUMENT_SIZE'] = 10
        with self.assertRaises(DocumentError) as ctx:
            upload_document(self.user.id, 'big.pdf', b'x' * 11)
        self.assertEqual(ctx.exception.status_code, 413)
        self.assertEqual(Document.query.count(), 0)

    def test_explicit_metadata_wins(self):
        document = upload_document(self.user.id, 'passport.pdf', b'data', {
            'category': 'personal', 'expires_at': '2030-05-01',
        })
        self.assertEqual(document.category, 'personal')
        self.assertEqual(document.expires_at, datetime(2030, 5, 1))

    def test_encrypted_upload_keeps_metadata(self):
        metadata = {'algorithm': 'AES-GCM', 'iv': 'abc'}
        document = upload_document(self.user.id, 'secret.txt', b'\x00\x01ciphertext', {
            'is_encrypted': True, 'encryption_metadata': metadata,
        })
        self.assertTrue(document.is_encrypted)
        self.assertEqual(document.to_dict()['encryption_metadata'], metadata)


class TestReadAndManage(AppTestCase):

    def setUp(self):
        super().setUp()
        self.user, self.token = self.create_user()
        self.document = upload_document(self.user.id, 'passport.pdf', b'%PDF-passport', {'title': 'Passport'})

    def test_tampered_file(self):
        with open(self.document.file_path, 'ab') as f:
            f.write(b'x')
        with self.assertRaises(DocumentError) as ctx:
            read_document(self.document)
        self.assertEqual(ctx.exception.status_code, 500)

    def test_missing_file(self):
        os.remove(self.document.file_path)
        with self.assertRaises(DocumentError) as ctx:
            read_document(self.document)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_download_other_users_document(self):
        other, _ = self.create_user(email='other@example.com', full_name='Other Person')
        with self.assertRaises(DocumentError) as ctx:
            download_document(other.id, self.document.id)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_list_filter_and_search(self):
        upload_document(self.user.id, 'statement.pdf', b'data', {'title': 'Bank statement'})
        self.assertEqual(len(list_documents(self.user.id)), 2)
        self.assertEqual([d.title for d in list_documents(self.user.id, category='financial')], ['Bank statement'])
        self.assertEqual([d.title for d in list_documents(self.user.id, search='pass')], ['Passport'])

    def test_update(self):
        update_document(self.user.id, self.document.id, {'title': 'Old passport', 'tags': ['id'], 'expires_at': None})
        document = get_document(self.user.id, self.document.id)
        self.assertEqual(document.title, 'Old passport')
        self.assertEqual(document.get_tags(), ['id'])
        self.assertIsNone(document.expires_at)

    def test_delete_removes_file(self):
        file_path = self.document.file_path
        delete_document(self.user.id, self.document.id)
        self.assertFalse(os.path.exists(file_path))
        self.assertEqual(Document.query.count(), 0)

    def test_stats(self):
        self.document.expires_at = datetime.utcnow() - timedelta(days=1)
        db.session.commit()
        upload_document(self.user.id, 'notes.txt', b'data', {'is_encrypted': True})

        stats = get_document_stats(self.user.id)
        self.assertEqual(stats['total'], 2)
        self.assertEqual(stats['total_size'], 13 + 4)
        self.assertEqual(stats['by_category'], {'identity': 1, 'other': 1})
        self.assertEqual(stats['recent_uploads'], 2)
        self.assertEqual(stats['encrypted'], 1)
        self.assertEqual(stats['expired'], 1)

    def test_shared_document(self):
        guardian = invite_guardian(self.user, {'name': 'Maria Novakova', 'email': 'maria@example.com',
                                               'relationship': 'spouse'})
        guardian, _ = accept_invitation(guardian.invitation_token)

        with self.assertRaises(DocumentError):
            get_shared_document(guardian, self.document.id)

        grant_document_access(self.user.id, guardian.id, self.document.id)
        self.assertEqual(get_shared_document(guardian, self.document.id).id, self.document.id)

    def test_find_expiring(self):
        now = datetime.utcnow()
        self.document.expires_at = now + timedelta(days=10)
        db.session.commit()
        self.assertEqual(find_expiring_documents(30, now), [self.document])
        self.assertEqual(find_expiring_documents(5, now), [])


if __name__ == '__main__':
    unittest.main()
