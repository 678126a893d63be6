"""
Shared fixtures for the test modules: an application backed by an
in-memory database and throwaway storage directories, plus sample
payloads.
"""

import copy
import shutil
import hashlib
import tempfile
import unittest

from legacyguard import create_app, db
from legacyguard.security import abuse_detector

CRON_SECRET = 'test-cron-secret'
ADMIN_USERNAME = 'admin'
ADMIN_PASSWORD = 'correct horse battery staple'

VALID_WILL_PAYLOAD = {
    'full_name': 'Jan Novak',
    'birth_date': '1970-01-15',
    'birth_place': 'Bratislava',
    'address': 'Hlavna 12, 811 01 Bratislava',
    'citizenship': 'Slovak',
    'jurisdiction': 'SK',
    'will_type': 'witnessed',
    'marital_status': 'married',
    'spouse_name': 'Maria Novakova',
    'has_children': True,
    'children': [
        {'name': 'Peter Novak', 'birth_date': '1995-06-01'},
    ],
    'executor': {'name': 'Eva Kovacova', 'relationship': 'friend', 'address': 'Dlha 3, Kosice'},
    'alternate_executor': {'name': 'Tomas Horvath', 'relationship': 'lawyer'},
    'assets': [
        {'description': 'Apartment at Hlavna 12', 'beneficiary': 'Maria Novakova', 'percentage': 60},
        {'description': 'Savings account', 'beneficiary': 'Peter Novak', 'percentage': 40},
    ],
    'witnesses': [
        {'name': 'Anna Svobodova', 'address': 'Kratka 5, Bratislava'},
        {'name': 'Milan Kral', 'address': 'Nova 9, Trnava'},
    ],
    'funeral_wishes': 'A small family ceremony.',
    'digital_assets': [
        {'platform': 'Email', 'instructions': 'Close the account after one year.'},
    ],
}


def valid_will_payload(**overrides):
    """A deep copy of the sample will form with top-level overrides applied."""
    payload = copy.deepcopy(VALID_WILL_PAYLOAD)
    payload.update(overrides)
    return payload


class AppTestCase(unittest.TestCase):
    """Creates a fresh application and database for every test."""

    def setUp(self):
        self.storage_dir = tempfile.mkdtemp()
        self.app = create_app({
            'TESTING': True,
            'SECRET_KEY': 'test-secret-key',
            'SQLALCHEMY_DATABASE_URI': 'sqlite://',
            'WTF_CSRF_ENABLED': False,
            'RATELIMIT_ENABLED': False,
            'SESSION_COOKIE_SECURE': False,
            'MAIL_SUPPRESS_SEND': True,
            'EMAIL_RETRY_BASE_DELAY': 0,
            'CRON_SECRET': CRON_SECRET,
            'ADMIN_USERNAME': ADMIN_USERNAME,
            'ADMIN_PASSWORD_HASH': hashlib.sha256(ADMIN_PASSWORD.encode()).hexdigest(),
            'TRUST_SEAL_SECRET': 'test-trust-seal-secret',
            'DOCUMENT_STORAGE_DIR': f'{self.storage_dir}/documents',
            'BACKUP_DIR': f'{self.storage_dir}/backups',
            'WILL_STORAGE_DIR': f'{self.storage_dir}/wills',
        })
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.client = self.app.test_client()
        abuse_detector.reset()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()
        shutil.rmtree(self.storage_dir, ignore_errors=True)

    def create_user(self, email='jan@example.com', full_name='Jan Novak', tier='free'):
        from legacyguard.accounts import create_user
        return create_user(email, full_name, tier=tier)

    def auth_headers(self, token):
        return {'Authorization': f'Bearer {token}'}

    def outbox(self):
        from legacyguard.email_service import get_outbox
        return get_outbox()
