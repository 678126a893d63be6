"""
Security Tests

Tests for security features:
- Input sanitization
- Abuse detection
- API token, guardian token and cron secret authentication
- Admin login, sessions and CSRF protection
- Security headers
"""

import unittest
from datetime import datetime, timedelta

from legacyguard.security import (
    sanitize_string, sanitize_payload, AbuseDetector, hash_token, verify_admin_password
)
from legacyguard.testing import AppTestCase, CRON_SECRET, ADMIN_USERNAME, ADMIN_PASSWORD


class TestInputSanitization(unittest.TestCase):
    """Test input sanitization functions."""

    def test_sanitize_string_removes_script(self):
        sanitized = sanitize_string('<script>alert("xss")</script>Jan')
        self.assertEqual(sanitized, 'Jan')

    def test_sanitize_string_removes_tags_and_handlers(self):
        sanitized = sanitize_string('<img src=x onerror=alert(1)>Jan <b>Novak</b>')
        self.assertNotIn('<', sanitized)
        self.assertNotIn('onerror=', sanitized)
        self.assertIn('Novak', sanitized)

    def test_sanitize_string_preserves_safe_text(self):
        self.assertEqual(sanitize_string("Ján O'Connor-Nováková"), "Ján O'Connor-Nováková")

    def test_sanitize_string_trims_and_truncates(self):
        self.assertEqual(sanitize_string('  Jan  '), 'Jan')
        self.assertEqual(len(sanitize_string('a' * 20000)), 10000)

    def test_sanitize_string_empty_input(self):
        self.assertEqual(sanitize_string(''), '')
        self.assertEqual(sanitize_string(None), '')

    def test_sanitize_payload_nested(self):
        payload = {
            'name': '<script>alert(1)</script>Jan',
            'executor': {'name': '<b>Eva</b>'},
            'items': ['<i>x</i>', 3, True, None],
        }
        sanitized = sanitize_payload(payload)
        self.assertEqual(sanitized['name'], 'Jan')
        self.assertEqual(sanitized['executor']['name'], 'Eva')
        self.assertEqual(sanitized['items'], ['x', 3, True, None])

    def test_sanitize_payload_skip_keys(self):
        metadata = {'iv': '<abc>', 'algorithm': 'AES-GCM'}
        sanitized = sanitize_payload({'encryption_metadata': metadata, 'title': '<b>t</b>'},
                                     skip_keys=['encryption_metadata'])
        self.assertEqual(sanitized['encryption_metadata'], metadata)
        self.assertEqual(sanitized['title'], 't')


class TestAbuseDetector(unittest.TestCase):
    """Test abuse detection functionality."""

    def setUp(self):
        self.detector = AbuseDetector(request_threshold=100)
        self.test_ip = '192.168.1.1'

    def test_record_request_tracks_count(self):
        for _ in range(5):
            self.detector.record_request(self.test_ip)
        self.assertEqual(self.detector.get_request_count(self.test_ip), 5)

    def test_is_blocked_after_threshold(self):
        self.assertFalse(self.detector.is_blocked(self.test_ip))
        for _ in range(100):
            self.detector.record_request(self.test_ip)
        self.assertTrue(self.detector.is_blocked(self.test_ip))

    def test_block_expires_after_timeout(self):
        self.detector._blocked[self.test_ip] = datetime.utcnow() - timedelta(minutes=1)
        self.assertFalse(self.detector.is_blocked(self.test_ip))

    def test_different_ips_tracked_separately(self):
        for _ in range(10):
            self.detector.record_request('192.168.1.1')
        for _ in range(5):
            self.detector.record_request('192.168.1.2')
        self.assertEqual(self.detector.get_request_count('192.168.1.1'), 10)
        self.assertEqual(self.detector.get_request_count('192.168.1.2'), 5)

    def test_cleanup_old_requests(self):
        self.detector._requests[self.test_ip] = [datetime.utcnow() - timedelta(hours=2)] * 10
        self.detector.cleanup_old_requests()
        self.assertEqual(self.detector.get_request_count(self.test_ip), 0)

    def test_reset(self):
        for _ in range(100):
            self.detector.record_request(self.test_ip)
        self.detector.reset()
        self.assertFalse(self.detector.is_blocked(self.test_ip))
        self.assertEqual(self.detector.get_request_count(self.test_ip), 0)


class TestTokens(unittest.TestCase):

    def test_hash_token_is_sha256_hex(self):
        digest = hash_token('token')
        self.assertEqual(len(digest), 64)
        self.assertEqual(digest, hash_token('token'))
        self.assertNotEqual(digest, hash_token('token2'))

    def test_verify_admin_password(self):
        import hashlib
        password_hash = hashlib.sha256(b'secret').hexdigest()
        self.assertTrue(verify_admin_password('secret', password_hash))
        self.assertFalse(verify_admin_password('wrong', password_hash))
        self.assertFalse(verify_admin_password('', password_hash))
        self.assertFalse(verify_admin_password('secret', ''))


class TestApiAuthentication(AppTestCase):
    """Bearer token authentication for the user API."""

    def test_missing_token(self):
        response = self.client.get('/api/users/me')
        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.get_json()['ok'])

    def test_invalid_token(self):
        response = self.client.get('/api/users/me', headers=self.auth_headers('nope'))
        self.assertEqual(response.status_code, 401)

    def test_valid_token(self):
        user, token = self.create_user()
        response = self.client.get('/api/users/me', headers=self.auth_headers(token))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['user']['id'], user.id)

    def test_deactivated_user_rejected(self):
        from legacyguard import db
        user, token = self.create_user()
        user.is_active = False
        db.session.commit()
        response = self.client.get('/api/users/me', headers=self.auth_headers(token))
        self.assertEqual(response.status_code, 401)

    def test_guardian_token_is_not_a_user_token(self):
        response = self.client.get('/api/guardian/documents', headers=self.auth_headers('nope'))
        self.assertEqual(response.status_code, 401)

    def test_security_headers(self):
        response = self.client.get('/api/users/me')
        self.assertEqual(response.headers['X-Content-Type-Options'], 'nosniff')
        self.assertEqual(response.headers['X-Frame-Options'], 'DENY')
        self.assertIn("default-src 'none'", response.headers['Content-Security-Policy'])


class TestCronAuthentication(AppTestCase):
    """Scheduled job endpoints require the cron secret."""

    def test_missing_credentials(self):
        response = self.client.post('/api/cron/dead-mans-switch')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()['error'], 'Missing credentials')

    def test_invalid_token(self):
        response = self.client.post('/api/cron/dead-mans-switch', headers=self.auth_headers('wrong'))
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()['error'], 'Invalid token')

    def test_unconfigured_secret(self):
        self.app.config['CRON_SECRET'] = ''
        response = self.client.post('/api/cron/dead-mans-switch', headers=self.auth_headers(CRON_SECRET))
        self.assertEqual(response.status_code, 503)

    def test_valid_secret(self):
        response = self.client.get('/api/cron/dead-mans-switch', headers=self.auth_headers(CRON_SECRET))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()['ok'])


class TestAdminAuthentication(AppTestCase):
    """Admin login, session validation and logout."""

    def login(self, password=ADMIN_PASSWORD):
        return self.client.post('/admin/login', json={'username': ADMIN_USERNAME, 'password': password})

    def test_admin_requires_session(self):
        response = self.client.get('/admin/stats')
        self.assertEqual(response.status_code, 401)

    def test_login_with_wrong_password(self):
        response = self.login('wrong')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.client.get('/admin/stats').status_code, 401)

    def test_login_and_logout(self):
        self.assertEqual(self.login().status_code, 200)
        self.assertEqual(self.client.get('/admin/stats').status_code, 200)

        self.assertEqual(self.client.post('/admin/logout').status_code, 200)
        self.assertEqual(self.client.get('/admin/stats').status_code, 401)

    def test_expired_session_rejected(self):
        from legacyguard import db
        from legacyguard.models import AdminSession

        self.login()
        admin_session = AdminSession.query.filter_by(admin_username=ADMIN_USERNAME).first()
        admin_session.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()

        self.assertEqual(self.client.get('/admin/stats').status_code, 401)

    def test_admin_not_configured(self):
        self.app.config['ADMIN_PASSWORD_HASH'] = ''
        self.assertEqual(self.login().status_code, 503)
        self.assertEqual(self.client.get('/admin/stats').status_code, 503)

    def test_login_attempts_are_audited(self):
        from legacyguard.models import AuditLog
        from legacyguard.audit_logger import AuditAction

        self.login('wrong')
        self.login()
        actions = [log.action for log in AuditLog.query.order_by(AuditLog.id).all()]
        self.assertIn(AuditAction.ADMIN_LOGIN_FAILED, actions)
        self.assertIn(AuditAction.ADMIN_LOGIN, actions)

    def test_admin_actions_require_csrf_token(self):
        self.login()
        self.app.config['WTF_CSRF_ENABLED'] = True

        response = self.client.post('/admin/backups', json={})
        self.assertEqual(response.status_code, 400)

        token = self.client.get('/admin/csrf-token').get_json()['csrf_token']
        response = self.client.post('/admin/backups', json={}, headers={'X-CSRFToken': token})
        self.assertEqual(response.status_code, 201)


if __name__ == '__main__':
    unittest.main()
