"""
Trust Seal Tests

Tests for scoring, issuing and verifying Trust Seals.
"""

import unittest
from datetime import datetime, timedelta

from legacyguard import db
from legacyguard.audit_logger import AuditAction
from legacyguard.models import AuditLog
from legacyguard.trust_seal import (
    TrustSealError, calculate_data_completeness, check_legal_compliance, calculate_content_confidence,
    get_trust_seal_level, get_trust_seal_recommendations, verify_trust_seal, revoke_trust_seal,
    renew_trust_seal, batch_verify, get_verification_history, get_trust_seal_statistics,
    generate_public_verification_url, extract_seal_id_from_url, generate_certificate
)
from legacyguard.will_generator import generate_will
from legacyguard.testing import AppTestCase, valid_will_payload


class TestScoring(unittest.TestCase):

    def test_completeness(self):
        self.assertAlmostEqual(calculate_data_completeness(valid_will_payload()), 60 + 30 * 5 / 7 + 10)
        self.assertAlmostEqual(calculate_data_completeness({}), 30 * 2 / 7)

    def test_legal_compliance_issues(self):
        score, issues = check_legal_compliance(valid_will_payload(), '')
        self.assertEqual(score, 85)
        self.assertEqual(issues, ['Guardian not specified for minor children'])

        payload = valid_will_payload(assets=[], executor=None, has_children=False)
        score, issues = check_legal_compliance(payload, '')
        self.assertEqual(score, 50)
        self.assertIn('Missing executor', issues)
        self.assertIn('No assets specified', issues)

    def test_czech_witnessed_needs_two_witnesses(self):
        payload = valid_will_payload(jurisdiction='CZ', has_children=False, witnesses=[{'name': 'A'}])
        score, issues = check_legal_compliance(payload, '')
        self.assertEqual(score, 80)

    def test_will_text_checks(self):
        _, issues = check_legal_compliance(valid_will_payload(has_children=False), 'Some unrelated text')
        self.assertIn('Will does not properly reference testator name', issues)
        self.assertIn('Will does not properly reference executor', issues)

    def test_content_confidence(self):
        self.assertEqual(calculate_content_confidence('short'), 20)
        text = ('ARTICLE I - I hereby declare this my testament. The executor shall give the assets '
                'of my estate to each beneficiary. The signature of the testator follows below.')
        self.assertEqual(calculate_content_confidence(text), 100)

    def test_content_confidence_slovak_markers(self):
        text = ('ČLÁNOK I - Ja, Jan Novák, vyhlasujem túto listinu za svoju poslednú vôľu. '
                'Miesto, dátum a podpis poručiteľa nasledujú nižšie.')
        self.assertEqual(calculate_content_confidence(text), 80)

    def test_content_confidence_markers_are_case_sensitive(self):
        text = ('Article I - I, Jan Novak, declare this document to be my last will. '
                'Signature of the testator and the date follow below.')
        self.assertEqual(calculate_content_confidence(text), 70)

    def test_levels(self):
        self.assertEqual(get_trust_seal_level(95), 'Platinum')
        self.assertEqual(get_trust_seal_level(91), 'Platinum')
        self.assertEqual(get_trust_seal_level(90), 'Gold')
        self.assertEqual(get_trust_seal_level(71), 'Gold')
        self.assertEqual(get_trust_seal_level(70), 'Silver')
        self.assertEqual(get_trust_seal_level(41), 'Silver')
        self.assertEqual(get_trust_seal_level(40), 'Bronze')

    def test_recommendations(self):
        recommendations = get_trust_seal_recommendations('Bronze', {'has_children': True})
        self.assertIn('Specify a guardian for minor children', recommendations)
        self.assertEqual(get_trust_seal_recommendations('Platinum', {}), [])


class TestSealLifecycle(AppTestCase):

    def setUp(self):
        super().setUp()
        self.user, self.token = self.create_user()
        self.will, self.seal = generate_will(self.user, valid_will_payload())

    def test_issued_seal_verifies(self):
        result = verify_trust_seal(self.seal.id)
        self.assertTrue(result['valid'])
        self.assertEqual(result['level'], self.seal.level)
        self.assertEqual(result['warnings'], [])
        self.assertNotIn('metadata', result)

    def test_metadata(self):
        result = verify_trust_seal(self.seal.id, include_metadata=True)
        self.assertEqual(result['metadata']['document_info']['jurisdiction'], 'SK')
        self.assertEqual(result['metadata']['confidence_score'], self.seal.confidence_score)

    def test_unknown_seal(self):
        result = verify_trust_seal('00000000-0000-0000-0000-000000000000')
        self.assertEqual(result, {'valid': False, 'reason': 'Seal not found or has been revoked'})

    def test_expiry_warning_and_expired(self):
        self.seal.valid_until = datetime.utcnow() + timedelta(days=10)
        db.session.commit()
        self.assertIn('This Trust Seal will expire within 30 days', verify_trust_seal(self.seal.id)['warnings'])

        result = verify_trust_seal(self.seal.id, now=datetime.utcnow() + timedelta(days=11))
        self.assertFalse(result['valid'])
        self.assertEqual(result['reason'], 'Seal has expired')

    def test_tampered_seal(self):
        self.seal.level = 'Platinum' if self.seal.level != 'Platinum' else 'Gold'
        db.session.commit()
        result = verify_trust_seal(self.seal.id)
        self.assertFalse(result['valid'])
        self.assertEqual(result['reason'], 'Invalid digital signature')

    def test_signature_depends_on_secret(self):
        self.app.config['TRUST_SEAL_SECRET'] = 'another-secret'
        self.assertFalse(verify_trust_seal(self.seal.id)['valid'])

    def test_revoke(self):
        revoke_trust_seal(self.seal.id, 'Issued in error', 'admin')
        self.assertFalse(verify_trust_seal(self.seal.id)['valid'])

        with self.assertRaises(TrustSealError) as ctx:
            revoke_trust_seal(self.seal.id, 'again', 'admin')
        self.assertEqual(ctx.exception.status_code, 409)

        with self.assertRaises(TrustSealError) as ctx:
            renew_trust_seal(self.seal.id)
        self.assertEqual(ctx.exception.status_code, 409)

    def test_renew_extends_from_current_expiry(self):
        old_valid_until = self.seal.valid_until
        renew_trust_seal(self.seal.id, 30, renewed_by='admin')
        self.assertEqual(self.seal.valid_until, old_valid_until + timedelta(days=30))

        with self.assertRaises(TrustSealError) as ctx:
            renew_trust_seal(self.seal.id, 0)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_renew_expired_seal_starts_from_now(self):
        self.seal.valid_until = datetime.utcnow() - timedelta(days=100)
        db.session.commit()
        renew_trust_seal(self.seal.id, 30)
        self.assertGreater(self.seal.valid_until, datetime.utcnow() + timedelta(days=29))

    def test_unknown_seal_lifecycle(self):
        with self.assertRaises(TrustSealError) as ctx:
            revoke_trust_seal('missing', 'reason', 'admin')
        self.assertEqual(ctx.exception.status_code, 404)

    def test_verification_history(self):
        verify_trust_seal(self.seal.id, log_verification=True,
                          requester={'ip_address': '203.0.113.5', 'user_agent': 'curl'})
        verify_trust_seal(self.seal.id)

        history = get_verification_history(self.seal.id)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]['result'], 'valid')
        self.assertEqual(history[0]['validated_by'], '203.0.113.5')
        self.assertEqual(AuditLog.query.filter_by(action=AuditAction.TRUST_SEAL_VERIFIED).count(), 1)

    def test_batch_verify(self):
        results = batch_verify([self.seal.id, 'missing'])
        self.assertTrue(results[self.seal.id]['valid'])
        self.assertFalse(results['missing']['valid'])

    def test_statistics(self):
        _, second = generate_will(self.user, valid_will_payload())
        revoke_trust_seal(second.id, 'test', 'admin')

        stats = get_trust_seal_statistics()
        self.assertEqual(stats['total_seals'], 2)
        self.assertEqual(stats['valid_seals'], 1)
        self.assertEqual(stats['revoked_seals'], 1)
        self.assertEqual(sum(stats['seals_by_level'].values()), 2)

    def test_verification_url(self):
        url = generate_public_verification_url(self.seal.id)
        self.assertEqual(extract_seal_id_from_url(url), self.seal.id)
        self.assertIsNone(extract_seal_id_from_url('https://evil.example.com/verify/' + self.seal.id))

    def test_certificate(self):
        certificate = generate_certificate(self.seal)
        self.assertEqual(certificate['id'], self.seal.id)
        self.assertTrue(certificate['verification_url'].endswith(self.seal.id))
        self.assertIn('description', certificate)


if __name__ == '__main__':
    unittest.main()
