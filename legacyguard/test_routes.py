"""
API Route Tests

End-to-end tests through the Flask test client:
- Registration, token authentication and check-in
- Guardian invitation, acceptance and guardian document access
- Document upload and download
- Will generation, PDF download and public Trust Seal verification
- Time capsules, emergency endpoints and support
- Cron authentication and the session-based admin API
"""

import io
import unittest

from legacyguard import db
from legacyguard.models import Guardian, EmergencyActivation
from legacyguard.testing import AppTestCase, valid_will_payload, CRON_SECRET, ADMIN_USERNAME, ADMIN_PASSWORD


class RouteTestCase(AppTestCase):

    def setUp(self):
        super().setUp()
        self.user, self.token = self.create_user(tier='premium')
        self.headers = self.auth_headers(self.token)

    def upload(self, content=b'%PDF-1.4 passport scan', file_name='passport.pdf', **fields):
        data = {'file': (io.BytesIO(content), file_name)}
        data.update(fields)
        return self.client.post('/api/documents', data=data, headers=self.headers,
                                content_type='multipart/form-data')


class TestAccounts(RouteTestCase):

    def test_register(self):
        response = self.client.post('/api/users/register', json={
            'email': 'eva@example.com', 'full_name': 'Eva Kovacova', 'jurisdiction': 'CZ'
        })
        self.assertEqual(response.status_code, 201)
        data = response.get_json()
        self.assertEqual(data['user']['jurisdiction'], 'CZ')

        me = self.client.get('/api/users/me', headers=self.auth_headers(data['api_token']))
        self.assertEqual(me.get_json()['user']['email'], 'eva@example.com')

    def test_register_rejects_bad_input(self):
        self.assertEqual(self.client.post('/api/users/register').status_code, 400)

        response = self.client.post('/api/users/register', json={'email': 'not-an-email', 'full_name': 'X'})
        self.assertEqual(response.status_code, 422)
        self.assertFalse(response.get_json()['ok'])

    def test_authentication_required(self):
        self.assertEqual(self.client.get('/api/users/me').status_code, 401)
        response = self.client.get('/api/users/me', headers=self.auth_headers('wrong-token'))
        self.assertEqual(response.status_code, 401)

    def test_check_in(self):
        response = self.client.post('/api/users/me/check-in', headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['cancelled_activations'], 0)

    def test_token_rotation(self):
        response = self.client.post('/api/users/me/token', headers=self.headers)
        new_token = response.get_json()['api_token']

        self.assertEqual(self.client.get('/api/users/me', headers=self.headers).status_code, 401)
        self.assertEqual(self.client.get('/api/users/me', headers=self.auth_headers(new_token)).status_code, 200)

    def test_recovery_kit(self):
        response = self.client.post('/api/users/me/recovery-kit', headers=self.headers)
        self.assertEqual(response.status_code, 201)
        kit = response.get_json()['recovery_kit']

        check = self.client.post('/api/users/me/recovery-kit/verify', json={'kit': kit}, headers=self.headers)
        self.assertTrue(check.get_json()['valid'])
        check = self.client.post('/api/users/me/recovery-kit/verify', json={'kit': 'nope'}, headers=self.headers)
        self.assertFalse(check.get_json()['valid'])

    def test_audit_trail(self):
        self.client.post('/api/users/me/check-in', headers=self.headers)
        response = self.client.get('/api/users/me/audit-trail', headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()['entries'])


class TestGuardianFlow(RouteTestCase):

    def invite(self, **overrides):
        payload = {'name': 'Maria Novakova', 'email': 'maria@example.com', 'relationship': 'spouse'}
        payload.update(overrides)
        return self.client.post('/api/guardians', json=payload, headers=self.headers)

    def test_invite_accept_and_download(self):
        document_id = self.upload().get_json()['document']['id']

        response = self.invite()
        self.assertEqual(response.status_code, 201)
        guardian_id = response.get_json()['guardian']['id']
        token = db.session.get(Guardian, guardian_id).invitation_token

        details = self.client.get(f'/api/invitations/{token}')
        self.assertEqual(details.status_code, 200)

        accepted = self.client.post(f'/api/invitations/{token}/accept')
        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(accepted.get_json()['guardian']['status'], 'active')
        guardian_headers = self.auth_headers(accepted.get_json()['access_token'])

        grant = self.client.post(f'/api/guardians/{guardian_id}/documents/{document_id}', headers=self.headers)
        self.assertEqual(grant.status_code, 201)

        shared = self.client.get('/api/guardian/documents', headers=guardian_headers)
        self.assertEqual([d['id'] for d in shared.get_json()['documents']], [document_id])

        download = self.client.get(f'/api/guardian/documents/{document_id}/download', headers=guardian_headers)
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, b'%PDF-1.4 passport scan')

        revoke = self.client.delete(f'/api/guardians/{guardian_id}/documents/{document_id}', headers=self.headers)
        self.assertTrue(revoke.get_json()['removed'])
        download = self.client.get(f'/api/guardian/documents/{document_id}/download', headers=guardian_headers)
        self.assertEqual(download.status_code, 404)

    def test_user_token_is_not_a_guardian_token(self):
        self.assertEqual(self.client.get('/api/guardian/documents', headers=self.headers).status_code, 401)

    def test_invalid_invitation_payload(self):
        response = self.invite(email='broken')
        self.assertEqual(response.status_code, 422)

    def test_decline(self):
        guardian_id = self.invite().get_json()['guardian']['id']
        token = db.session.get(Guardian, guardian_id).invitation_token

        response = self.client.post(f'/api/invitations/{token}/decline')
        self.assertEqual(response.get_json()['status'], 'declined')
        self.assertEqual(self.client.post(f'/api/invitations/{token}/accept').status_code, 404)

    def test_manage_guardian(self):
        guardian_id = self.invite().get_json()['guardian']['id']

        response = self.client.patch(f'/api/guardians/{guardian_id}', json={'phone': '+421900111222'},
                                     headers=self.headers)
        self.assertEqual(response.get_json()['guardian']['phone'], '+421900111222')

        self.assertEqual(self.client.post(f'/api/guardians/{guardian_id}/resend', headers=self.headers).status_code,
                         200)
        revoked = self.client.post(f'/api/guardians/{guardian_id}/revoke', headers=self.headers)
        self.assertEqual(revoked.get_json()['guardian']['status'], 'revoked')

        listing = self.client.get('/api/guardians?include_inactive=true', headers=self.headers)
        self.assertEqual(len(listing.get_json()['guardians']), 1)

        self.assertEqual(self.client.delete(f'/api/guardians/{guardian_id}', headers=self.headers).status_code, 200)
        self.assertEqual(self.client.get(f'/api/guardians/{guardian_id}', headers=self.headers).status_code, 404)


class TestDocuments(RouteTestCase):

    def test_upload_list_and_download(self):
        response = self.upload(title='My passport', tags='identity, travel', expires_at='2031-05-01')
        self.assertEqual(response.status_code, 201)
        document = response.get_json()['document']
        self.assertEqual(document['title'], 'My passport')
        self.assertEqual(document['tags'], ['identity', 'travel'])
        self.assertEqual(document['file_name'], 'passport.pdf')

        listing = self.client.get('/api/documents', headers=self.headers)
        self.assertEqual(len(listing.get_json()['documents']), 1)

        download = self.client.get(f"/api/documents/{document['id']}/download", headers=self.headers)
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, b'%PDF-1.4 passport scan')

        stats = self.client.get('/api/documents/stats', headers=self.headers)
        self.assertEqual(stats.status_code, 200)

    def test_upload_requires_file(self):
        response = self.client.post('/api/documents', data={'title': 'No file'}, headers=self.headers,
                                    content_type='multipart/form-data')
        self.assertEqual(response.status_code, 400)

    def test_bad_encryption_metadata(self):
        response = self.upload(is_encrypted='true', encryption_metadata='{not json')
        self.assertEqual(response.status_code, 400)

    def test_update_and_delete(self):
        document_id = self.upload().get_json()['document']['id']

        response = self.client.patch(f'/api/documents/{document_id}', json={'title': 'Renewed passport'},
                                     headers=self.headers)
        self.assertEqual(response.get_json()['document']['title'], 'Renewed passport')

        self.assertEqual(self.client.delete(f'/api/documents/{document_id}', headers=self.headers).status_code, 200)
        self.assertEqual(self.client.get(f'/api/documents/{document_id}', headers=self.headers).status_code, 404)

    def test_categorize(self):
        response = self.client.post('/api/documents/categorize', json={'file_name': 'passport_scan.pdf'},
                                    headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertIn('category', response.get_json()['suggestion'])

        self.assertEqual(self.client.post('/api/documents/categorize', json={}, headers=self.headers).status_code,
                         400)


class TestWills(RouteTestCase):

    def generate(self):
        response = self.client.post('/api/wills', json=valid_will_payload(), headers=self.headers)
        self.assertEqual(response.status_code, 201)
        return response.get_json()

    def test_generate_download_and_verify(self):
        data = self.generate()
        will_id = data['will']['id']
        seal_id = data['trust_seal']['id']
        self.assertTrue(data['verification_url'].endswith(seal_id))

        download = self.client.get(data['download_url'], headers=self.headers)
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.mimetype, 'application/pdf')
        self.assertTrue(download.data.startswith(b'%PDF'))

        shown = self.client.get(f'/api/wills/{will_id}', headers=self.headers)
        self.assertEqual(shown.get_json()['will']['trust_seal']['id'], seal_id)

        verified = self.client.get(f'/verify/{seal_id}')
        self.assertEqual(verified.status_code, 200)
        self.assertTrue(verified.get_json()['valid'])
        self.assertNotIn('metadata', verified.get_json())

        with_metadata = self.client.get(f'/verify/{seal_id}?metadata=true')
        self.assertIn('metadata', with_metadata.get_json())

    def test_invalid_form(self):
        response = self.client.post('/api/wills', json={'full_name': 'Jan Novak'}, headers=self.headers)
        self.assertEqual(response.status_code, 422)
        self.assertFalse(response.get_json()['ok'])
        self.assertTrue(response.get_json()['errors'])

    def test_validate_and_preview(self):
        response = self.client.post('/api/wills/validate', json=valid_will_payload(), headers=self.headers)
        self.assertEqual(response.status_code, 200)

        response = self.client.post('/api/wills/preview', json=valid_will_payload(), headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get('/api/wills', headers=self.headers).get_json()['wills'], [])

        response = self.client.post('/api/wills/validate', json={}, headers=self.headers)
        self.assertEqual(response.status_code, 422)

    def test_regenerate(self):
        will_id = self.generate()['will']['id']
        response = self.client.post(f'/api/wills/{will_id}/regenerate', headers=self.headers)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['will']['version_number'], 2)
        self.assertEqual(len(self.client.get('/api/wills', headers=self.headers).get_json()['wills']), 2)

    def test_signing_instructions_and_certificate(self):
        data = self.generate()
        response = self.client.get(f"/api/wills/{data['will']['id']}/signing-instructions", headers=self.headers)
        self.assertEqual(response.get_json()['instructions']['jurisdiction'], 'SK')

        certificate = self.client.get(f"/api/trust-seals/{data['trust_seal']['id']}/certificate",
                                      headers=self.headers)
        self.assertEqual(certificate.get_json()['certificate']['id'], data['trust_seal']['id'])

    def test_other_users_will_hidden(self):
        will_id = self.generate()['will']['id']
        _, other_token = self.create_user(email='other@example.com', full_name='Other Person')
        response = self.client.get(f'/api/wills/{will_id}', headers=self.auth_headers(other_token))
        self.assertEqual(response.status_code, 404)

    def test_batch_verify(self):
        seal_id = self.generate()['trust_seal']['id']
        response = self.client.post('/verify/batch', json={'seal_ids': [seal_id, 'missing']})
        results = response.get_json()['results']
        self.assertTrue(results[seal_id]['valid'])
        self.assertFalse(results['missing']['valid'])

        self.assertEqual(self.client.post('/verify/batch', json={'seal_ids': []}).status_code, 400)
        too_many = {'seal_ids': [str(i) for i in range(51)]}
        self.assertEqual(self.client.post('/verify/batch', json=too_many).status_code, 400)


class TestTimeCapsulesAndEmergency(RouteTestCase):

    def test_time_capsule_crud(self):
        response = self.client.post('/api/time-capsules', json={
            'title': 'Goodbye', 'message': 'Look after each other.',
            'recipient_email': 'peter@example.com', 'delivery_condition': 'on_death',
        }, headers=self.headers)
        self.assertEqual(response.status_code, 201)
        capsule_id = response.get_json()['time_capsule']['id']

        listing = self.client.get('/api/time-capsules?delivered=false', headers=self.headers)
        self.assertEqual([c['id'] for c in listing.get_json()['time_capsules']], [capsule_id])
        self.assertEqual(self.client.get('/api/time-capsules/analytics', headers=self.headers).status_code, 200)

        self.assertEqual(self.client.delete(f'/api/time-capsules/{capsule_id}', headers=self.headers).status_code,
                         200)
        self.assertEqual(self.client.get(f'/api/time-capsules/{capsule_id}', headers=self.headers).status_code,
                         404)

    def test_invalid_time_capsule(self):
        response = self.client.post('/api/time-capsules', json={'title': 'No message'}, headers=self.headers)
        self.assertEqual(response.status_code, 422)

    def test_emergency_status(self):
        response = self.client.get('/api/emergency/status', headers=self.headers)
        self.assertEqual(response.get_json()['status']['days_inactive'], 0)

    def test_trigger_and_cancel(self):
        response = self.client.post('/api/emergency/trigger', json={'type': 'manual'}, headers=self.headers)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['activation']['escalation_level'], 3)

        again = self.client.post('/api/emergency/trigger', json={'type': 'manual'}, headers=self.headers)
        self.assertEqual(again.status_code, 409)

        token = EmergencyActivation.query.one().cancellation_token
        cancelled = self.client.get(f'/api/emergency/cancel/{token}')
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(self.client.post(f'/api/emergency/cancel/{token}').status_code, 409)
        self.assertEqual(self.client.get('/api/emergency/cancel/unknown').status_code, 404)

    def test_test_activation(self):
        response = self.client.post('/api/emergency/trigger', json={'type': 'test'}, headers=self.headers)
        self.assertEqual(response.get_json()['activation']['status'], 'completed')

        response = self.client.post('/api/emergency/trigger', json={'type': 'automatic'}, headers=self.headers)
        self.assertEqual(response.status_code, 400)


class TestSupport(RouteTestCase):

    def test_chat(self):
        response = self.client.post('/api/support/chat', json={'query': 'I forgot my password'},
                                    headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['response']['response_type'], 'rule_based')

        self.assertEqual(self.client.post('/api/support/chat', json={'query': ''}, headers=self.headers).status_code,
                         400)

    def test_tickets(self):
        response = self.client.post('/api/support/tickets', json={
            'title': 'Payment failed', 'description': 'My card was charged twice'
        }, headers=self.headers)
        self.assertEqual(response.status_code, 201)
        ticket_id = response.get_json()['ticket']['id']
        self.assertEqual(response.get_json()['ticket']['category'], 'billing')

        listing = self.client.get('/api/support/tickets', headers=self.headers)
        self.assertEqual([t['id'] for t in listing.get_json()['tickets']], [ticket_id])

        rating = self.client.post(f'/api/support/tickets/{ticket_id}/rating', json={'rating': 5},
                                  headers=self.headers)
        self.assertEqual(rating.status_code, 409)

    def test_analyze(self):
        response = self.client.post('/api/support/analyze', json={
            'title': 'Payment problem', 'description': 'I was charged twice'
        }, headers=self.headers)
        self.assertEqual(response.get_json()['analysis']['category'], 'billing')

    def test_knowledge_base_is_public(self):
        results = self.client.get('/api/support/kb/search?q=encryption').get_json()['results']
        self.assertEqual(results[0]['article']['slug'], 'security-and-encryption')

        article = self.client.get('/api/support/kb/pricing-plans')
        self.assertIn('content', article.get_json()['article'])
        self.assertEqual(self.client.get('/api/support/kb/missing').status_code, 404)

        vote = self.client.post('/api/support/kb/getting-started/vote', json={'helpful': True})
        self.assertEqual(vote.get_json()['article']['effectiveness_score'], 0.667)
        self.assertEqual(self.client.post('/api/support/kb/getting-started/vote', json={}).status_code, 400)

        self.assertEqual(self.client.get('/api/support/kb/stats').status_code, 200)


class TestCron(RouteTestCase):

    def cron_headers(self, secret=CRON_SECRET):
        return {'Authorization': f'Bearer {secret}'}

    def test_authentication(self):
        response = self.client.post('/api/cron/dead-mans-switch')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()['error'], 'Missing credentials')

        response = self.client.post('/api/cron/dead-mans-switch', headers=self.cron_headers('wrong'))
        self.assertEqual(response.get_json()['error'], 'Invalid token')

        response = self.client.post('/api/cron/dead-mans-switch', headers=self.headers)
        self.assertEqual(response.status_code, 401)

        self.app.config['CRON_SECRET'] = ''
        response = self.client.post('/api/cron/dead-mans-switch', headers=self.cron_headers())
        self.assertEqual(response.status_code, 503)

    def test_jobs(self):
        response = self.client.get('/api/cron/dead-mans-switch', headers=self.cron_headers())
        self.assertEqual(response.get_json()['results']['users_checked'], 1)

        response = self.client.post('/api/cron/check-expirations', headers=self.cron_headers())
        self.assertEqual(response.get_json()['results']['notifications_sent'], 0)

        response = self.client.post('/api/cron/deliver-time-capsules', headers=self.cron_headers())
        self.assertEqual(response.get_json()['total'], 0)

        response = self.client.post('/api/cron/backups', headers=self.cron_headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['backup']['status'], 'completed')


class TestAdmin(RouteTestCase):

    def login(self, password=ADMIN_PASSWORD):
        return self.client.post('/admin/login', json={'username': ADMIN_USERNAME, 'password': password})

    def test_login_required(self):
        self.assertEqual(self.client.get('/admin/stats').status_code, 401)
        self.assertEqual(self.login('wrong').status_code, 401)
        self.assertEqual(self.client.get('/admin/stats').status_code, 401)

    def test_login_and_logout(self):
        self.assertEqual(self.login().status_code, 200)
        stats = self.client.get('/admin/stats')
        self.assertEqual(stats.status_code, 200)
        self.assertEqual(stats.get_json()['stats']['users']['total'], 1)

        self.assertEqual(self.client.post('/admin/logout').status_code, 200)
        self.assertEqual(self.client.get('/admin/stats').status_code, 401)

    def test_csrf_token(self):
        response = self.client.get('/admin/csrf-token')
        self.assertTrue(response.get_json()['csrf_token'])

    def test_audit_logs(self):
        self.login()
        response = self.client.get('/admin/audit-logs')
        self.assertIn('admin_login', [log['action'] for log in response.get_json()['audit_logs']])

        integrity = self.client.get('/admin/audit-logs/integrity').get_json()
        self.assertEqual(integrity['invalid'], 0)
        self.assertGreater(integrity['valid'], 0)

    def test_backup_lifecycle(self):
        self.login()
        response = self.client.post('/admin/backups', json={'backup_type': 'database'})
        self.assertEqual(response.status_code, 201)
        backup_id = response.get_json()['backup']['id']

        verify = self.client.post(f'/admin/backups/{backup_id}/verify')
        self.assertTrue(verify.get_json()['valid'])

        restore = self.client.post(f'/admin/backups/{backup_id}/restore', json={'dry_run': True})
        self.assertEqual(restore.status_code, 200)
        self.assertTrue(restore.get_json()['restore']['dry_run'])

        bad = self.client.post(f'/admin/backups/{backup_id}/restore', json={'tables': 'users'})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(self.client.post('/admin/backups/missing/restore').status_code, 404)

        listing = self.client.get('/admin/backups')
        self.assertEqual([b['id'] for b in listing.get_json()['backups']], [backup_id])
        self.assertEqual(self.client.get('/admin/backups/statistics').get_json()['statistics']['total_backups'], 1)
        self.assertEqual(self.client.post('/admin/backups/cleanup').status_code, 200)

    def test_disaster_recovery_plan(self):
        self.login()
        plan = self.client.get('/admin/disaster-recovery/plan').get_json()['plan']
        self.assertEqual(plan['emergency_contacts'], [self.app.config['SUPPORT_EMAIL']])

        response = self.client.post('/admin/disaster-recovery/execute', json={'reason': 'drill', 'dry_run': True})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json()['result']['error'], 'No valid backup available')

    def test_trust_seal_admin(self):
        seal_id = self.client.post('/api/wills', json=valid_will_payload(),
                                   headers=self.headers).get_json()['trust_seal']['id']
        self.login()

        self.assertEqual(self.client.post(f'/admin/trust-seals/{seal_id}/revoke', json={}).status_code, 400)
        response = self.client.post(f'/admin/trust-seals/{seal_id}/revoke', json={'reason': 'Issued in error'})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(self.client.get(f'/verify/{seal_id}').get_json()['valid'])

        renew = self.client.post(f'/admin/trust-seals/{seal_id}/renew', json={'extension_days': 30})
        self.assertEqual(renew.status_code, 409)

        statistics = self.client.get('/admin/trust-seals/statistics').get_json()['statistics']
        self.assertEqual(statistics['revoked_seals'], 1)

    def test_support_ticket_admin(self):
        ticket_id = self.client.post('/api/support/tickets', json={
            'title': 'Payment failed', 'description': 'My card was charged twice'
        }, headers=self.headers).get_json()['ticket']['id']
        self.login()

        response = self.client.patch(f'/admin/support/tickets/{ticket_id}', json={'status': 'resolved'})
        self.assertEqual(response.get_json()['ticket']['status'], 'resolved')
        self.assertEqual(self.client.patch(f'/admin/support/tickets/{ticket_id}', json={}).status_code, 400)

        rating = self.client.post(f'/api/support/tickets/{ticket_id}/rating', json={'rating': 5},
                                  headers=self.headers)
        self.assertEqual(rating.get_json()['ticket']['satisfaction_rating'], 5)

        tickets = self.client.get('/admin/support/tickets?status=resolved').get_json()['tickets']
        self.assertEqual(len(tickets), 1)
        self.assertEqual(self.client.get('/admin/support/statistics').status_code, 200)


if __name__ == '__main__':
    unittest.main()
