from __future__ import annotations

import unittest
from types import SimpleNamespace

from fastapi.testclient import TestClient
from sqlalchemy import select
from support import TEST_PASSWORD, create_principal, make_settings, memory_database, seed_company

from flowlogic.dependencies import get_client_ip
from flowlogic.main import create_app
from flowlogic.models import AuditLog, Company, PrincipalRole, SystemSetting, Warehouse


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = memory_database()
        self.company_id, self.principal_id = seed_company(self.session_factory)
        self.client = TestClient(create_app(engine=self.engine, config=make_settings()))

    def tearDown(self) -> None:
        self.client.close()
        self.engine.dispose()

    def login(self, username: str = 'admin', password: str = TEST_PASSWORD) -> dict:
        response = self.client.post('/api/auth/login', json={'username': username, 'password': password})
        self.assertEqual(response.status_code, 200, response.text)
        token = response.json()['token']
        self.client.headers['Authorization'] = f'Bearer {token}'
        return response.json()

    def import_records(self, records: list[dict]) -> dict:
        response = self.client.post('/api/ingestions/ofbiz', json={'records': records})
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()


class AuthApiTests(ApiTestCase):
    def test_login_by_username_or_email(self) -> None:
        body = self.login()
        self.assertEqual(body['user']['username'], 'admin')
        self.assertEqual(body['user']['company']['code'], 'ACME')
        self.assertEqual(body['expiresIn'], 24 * 60 * 60)
        self.login(username='ADMIN@acme.example')

    def test_bad_password_is_401(self) -> None:
        response = self.client.post('/api/auth/login', json={'username': 'admin', 'password': 'wrong-password'})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['error'], 'Authentication failed')

    def test_missing_fields_is_400_validation_error(self) -> None:
        response = self.client.post('/api/auth/login', json={'username': 'admin'})
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body['error'], 'Validation failed')
        self.assertEqual(body['details'][0]['path'], 'password')

    def test_protected_routes_require_a_token(self) -> None:
        response = self.client.get('/api/alerts')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['error'], 'Authentication required')

    def test_logout_revokes_the_token(self) -> None:
        self.login()
        self.assertEqual(self.client.get('/api/auth/me').status_code, 200)
        self.assertEqual(self.client.post('/api/auth/logout').status_code, 200)
        self.assertEqual(self.client.get('/api/auth/me').status_code, 401)

    def test_signup_creates_trial_company_with_warehouse_and_admin(self) -> None:
        response = self.client.post(
            '/api/auth/signup',
            json={
                'firstName': 'Dana',
                'lastName': 'Ops',
                'email': 'dana@northwind.io',
                'password': 'longenough',
                'companyName': 'Northwind Logistics',
                'companySize': '11-50',
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        user = response.json()['user']
        self.assertEqual(user['role'], 'ADMIN')
        self.assertEqual(user['username'], 'dana')
        self.assertTrue(user['company']['code'].startswith('NORTHWINDL'))

        with self.session_factory() as db:
            company_id = user['company']['id']
            self.assertEqual(db.get(Company, company_id).name, 'Northwind Logistics')
            plan = db.execute(
                select(SystemSetting.value).where(SystemSetting.key == f'company.{company_id}.plan')
            ).scalar_one()
            self.assertEqual(plan, 'trial')
            warehouse = db.execute(select(Warehouse).where(Warehouse.company_id == company_id)).scalar_one()
            self.assertEqual(warehouse.code, 'WH01')

        duplicate = self.client.post(
            '/api/auth/signup',
            json={
                'firstName': 'Dana',
                'lastName': 'Ops',
                'email': 'DANA@northwind.io',
                'password': 'longenough',
                'companyName': 'Again',
            },
        )
        self.assertEqual(duplicate.status_code, 409)

    def test_signup_short_password_is_rejected(self) -> None:
        response = self.client.post(
            '/api/auth/signup',
            json={'firstName': 'A', 'lastName': 'B', 'email': 'a@brand.io', 'password': 'short', 'companyName': 'C'},
        )
        self.assertEqual(response.status_code, 400)

    def test_change_password(self) -> None:
        self.login()
        wrong = self.client.post(
            '/api/auth/change-password', json={'currentPassword': 'nope', 'newPassword': 'another-secret'}
        )
        self.assertEqual(wrong.status_code, 401)
        ok = self.client.post(
            '/api/auth/change-password', json={'currentPassword': TEST_PASSWORD, 'newPassword': 'another-secret'}
        )
        self.assertEqual(ok.status_code, 200)
        self.login(password='another-secret')


class AlertsApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.login()
        self.import_records(
            [
                {'productId': f'SKU-{i}', 'quantityOnHand': 2, 'availableToPromise': 2, 'locationSeqId': f'L{i}'}
                for i in range(4)
            ]
            + [{'productId': 'SPLIT', 'quantityOnHand': 30, 'availableToPromise': 30, 'locationSeqId': 'A1'}]
            + [{'productId': 'SPLIT', 'quantityOnHand': 30, 'availableToPromise': 30, 'locationSeqId': 'A2'}]
        )

    def test_list_is_paginated(self) -> None:
        response = self.client.get('/api/alerts', params={'limit': 2, 'page': 1})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        # 4 low stock, 1 split, 1 sync notice
        self.assertEqual(body['pagination'], {'page': 1, 'limit': 2, 'total': 6, 'pages': 3})
        self.assertEqual(len(body['data']), 2)
        self.assertEqual(body['data'][0]['severity'], 'CRITICAL')

    def test_invalid_limit_is_400(self) -> None:
        response = self.client.get('/api/alerts', params={'limit': 500})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['details'][0]['path'], 'limit')

    def test_filters_and_summary(self) -> None:
        unresolved = self.client.get('/api/alerts', params={'isResolved': 'false'}).json()
        self.assertEqual(unresolved['pagination']['total'], 5)
        summary = self.client.get('/api/alerts/summary').json()
        self.assertEqual(summary['unresolvedCount'], 5)
        self.assertEqual(summary['severityCounts'], {'CRITICAL': 4, 'WARNING': 1})
        self.assertEqual(len(self.client.get('/api/alerts/critical').json()), 4)

    def test_read_resolve_and_bulk_read(self) -> None:
        alert_id = self.client.get('/api/alerts/critical').json()[0]['id']
        self.assertTrue(self.client.patch(f'/api/alerts/{alert_id}/read').json()['isRead'])

        resolved = self.client.patch(f'/api/alerts/{alert_id}/resolve', json={'notes': 'restocked'}).json()
        self.assertTrue(resolved['isResolved'])
        self.assertEqual(resolved['resolvedByPrincipalId'], self.principal_id)

        ids = [alert['id'] for alert in self.client.get('/api/alerts/unread').json()]
        bulk = self.client.patch('/api/alerts/bulk-read', json={'alertIds': ids})
        self.assertEqual(bulk.json()['count'], len(ids))
        self.assertEqual(self.client.get('/api/alerts/unread').json(), [])

    def test_bulk_read_requires_ids(self) -> None:
        self.assertEqual(self.client.patch('/api/alerts/bulk-read', json={'alertIds': []}).status_code, 400)

    def test_unknown_alert_is_404(self) -> None:
        self.assertEqual(self.client.get('/api/alerts/9999').status_code, 404)

    def test_viewer_cannot_resolve_or_cleanup(self) -> None:
        with self.session_factory() as db:
            company = db.get(Company, self.company_id)
            create_principal(db, company, username='viewer', role=PrincipalRole.VIEWER)
            db.commit()
        self.login(username='viewer')
        alert_id = self.client.get('/api/alerts/critical').json()[0]['id']
        self.assertEqual(self.client.patch(f'/api/alerts/{alert_id}/resolve').status_code, 403)
        self.assertEqual(self.client.delete('/api/alerts/cleanup').status_code, 403)
        self.assertEqual(self.client.post('/api/alerts/generate').status_code, 403)

    def test_create_manual_alert(self) -> None:
        with self.session_factory() as db:
            warehouse_id = db.execute(select(Warehouse.id).where(Warehouse.company_id == self.company_id)).scalar_one()
        response = self.client.post(
            '/api/alerts',
            json={
                'type': 'CUSTOM',
                'severity': 'WARNING',
                'title': 'Dock door 3 blocked',
                'message': 'Pallets staged in front of door 3.',
                'locationCode': 'DOCK-3',
                'warehouseId': warehouse_id,
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        created = response.json()
        self.assertEqual(created['warehouseId'], warehouse_id)
        self.assertFalse(created['isResolved'])
        self.assertIsNone(created['ingestionId'])
        self.assertEqual(self.client.get(f"/api/alerts/{created['id']}").json()['title'], 'Dock door 3 blocked')

        with self.session_factory() as db:
            entry = db.execute(select(AuditLog).where(AuditLog.action == 'ALERT_CREATED')).scalar_one()
        self.assertEqual(entry.entity_id, str(created['id']))
        self.assertEqual(entry.actor_principal_id, self.principal_id)

    def test_create_alert_rejects_bad_input(self) -> None:
        empty_title = self.client.post(
            '/api/alerts', json={'type': 'CUSTOM', 'severity': 'INFO', 'title': '', 'message': 'x'}
        )
        self.assertEqual(empty_title.status_code, 400)
        self.assertEqual(empty_title.json()['details'][0]['path'], 'title')

        unknown_type = self.client.post(
            '/api/alerts', json={'type': 'NOPE', 'severity': 'INFO', 'title': 't', 'message': 'x'}
        )
        self.assertEqual(unknown_type.status_code, 400)

        foreign_warehouse = self.client.post(
            '/api/alerts',
            json={'type': 'CUSTOM', 'severity': 'INFO', 'title': 't', 'message': 'x', 'warehouseId': 9999},
        )
        self.assertEqual(foreign_warehouse.status_code, 400)
        self.assertEqual(foreign_warehouse.json()['error'], 'Warehouse not found')

    def test_generate_skips_open_alerts_and_restores_resolved_ones(self) -> None:
        first = self.client.post('/api/alerts/generate')
        self.assertEqual(first.status_code, 200, first.text)
        body = first.json()
        self.assertEqual(body['snapshotCount'], 6)
        self.assertEqual(body['generated'], 0)
        self.assertEqual(body['skipped'], 5)

        alert_id = self.client.get('/api/alerts/critical').json()[0]['id']
        self.client.patch(f'/api/alerts/{alert_id}/resolve')
        second = self.client.post('/api/alerts/generate', json={}).json()
        self.assertEqual(second['generated'], 1)
        self.assertEqual(second['alerts'][0]['type'], 'LOW_STOCK')
        self.assertEqual(self.client.get('/api/alerts/summary').json()['unresolvedCount'], 5)

    def test_generate_rejects_foreign_warehouse(self) -> None:
        response = self.client.post('/api/alerts/generate', json={'warehouseId': 9999})
        self.assertEqual(response.status_code, 400)


class DashboardAndIngestionApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.login()

    def test_dashboard_totals_follow_the_current_batch(self) -> None:
        self.import_records([{'productId': 'A', 'quantityOnHand': 100, 'unitCost': '2.5'}])
        latest = self.import_records(
            [
                {'productId': 'A', 'quantityOnHand': 40, 'availableToPromise': 30, 'unitCost': '2.5'},
                {'productId': 'B', 'quantityOnHand': 10},
            ]
        )
        body = self.client.get('/api/dashboard').json()
        self.assertEqual(body['inventory']['totalRecords'], 2)
        self.assertEqual(body['inventory']['distinctSkus'], 2)
        self.assertEqual(body['inventory']['totalOnHand'], 50)
        # B reports no ATP, so all 10 of its units count as allocated.
        self.assertEqual(body['inventory']['totalAllocated'], 20)
        self.assertEqual(body['inventory']['totalAvailable'], 30)
        self.assertEqual(body['inventory']['totalValue'], 100)
        self.assertEqual(body['ingestions'][0]['id'], latest['ingestionId'])
        self.assertTrue(body['ingestions'][0]['isCurrent'])
        self.assertFalse(body['ingestions'][1]['isCurrent'])

    def test_ingestion_endpoints(self) -> None:
        result = self.import_records([{'productId': 'A', 'quantityOnHand': 3}, {'quantityOnHand': 1}])
        self.assertEqual(result['snapshotCount'], 1)
        self.assertEqual(result['errorCount'], 1)
        self.assertTrue(all(outcome['ok'] for outcome in result['ruleOutcomes']))

        listed = self.client.get('/api/ingestions').json()
        self.assertEqual(listed[0]['ingestionKey'], 'ofbiz:WebStoreWarehouse')
        detail = self.client.get(f"/api/ingestions/{result['ingestionId']}").json()
        self.assertEqual(detail['status'], 'COMPLETED')
        self.assertEqual(self.client.get('/api/ingestions/9999').status_code, 404)

    def test_health_and_security_headers(self) -> None:
        response = self.client.get('/api/health')
        self.assertEqual(response.json(), {'status': 'healthy', 'database': 'connected'})
        self.assertEqual(response.headers['X-Content-Type-Options'], 'nosniff')
        self.assertEqual(response.headers['Referrer-Policy'], 'no-referrer')
        self.assertNotIn('Cache-Control', response.headers)
        self.assertEqual(self.client.post('/api/auth/logout').headers['Cache-Control'], 'no-store')

    def test_billing_responses_are_not_cached(self) -> None:
        for path in ('/api/billing/plans', '/api/billing/subscription', '/api/billing/usage'):
            with self.subTest(path=path):
                self.assertEqual(self.client.get(path).headers['Cache-Control'], 'no-store')

    def test_variances_upload_through_the_api(self) -> None:
        response = self.client.post(
            '/api/ingestions/ofbiz',
            json={
                'records': [{'productId': 'A', 'quantityOnHand': 40, 'availableToPromise': 40}],
                'variances': [{'productId': 'A', 'varianceReasonId': 'VAR_DAMAGED', 'inventoryItemId': '9'}],
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        self.assertEqual(response.json()['varianceCount'], 1)
        alerts = self.client.get('/api/alerts', params={'type': 'INVENTORY_DISCREPANCY'}).json()['data']
        self.assertEqual([alert['title'] for alert in alerts], ['Inventory Variance (DAMAGED): A'])
        self.assertEqual(alerts[0]['severity'], 'WARNING')

    def test_audit_ip_ignores_unparseable_forwarded_for(self) -> None:
        response = self.client.post(
            '/api/auth/login',
            json={'username': 'admin', 'password': TEST_PASSWORD},
            headers={'X-Forwarded-For': 'not-an-ip, 10.0.0.1'},
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.client.post(
            '/api/auth/login',
            json={'username': 'admin', 'password': TEST_PASSWORD},
            headers={'X-Forwarded-For': '203.0.113.9, 10.0.0.1'},
        )
        with self.session_factory() as db:
            ips = db.execute(
                select(AuditLog.ip).where(AuditLog.action == 'AUTH_LOGIN').order_by(AuditLog.id)
            ).scalars().all()
        # The test client's peer is the host name 'testclient', which is not an address.
        self.assertEqual(ips[-2:], [None, '203.0.113.9'])


class BillingApiTests(ApiTestCase):
    def test_plans_are_public_within_billing(self) -> None:
        plans = self.client.get('/api/billing/plans').json()['plans']
        self.assertEqual([plan['id'] for plan in plans], ['starter', 'professional', 'enterprise'])
        self.assertEqual(plans[0]['features']['maxSkus'], 10_000)

    def test_webhook_without_signature_is_rejected(self) -> None:
        response = self.client.post('/api/billing/webhook', content=b'{"type": "checkout.session.completed"}')
        self.assertEqual(response.status_code, 400)

    def test_webhook_with_bad_signature_is_rejected(self) -> None:
        response = self.client.post(
            '/api/billing/webhook',
            content=b'{"type": "checkout.session.completed"}',
            headers={'Stripe-Signature': 't=1,v1=deadbeef'},
        )
        self.assertEqual(response.status_code, 400)


class ClientIpTests(unittest.TestCase):
    def _request(self, forwarded: str | None, peer: str | None):
        headers = {'x-forwarded-for': forwarded} if forwarded is not None else {}
        client = SimpleNamespace(host=peer) if peer is not None else None
        return SimpleNamespace(headers=headers, client=client)

    def test_first_forwarded_hop_when_it_is_an_address(self) -> None:
        self.assertEqual(get_client_ip(self._request(' 2001:db8::1 , 10.0.0.1', '10.0.0.2')), '2001:db8::1')

    def test_garbage_forwarded_value_falls_back_to_peer(self) -> None:
        self.assertEqual(get_client_ip(self._request('<script>', '192.0.2.4')), '192.0.2.4')
        self.assertEqual(get_client_ip(self._request('', '192.0.2.4')), '192.0.2.4')

    def test_non_address_peer_is_dropped(self) -> None:
        self.assertIsNone(get_client_ip(self._request(None, 'testclient')))
        self.assertIsNone(get_client_ip(self._request(None, None)))


if __name__ == '__main__':
    unittest.main()
