from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from support import TEST_PASSWORD, make_settings, memory_database, seed_company

from flowlogic.main import create_app
from flowlogic.security.trial import check_company_trial, evaluate_trial, parse_timestamp
from flowlogic.services.billing_service import BillingService
from flowlogic.services.settings_store import TRIAL_ENDS_SETTING, write_company_setting

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class EvaluateTrialTests(unittest.TestCase):
    def test_expired_trial_is_denied(self) -> None:
        decision = evaluate_trial('trial', '2026-02-01T00:00:00.000Z', NOW)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, 'trial_expired')

    def test_active_trial_is_allowed(self) -> None:
        self.assertTrue(evaluate_trial('trial', '2026-03-10T00:00:00Z', NOW).allowed)

    def test_paid_plans_are_always_allowed(self) -> None:
        for plan in ('starter', 'professional', 'enterprise'):
            decision = evaluate_trial(plan, '2020-01-01T00:00:00Z', NOW)
            self.assertTrue(decision.allowed)
            self.assertEqual(decision.reason, 'paid')

    def test_missing_plan_is_legacy_and_allowed(self) -> None:
        self.assertEqual(evaluate_trial(None, None, NOW).reason, 'legacy')

    def test_unknown_plan_is_allowed(self) -> None:
        self.assertEqual(evaluate_trial('canceled', None, NOW).reason, 'unknown')
        self.assertEqual(evaluate_trial('trial', None, NOW).reason, 'unknown')

    def test_unparseable_trial_end_is_denied(self) -> None:
        decision = evaluate_trial('trial', 'not-a-date', NOW)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, 'trial_end_invalid')

    def test_parse_timestamp_assumes_utc_for_naive_values(self) -> None:
        self.assertEqual(parse_timestamp('2026-03-01T12:00:00'), NOW)


class TrialMiddlewareTests(unittest.TestCase):
    def _client(self, *, plan: str, ends_at: datetime):
        engine, session_factory = memory_database()
        seed_company(session_factory, plan=plan, trial_ends_at=ends_at)
        client = TestClient(create_app(engine=engine, config=make_settings()))
        login = client.post('/api/auth/login', json={'username': 'admin', 'password': TEST_PASSWORD})
        self.assertEqual(login.status_code, 200)
        client.headers['Authorization'] = f"Bearer {login.json()['token']}"
        return client, session_factory

    def test_expired_trial_gets_402_with_upgrade_hint(self) -> None:
        client, _ = self._client(plan='trial', ends_at=datetime.now(tz=timezone.utc) - timedelta(days=1))
        response = client.get('/api/alerts')
        self.assertEqual(response.status_code, 402)
        body = response.json()
        self.assertTrue(body['trialExpired'])
        self.assertEqual(body['upgradeUrl'], '/billing')

    def test_expired_trial_can_still_reach_billing_and_auth(self) -> None:
        client, _ = self._client(plan='trial', ends_at=datetime.now(tz=timezone.utc) - timedelta(days=1))
        self.assertEqual(client.get('/api/billing/plans').status_code, 200)
        self.assertEqual(client.get('/api/auth/me').status_code, 200)

    def test_paid_plan_passes_even_after_trial_end(self) -> None:
        client, _ = self._client(plan='professional', ends_at=datetime.now(tz=timezone.utc) - timedelta(days=30))
        self.assertEqual(client.get('/api/alerts').status_code, 200)

    def test_settings_outage_fails_open(self) -> None:
        client, _ = self._client(plan='trial', ends_at=datetime.now(tz=timezone.utc) - timedelta(days=1))
        with patch(
            'flowlogic.security.trial.check_company_trial',
            side_effect=OperationalError('SELECT', {}, Exception('db down')),
        ):
            self.assertEqual(client.get('/api/alerts').status_code, 200)

    def test_corrupt_trial_end_gets_402(self) -> None:
        client, session_factory = self._client(plan='trial', ends_at=datetime.now(tz=timezone.utc) + timedelta(days=3))
        with session_factory() as db:
            write_company_setting(db, 1, TRIAL_ENDS_SETTING, 'next tuesday')
            db.commit()
        self.assertEqual(client.get('/api/alerts').status_code, 402)

    def test_canceled_subscription_falls_back_to_expired_trial(self) -> None:
        client, session_factory = self._client(plan='trial', ends_at=datetime.now(tz=timezone.utc) - timedelta(days=1))
        self.assertEqual(client.get('/api/alerts').status_code, 402)

        def send(event_type: str, obj: dict) -> None:
            with session_factory() as db:
                BillingService(db, make_settings()).handle_webhook({'type': event_type, 'data': {'object': obj}})
                db.commit()

        send('checkout.session.completed', {'id': 'cs_1', 'metadata': {'companyId': '1', 'planId': 'starter'}})
        self.assertEqual(client.get('/api/alerts').status_code, 200)

        send('customer.subscription.deleted', {'id': 'sub_1', 'metadata': {'companyId': '1'}})
        response = client.get('/api/alerts')
        self.assertEqual(response.status_code, 402)
        self.assertTrue(response.json()['trialExpired'])
        self.assertEqual(client.get('/api/billing/subscription').status_code, 200)

    def test_canceled_subscription_keeps_remaining_trial(self) -> None:
        client, session_factory = self._client(plan='starter', ends_at=datetime.now(tz=timezone.utc) + timedelta(days=3))
        with session_factory() as db:
            BillingService(db, make_settings()).handle_webhook(
                {'type': 'customer.subscription.deleted', 'data': {'object': {'metadata': {'companyId': '1'}}}}
            )
            db.commit()
        self.assertEqual(client.get('/api/alerts').status_code, 200)

    def test_check_company_trial_reads_stored_settings(self) -> None:
        _, session_factory = self._client(plan='trial', ends_at=NOW)
        with session_factory() as db:
            self.assertFalse(check_company_trial(db, 1, now=NOW + timedelta(seconds=1)).allowed)
            self.assertTrue(check_company_trial(db, 1, now=NOW - timedelta(seconds=1)).allowed)


if __name__ == '__main__':
    unittest.main()
