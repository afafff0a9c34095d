"""Trial enforcement.

Blocks API access for companies whose trial has lapsed unless they hold a
paid plan. Auth, billing and health routes stay reachable so an expired
company can still sign in and upgrade.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flowlogic.services.settings_store import PLAN_SETTING, TRIAL_ENDS_SETTING, read_company_settings

PAID_PLANS = frozenset({'starter', 'professional', 'enterprise'})
TRIAL_PLAN = 'trial'
TRIAL_EXEMPT_PREFIXES = ('/api/auth', '/api/billing', '/api/health')


@dataclass(frozen=True)
class TrialDecision:
    allowed: bool
    reason: str


def parse_timestamp(raw: str) -> datetime | None:
    try:
        # Stored values are ISO-8601 UTC and may end in 'Z'.
        parsed = datetime.fromisoformat(raw.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def evaluate_trial(plan: str | None, trial_ends_at: str | None, now: datetime) -> TrialDecision:
    if plan is None:
        return TrialDecision(True, 'legacy')
    if plan in PAID_PLANS:
        return TrialDecision(True, 'paid')
    if plan == TRIAL_PLAN and trial_ends_at is not None:
        ends_at = parse_timestamp(trial_ends_at)
        if ends_at is None:
            logger.warning('Unreadable trial end {!r}; treating trial as ended', trial_ends_at)
            return TrialDecision(False, 'trial_end_invalid')
        if ends_at > now:
            return TrialDecision(True, 'trial_active')
        return TrialDecision(False, 'trial_expired')
    return TrialDecision(True, 'unknown')


def check_company_trial(db: Session, company_id: int, now: datetime | None = None) -> TrialDecision:
    values = read_company_settings(db, company_id, (PLAN_SETTING, TRIAL_ENDS_SETTING))
    return evaluate_trial(values.get(PLAN_SETTING), values.get(TRIAL_ENDS_SETTING), now or datetime.now(tz=timezone.utc))


def trial_expired_response() -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            'error': 'Trial expired',
            'message': 'Your 14-day trial has ended. Please upgrade to continue using FlowLogic.',
            'trialExpired': True,
            'upgradeUrl': '/billing',
        },
    )


def install_trial_enforcement(app: FastAPI) -> None:
    @app.middleware('http')
    async def trial_enforcement_middleware(request: Request, call_next):
        principal = getattr(request.state, 'principal', None)
        if principal is None or principal.company_id is None or request.url.path.startswith(TRIAL_EXEMPT_PREFIXES):
            return await call_next(request)

        try:
            with request.app.state.session_factory() as db:
                decision = check_company_trial(db, principal.company_id)
        except SQLAlchemyError as exc:
            # Fail open: a settings outage must not lock every tenant out.
            logger.warning('Trial check failed for company {}: {}', principal.company_id, exc)
            return await call_next(request)

        if not decision.allowed:
            return trial_expired_response()
        return await call_next(request)
