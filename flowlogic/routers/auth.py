from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from flowlogic.auth import Principal, get_current_principal
from flowlogic.config import Settings
from flowlogic.db import get_db
from flowlogic.dependencies import get_client_ip, get_settings
from flowlogic.errors import NotFoundError
from flowlogic.models import Company
from flowlogic.models import Principal as PrincipalModel
from flowlogic.schemas import ChangePasswordIn, CompanyOut, LoginIn, MessageOut, SignupIn, TokenOut, UserOut
from flowlogic.security.sessions import bearer_token, create_web_session, revoke_web_session
from flowlogic.services.account_service import authenticate, change_password, signup_company
from flowlogic.services.audit_service import log_audit

router = APIRouter(prefix='/api/auth', tags=['auth'])


def _user_out(db: Session, principal: PrincipalModel) -> UserOut:
    company = db.get(Company, principal.company_id) if principal.company_id is not None else None
    user = UserOut.model_validate(principal)
    user.company = CompanyOut.model_validate(company) if company else None
    return user


def _issue_token(db: Session, request: Request, principal: PrincipalModel, config: Settings) -> TokenOut:
    token = create_web_session(
        db,
        principal.id,
        ip=get_client_ip(request),
        user_agent=request.headers.get('user-agent'),
        ttl_minutes=config.session_ttl_minutes,
    )
    return TokenOut(token=token, user=_user_out(db, principal), expires_in=config.session_ttl_minutes * 60)


@router.post('/login', response_model=TokenOut)
def login(
    payload: LoginIn,
    request: Request,
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
):
    principal = authenticate(db, payload.username, payload.password)
    response = _issue_token(db, request, principal, config)
    log_audit(
        db,
        company_id=principal.company_id,
        actor_principal_id=principal.id,
        action='AUTH_LOGIN',
        ip=get_client_ip(request),
        metadata={'username': principal.username},
    )
    db.commit()
    return response


@router.post('/signup', response_model=TokenOut, status_code=201)
def signup(
    payload: SignupIn,
    request: Request,
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
):
    principal = signup_company(
        db,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        password=payload.password,
        company_name=payload.company_name,
        company_size=payload.company_size,
        trial_days=config.trial_days,
        ip=get_client_ip(request),
    )
    response = _issue_token(db, request, principal, config)
    db.commit()
    return response


@router.get('/me', response_model=UserOut)
def me(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    row = db.get(PrincipalModel, principal.id)
    if row is None:
        raise NotFoundError('User')
    return _user_out(db, row)


@router.post('/logout', response_model=MessageOut)
def logout(request: Request, db: Session = Depends(get_db)):
    principal = getattr(request.state, 'principal', None)
    token = bearer_token(request)
    if token:
        revoke_web_session(db, token)
    if principal is not None:
        log_audit(
            db,
            company_id=principal.company_id,
            actor_principal_id=principal.id,
            action='AUTH_LOGOUT',
            ip=get_client_ip(request),
        )
    db.commit()
    return MessageOut(message='Logged out successfully')


@router.post('/change-password', response_model=MessageOut)
def change_password_submit(
    payload: ChangePasswordIn,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    change_password(
        db,
        principal_id=principal.id,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    log_audit(
        db,
        company_id=principal.company_id,
        actor_principal_id=principal.id,
        action='AUTH_PASSWORD_CHANGED',
        ip=get_client_ip(request),
    )
    db.commit()
    return MessageOut(message='Password changed successfully')
