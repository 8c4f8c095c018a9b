from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from loguru import logger
from sqlalchemy.orm import Session

from src.api import schemas
from src.api.dependencies import (
    clear_session_cookie,
    get_db,
    get_or_create_session,
    get_security_config,
    guarded_session,
    session_cookie_value,
    set_session_cookie,
)
from src.api.limiter import conditional_limiter
from src.catalog_app.services.audit_service import audit_service
from src.catalog_app.services.csrf_service import CSRF_HEADER, csrf_manager
from src.catalog_app.services.errors import CsrfRejected
from src.catalog_app.services.login_service import LoginOrchestrator, LoginRequest
from src.catalog_app.services.security_config import SecurityConfig
from src.catalog_app.services.session_service import SessionData, SessionGuard, session_store
from src.catalog_app.utils import (
    ResponseBuilder,
    client_ip,
    get_response_builder,
    ua_fingerprint,
    utcnow,
)

router = APIRouter()


def get_login_orchestrator(
    security_config: SecurityConfig = Depends(get_security_config),
) -> LoginOrchestrator:
    return LoginOrchestrator(security_config, store=session_store)


@router.get("/login", response_model=schemas.LoginStatusResponse)
def login_status(
    request: Request,
    db: Session = Depends(get_db),
    session: SessionData = Depends(get_or_create_session),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
):
    """
    Session status for the login page: current user (if any), the CSRF token
    to submit with the login form and whether reCAPTCHA is enabled.
    """
    if session.authenticated:
        guard = SessionGuard(security_config, session_store)
        result = guard.validate(
            db, session, current_fingerprint=ua_fingerprint(request.headers.get("user-agent"))
        )
        if result.rotated:
            set_session_cookie(request, builder, security_config, session.session_id)
        if not result.valid:
            # Expired or unreadable: hand out a fresh anonymous session
            session = session_store.create(db)
            csrf_manager.ensure(session)
            session_store.set(db, session)
            set_session_cookie(request, builder, security_config, session.session_id)

    return {
        "authenticated": session.authenticated,
        "user": session.username,
        "role": (session.role or "user") if session.authenticated else None,
        "csrf_token": session.csrf_token,
        "recaptcha": {
            "enabled": security_config.challenge_configured,
            "site_key": security_config.challenge_site_key,
            "required": False,
        },
    }


@router.post("/login", response_model=schemas.LoginResponse)
@conditional_limiter("10/minute")  # Coarse per-IP cap in front of the login throttle
def login(
    request: Request,
    credentials: schemas.LoginRequest,
    db: Session = Depends(get_db),
    session: SessionData = Depends(get_or_create_session),
    orchestrator: LoginOrchestrator = Depends(get_login_orchestrator),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
):
    """
    Log in with username and password.

    Dual-keyed (IP + username) throttling: reCAPTCHA from the soft threshold
    (when configured), HTTP 429 with retryAfter from the hard threshold.
    """
    outcome = orchestrator.login(
        db,
        session,
        LoginRequest(
            username=credentials.username,
            password=credentials.password,
            ip=client_ip(request),
            csrf_token=credentials.csrf_token or request.headers.get(CSRF_HEADER),
            challenge_token=credentials.recaptcha_token,
            ua_fingerprint=ua_fingerprint(request.headers.get("user-agent")),
        ),
    )
    set_session_cookie(request, builder, security_config, outcome.session.session_id)
    return outcome.payload()


def _session_check(
    request: Request,
    db: Session,
    security_config: SecurityConfig,
    builder: ResponseBuilder,
    refresh: bool,
):
    session = guarded_session(request, db, security_config, builder, refresh=refresh)
    guard = SessionGuard(security_config, session_store)
    return {
        "authenticated": True,
        "user": session.username,
        "role": session.role or "user",
        "idle_remaining": guard.idle_remaining(session),
        "absolute_remaining": guard.absolute_remaining(session),
    }


@router.get("/check", response_model=schemas.SessionCheckResponse)
def check_session(
    request: Request,
    refresh: bool = Query(False),
    db: Session = Depends(get_db),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
):
    """Session validity and remaining lifetimes; ?refresh=1 extends the idle timer."""
    return _session_check(request, db, security_config, builder, refresh)


@router.post("/check", response_model=schemas.SessionCheckResponse)
def check_session_post(
    request: Request,
    payload: Optional[schemas.SessionCheckRequest] = Body(None),
    refresh: bool = Query(False),
    db: Session = Depends(get_db),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
):
    refresh = refresh or bool(payload and payload.refresh)
    return _session_check(request, db, security_config, builder, refresh)


@router.post("/logout")
def logout(
    request: Request,
    db: Session = Depends(get_db),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
):
    """
    Destroy the server-side session and clear the cookie.

    A still-valid login needs the X-CSRF-Token header; anonymous, expired
    or invalidated sessions are dropped without one.
    """
    session_id = session_cookie_value(request, security_config)
    session = session_store.get(db, session_id) if session_id else None
    if session is not None and session.authenticated:
        verdict = SessionGuard(security_config, session_store).evaluate(
            session, utcnow(), ua_fingerprint(request.headers.get("user-agent"))
        )
        if verdict.valid and not csrf_manager.validate(
            session.csrf_token, request.headers.get(CSRF_HEADER)
        ):
            logger.warning(f"Logout for '{session.username}' rejected: invalid CSRF token")
            raise CsrfRejected()
    if session is not None:
        session_store.destroy(db, session.session_id)
        if session.authenticated:
            audit_service.record(
                db, "logout", actor=session.username, target=session.username, ip=client_ip(request)
            )
            logger.info(f"User '{session.username}' logged out")
    clear_session_cookie(request, builder, security_config)
    return {"success": True, "message": "Sesión cerrada"}
