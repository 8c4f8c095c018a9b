import threading
from typing import Callable, Generator, Optional

from fastapi import Depends, Request
from loguru import logger
from sqlalchemy.orm import Session

from src.catalog_app.models.database import (
    create_engine_instance,
    create_session_factory,
    create_tables,
)
from src.catalog_app.services.csrf_service import CSRF_HEADER, csrf_manager
from src.catalog_app.services.errors import CsrfRejected, PermissionDenied, StoreUnavailable
from src.catalog_app.services.security_config import SecurityConfig, load_security_config
from src.catalog_app.services.session_service import (
    SessionData,
    SessionGuard,
    session_store,
)
from src.catalog_app.services.throttle_service import rate_limit_service
from src.catalog_app.utils import (
    ResponseBuilder,
    client_ip,
    get_response_builder,
    ua_fingerprint,
)

_tables_initialized_url: Optional[str] = None
_tables_initialized_engine_id: Optional[int] = None
_tables_init_lock = threading.Lock()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get a database session.
    Auto-commits on success, rolls back on exception.
    """
    global _tables_initialized_url, _tables_initialized_engine_id
    engine = create_engine_instance()
    engine_url = str(engine.url)
    engine_id = id(engine)
    if (
        _tables_initialized_url != engine_url
        or _tables_initialized_engine_id != engine_id
    ):
        with _tables_init_lock:
            if (
                _tables_initialized_url != engine_url
                or _tables_initialized_engine_id != engine_id
            ):
                create_tables()
                _tables_initialized_url = engine_url
                _tables_initialized_engine_id = engine_id

    session_local = create_session_factory()
    db = session_local()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_security_config(request: Request) -> SecurityConfig:
    """The SecurityConfig built at startup (tests override this dependency)."""
    security_config = getattr(request.app.state, "security_config", None)
    if security_config is None:
        security_config = load_security_config()
        request.app.state.security_config = security_config
    return security_config


def is_secure_request(request: Request, security_config: SecurityConfig) -> bool:
    if security_config.force_https or request.url.scheme == "https":
        return True
    return request.headers.get("x-forwarded-proto", "").lower() == "https"


def set_session_cookie(
    request: Request, builder: ResponseBuilder, security_config: SecurityConfig, session_id: str
) -> None:
    builder.set_session_cookie(
        security_config.cookie_name,
        session_id,
        secure=is_secure_request(request, security_config),
        samesite=security_config.same_site.value,
        domain=security_config.cookie_domain,
    )


def clear_session_cookie(
    request: Request, builder: ResponseBuilder, security_config: SecurityConfig
) -> None:
    builder.delete_cookie(
        security_config.cookie_name,
        secure=is_secure_request(request, security_config),
        samesite=security_config.same_site.value,
        domain=security_config.cookie_domain,
    )


def session_cookie_value(request: Request, security_config: SecurityConfig) -> Optional[str]:
    return request.cookies.get(security_config.cookie_name) or None


def get_or_create_session(
    request: Request,
    db: Session = Depends(get_db),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
) -> SessionData:
    """
    The caller's session, anonymous or not, guaranteed to carry a CSRF token.

    Unknown or unreadable cookies start a fresh anonymous session.
    """
    session = None
    session_id = session_cookie_value(request, security_config)
    if session_id:
        try:
            session = session_store.get(db, session_id)
        except StoreUnavailable as e:
            logger.error(f"Could not load session, starting a new one: {e!r}")
            session = None

    if session is None:
        session = session_store.create(db)
        csrf_manager.ensure(session)
        session_store.set(db, session)
        set_session_cookie(request, builder, security_config, session.session_id)
    elif not session.csrf_token:
        csrf_manager.ensure(session)
        session_store.set(db, session)
    return session


def guarded_session(
    request: Request,
    db: Session,
    security_config: SecurityConfig,
    builder: ResponseBuilder,
    refresh: bool,
) -> SessionData:
    guard = SessionGuard(security_config, session_store)
    result = guard.load_and_validate(
        db,
        session_cookie_value(request, security_config),
        current_fingerprint=ua_fingerprint(request.headers.get("user-agent")),
        refresh=refresh,
    )
    if result.destroyed:
        clear_session_cookie(request, builder, security_config)
    if result.rotated:
        set_session_cookie(request, builder, security_config, result.session.session_id)
    return result.raise_for_status()


def require_session(
    request: Request,
    db: Session = Depends(get_db),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
) -> SessionData:
    """Authenticated session for read-only requests (activity not extended)."""
    return guarded_session(request, db, security_config, builder, refresh=False)


def require_active_session(
    request: Request,
    db: Session = Depends(get_db),
    security_config: SecurityConfig = Depends(get_security_config),
    builder: ResponseBuilder = Depends(get_response_builder),
) -> SessionData:
    """Authenticated session for user actions; extends last_activity."""
    return guarded_session(request, db, security_config, builder, refresh=True)


def require_csrf(
    request: Request, session: SessionData = Depends(require_active_session)
) -> SessionData:
    """Mutating endpoints: X-CSRF-Token must match the session token."""
    if not csrf_manager.validate(session.csrf_token, request.headers.get(CSRF_HEADER)):
        logger.warning(
            f"CSRF rejected for '{session.username}' on {request.method} {request.url.path}"
        )
        raise CsrfRejected()
    return session


def require_admin(session: SessionData = Depends(require_session)) -> SessionData:
    if session.role != "admin":
        raise PermissionDenied("Se requiere rol de administrador")
    return session


def require_admin_csrf(session: SessionData = Depends(require_csrf)) -> SessionData:
    if session.role != "admin":
        raise PermissionDenied("Se requiere rol de administrador")
    return session


def rate_limited(
    action: str, limit: int = 100, window_seconds: int = 300, block_seconds: int = 900
) -> Callable:
    """Dependency factory: per-IP request budget for an endpoint group."""

    def dependency(request: Request, db: Session = Depends(get_db)) -> int:
        return rate_limit_service.hit(
            db,
            client_ip(request),
            action,
            limit=limit,
            window_seconds=window_seconds,
            block_seconds=block_seconds,
        )

    return dependency
