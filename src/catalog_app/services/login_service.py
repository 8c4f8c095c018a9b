"""
Login state machine.

    Start -> ThrottleCheck -> {Blocked | ChallengeCheck}
    ChallengeCheck -> {ChallengeRequired | CredentialCheck}
    CredentialCheck -> Fail -> RecordAttempt -> {NowBlocked | ReturnError}
    CredentialCheck -> Success -> ClearThrottle -> RotateCsrf
                    -> EstablishSession -> AuditSuccess

Terminal failure states surface as SecurityError subclasses; success returns
a LoginOutcome carrying the new session and the rotated CSRF token.
"""

import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from src.catalog_app.services.audit_service import AuditLogService, audit_service
from src.catalog_app.services.auth_service import verify_password
from src.catalog_app.services.challenge_service import ChallengeDecision, ChallengeGate
from src.catalog_app.services.csrf_service import CsrfTokenManager
from src.catalog_app.services.errors import (
    AuthenticationFailure,
    ChallengeFailed,
    ChallengeRequired,
    CsrfRejected,
    InvalidRequest,
    RateLimited,
)
from src.catalog_app.services.failure_policy import FailureDomain, guarded_call
from src.catalog_app.services.security_config import SecurityConfig
from src.catalog_app.services.session_service import SessionData, SessionStore, new_session_id
from src.catalog_app.services.throttle_service import LoginThrottle
from src.catalog_app.services.user_service import UserRecordStore, user_service
from src.catalog_app.utils.timeutils import utcnow

CHALLENGE_MESSAGES = {
    "low_score": "Score reCAPTCHA bajo",
    "verifier_unavailable": "No se pudo contactar reCAPTCHA",
}

# Returned by guarded lookups when the throttle store fails (fail-open)
_STORE_UNAVAILABLE = object()


class LoginState(str, Enum):
    START = "start"
    THROTTLE_CHECK = "throttle_check"
    BLOCKED = "blocked"
    CHALLENGE_CHECK = "challenge_check"
    CHALLENGE_REQUIRED = "challenge_required"
    CREDENTIAL_CHECK = "credential_check"
    FAIL = "fail"
    RECORD_ATTEMPT = "record_attempt"
    NOW_BLOCKED = "now_blocked"
    RETURN_ERROR = "return_error"
    SUCCESS = "success"
    CLEAR_THROTTLE = "clear_throttle"
    ROTATE_CSRF = "rotate_csrf"
    ESTABLISH_SESSION = "establish_session"
    AUDIT_SUCCESS = "audit_success"


@dataclass
class LoginRequest:
    username: str
    password: str
    ip: str
    csrf_token: Optional[str] = None
    challenge_token: Optional[str] = None
    ua_fingerprint: Optional[str] = None


@dataclass
class LoginOutcome:
    user: str
    role: str
    new_csrf_token: str
    attempts_window: int
    session: SessionData
    trace: List[LoginState] = field(default_factory=list)

    def payload(self) -> dict:
        return {
            "success": True,
            "message": "Login exitoso",
            "user": self.user,
            "role": self.role,
            "new_csrf_token": self.new_csrf_token,
            "attempts_window": self.attempts_window,
        }


class LoginOrchestrator:
    def __init__(
        self,
        config: SecurityConfig,
        throttle: Optional[LoginThrottle] = None,
        gate: Optional[ChallengeGate] = None,
        csrf: Optional[CsrfTokenManager] = None,
        store: Optional[SessionStore] = None,
        users: Optional[UserRecordStore] = None,
        audit: Optional[AuditLogService] = None,
        password_verifier: Callable[[str, str], bool] = verify_password,
        sleeper: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.throttle = throttle or LoginThrottle(config)
        self.gate = gate or ChallengeGate(config)
        self.csrf = csrf or CsrfTokenManager()
        self.store = store or SessionStore()
        self.users = users or user_service
        self.audit = audit or audit_service
        self.password_verifier = password_verifier
        self.sleeper = sleeper
        self._rng = rng or random.SystemRandom()
        self.trace: List[LoginState] = []

    def login(
        self,
        db: Session,
        session: SessionData,
        request: LoginRequest,
        now: Optional[datetime] = None,
    ) -> LoginOutcome:
        now = now or utcnow()
        self.trace = [LoginState.START]

        if not self.csrf.validate(session.csrf_token, request.csrf_token):
            logger.warning(f"Login rejected: invalid CSRF token from {request.ip}")
            raise CsrfRejected("Token CSRF inválido")

        username = (request.username or "").strip()
        if not username or not request.password:
            raise InvalidRequest("Debes llenar todos los campos", reason="missing_fields")

        attempts = self._throttle_check(db, request.ip, username, now)
        self._challenge_check(db, request, username, attempts, now)

        self._enter(LoginState.CREDENTIAL_CHECK)
        user = self.users.find_by_username(db, username)
        if (
            user is None
            or not user.is_active
            or not self.password_verifier(request.password, user.password_hash)
        ):
            self._fail(db, request.ip, username, attempts, now)

        return self._succeed(db, session, request, user, attempts, now)

    def adaptive_delay_ms(self, attempts: int) -> int:
        return min(400, 40 + attempts * 60)

    # -- states -----------------------------------------------------------

    def _throttle_check(self, db: Session, ip: str, username: str, now: datetime) -> int:
        self._enter(LoginState.THROTTLE_CHECK)
        attempts = max(self._counts(db, ip, username, now))
        held = attempts
        if held < self.config.hard_threshold and self.throttle.lock_span > self.throttle.window:
            # A block longer than the window outlives the window's counters
            held = max(self._counts(db, ip, username, now, span=self.throttle.lock_span))
        if held < self.config.hard_threshold:
            return attempts

        earliest = self._earliest(db, ip, username, now)
        if earliest is _STORE_UNAVAILABLE:
            logger.warning(f"Lockout for '{username}' from {ip} not enforced: throttle store down")
            return attempts
        if earliest is not None and (now - earliest).total_seconds() >= self.config.block_seconds:
            return attempts

        self._enter(LoginState.BLOCKED)
        retry_after = self.throttle.retry_after(earliest, now)
        logger.warning(
            f"Blocked login probe for '{username}' from {ip} "
            f"({attempts} attempts, retry in {retry_after}s)"
        )
        raise RateLimited(retry_after)

    def _challenge_check(
        self, db: Session, request: LoginRequest, username: str, attempts: int, now: datetime
    ) -> None:
        self._enter(LoginState.CHALLENGE_CHECK)
        if self.gate.decide(attempts) is ChallengeDecision.NONE:
            return

        if not request.challenge_token:
            self._enter(LoginState.CHALLENGE_REQUIRED)
            raise ChallengeRequired()

        result = self.gate.verify(request.challenge_token, request.ip)
        if result.ok:
            return

        self._enter(LoginState.CHALLENGE_REQUIRED)
        self._record_attempt(db, request.ip, username, now)
        self.audit.record(
            db,
            "login_failed",
            actor=username,
            target=username,
            ip=request.ip,
            metadata={"reason": f"challenge_{result.reason}", "score": result.score},
            severity="warning",
            success=False,
            now=now,
        )
        extra = {"details": result.reason}
        if result.score is not None:
            extra["score"] = result.score
        raise ChallengeFailed(CHALLENGE_MESSAGES.get(result.reason), **extra)

    def _fail(self, db: Session, ip: str, username: str, attempts: int, now: datetime) -> None:
        self._enter(LoginState.FAIL)
        if self.config.adaptive_delay:
            delay_ms = self.adaptive_delay_ms(attempts) + self._rng.randint(0, 50)
            self.sleeper(delay_ms / 1000.0)

        self._enter(LoginState.RECORD_ATTEMPT)
        self._record_attempt(db, ip, username, now)
        updated = max(self._counts(db, ip, username, now))

        self.audit.record(
            db,
            "login_failed",
            actor=username,
            target=username,
            ip=ip,
            metadata={"attempts_window": updated},
            severity="warning",
            success=False,
            now=now,
        )

        if updated >= self.config.hard_threshold:
            self._enter(LoginState.NOW_BLOCKED)
            earliest = self._earliest(db, ip, username, now)
            if earliest is _STORE_UNAVAILABLE:
                earliest = now
            retry_after = self.throttle.retry_after(earliest, now)
            logger.warning(
                f"Login for '{username}' from {ip} locked after {updated} failed attempts"
            )
            self.audit.record(
                db,
                "login_locked",
                actor=username,
                target=username,
                ip=ip,
                metadata={"attempts_window": updated, "retry_after": retry_after},
                severity="critical",
                success=False,
                now=now,
            )
            raise RateLimited(retry_after)

        self._enter(LoginState.RETURN_ERROR)
        raise AuthenticationFailure(
            recaptcha_may_require=(
                self.config.challenge_configured and updated >= self.config.soft_threshold
            )
        )

    def _succeed(
        self,
        db: Session,
        session: SessionData,
        request: LoginRequest,
        user,
        attempts: int,
        now: datetime,
    ) -> LoginOutcome:
        self._enter(LoginState.SUCCESS)

        self._enter(LoginState.CLEAR_THROTTLE)
        guarded_call(
            FailureDomain.THROTTLE_STORE,
            self.throttle.clear,
            db,
            request.ip,
            user.username,
            now,
            open_value=0,
        )

        self._enter(LoginState.ROTATE_CSRF)
        established = replace(session, session_id=new_session_id())
        new_token = self.csrf.rotate(established)

        self._enter(LoginState.ESTABLISH_SESSION)
        established.user_id = user.id
        established.username = user.username
        established.role = user.role or "user"
        established.login_time = now
        established.last_activity = now
        established.regen_time = now
        established.ua_fingerprint = request.ua_fingerprint
        established.created_at = now
        self.store.destroy(db, session.session_id)
        self.store.set(db, established)

        guarded_call(
            FailureDomain.USER_METADATA,
            self.users.update_last_login,
            db,
            user.id,
            request.ip,
            request.ua_fingerprint,
            now,
        )
        self.throttle.maybe_purge(db, now)

        self._enter(LoginState.AUDIT_SUCCESS)
        self.audit.record(
            db,
            "login_success",
            actor=user.username,
            target=user.username,
            ip=request.ip,
            metadata={"role": established.role, "attempts_window": attempts},
            now=now,
        )
        logger.info(f"User '{user.username}' logged in from {request.ip}")

        return LoginOutcome(
            user=user.username,
            role=established.role,
            new_csrf_token=new_token,
            attempts_window=attempts,
            session=established,
            trace=list(self.trace),
        )

    # -- helpers ----------------------------------------------------------

    def _enter(self, state: LoginState) -> None:
        self.trace.append(state)

    def _counts(
        self, db: Session, ip: str, username: str, now: datetime, span: Optional[timedelta] = None
    ) -> Tuple[int, int]:
        return guarded_call(
            FailureDomain.THROTTLE_STORE,
            self.throttle.counts_in_window,
            db,
            ip,
            username,
            now,
            span=span,
            open_value=(0, 0),
        )

    def _earliest(self, db: Session, ip: str, username: str, now: datetime):
        """Earliest attempt inside the lock span, or _STORE_UNAVAILABLE."""
        return guarded_call(
            FailureDomain.THROTTLE_STORE,
            self.throttle.earliest_attempt_time,
            db,
            ip,
            username,
            now,
            span=self.throttle.lock_span,
            open_value=_STORE_UNAVAILABLE,
        )

    def _record_attempt(self, db: Session, ip: str, username: str, now: datetime) -> None:
        guarded_call(
            FailureDomain.THROTTLE_STORE,
            self.throttle.record_attempt,
            db,
            ip,
            username,
            now,
        )
