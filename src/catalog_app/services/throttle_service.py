"""
Login throttling and generic request rate limiting.

LoginThrottle keeps two resetting buckets per failed login, one keyed by the
client IP and one by the submitted username, and an append-only row per
attempt. Counting both keys and taking the maximum stops an attacker rotating
IPs against one account as well as one IP spraying many accounts. Lockout
expiry is derived from the earliest attempt still inside the window, so a
sustained attack cannot keep pushing its own lockout forward.

Bucket writes are a single INSERT ... ON CONFLICT DO UPDATE so concurrent
attempts from the same key never lose an increment.
"""

import random
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from loguru import logger
from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from src.catalog_app.models.security import LoginAttempt, RateLimitWindow
from src.catalog_app.services.errors import RateLimited
from src.catalog_app.services.failure_policy import (
    FailureDomain,
    guarded_call,
    store_errors,
)
from src.catalog_app.services.security_config import SecurityConfig
from src.catalog_app.utils.timeutils import as_utc, utcnow

EMPTY_USERNAME = "(empty)"

LOGIN_ACTION_IP = "login_ip"
LOGIN_ACTION_USER = "login_user"


def _normalize_username(username: Optional[str]) -> str:
    username = (username or "").strip()
    return username[:191] if username else EMPTY_USERNAME


def upsert_window(
    db: Session,
    key: str,
    action: str,
    now: datetime,
    window_seconds: int,
    limit: Optional[int] = None,
    block_seconds: Optional[int] = None,
) -> None:
    """
    Atomically insert or increment the (key, action) bucket.

    The bucket restarts at 1 with a fresh window_start when its window has
    expired. When limit and block_seconds are given it also restarts once the
    limit was reached and the block has elapsed since the last request.
    """
    table = RateLimitWindow.__table__
    reset = table.c.window_start < now - timedelta(seconds=window_seconds)
    if limit is not None and block_seconds is not None:
        reset = or_(
            reset,
            (table.c.request_count >= limit)
            & (table.c.last_request_at <= now - timedelta(seconds=block_seconds)),
        )

    updates = {
        "request_count": case((reset, 1), else_=table.c.request_count + 1),
        "window_start": case((reset, now), else_=table.c.window_start),
        "last_request_at": now,
    }
    values = {
        "rate_key": key,
        "action": action,
        "request_count": 1,
        "window_start": now,
        "last_request_at": now,
    }

    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        insert = None

    if insert is not None:
        stmt = insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.rate_key, table.c.action], set_=updates
        )
        db.execute(stmt)
    elif dialect in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert as mysql_insert

        stmt = mysql_insert(table).values(**values)
        db.execute(stmt.on_duplicate_key_update(**updates))
    else:
        # Row-locked read-modify-write for dialects without an upsert
        row = (
            db.query(RateLimitWindow)
            .filter(RateLimitWindow.rate_key == key, RateLimitWindow.action == action)
            .with_for_update()
            .first()
        )
        if row is None:
            db.add(RateLimitWindow(**values))
        else:
            restart = as_utc(row.window_start) < now - timedelta(seconds=window_seconds)
            if limit is not None and block_seconds is not None:
                restart = restart or (
                    row.request_count >= limit
                    and as_utc(row.last_request_at) <= now - timedelta(seconds=block_seconds)
                )
            row.request_count = 1 if restart else row.request_count + 1
            if restart:
                row.window_start = now
            row.last_request_at = now
    db.commit()


def read_window(db: Session, key: str, action: str) -> Optional[RateLimitWindow]:
    return (
        db.query(RateLimitWindow)
        .filter(RateLimitWindow.rate_key == key, RateLimitWindow.action == action)
        .populate_existing()
        .first()
    )


class LoginThrottle:
    """Dual-keyed (IP + username) failed-login counters."""

    def __init__(self, config: SecurityConfig, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng or random.SystemRandom()

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.config.window_seconds)

    @property
    def lock_span(self) -> timedelta:
        """How far back a lockout can reach: the window, or the block if longer."""
        return max(self.window, timedelta(seconds=self.config.block_seconds))

    def record_attempt(
        self, db: Session, ip: str, username: Optional[str], now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        username = _normalize_username(username)
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            db.add(LoginAttempt(ip=ip, username=username, attempt_time=now))
            db.flush()
            upsert_window(db, ip, LOGIN_ACTION_IP, now, self.config.window_seconds)
            upsert_window(db, username, LOGIN_ACTION_USER, now, self.config.window_seconds)
        logger.debug(f"Failed login attempt recorded for '{username}' from {ip}")

    def counts_in_window(
        self,
        db: Session,
        ip: str,
        username: Optional[str],
        now: Optional[datetime] = None,
        span: Optional[timedelta] = None,
    ) -> Tuple[int, int]:
        """
        Return (count_by_ip, count_by_username).

        Buckets that started more than span ago (the window by default) count
        as 0.
        """
        now = now or utcnow()
        span = span or self.window
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            by_ip = self._live_count(read_window(db, ip, LOGIN_ACTION_IP), now, span)
            by_user = 0
            if (username or "").strip():
                by_user = self._live_count(
                    read_window(db, _normalize_username(username), LOGIN_ACTION_USER),
                    now,
                    span,
                )
        return by_ip, by_user

    def attempt_count(
        self, db: Session, ip: str, username: Optional[str], now: Optional[datetime] = None
    ) -> int:
        return max(self.counts_in_window(db, ip, username, now))

    def earliest_attempt_time(
        self,
        db: Session,
        ip: str,
        username: Optional[str],
        now: Optional[datetime] = None,
        span: Optional[timedelta] = None,
    ) -> Optional[datetime]:
        now = now or utcnow()
        span = span or self.window
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            earliest = (
                db.query(func.min(LoginAttempt.attempt_time))
                .filter(
                    or_(
                        LoginAttempt.ip == ip,
                        LoginAttempt.username == _normalize_username(username),
                    ),
                    LoginAttempt.attempt_time >= now - span,
                )
                .scalar()
            )
        return as_utc(earliest)

    def retry_after(self, earliest: Optional[datetime], now: Optional[datetime] = None) -> int:
        """Seconds until the lockout started by the earliest attempt expires."""
        block = self.config.block_seconds
        if earliest is None:
            return max(1, block)
        elapsed = ((now or utcnow()) - earliest).total_seconds()
        return max(1, int(block - elapsed))

    def clear(
        self, db: Session, ip: str, username: Optional[str], now: Optional[datetime] = None
    ) -> int:
        """
        Forget the attempt history of an (ip, username) pair after a success.

        Both buckets are rebuilt from the attempts that remain, so failures
        from other IPs against this username (or other usernames from this IP)
        still count.
        """
        if not (username or "").strip():
            return 0
        now = now or utcnow()
        username = _normalize_username(username)
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            deleted = (
                db.query(LoginAttempt)
                .filter(LoginAttempt.ip == ip, LoginAttempt.username == username)
                .delete(synchronize_session=False)
            )
            self._rebuild_window(db, ip, LOGIN_ACTION_IP, LoginAttempt.ip == ip, now)
            self._rebuild_window(
                db, username, LOGIN_ACTION_USER, LoginAttempt.username == username, now
            )
            db.commit()
        if deleted:
            logger.info(f"Cleared {deleted} failed attempts for '{username}' from {ip}")
        return deleted

    def clear_username(self, db: Session, username: str, now: Optional[datetime] = None) -> int:
        """Remove every attempt for a username regardless of source IP (admin unlock)."""
        now = now or utcnow()
        username = _normalize_username(username)
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            ips = [
                row.ip
                for row in db.query(LoginAttempt.ip)
                .filter(LoginAttempt.username == username)
                .distinct()
                .all()
            ]
            deleted = (
                db.query(LoginAttempt)
                .filter(LoginAttempt.username == username)
                .delete(synchronize_session=False)
            )
            db.query(RateLimitWindow).filter(
                RateLimitWindow.rate_key == username,
                RateLimitWindow.action == LOGIN_ACTION_USER,
            ).delete(synchronize_session=False)
            for ip in ips:
                self._rebuild_window(db, ip, LOGIN_ACTION_IP, LoginAttempt.ip == ip, now)
            db.commit()
        logger.info(f"Cleared {deleted} failed attempts for '{username}'")
        return deleted

    def purge(self, db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete attempts past retention and buckets idle past their retention."""
        now = now or utcnow()
        attempts_cutoff = now - timedelta(seconds=self.config.attempt_retention_seconds)
        windows_cutoff = now - timedelta(
            seconds=max(
                self.config.rate_limit_retention_seconds,
                self.config.window_seconds,
                self.config.block_seconds,
            )
        )
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            attempts = (
                db.query(LoginAttempt)
                .filter(LoginAttempt.attempt_time < attempts_cutoff)
                .delete(synchronize_session=False)
            )
            windows = (
                db.query(RateLimitWindow)
                .filter(RateLimitWindow.last_request_at < windows_cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        if attempts or windows:
            logger.info(f"Purged {attempts} login attempts and {windows} rate-limit windows")
        return {"attempts": attempts, "windows": windows}

    def maybe_purge(self, db: Session, now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
        """Run purge with probability 1/purge_probability."""
        odds = self.config.purge_probability
        if odds <= 0 or self._rng.randint(1, odds) != 1:
            return None
        return guarded_call(FailureDomain.THROTTLE_STORE, self.purge, db, now)

    def _live_count(
        self, bucket: Optional[RateLimitWindow], now: datetime, span: timedelta
    ) -> int:
        if bucket is None:
            return 0
        if as_utc(bucket.window_start) < now - span:
            return 0
        return bucket.request_count

    def _rebuild_window(self, db: Session, key: str, action: str, condition, now: datetime) -> None:
        count, first, last = (
            db.query(
                func.count(LoginAttempt.id),
                func.min(LoginAttempt.attempt_time),
                func.max(LoginAttempt.attempt_time),
            )
            .filter(condition, LoginAttempt.attempt_time >= now - self.window)
            .one()
        )
        bucket = read_window(db, key, action)
        if not count:
            if bucket is not None:
                db.delete(bucket)
            return
        if bucket is None:
            bucket = RateLimitWindow(rate_key=key, action=action)
            db.add(bucket)
        bucket.request_count = count
        bucket.window_start = as_utc(first)
        bucket.last_request_at = as_utc(last)


class RateLimitService:
    """Per-key request limiter for admin endpoints (fail-open)."""

    RETENTION_SECONDS = 3600

    def hit(
        self,
        db: Session,
        key: str,
        action: str,
        limit: int = 100,
        window_seconds: int = 300,
        block_seconds: int = 900,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Count one request for (key, action) and raise RateLimited while blocked.

        Returns the bucket count after this request, or 0 when the store is
        unavailable.
        """
        now = now or utcnow()
        return guarded_call(
            FailureDomain.THROTTLE_STORE,
            self._hit,
            db,
            key,
            action,
            limit,
            window_seconds,
            block_seconds,
            now,
            open_value=0,
        )

    def purge(self, db: Session, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(seconds=self.RETENTION_SECONDS)
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            deleted = (
                db.query(RateLimitWindow)
                .filter(
                    RateLimitWindow.window_start < cutoff,
                    RateLimitWindow.action.notin_([LOGIN_ACTION_IP, LOGIN_ACTION_USER]),
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        return deleted

    def _hit(
        self,
        db: Session,
        key: str,
        action: str,
        limit: int,
        window_seconds: int,
        block_seconds: int,
        now: datetime,
    ) -> int:
        with store_errors(db, FailureDomain.THROTTLE_STORE):
            bucket = read_window(db, key, action)
            if bucket is not None:
                window_open = as_utc(bucket.window_start) >= now - timedelta(seconds=window_seconds)
                blocked_until = as_utc(bucket.last_request_at) + timedelta(seconds=block_seconds)
                if window_open and bucket.request_count >= limit and blocked_until > now:
                    retry_after = int((blocked_until - now).total_seconds())
                    raise RateLimited(
                        retry_after,
                        f"Demasiadas peticiones. Intenta en {max(1, retry_after)} segundos.",
                        action=action,
                        limit=limit,
                    )

            upsert_window(db, key, action, now, window_seconds, limit, block_seconds)
            db.expire_all()
            count = read_window(db, key, action).request_count

        if count > limit:
            logger.warning(f"Rate limit exceeded for {key} on '{action}' ({count}/{limit})")
            raise RateLimited(
                block_seconds,
                f"Límite de peticiones excedido. Bloqueado por {block_seconds} segundos.",
                action=action,
                limit=limit,
            )
        return count


rate_limit_service = RateLimitService()
