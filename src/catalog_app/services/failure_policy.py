"""
Failure policy for infrastructure faults, keyed by failure domain.

This table is the single place that decides whether a broken dependency lets
the request through (fail-open) or rejects it (fail-closed).
"""

from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, TypeVar

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.catalog_app.services.errors import StoreUnavailable

T = TypeVar("T")


class FailureDomain(str, Enum):
    THROTTLE_STORE = "throttle_store"
    SESSION_STORE = "session_store"
    CHALLENGE_VERIFIER = "challenge_verifier"
    AUDIT_SINK = "audit_sink"
    USER_METADATA = "user_metadata"
    USER_STORE = "user_store"


class FailureMode(str, Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


FAILURE_POLICY: Dict[FailureDomain, FailureMode] = {
    # Availability of the login endpoint wins over throttling precision
    FailureDomain.THROTTLE_STORE: FailureMode.FAIL_OPEN,
    # Unknown session state is treated as not authenticated
    FailureDomain.SESSION_STORE: FailureMode.FAIL_CLOSED,
    # A verifier that cannot answer counts as a failed challenge
    FailureDomain.CHALLENGE_VERIFIER: FailureMode.FAIL_CLOSED,
    FailureDomain.AUDIT_SINK: FailureMode.FAIL_OPEN,
    FailureDomain.USER_METADATA: FailureMode.FAIL_OPEN,
    FailureDomain.USER_STORE: FailureMode.FAIL_CLOSED,
}

INFRASTRUCTURE_ERRORS = (StoreUnavailable, httpx.HTTPError, OSError)

_RAISE = object()


def policy_for(domain: FailureDomain) -> FailureMode:
    return FAILURE_POLICY[domain]


def guarded_call(
    domain: FailureDomain,
    func: Callable[..., T],
    *args: Any,
    open_value: Any = None,
    closed_value: Any = _RAISE,
    **kwargs: Any,
) -> T:
    """
    Run func and apply the domain's policy to infrastructure errors.

    Fail-open domains log and return open_value. Fail-closed domains return
    closed_value when one is given, otherwise raise StoreUnavailable.
    """
    try:
        return func(*args, **kwargs)
    except INFRASTRUCTURE_ERRORS as exc:
        mode = policy_for(domain)
        if mode is FailureMode.FAIL_OPEN:
            logger.warning(f"{domain.value} unavailable, failing open: {exc!r}")
            return open_value

        logger.error(f"{domain.value} unavailable, failing closed: {exc!r}")
        if closed_value is not _RAISE:
            return closed_value
        if isinstance(exc, StoreUnavailable):
            raise
        raise StoreUnavailable(domain.value) from exc


@contextmanager
def store_errors(db: Session, domain: FailureDomain) -> Iterator[None]:
    """Roll back and re-raise SQLAlchemy errors as StoreUnavailable."""
    try:
        yield
    except SQLAlchemyError as exc:
        try:
            db.rollback()
        except SQLAlchemyError:
            logger.debug(f"Rollback after {domain.value} failure also failed")
        raise StoreUnavailable(domain.value) from exc
