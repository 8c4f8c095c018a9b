"""
Failure policy table: which infrastructure faults fail open and which fail closed.
"""
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from src.catalog_app.services.errors import StoreUnavailable
from src.catalog_app.services.failure_policy import (
    FailureDomain,
    FailureMode,
    guarded_call,
    policy_for,
    store_errors,
)


def boom(exc):
    def func(*args, **kwargs):
        raise exc
    return func


@pytest.mark.parametrize(
    "domain, mode",
    [
        (FailureDomain.THROTTLE_STORE, FailureMode.FAIL_OPEN),
        (FailureDomain.SESSION_STORE, FailureMode.FAIL_CLOSED),
        (FailureDomain.CHALLENGE_VERIFIER, FailureMode.FAIL_CLOSED),
        (FailureDomain.AUDIT_SINK, FailureMode.FAIL_OPEN),
        (FailureDomain.USER_METADATA, FailureMode.FAIL_OPEN),
        (FailureDomain.USER_STORE, FailureMode.FAIL_CLOSED),
    ],
)
def test_policy_table(domain, mode):
    assert policy_for(domain) is mode


def test_passes_through_results():
    assert guarded_call(FailureDomain.SESSION_STORE, lambda a, b=0: a + b, 1, b=2) == 3


def test_fail_open_returns_open_value():
    result = guarded_call(
        FailureDomain.THROTTLE_STORE,
        boom(StoreUnavailable("throttle_store")),
        open_value=(0, 0),
    )
    assert result == (0, 0)


def test_fail_closed_raises_store_unavailable():
    with pytest.raises(StoreUnavailable) as exc:
        guarded_call(FailureDomain.SESSION_STORE, boom(OSError("disk")))
    assert exc.value.domain == "session_store"
    assert exc.value.status_code == 503


def test_fail_closed_with_closed_value():
    request = httpx.Request("POST", "https://recaptcha.test")
    result = guarded_call(
        FailureDomain.CHALLENGE_VERIFIER,
        boom(httpx.ReadTimeout("slow", request=request)),
        closed_value="failed",
    )
    assert result == "failed"


def test_programming_errors_propagate():
    with pytest.raises(KeyError):
        guarded_call(FailureDomain.THROTTLE_STORE, boom(KeyError("bug")))


def test_store_errors_rolls_back():
    db = MagicMock()
    with pytest.raises(StoreUnavailable) as exc:
        with store_errors(db, FailureDomain.AUDIT_SINK):
            raise OperationalError("INSERT", {}, Exception("locked"))
    db.rollback.assert_called_once()
    assert exc.value.domain == "audit_sink"
    assert "INSERT" not in str(exc.value.payload())
