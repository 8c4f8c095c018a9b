"""
Challenge (CAPTCHA) gate for the login endpoint.

The gate only ever asks for a challenge when a verifier is configured and the
attempt count reached the soft threshold. Verification is fail-closed: a
timeout, transport error or malformed answer counts as a failed challenge.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from src.catalog_app.services.failure_policy import FailureDomain, guarded_call
from src.catalog_app.services.security_config import SecurityConfig


@dataclass
class ChallengeResult:
    ok: bool
    reason: str = "ok"
    score: Optional[float] = None
    action: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, reason: str, **kwargs) -> "ChallengeResult":
        return cls(ok=False, reason=reason, **kwargs)


class ChallengeDecision(str, Enum):
    NONE = "none"
    REQUIRED = "required"


class ChallengeVerifier(ABC):
    """Validates a client-side challenge token against a third-party API."""

    @abstractmethod
    def verify(self, token: str, remote_ip: Optional[str] = None) -> ChallengeResult:
        ...


class RecaptchaVerifier(ChallengeVerifier):
    """Google reCAPTCHA (v2 or v3) siteverify client."""

    def __init__(
        self,
        secret: str,
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    def verify(self, token: str, remote_ip: Optional[str] = None) -> ChallengeResult:
        if not self.secret or not token:
            return ChallengeResult.failed("missing_token")

        form = {"secret": self.secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.post(self.verify_url, data=form)
            response.raise_for_status()

        try:
            data = response.json()
        except ValueError:
            logger.warning("reCAPTCHA returned a non-JSON response")
            return ChallengeResult.failed("invalid_response")
        if not isinstance(data, dict):
            return ChallengeResult.failed("invalid_response")

        if data.get("success") is True:
            score = data.get("score")
            return ChallengeResult(
                ok=True,
                score=float(score) if score is not None else None,
                action=data.get("action"),
                raw=data,
            )

        logger.info(f"reCAPTCHA rejected token: {data.get('error-codes', [])}")
        return ChallengeResult.failed("rejected", raw=data)


class ChallengeGate:
    def __init__(self, config: SecurityConfig):
        self.config = config

    def decide(
        self, attempt_count: int, challenge_configured: Optional[bool] = None
    ) -> ChallengeDecision:
        if challenge_configured is None:
            challenge_configured = self.config.challenge_configured
        if challenge_configured and attempt_count >= self.config.soft_threshold:
            return ChallengeDecision.REQUIRED
        return ChallengeDecision.NONE

    def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> ChallengeResult:
        """
        Verify a submitted token and apply the minimum score.

        A verifier that cannot be reached yields a failed result rather than
        an exception.
        """
        verifier = self.config.challenge_verifier
        if verifier is None:
            return ChallengeResult(ok=True, reason="not_configured")
        if not token:
            return ChallengeResult.failed("missing_token")

        result = guarded_call(
            FailureDomain.CHALLENGE_VERIFIER,
            verifier.verify,
            token,
            remote_ip,
            closed_value=ChallengeResult.failed("verifier_unavailable"),
        )
        if result.ok and result.score is not None and result.score < self.config.challenge_min_score:
            return ChallengeResult.failed("low_score", score=result.score, action=result.action)
        return result
