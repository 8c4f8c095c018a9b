"""
SecurityConfig: every knob of the session and login-defense core in one place.

Built once at startup from src.config and handed to the services; nothing in
the request path re-reads settings on its own.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, TYPE_CHECKING

from loguru import logger

from src import config

if TYPE_CHECKING:
    from src.catalog_app.services.challenge_service import ChallengeVerifier


class SameSite(str, Enum):
    STRICT = "Strict"
    LAX = "Lax"
    NONE = "None"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SameSite":
        for member in cls:
            if (value or "").strip().lower() == member.value.lower():
                return member
        if value:
            logger.warning(f"Invalid SESSION_SAMESITE value '{value}', using Lax")
        return cls.LAX


@dataclass(frozen=True)
class SecurityConfig:
    # Session lifetime (seconds)
    idle_max: int = 3600
    absolute_max: int = 14400
    regen_interval: int = 1200
    enforce_fingerprint: bool = True

    # Cookie
    cookie_name: str = "catalog_session"
    same_site: SameSite = SameSite.LAX
    cookie_domain: Optional[str] = None
    force_https: bool = False

    # Login throttle
    window_seconds: int = 900
    soft_threshold: int = 3
    hard_threshold: int = 5
    block_seconds: int = 900
    adaptive_delay: bool = True
    attempt_retention_seconds: int = 24 * 3600
    rate_limit_retention_seconds: int = 3600
    purge_probability: int = 75

    # Challenge (None disables the gate entirely)
    challenge_verifier: Optional["ChallengeVerifier"] = None
    challenge_site_key: Optional[str] = None
    challenge_min_score: float = 0.3

    @property
    def challenge_configured(self) -> bool:
        return self.challenge_verifier is not None

    @property
    def window_minutes(self) -> int:
        return self.window_seconds // 60

    def with_overrides(self, **changes) -> "SecurityConfig":
        return replace(self, **changes)


def load_security_config() -> SecurityConfig:
    """Build the SecurityConfig from env.properties / environment settings."""
    from src.catalog_app.services.challenge_service import RecaptchaVerifier

    verifier = None
    site_key = config.RECAPTCHA_SITE_KEY or None
    if config.RECAPTCHA_SECRET and config.RECAPTCHA_SITE_KEY:
        verifier = RecaptchaVerifier(
            secret=config.RECAPTCHA_SECRET,
            verify_url=config.RECAPTCHA_VERIFY_URL,
            timeout=config.RECAPTCHA_TIMEOUT_SECONDS,
        )
    else:
        site_key = None
        logger.info("reCAPTCHA not configured; login challenge disabled")

    hard = max(1, config.LOGIN_HARD_THRESHOLD)
    soft = min(max(1, config.LOGIN_SOFT_THRESHOLD), hard)

    return SecurityConfig(
        idle_max=config.SESSION_IDLE_MAX,
        absolute_max=config.SESSION_ABSOLUTE_MAX,
        regen_interval=config.SESSION_REGEN_INTERVAL,
        enforce_fingerprint=config.ENFORCE_UA_HASH,
        cookie_name=config.SESSION_COOKIE_NAME,
        same_site=SameSite.parse(config.SESSION_SAMESITE),
        cookie_domain=config.SESSION_COOKIE_DOMAIN or None,
        force_https=config.FORCE_HTTPS,
        window_seconds=config.LOGIN_WINDOW_MINUTES * 60,
        soft_threshold=soft,
        hard_threshold=hard,
        block_seconds=config.LOGIN_BLOCK_SECONDS,
        adaptive_delay=config.LOGIN_ADAPTIVE_DELAY,
        attempt_retention_seconds=config.ATTEMPT_RETENTION_HOURS * 3600,
        rate_limit_retention_seconds=config.RATE_LIMIT_RETENTION_SECONDS,
        purge_probability=config.ATTEMPT_PURGE_PROBABILITY,
        challenge_verifier=verifier,
        challenge_site_key=site_key,
        challenge_min_score=config.RECAPTCHA_MIN_SCORE,
    )
