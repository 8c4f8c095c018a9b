from src import config
from src.catalog_app.services.challenge_service import RecaptchaVerifier
from src.catalog_app.services.security_config import SameSite, SecurityConfig, load_security_config


def test_defaults():
    cfg = SecurityConfig()
    assert cfg.idle_max == 3600
    assert cfg.absolute_max == 14400
    assert cfg.regen_interval == 1200
    assert (cfg.soft_threshold, cfg.hard_threshold) == (3, 5)
    assert cfg.window_minutes == 15
    assert cfg.challenge_configured is False


def test_samesite_parse():
    assert SameSite.parse("strict") is SameSite.STRICT
    assert SameSite.parse(" None ") is SameSite.NONE
    assert SameSite.parse("Lax") is SameSite.LAX
    assert SameSite.parse("bogus") is SameSite.LAX
    assert SameSite.parse(None) is SameSite.LAX


def test_challenge_needs_both_keys(monkeypatch):
    monkeypatch.setattr(config, "RECAPTCHA_SECRET", "secret")
    monkeypatch.setattr(config, "RECAPTCHA_SITE_KEY", "")
    cfg = load_security_config()
    assert cfg.challenge_verifier is None
    assert cfg.challenge_site_key is None

    monkeypatch.setattr(config, "RECAPTCHA_SITE_KEY", "site")
    cfg = load_security_config()
    assert isinstance(cfg.challenge_verifier, RecaptchaVerifier)
    assert cfg.challenge_site_key == "site"
    assert cfg.challenge_configured


def test_thresholds_are_kept_consistent(monkeypatch):
    monkeypatch.setattr(config, "LOGIN_SOFT_THRESHOLD", 9)
    monkeypatch.setattr(config, "LOGIN_HARD_THRESHOLD", 4)
    cfg = load_security_config()
    assert cfg.hard_threshold == 4
    assert cfg.soft_threshold == 4


def test_with_overrides_is_a_copy():
    cfg = SecurityConfig()
    changed = cfg.with_overrides(idle_max=60)
    assert changed.idle_max == 60
    assert cfg.idle_max == 3600
