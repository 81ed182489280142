import pytest

from evidence_guard.config import Settings
from evidence_guard.errors import ConfigurationError

RATE_LIMIT_VARS = (
    "CRON_AUTH_KEY",
    "CRON_SECRET_TOKEN",
    "RATE_LIMIT_MAX_HITS",
    "RATE_LIMIT_WINDOW_SECONDS",
    "RATE_LIMIT_BLOCK_SECONDS",
    "RATE_LIMIT_ESCALATION_MULTIPLIER",
    "RATE_LIMIT_MAX_BLOCK_SECONDS",
    "RATE_LIMIT_FAIL_OPEN",
    "RATE_LIMIT_STORE_TIMEOUT_SECONDS",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in RATE_LIMIT_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings.from_env()

    config = settings.rate_limit_config
    assert config.max_hits == 30
    assert config.window_seconds == 60
    assert config.block_duration_seconds == 3600
    assert config.escalation is None
    assert config.fail_open is False
    assert settings.store_timeout_seconds == 5.0


def test_cron_secret_token_is_accepted_as_fallback(clean_env):
    clean_env.setenv("CRON_SECRET_TOKEN", "legacy-secret")

    assert Settings.from_env().require_cron_auth_key() == "legacy-secret"

    clean_env.setenv("CRON_AUTH_KEY", "primary-secret")
    assert Settings.from_env().require_cron_auth_key() == "primary-secret"


def test_missing_cron_key_is_a_configuration_error(clean_env):
    with pytest.raises(ConfigurationError, match="CRON_AUTH_KEY"):
        Settings.from_env().require_cron_auth_key()


def test_rate_limit_policy_from_env(clean_env):
    clean_env.setenv("RATE_LIMIT_MAX_HITS", "5")
    clean_env.setenv("RATE_LIMIT_BLOCK_SECONDS", "300")
    clean_env.setenv("RATE_LIMIT_ESCALATION_MULTIPLIER", "2.5")
    clean_env.setenv("RATE_LIMIT_MAX_BLOCK_SECONDS", "7200")
    clean_env.setenv("RATE_LIMIT_FAIL_OPEN", "yes")

    config = Settings.from_env().rate_limit_config

    assert config.max_hits == 5
    assert config.block_duration_seconds == 300
    assert config.escalation.multiplier == 2.5
    assert config.escalation.max_block_seconds == 7200
    assert config.fail_open is True


@pytest.mark.parametrize(
    ("name", "value"),
    [("RATE_LIMIT_MAX_HITS", "lots"), ("RATE_LIMIT_STORE_TIMEOUT_SECONDS", "soon")],
)
def test_malformed_numbers_are_rejected(clean_env, name, value):
    clean_env.setenv(name, value)

    with pytest.raises(ConfigurationError, match=name):
        Settings.from_env()
