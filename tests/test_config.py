from __future__ import annotations

import pytest

from app.core.config import AppConfig, FeatureToggles, get_app_version

_VARS = (
    "BOT_TOKEN",
    "DB_URL",
    "DATABASE_MAX_CONNECTIONS",
    "DATABASE_POOL_TIMEOUT_SEC",
    "DATABASE_STATEMENT_TIMEOUT_MS",
    "GROWTH_MIN",
    "GROWTH_MAX",
    "GROW_COOLDOWN_SEC",
    "DOD_BONUS_MIN",
    "DOD_BONUS_MAX",
    "TOP_LIMIT",
    "TOP_UNLIMITED",
    "PVP_MAX_STAKE",
    "LOCALE",
    "METRICS_PORT",
    "ADMIN_CHAT_ID",
    "LOAN_PAYOUT_COEF",
    "WEBHOOK_URL",
    "WEBHOOK_PORT",
    "WEBHOOK_SECRET",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    # a developer's .env must not leak into the parsed config
    monkeypatch.setattr("app.core.config.load_dotenv", lambda: None)
    monkeypatch.setenv("BOT_TOKEN", "123:abc")


def test_defaults():
    cfg = AppConfig.from_env()

    assert cfg.bot_token == "123:abc"
    assert cfg.db_url == "sqlite:///data/bot.db"
    assert cfg.db_max_connections == 10
    assert cfg.growth_min == -5 and cfg.growth_max == 10
    assert cfg.locale == "en"
    assert cfg.features == FeatureToggles(top_unlimited=True)


def test_values_from_env(monkeypatch):
    monkeypatch.setenv("DB_URL", "postgresql://bot@localhost/bot")
    monkeypatch.setenv("DATABASE_MAX_CONNECTIONS", "4")
    monkeypatch.setenv("DATABASE_POOL_TIMEOUT_SEC", "2.5")
    monkeypatch.setenv("TOP_LIMIT", "25")
    monkeypatch.setenv("LOCALE", "RU")
    monkeypatch.setenv("ADMIN_CHAT_ID", "-100500")

    cfg = AppConfig.from_env()

    assert cfg.db_url == "postgresql://bot@localhost/bot"
    assert cfg.db_max_connections == 4
    assert cfg.db_pool_timeout_sec == 2.5
    assert cfg.top_limit == 25
    assert cfg.locale == "ru"
    assert cfg.admin_chat_id == -100500


@pytest.mark.parametrize("raw", ["false", "0", "no", "off"])
def test_top_unlimited_disabled(monkeypatch, raw):
    monkeypatch.setenv("TOP_UNLIMITED", raw)
    assert AppConfig.from_env().features.top_unlimited is False


def test_bot_token_required(monkeypatch):
    monkeypatch.setenv("BOT_TOKEN", "  ")
    with pytest.raises(RuntimeError, match="BOT_TOKEN"):
        AppConfig.from_env()


def test_invalid_int(monkeypatch):
    monkeypatch.setenv("TOP_LIMIT", "ten")
    with pytest.raises(RuntimeError, match="TOP_LIMIT"):
        AppConfig.from_env()


def test_invalid_float(monkeypatch):
    monkeypatch.setenv("DATABASE_POOL_TIMEOUT_SEC", "soon")
    with pytest.raises(RuntimeError, match="DATABASE_POOL_TIMEOUT_SEC"):
        AppConfig.from_env()


def test_growth_range(monkeypatch):
    monkeypatch.setenv("GROWTH_MIN", "5")
    monkeypatch.setenv("GROWTH_MAX", "1")
    with pytest.raises(RuntimeError, match="GROWTH_MIN"):
        AppConfig.from_env()


def test_negative_dod_bonus(monkeypatch):
    monkeypatch.setenv("DOD_BONUS_MIN", "-1")
    with pytest.raises(RuntimeError, match="DOD_BONUS_MIN"):
        AppConfig.from_env()


def test_pool_size_must_be_positive(monkeypatch):
    monkeypatch.setenv("DATABASE_MAX_CONNECTIONS", "0")
    with pytest.raises(RuntimeError, match="DATABASE_MAX_CONNECTIONS"):
        AppConfig.from_env()


def test_unknown_locale(monkeypatch):
    monkeypatch.setenv("LOCALE", "de")
    with pytest.raises(RuntimeError, match="LOCALE"):
        AppConfig.from_env()


def test_app_version():
    assert get_app_version() == "0.1.0"


def test_polling_by_default():
    cfg = AppConfig.from_env()
    assert cfg.webhook_url == ""
    assert cfg.loan_payout_coef == 0.1


def test_webhook_settings(monkeypatch):
    monkeypatch.setenv("WEBHOOK_URL", "https://bot.example.com/telegram")
    monkeypatch.setenv("WEBHOOK_PORT", "9000")
    monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")

    cfg = AppConfig.from_env()

    assert cfg.webhook_url == "https://bot.example.com/telegram"
    assert cfg.webhook_port == 9000
    assert cfg.webhook_secret == "s3cret"


def test_webhook_must_be_https(monkeypatch):
    monkeypatch.setenv("WEBHOOK_URL", "http://bot.example.com/telegram")
    with pytest.raises(RuntimeError, match="WEBHOOK_URL"):
        AppConfig.from_env()


def test_webhook_port_must_not_clash_with_metrics(monkeypatch):
    monkeypatch.setenv("WEBHOOK_URL", "https://bot.example.com/telegram")
    monkeypatch.setenv("WEBHOOK_PORT", "8080")
    with pytest.raises(RuntimeError, match="WEBHOOK_PORT"):
        AppConfig.from_env()


@pytest.mark.parametrize("raw", ["0", "-0.5", "1.5"])
def test_loan_payout_coef_range(monkeypatch, raw):
    monkeypatch.setenv("LOAN_PAYOUT_COEF", raw)
    with pytest.raises(RuntimeError, match="LOAN_PAYOUT_COEF"):
        AppConfig.from_env()
