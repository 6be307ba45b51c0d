from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from dotenv import load_dotenv


def _bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FeatureToggles:
    # When disabled, growth events skip the rank query and report no position.
    top_unlimited: bool = True

    @staticmethod
    def from_env() -> "FeatureToggles":
        return FeatureToggles(
            top_unlimited=_bool(os.getenv("TOP_UNLIMITED", "true")),
        )


@dataclass(frozen=True)
class AppConfig:
    bot_token: str

    db_url: str = "sqlite:///data/bot.db"
    db_max_connections: int = 10
    db_pool_timeout_sec: float = 10.0
    db_statement_timeout_ms: int = 5000

    growth_min: int = -5
    growth_max: int = 10
    grow_cooldown_sec: int = 86400

    dod_bonus_min: int = 1
    dod_bonus_max: int = 15

    top_limit: int = 10
    pvp_max_stake: int = 100
    loan_payout_coef: float = 0.1

    locale: str = "en"
    metrics_port: int = 8080

    allowed_updates: tuple[str, ...] = ("message",)

    # Empty means long polling
    webhook_url: str = ""
    webhook_port: int = 8443
    webhook_secret: str = ""

    parse_mode: str = "HTML"

    admin_chat_id: int = 0  # Optional: set to send greeting to this chat on startup

    features: FeatureToggles = field(default_factory=FeatureToggles)

    @staticmethod
    def from_env() -> "AppConfig":
        load_dotenv()  # Load .env file
        bot_token = os.getenv("BOT_TOKEN", "").strip()
        if not bot_token:
            raise RuntimeError("BOT_TOKEN is required.")

        def _int(name: str, default: int) -> int:
            raw = os.getenv(name, str(default)).strip()
            try:
                return int(raw)
            except ValueError as ex:
                raise RuntimeError(f"{name} must be int. Got '{raw}'.") from ex

        def _float(name: str, default: float) -> float:
            raw = os.getenv(name, str(default)).strip()
            try:
                return float(raw)
            except ValueError as ex:
                raise RuntimeError(f"{name} must be a number. Got '{raw}'.") from ex

        growth_min = _int("GROWTH_MIN", -5)
        growth_max = _int("GROWTH_MAX", 10)
        if growth_min > growth_max:
            raise RuntimeError("GROWTH_MIN must not exceed GROWTH_MAX.")

        dod_bonus_min = _int("DOD_BONUS_MIN", 1)
        dod_bonus_max = _int("DOD_BONUS_MAX", 15)
        if dod_bonus_min < 0 or dod_bonus_min > dod_bonus_max:
            raise RuntimeError("DOD_BONUS_MIN must be in [0, DOD_BONUS_MAX].")

        max_connections = _int("DATABASE_MAX_CONNECTIONS", 10)
        if max_connections < 1:
            raise RuntimeError("DATABASE_MAX_CONNECTIONS must be positive.")

        loan_payout_coef = _float("LOAN_PAYOUT_COEF", 0.1)
        if not 0 < loan_payout_coef <= 1:
            raise RuntimeError("LOAN_PAYOUT_COEF must be in (0, 1].")

        webhook_url = os.getenv("WEBHOOK_URL", "").strip()
        if webhook_url and not webhook_url.startswith("https://"):
            raise RuntimeError("WEBHOOK_URL must be an https:// URL.")
        webhook_port = _int("WEBHOOK_PORT", 8443)
        metrics_port = _int("METRICS_PORT", 8080)
        if webhook_url and webhook_port == metrics_port:
            raise RuntimeError("WEBHOOK_PORT and METRICS_PORT must differ.")

        locale = os.getenv("LOCALE", "en").strip().lower()
        if locale not in ("en", "ru"):
            raise RuntimeError("LOCALE must be 'en' or 'ru'.")

        return AppConfig(
            bot_token=bot_token,
            db_url=os.getenv("DB_URL", "sqlite:///data/bot.db").strip(),
            db_max_connections=max_connections,
            db_pool_timeout_sec=_float("DATABASE_POOL_TIMEOUT_SEC", 10.0),
            db_statement_timeout_ms=_int("DATABASE_STATEMENT_TIMEOUT_MS", 5000),
            growth_min=growth_min,
            growth_max=growth_max,
            grow_cooldown_sec=_int("GROW_COOLDOWN_SEC", 86400),
            dod_bonus_min=dod_bonus_min,
            dod_bonus_max=dod_bonus_max,
            top_limit=_int("TOP_LIMIT", 10),
            pvp_max_stake=_int("PVP_MAX_STAKE", 100),
            loan_payout_coef=loan_payout_coef,
            locale=locale,
            metrics_port=metrics_port,
            webhook_url=webhook_url,
            webhook_port=webhook_port,
            webhook_secret=os.getenv("WEBHOOK_SECRET", "").strip(),
            admin_chat_id=_int("ADMIN_CHAT_ID", 0),
            features=FeatureToggles.from_env(),
        )


def get_app_version() -> str:
    """
    Get application version from pyproject.toml.

    Returns:
        Version string (e.g., "0.1.0")
    """
    try:
        from importlib.metadata import version, PackageNotFoundError
        try:
            return version("dick-grower-bot")
        except PackageNotFoundError:
            pass

        # Not installed: parse pyproject.toml directly
        pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            with open(pyproject_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line.startswith("version ="):
                        return line.split("=", 1)[1].strip().strip('"').strip("'")
        return "unknown"
    except OSError:
        return "unknown"
