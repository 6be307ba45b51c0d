from __future__ import annotations

import logging
import os
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Optional
from urllib.parse import urlparse

from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler

from app.core.config import AppConfig
from app.core.ledger import Dicks, Users
from app.core.metrics import Metrics
from app.storage.repo import Repository
from app.storage.sqlite_repo import SQLiteRepository
from app.storage.pg_repo import PostgresRepository
from app.bot.handlers import cmd_dick_of_day, cmd_grow, cmd_help, cmd_loan, cmd_pvp, cmd_start, cmd_top, send_greeting


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _sqlite_path_from_db_url(db_url: str) -> str:
    # Expected: sqlite:///data/bot.db
    if not db_url.startswith("sqlite:///"):
        raise RuntimeError("DB_URL must be sqlite:///... or postgresql://...")
    return db_url.replace("sqlite:///", "", 1)


def _is_postgres(db_url: str) -> bool:
    """Check if DB_URL is a PostgreSQL connection string."""
    return db_url.startswith("postgresql://") or db_url.startswith("postgres://")


def _build_repo(cfg: AppConfig) -> Repository:
    """Build the appropriate repository based on DB_URL."""
    if _is_postgres(cfg.db_url):
        logger.info("Using PostgreSQL repository")
        return PostgresRepository(
            dsn=cfg.db_url,
            max_connections=cfg.db_max_connections,
            pool_timeout_sec=cfg.db_pool_timeout_sec,
            statement_timeout_ms=cfg.db_statement_timeout_ms,
        )

    # Default to SQLite
    logger.info("Using SQLite repository: %s", cfg.db_url)
    return SQLiteRepository(
        db_path=_sqlite_path_from_db_url(cfg.db_url),
        busy_timeout_sec=cfg.db_pool_timeout_sec,
    )


def _chat_resolver(application: Application):
    async def resolve(handle: str) -> Optional[int]:
        try:
            chat = await application.bot.get_chat(handle)
        except TelegramError as ex:
            logger.info("Couldn't resolve chat %s: %s", handle, ex)
            return None
        return chat.id

    return resolve


def build_app(*, cfg: AppConfig, repo: Repository, metrics: Metrics) -> Application:
    application = Application.builder().token(cfg.bot_token).build()

    executor = ThreadPoolExecutor(max_workers=cfg.db_max_connections, thread_name_prefix="storage")
    rng = random.Random()
    users = Users(repo, executor)
    dicks = Dicks(
        repo,
        cfg.features,
        metrics=metrics,
        executor=executor,
        resolver=_chat_resolver(application),
        rng=rng,
        loan_payout_ratio=cfg.loan_payout_coef,
    )

    # Commands
    application.add_handler(CommandHandler("start", lambda u, c: cmd_start(u, c, metrics=metrics, cfg=cfg)))
    application.add_handler(CommandHandler("help", lambda u, c: cmd_help(u, c, metrics=metrics, cfg=cfg)))
    application.add_handler(
        CommandHandler("grow", lambda u, c: cmd_grow(u, c, users=users, dicks=dicks, cfg=cfg, rng=rng))
    )
    application.add_handler(CommandHandler("top", lambda u, c: cmd_top(u, c, dicks=dicks, cfg=cfg)))
    application.add_handler(
        CommandHandler("dick_of_day", lambda u, c: cmd_dick_of_day(u, c, dicks=dicks, cfg=cfg, rng=rng))
    )
    application.add_handler(CommandHandler("pvp", lambda u, c: cmd_pvp(u, c, users=users, dicks=dicks, cfg=cfg)))
    application.add_handler(CommandHandler("loan", lambda u, c: cmd_loan(u, c, users=users, dicks=dicks, cfg=cfg)))

    async def _post_init(app: Application) -> None:
        await send_greeting(app, cfg)

    async def _post_shutdown(app: Application) -> None:
        executor.shutdown(wait=True)
        repo.close()

    application.post_init = _post_init
    application.post_shutdown = _post_shutdown

    return application


def main() -> None:
    cfg = AppConfig.from_env()

    # Reduce verbosity for noisy third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    # Replace root handlers with one that redacts the bot token from output
    class RedactingFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            return super().format(record).replace(cfg.bot_token, "<BOT_TOKEN_REDACTED>")

    root = logging.getLogger()
    # remove existing handlers created by basicConfig
    for h in list(root.handlers):
        root.removeHandler(h)

    stream_h = logging.StreamHandler()
    stream_h.setFormatter(RedactingFormatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
    root.addHandler(stream_h)
    root.setLevel(os.getenv("LOG_LEVEL", "INFO"))

    repo = _build_repo(cfg)
    # Schema must be current before any ledger operation
    applied = repo.migrate()
    if applied:
        logger.info("Applied migrations: %s", ", ".join(applied))

    metrics = Metrics()
    if cfg.metrics_port:
        metrics.serve(cfg.metrics_port)
        logger.info("Metrics exposed on :%s/metrics", cfg.metrics_port)

    app = build_app(cfg=cfg, repo=repo, metrics=metrics)

    if cfg.webhook_url:
        logger.info("Setting a webhook: %s (listening on :%s)", cfg.webhook_url, cfg.webhook_port)
        app.run_webhook(
            listen="0.0.0.0",
            port=cfg.webhook_port,
            url_path=urlparse(cfg.webhook_url).path.lstrip("/"),
            webhook_url=cfg.webhook_url,
            secret_token=cfg.webhook_secret or None,
            allowed_updates=list(cfg.allowed_updates),
            close_loop=False,
        )
        return

    logger.info("The polling dispatcher is activating...")
    app.run_polling(
        allowed_updates=list(cfg.allowed_updates),
        close_loop=False,
    )


if __name__ == "__main__":
    main()
