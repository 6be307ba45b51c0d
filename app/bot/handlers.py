from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from html import escape

from telegram import Update, User as TgUser
from telegram.ext import ContextTypes
from telegram.constants import ChatType
from telegram.error import TelegramError

from app.bot.formatting import format_growth_message, format_top_message, format_wait, mention_user, parse_page
from app.bot.messages import (
    MSG_DOD_ALREADY,
    MSG_DOD_NO_CANDIDATES,
    MSG_DOD_WINNER,
    MSG_GREETING,
    MSG_GROUPS_ONLY,
    MSG_GROW_COOLDOWN,
    MSG_HELP,
    MSG_LOAN_NOT_NEEDED,
    MSG_LOAN_OUTSTANDING,
    MSG_LOAN_TAKEN,
    MSG_PVP_NO_DICK,
    MSG_PVP_RESULT,
    MSG_PVP_TOO_SHORT,
    MSG_PVP_USAGE,
    MSG_START,
    MSG_STORAGE_UNAVAILABLE,
    get_message,
)
from app.core.config import AppConfig, get_app_version
from app.core.errors import DodAlreadyElected, GrowthCooldown, InsufficientLength, StorageUnavailable
from app.core.ledger import Dicks, Users
from app.core.metrics import Metrics
from app.core.models import ChatId
from app.core.scoring import random_bonus, random_increment

logger = logging.getLogger(__name__)

def _display_name(u: TgUser) -> str:
    name = (u.full_name or "").strip()
    return name if name else (u.username or u.first_name or "User")


async def _reply(update: Update, cfg: AppConfig, msg_type: str, **kwargs) -> None:
    await update.effective_message.reply_text(
        text=get_message(msg_type, cfg.locale, **kwargs),
        parse_mode=cfg.parse_mode,
    )


async def _in_group(update: Update, cfg: AppConfig) -> bool:
    chat = update.effective_chat
    if not chat or not update.effective_user:
        return False
    if chat.type not in (ChatType.GROUP, ChatType.SUPERGROUP):
        await _reply(update, cfg, MSG_GROUPS_ONLY)
        return False
    return True


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE, *, metrics: Metrics, cfg: AppConfig) -> None:
    metrics.cmd_start.inc()
    await _reply(update, cfg, MSG_START)


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE, *, metrics: Metrics, cfg: AppConfig) -> None:
    metrics.cmd_help.inc()
    await _reply(update, cfg, MSG_HELP)


async def cmd_grow(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    *,
    users: Users,
    dicks: Dicks,
    cfg: AppConfig,
    rng: random.Random,
) -> None:
    if not await _in_group(update, cfg):
        return
    tg_user = update.effective_user
    chat_ref = ChatId(update.effective_chat.id)
    name = _display_name(tg_user)

    try:
        user = await users.create_or_update(tg_user.id, name)
        delta = random_increment(rng, cfg.growth_min, cfg.growth_max)
        result = await dicks.create_or_grow(user.internal_id, chat_ref, delta, cooldown_sec=cfg.grow_cooldown_sec)
    except GrowthCooldown as ex:
        await _reply(update, cfg, MSG_GROW_COOLDOWN, name=escape(name), wait=format_wait(ex.wait_sec))
        return
    except StorageUnavailable:
        logger.warning("grow failed: chat=%s user=%s", chat_ref.value, tg_user.id)
        await _reply(update, cfg, MSG_STORAGE_UNAVAILABLE)
        return

    await update.effective_message.reply_text(
        text=format_growth_message(name, delta, result, cfg.locale),
        parse_mode=cfg.parse_mode,
    )


async def cmd_top(update: Update, context: ContextTypes.DEFAULT_TYPE, *, dicks: Dicks, cfg: AppConfig) -> None:
    if not await _in_group(update, cfg):
        return
    page = parse_page(context.args)
    offset = (page - 1) * cfg.top_limit

    try:
        rows = await dicks.get_top(ChatId(update.effective_chat.id), offset, cfg.top_limit)
    except StorageUnavailable:
        await _reply(update, cfg, MSG_STORAGE_UNAVAILABLE)
        return

    text = format_top_message(rows, offset=offset, page=page, locale=cfg.locale)
    await update.effective_message.reply_text(text=text, parse_mode=cfg.parse_mode)


async def cmd_dick_of_day(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    *,
    dicks: Dicks,
    cfg: AppConfig,
    rng: random.Random,
) -> None:
    if not await _in_group(update, cfg):
        return
    chat_ref = ChatId(update.effective_chat.id)
    bonus = random_bonus(rng, cfg.dod_bonus_min, cfg.dod_bonus_max)

    try:
        election = await dicks.elect_dod(chat_ref, datetime.now(timezone.utc).date(), bonus)
    except DodAlreadyElected:
        await _reply(update, cfg, MSG_DOD_ALREADY)
        return
    except StorageUnavailable:
        await _reply(update, cfg, MSG_STORAGE_UNAVAILABLE)
        return

    if election is None:
        await _reply(update, cfg, MSG_DOD_NO_CANDIDATES)
        return
    logger.info("Dick of the day elected: chat=%s user=%s bonus=%s", chat_ref.value, election.winner_uid, bonus)
    await _reply(
        update,
        cfg,
        MSG_DOD_WINNER,
        name=escape(election.winner_name),
        bonus=bonus,
        length=election.result.new_length,
    )


async def cmd_pvp(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    *,
    users: Users,
    dicks: Dicks,
    cfg: AppConfig,
) -> None:
    if not await _in_group(update, cfg):
        return
    msg = update.effective_message
    attacker_tg = update.effective_user
    defender_tg = msg.reply_to_message.from_user if msg.reply_to_message else None

    stake = 0
    if context.args:
        try:
            stake = int(context.args[0])
        except ValueError:
            stake = 0
    if (
        defender_tg is None
        or defender_tg.is_bot
        or defender_tg.id == attacker_tg.id
        or not 0 < stake <= cfg.pvp_max_stake
    ):
        await _reply(update, cfg, MSG_PVP_USAGE, max_stake=cfg.pvp_max_stake)
        return

    chat_ref = ChatId(update.effective_chat.id)
    try:
        attacker = await users.create_or_update(attacker_tg.id, _display_name(attacker_tg))
        defender = await users.create_or_update(defender_tg.id, _display_name(defender_tg))
        outcome = await dicks.pvp_transfer(chat_ref, attacker.internal_id, defender.internal_id, stake)
    except InsufficientLength:
        await _reply(update, cfg, MSG_PVP_TOO_SHORT, stake=stake)
        return
    except StorageUnavailable:
        await _reply(update, cfg, MSG_STORAGE_UNAVAILABLE)
        return

    if outcome is None:
        await _reply(update, cfg, MSG_PVP_NO_DICK)
        return

    by_id = {attacker.internal_id: attacker, defender.internal_id: defender}
    winner, loser = by_id[outcome.winner_id], by_id[outcome.loser_id]
    lengths = {outcome.attacker_id: outcome.attacker_length, outcome.defender_id: outcome.defender_length}
    await _reply(
        update,
        cfg,
        MSG_PVP_RESULT,
        winner=mention_user(winner.external_id, winner.display_name),
        loser=mention_user(loser.external_id, loser.display_name),
        stake=stake,
        winner_length=lengths[winner.internal_id],
        loser_length=lengths[loser.internal_id],
    )


async def cmd_loan(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    *,
    users: Users,
    dicks: Dicks,
    cfg: AppConfig,
) -> None:
    if not await _in_group(update, cfg):
        return
    tg_user = update.effective_user
    chat_ref = ChatId(update.effective_chat.id)
    name = _display_name(tg_user)

    try:
        user = await users.create_or_update(tg_user.id, name)
        debt = await dicks.get_debt(user.internal_id, chat_ref)
        if debt > 0:
            await _reply(update, cfg, MSG_LOAN_OUTSTANDING, name=escape(name), debt=debt)
            return
        loan = await dicks.take_loan(chat_ref, user.internal_id)
    except StorageUnavailable:
        await _reply(update, cfg, MSG_STORAGE_UNAVAILABLE)
        return

    if loan is None:
        await _reply(update, cfg, MSG_LOAN_NOT_NEEDED, name=escape(name))
        return
    await _reply(
        update,
        cfg,
        MSG_LOAN_TAKEN,
        name=escape(name),
        debt=loan.debt,
        percent=round(cfg.loan_payout_coef * 100),
    )


async def send_greeting(app, cfg: AppConfig) -> None:
    """Send a greeting message to admin chat on application startup."""
    if not cfg.admin_chat_id:
        logger.info("Application started. (No ADMIN_CHAT_ID configured.)")
        return

    try:
        text = get_message(MSG_GREETING, cfg.locale, version=get_app_version())
        await app.bot.send_message(chat_id=cfg.admin_chat_id, text=text, parse_mode=cfg.parse_mode)
        logger.info("Application started. Greeting sent to admin chat %s.", cfg.admin_chat_id)
    except TelegramError as e:
        logger.warning("Failed to send greeting to admin chat %s: %s", cfg.admin_chat_id, e)
