"""
Message localization for bot replies.

Supports English ('en') and Russian ('ru').
All messages are templates with placeholders substituted at runtime.
"""

from __future__ import annotations

import logging
from typing import Literal, Final, Any

logger = logging.getLogger(__name__)

MSG_START: Final[str] = "start"
MSG_HELP: Final[str] = "help"
MSG_GROW: Final[str] = "grow"
MSG_GROW_POSITION: Final[str] = "grow_position"
MSG_GROW_COOLDOWN: Final[str] = "grow_cooldown"
MSG_TOP_EMPTY: Final[str] = "top_empty"
MSG_TOP_HEADER: Final[str] = "top_header"
MSG_TOP_ROW: Final[str] = "top_row"
MSG_DOD_WINNER: Final[str] = "dod_winner"
MSG_DOD_ALREADY: Final[str] = "dod_already"
MSG_DOD_NO_CANDIDATES: Final[str] = "dod_no_candidates"
MSG_PVP_USAGE: Final[str] = "pvp_usage"
MSG_PVP_RESULT: Final[str] = "pvp_result"
MSG_PVP_NO_DICK: Final[str] = "pvp_no_dick"
MSG_PVP_TOO_SHORT: Final[str] = "pvp_too_short"
MSG_GROUPS_ONLY: Final[str] = "groups_only"
MSG_STORAGE_UNAVAILABLE: Final[str] = "storage_unavailable"
MSG_GROW_REPAID: Final[str] = "grow_repaid"
MSG_LOAN_TAKEN: Final[str] = "loan_taken"
MSG_LOAN_NOT_NEEDED: Final[str] = "loan_not_needed"
MSG_LOAN_OUTSTANDING: Final[str] = "loan_outstanding"
MSG_GREETING: Final[str] = "greeting"

SupportedLocale = Literal["en", "ru"]

_TRANSLATIONS: dict[SupportedLocale, dict[str, str]] = {
    "en": {
        MSG_START: "Hi! Add me to a group and use /grow once a day. /help lists all commands.",
        MSG_HELP: "<b>Commands</b>\n/grow — grow your dick\n/top [page] — the chat's leaderboard\n/dick_of_day — elect the dick of the day\n/pvp &lt;stake&gt; — reply to someone to duel them\n/loan — reset a negative dick to zero and pay it back from future growth",
        MSG_GROW: "{name}, your dick changed by <b>{delta:+d}</b> cm and is now <b>{length}</b> cm long.",
        MSG_GROW_POSITION: "You're at position <b>{pos}</b> in the top.",
        MSG_GROW_COOLDOWN: "{name}, you've already played. Try again in {wait}.",
        MSG_TOP_EMPTY: "Nobody is playing in this chat yet. Use /grow to start!",
        MSG_TOP_HEADER: "<b>Top</b> (page {page})",
        MSG_TOP_ROW: "{rank}. {name} — <b>{length}</b> cm",
        MSG_DOD_WINNER: "The dick of the day is {name}! Bonus: <b>+{bonus}</b> cm, now <b>{length}</b> cm.",
        MSG_DOD_ALREADY: "The dick of the day has already been elected today.",
        MSG_DOD_NO_CANDIDATES: "There is nobody to elect yet. Use /grow first!",
        MSG_PVP_USAGE: "Reply to someone's message with /pvp &lt;stake&gt;, stake from 1 to {max_stake}.",
        MSG_PVP_RESULT: "{winner} wins <b>{stake}</b> cm from {loser}!\n{winner}: <b>{winner_length}</b> cm\n{loser}: <b>{loser_length}</b> cm",
        MSG_PVP_NO_DICK: "Both players must /grow in this chat first.",
        MSG_PVP_TOO_SHORT: "Someone's dick is too short for a stake of {stake} cm.",
        MSG_GROUPS_ONLY: "This command works in group chats only.",
        MSG_STORAGE_UNAVAILABLE: "The bot is overloaded, try again in a minute.",
        MSG_GREETING: "<b>Dick Grower Bot</b> v{version}\nApplication started successfully!",
        MSG_GROW_REPAID: "<b>{repaid}</b> cm went to pay back your loan, <b>{debt}</b> cm left.",
        MSG_LOAN_TAKEN: "{name}, your dick is back to 0 cm. You owe <b>{debt}</b> cm, {percent}% of every growth goes to the debt.",
        MSG_LOAN_NOT_NEEDED: "{name}, you can only take a loan when your dick is shorter than 0 cm.",
        MSG_LOAN_OUTSTANDING: "{name}, pay back your current loan first: <b>{debt}</b> cm left.",
    },
    "ru": {
        MSG_START: "Привет! Добавь меня в группу и используй /grow раз в день. /help покажет все команды.",
        MSG_HELP: "<b>Команды</b>\n/grow — вырастить пипису\n/top [страница] — рейтинг чата\n/dick_of_day — выбрать пипису дня\n/pvp &lt;ставка&gt; — ответь на сообщение, чтобы вызвать на дуэль\n/loan — обнулить отрицательную пипису и отдавать долг с будущего роста",
        MSG_GROW: "{name}, твоя пиписа изменилась на <b>{delta:+d}</b> см и теперь <b>{length}</b> см.",
        MSG_GROW_POSITION: "Твоё место в топе: <b>{pos}</b>.",
        MSG_GROW_COOLDOWN: "{name}, ты уже играл. Попробуй через {wait}.",
        MSG_TOP_EMPTY: "В этом чате ещё никто не играет. Начни с /grow!",
        MSG_TOP_HEADER: "<b>Топ</b> (страница {page})",
        MSG_TOP_ROW: "{rank}. {name} — <b>{length}</b> см",
        MSG_DOD_WINNER: "Пиписа дня — {name}! Бонус: <b>+{bonus}</b> см, теперь <b>{length}</b> см.",
        MSG_DOD_ALREADY: "Пиписа дня сегодня уже выбрана.",
        MSG_DOD_NO_CANDIDATES: "Пока некого выбирать. Сначала /grow!",
        MSG_PVP_USAGE: "Ответь на сообщение командой /pvp &lt;ставка&gt;, ставка от 1 до {max_stake}.",
        MSG_PVP_RESULT: "{winner} выигрывает <b>{stake}</b> см у {loser}!\n{winner}: <b>{winner_length}</b> см\n{loser}: <b>{loser_length}</b> см",
        MSG_PVP_NO_DICK: "Оба игрока должны сначала сделать /grow в этом чате.",
        MSG_PVP_TOO_SHORT: "У кого-то пиписа короче ставки в {stake} см.",
        MSG_GROUPS_ONLY: "Эта команда работает только в группах.",
        MSG_STORAGE_UNAVAILABLE: "Бот перегружен, попробуй через минуту.",
        MSG_GREETING: "<b>Dick Grower Bot</b> v{version}\nПриложение успешно запущено!",
        MSG_GROW_REPAID: "<b>{repaid}</b> см ушло на погашение долга, осталось <b>{debt}</b> см.",
        MSG_LOAN_TAKEN: "{name}, твоя пиписа снова 0 см. Долг: <b>{debt}</b> см, {percent}% каждого роста уходит на погашение.",
        MSG_LOAN_NOT_NEEDED: "{name}, кредит дают только если пиписа короче 0 см.",
        MSG_LOAN_OUTSTANDING: "{name}, сначала погаси текущий долг: осталось <b>{debt}</b> см.",
    },
}


def get_message(msg_type: str, locale: SupportedLocale = "en", **kwargs: Any) -> str:
    """
    Get a localized message by type and locale.

    Args:
        msg_type: Message type constant (e.g., MSG_GROW)
        locale: Language code ('en' or 'ru'). Unknown locales fall back to 'en'
        **kwargs: Placeholder values to substitute in the message template

    Raises:
        KeyError: If msg_type is not found in translations
        ValueError: If a placeholder required by the template is missing

    Example:
        >>> get_message(MSG_TOP_ROW, "en", rank=1, name="John", length=15)
        '1. John — <b>15</b> cm'
    """
    if locale not in _TRANSLATIONS:
        logger.warning("Unsupported locale: %s, falling back to 'en'", locale)
        locale = "en"

    translations = _TRANSLATIONS[locale]
    if msg_type not in translations:
        raise KeyError(f"Message type '{msg_type}' not found in translations for locale '{locale}'")

    try:
        return translations[msg_type].format(**kwargs)
    except KeyError as e:
        missing_key = str(e).strip("'")
        raise ValueError(f"Missing required placeholder '{missing_key}' for message type '{msg_type}'") from e
