from __future__ import annotations

from typing import Optional, Sequence
from html import escape

from app.bot.messages import (
    MSG_GROW,
    MSG_GROW_POSITION,
    MSG_GROW_REPAID,
    MSG_TOP_EMPTY,
    MSG_TOP_HEADER,
    MSG_TOP_ROW,
    SupportedLocale,
    get_message,
)
from app.core.models import Dick, GrowthResult


def mention_user(user_id: int, display_name: str) -> str:
    # tg://user?id=... works in HTML parse_mode
    return f'<a href="tg://user?id={user_id}">{escape(display_name)}</a>'


def format_top_message(rows: Sequence[Dick], *, offset: int, page: int, locale: SupportedLocale = "en") -> str:
    if not rows:
        return get_message(MSG_TOP_EMPTY, locale)

    lines = [get_message(MSG_TOP_HEADER, locale, page=page)]
    for rank, d in enumerate(rows, start=offset + 1):
        lines.append(get_message(MSG_TOP_ROW, locale, rank=rank, name=escape(d.owner_name), length=d.length))
    return "\n".join(lines)


def format_growth_message(
    name: str, delta: int, result: GrowthResult, locale: SupportedLocale = "en"
) -> str:
    text = get_message(MSG_GROW, locale, name=escape(name), delta=delta, length=result.new_length)
    if result.pos_in_top is not None:
        text += "\n" + get_message(MSG_GROW_POSITION, locale, pos=result.pos_in_top)
    if result.repaid:
        text += "\n" + get_message(MSG_GROW_REPAID, locale, repaid=result.repaid, debt=result.debt_left)
    return text


def format_wait(seconds: int) -> str:
    hours, rest = divmod(max(0, seconds), 3600)
    minutes = rest // 60
    if hours:
        return f"{hours}h {minutes:02d}m"
    return f"{max(1, minutes)}m"


# Keeps the offset within a 64-bit SQL integer for any sane page size.
MAX_PAGE = 1_000_000


def parse_page(args: Optional[Sequence[str]]) -> int:
    """1-based page number from command args; anything unparsable means page 1."""
    if not args:
        return 1
    try:
        page = int(args[0])
    except ValueError:
        return 1
    if page < 1:
        return 1
    return min(page, MAX_PAGE)
