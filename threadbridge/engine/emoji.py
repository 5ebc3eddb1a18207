"""Reaction vocabulary used to drive interactive prompts.

Platforms report reactions by short name; some also send the unicode
glyph for keycap digits, so both are accepted for numbered answers.
"""
from __future__ import annotations

APPROVAL_EMOJIS = ("+1", "thumbsup")
DENIAL_EMOJIS = ("-1", "thumbsdown")
ALLOW_ALL_EMOJIS = ("white_check_mark", "heavy_check_mark")
NUMBER_EMOJIS = ("one", "two", "three", "four")
CANCEL_EMOJIS = ("x", "octagonal_sign", "stop_sign")
ESCAPE_EMOJIS = ("double_vertical_bar", "pause_button")
RESUME_EMOJIS = ("arrows_counterclockwise", "arrow_forward", "repeat")
TASK_TOGGLE_EMOJIS = ("arrow_down_small", "small_red_triangle_down")

UNICODE_NUMBER_EMOJIS = {"1️⃣": 0, "2️⃣": 1, "3️⃣": 2, "4️⃣": 3}
NUMBER_GLYPHS = tuple(UNICODE_NUMBER_EMOJIS)


def is_approval(emoji_name: str) -> bool:
    return emoji_name in APPROVAL_EMOJIS


def is_denial(emoji_name: str) -> bool:
    return emoji_name in DENIAL_EMOJIS


def is_allow_all(emoji_name: str) -> bool:
    return emoji_name in ALLOW_ALL_EMOJIS


def is_cancel(emoji_name: str) -> bool:
    return emoji_name in CANCEL_EMOJIS


def is_escape(emoji_name: str) -> bool:
    return emoji_name in ESCAPE_EMOJIS


def is_resume(emoji_name: str) -> bool:
    return emoji_name in RESUME_EMOJIS


def is_task_toggle(emoji_name: str) -> bool:
    return emoji_name in TASK_TOGGLE_EMOJIS


def number_index(emoji_name: str) -> int:
    """0-based option index for a number reaction, or -1."""
    if emoji_name in NUMBER_EMOJIS:
        return NUMBER_EMOJIS.index(emoji_name)
    return UNICODE_NUMBER_EMOJIS.get(emoji_name, -1)
