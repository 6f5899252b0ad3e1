"""Prompt and request-shaping helpers for the chat dispatcher."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

CHAT_COMPLETIONS_SUFFIX = "/v1/chat/completions"

# "Current time: ..." (or its Chinese form) up to the end of its line.
_TIME_MARKER = re.compile(r"(?P<label>current time|当前时间)\s*(?P<sep>[:：]).*", re.IGNORECASE)


def normalize_endpoint(endpoint: str) -> str:
    """Append the chat-completions path unless the endpoint already has one."""
    endpoint = endpoint.strip()
    if endpoint.endswith(CHAT_COMPLETIONS_SUFFIX) or endpoint.endswith("/chat/completions"):
        return endpoint
    return endpoint.rstrip("/") + CHAT_COMPLETIONS_SUFFIX


def day_period(hour: int) -> str:
    """Coarse label for the local hour, used to greet naturally."""
    if hour < 6:
        return "early morning"
    if hour < 9:
        return "morning"
    if hour < 12:
        return "late morning"
    if hour < 14:
        return "noon"
    if hour < 18:
        return "afternoon"
    if hour < 22:
        return "evening"
    return "late night"


def format_moment(now: datetime) -> str:
    """Human-readable local moment, e.g. ``Monday, October 19, 2026 14:05``."""
    return f"{now:%A}, {now:%B} {now.day}, {now.year} {now:%H:%M}"


def inject_current_time(
    prompt: str,
    tz: str = "Asia/Shanghai",
    now: Optional[datetime] = None,
) -> str:
    """Replace the "current time" marker of a system prompt with the live moment.

    The marker may sit anywhere on a line; the rest of that line is replaced.
    Prompts without a marker are returned unchanged.
    """
    moment = now.astimezone(ZoneInfo(tz)) if now else datetime.now(ZoneInfo(tz))
    stamp = f"{format_moment(moment)} ({day_period(moment.hour)})"

    def _replace(match: re.Match) -> str:
        return f"{match.group('label')}{match.group('sep')} {stamp}"

    return _TIME_MARKER.sub(_replace, prompt, count=1)


def to_multimodal(message: dict, image_url: str) -> dict:
    """Rewrite a ``{role, content}`` turn into text + low-detail image parts."""
    return {
        "role": message["role"],
        "content": [
            {"type": "text", "text": message["content"]},
            {"type": "image_url", "image_url": {"url": image_url, "detail": "low"}},
        ],
    }
