"""
Transcript extraction from raw Intercom conversation payloads.

Produces a flat, role-tagged plain-text dialogue:

    USER: I can't log in
    AGENT: Could you try resetting your password?

Only comment parts written by users or admins are kept; notes, assignments,
bots and system events are dropped.
"""

import html
import re
from typing import Optional

ROLE_BY_AUTHOR_TYPE = {
    "user": "USER",
    "admin": "AGENT",
}

IMAGE_PLACEHOLDER = "[IMAGE]"

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[\s\S]*?</\1\s*>", re.IGNORECASE)
_LINE_BREAK_RE = re.compile(r"<br\s*/?>|</p\s*>|</div\s*>|</li\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_IMG_RE = re.compile(r"<img\b", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")


def html_to_text(body: Optional[str]) -> str:
    """Strip markup from a message body and collapse it to a single line."""
    if not body:
        return ""
    raw = str(body)
    has_image = bool(_IMG_RE.search(raw))

    text = _SCRIPT_STYLE_RE.sub("", raw)
    text = _LINE_BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")

    lines = [_WHITESPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    text = " ".join(line for line in lines if line)

    if not text and has_image:
        return IMAGE_PLACEHOLDER
    return text


def _conversation_parts(conversation: dict) -> list:
    parts = conversation.get("conversation_parts") or {}
    if isinstance(parts, dict):
        parts = parts.get("conversation_parts") or []
    return parts if isinstance(parts, list) else []


def extract_messages(conversation: Optional[dict]) -> list[tuple[str, str]]:
    """Return (role, text) pairs in payload order."""
    if not conversation:
        return []

    messages = []

    source = conversation.get("source") or {}
    opening = html_to_text(source.get("body"))
    if opening:
        messages.append(("USER", opening))

    for part in _conversation_parts(conversation):
        if part.get("part_type") != "comment":
            continue
        author = part.get("author") or {}
        role = ROLE_BY_AUTHOR_TYPE.get(author.get("type"))
        if role is None:
            continue
        text = html_to_text(part.get("body"))
        if text:
            messages.append((role, text))

    return messages


def extract_transcript(conversation: Optional[dict]) -> str:
    """Flatten a conversation into `ROLE: text` lines. Empty input gives ""."""
    return "\n".join(f"{role}: {text}" for role, text in extract_messages(conversation))
