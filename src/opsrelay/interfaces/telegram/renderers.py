"""
Telegram Renderers
==================

Text rendering for everything the relay puts in the chat:

- Markdown → Telegram HTML conversion for operator-facing notifications
- MarkdownV2 escaping
- Choice request bodies (header, question, numbered options)
- Acknowledgement texts written over a choice request once it is settled

Telegram's HTML mode only understands a handful of tags (b, i, u, s, code,
pre, a, blockquote, tg-spoiler), so conversion targets exactly those.
"""

import re
from collections.abc import Sequence
from typing import Any

from opsrelay.core.types import ApprovalOption, ApprovalOutcome

_MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+=|{}.!\-])")

_CODE_BLOCK = re.compile(r"```(\w+)?[\r\n]*([\s\S]*?)```")
_INLINE_CODE = re.compile(r"`([^`\n]+?)`")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_SPOILER = re.compile(r"\|\|([^|]+?)\|\|")
_BOLD = re.compile(r"\*\*(.+?)\*\*")
_UNDERLINE = re.compile(r"__(.+?)__")
_STRIKE = re.compile(r"~~(.+?)~~")
_ITALIC_STAR = re.compile(r"(?<![*\w])\*([^*\n]+?)\*(?![*\w])")
_ITALIC_UNDERSCORE = re.compile(r"(?<![_\w])_([^_\n]+?)_(?![_\w])")
_BLOCKQUOTE = re.compile(r"(?:^&gt;\s*(.+)$\n?)+", re.MULTILINE)
_QUOTE_PREFIX = re.compile(r"^&gt;\s*")


def escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def escape_markdown(text: Any) -> str:
    """Escape every MarkdownV2 special character. Non-strings render as ''."""
    if not isinstance(text, str):
        return ""
    return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", text)


def markdown_to_html(text: Any, preserve_formatting: bool = False) -> str:
    """
    Convert Markdown to Telegram HTML.

    Without ``preserve_formatting`` the text is only HTML-escaped. With it,
    code blocks, inline code, links and spoilers are swapped for placeholders
    first so that emphasis markers inside them are left alone, then emphasis
    and blockquotes are converted and the placeholders restored.
    """
    if not isinstance(text, str):
        return ""

    result = escape_html(text)
    if not preserve_formatting:
        return result

    placeholders: list[str] = []

    def protect(html: str) -> str:
        placeholders.append(html)
        return f"XXXPH{len(placeholders) - 1}XXX"

    def code_block(match: re.Match) -> str:
        code = match.group(2).strip("\r\n")
        return protect(f"<pre>{code}</pre>")

    result = _CODE_BLOCK.sub(code_block, result)
    result = _INLINE_CODE.sub(lambda m: protect(f"<code>{m.group(1)}</code>"), result)
    result = _LINK.sub(lambda m: protect(f'<a href="{m.group(2)}">{m.group(1)}</a>'), result)
    result = _SPOILER.sub(lambda m: protect(f"<tg-spoiler>{m.group(1)}</tg-spoiler>"), result)

    # Order matters: double markers before single ones
    result = _BOLD.sub(r"<b>\1</b>", result)
    result = _UNDERLINE.sub(r"<u>\1</u>", result)
    result = _STRIKE.sub(r"<s>\1</s>", result)
    result = _ITALIC_STAR.sub(r"<i>\1</i>", result)
    result = _ITALIC_UNDERSCORE.sub(r"<i>\1</i>", result)

    def blockquote(match: re.Match) -> str:
        lines = [
            _QUOTE_PREFIX.sub("", line)
            for line in match.group(0).split("\n")
            if line.strip()
        ]
        return "<blockquote>" + "\n".join(lines) + "</blockquote>"

    result = _BLOCKQUOTE.sub(blockquote, result)

    # Reverse order so nested placeholders resolve
    for index in range(len(placeholders) - 1, -1, -1):
        result = result.replace(f"XXXPH{index}XXX", placeholders[index])

    return result


def format_choice_request(
    header: str | None, question: str, options: Sequence[ApprovalOption]
) -> str:
    """Body of a choice request: header, question, then one line per option."""
    lines = [
        f"🤔 {markdown_to_html(header or 'Approval Request', preserve_formatting=True)}",
        "",
        markdown_to_html(question, preserve_formatting=True),
        "",
    ]
    for index, option in enumerate(options, start=1):
        line = f"{index}. <b>{escape_html(option.label)}</b>"
        if option.description:
            line += f": {markdown_to_html(option.description, preserve_formatting=True)}"
        lines.append(line)
    return "\n".join(lines)


_OUTCOME_BANNERS = {
    ApprovalOutcome.TIMED_OUT: "⏱️ <b>Timed out</b>, no answer received",
    ApprovalOutcome.CANCELLED: "🛑 <b>Cancelled</b>, the requesting process is shutting down",
    ApprovalOutcome.EVICTED: "♻️ <b>Withdrawn</b>, superseded by newer requests",
}


def format_resolution(question: str, outcome: ApprovalOutcome, option: ApprovalOption | None = None) -> str:
    """Text written over a settled choice request (removes its buttons)."""
    body = markdown_to_html(question, preserve_formatting=True)
    if outcome is ApprovalOutcome.CHOSEN and option is not None:
        return f"{body}\n\n✅ Selected: <b>{escape_html(option.label)}</b>"
    banner = _OUTCOME_BANNERS.get(outcome, f"<b>{outcome.value}</b>")
    return f"{body}\n\n{banner}"
