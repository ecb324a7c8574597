from __future__ import annotations

from typing import Sequence

from sitewatch.domain import BecameAvailable, EmptyMessageBody, NotificationEvent

HEADER_TITLE = " BEGIN "
FOOTER_TITLE = " END "

# Twilio rejects SMS bodies longer than this.
DEFAULT_COMPACT_LIMIT = 1600


def display_lines(event: NotificationEvent) -> list[str]:
    if isinstance(event, BecameAvailable):
        return list(event.lines)
    return [event.summary_line]


def text(event: NotificationEvent) -> str:
    return "\n".join(display_lines(event))


def compact(event: NotificationEvent, *, limit: int = DEFAULT_COMPACT_LIMIT) -> str:
    """Single-line rendering for channels with a length limit."""
    line = " | ".join(s for s in display_lines(event) if s.strip())
    if len(line) <= limit:
        return line
    return line[: max(limit - 1, 0)] + "…"


def _border(title: str, width: int) -> str:
    delta = max(width - len(title), 0)
    left = "-" * (delta // 2)
    right = "-" * (delta - len(left))
    return f"{left}{title}{right}"


def header_footer(lines: Sequence[str]) -> tuple[str, str]:
    if not lines:
        raise EmptyMessageBody()
    width = max(len(s) for s in lines)
    return _border(HEADER_TITLE, width), _border(FOOTER_TITLE, width)


def boxed(lines: Sequence[str]) -> list[str]:
    header, footer = header_footer(lines)
    return [header, *lines, footer]
