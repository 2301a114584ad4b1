"""Page window arithmetic shared by every session source.

Forward pages count from the oldest message. Reverse pages count from the
newest: page 0 is the last (possibly partial) page, page 1 the one before
it, and so on. Reverse addressing lets a caller ask for "the most recent
messages" without knowing how many there are.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TypeVar

from ai_sessions.models import Message, SessionPage

T = TypeVar("T")

# Resolved page reported when a reverse page lies before the first message
OUT_OF_RANGE = -1


@dataclass(frozen=True)
class PageWindow:
    """Concrete slice of an ordered sequence."""

    offset: int
    resolved_page: int

    @property
    def out_of_range(self) -> bool:
        return self.resolved_page == OUT_OF_RANGE


def resolve_page(total: int, page: int, page_size: int, reverse: bool = False) -> PageWindow:
    """Convert a requested page into an offset window.

    Args:
        total: Total number of items (>= 0)
        page: Requested page index (>= 0)
        page_size: Items per page (>= 1)
        reverse: Count pages from the end instead of the start

    Returns:
        PageWindow with the item offset and the forward page index. A reverse
        page beyond the first message resolves to OUT_OF_RANGE.

    Raises:
        ValueError: If any argument is out of its domain
    """
    if total < 0:
        raise ValueError(f"total must be >= 0, got {total}")
    if page < 0:
        raise ValueError(f"page must be >= 0, got {page}")
    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")

    if not reverse:
        return PageWindow(offset=page * page_size, resolved_page=page)

    if total == 0:
        return PageWindow(offset=0, resolved_page=0)

    last_page = (total - 1) // page_size
    resolved = last_page - page
    if resolved < 0:
        return PageWindow(offset=total, resolved_page=OUT_OF_RANGE)

    return PageWindow(offset=resolved * page_size, resolved_page=resolved)


def has_more(window: PageWindow, returned: int, total: int) -> bool:
    """Whether items remain after the returned window."""
    if window.out_of_range:
        return False
    return window.offset + returned < total


def slice_window(items: Sequence[T], window: PageWindow, page_size: int) -> list[T]:
    """Return the items covered by a window, never more than page_size."""
    if window.out_of_range or window.offset >= len(items):
        return []
    return list(items[window.offset : window.offset + page_size])


def paginate(messages: Sequence[Message], page: int, page_size: int, from_end: bool = False) -> SessionPage:
    """Apply a page window to a fully loaded, ordered message list."""
    total = len(messages)
    window = resolve_page(total, page, page_size, reverse=from_end)
    selected = slice_window(messages, window, page_size)
    return SessionPage(
        messages=selected,
        total=total,
        resolved_page=window.resolved_page,
        has_more=has_more(window, len(selected), total),
        page_size=page_size,
    )
