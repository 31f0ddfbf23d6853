from __future__ import annotations

from typing import Callable, Generator, List, Optional, Sequence, Tuple, TypeVar

from .errors import PaginationStalledError

T = TypeVar("T")


def paginate(
    fetch: Callable[[str | None], Tuple[Sequence[T], str | None]],
    *,
    page_key: Optional[Callable[[Sequence[T]], object]] = None,
    context: Optional[str] = None,
) -> Generator[T, None, None]:
    """
    Generic paginator yielding items from a fetch(page_token) function.
    The fetch function must return (items, next_page_token). If next_page_token
    is falsy, pagination stops.

    Raises PaginationStalledError when the server hands back the token that was
    just used, or when two consecutive non-empty pages have the same page_key
    (defaults to the items themselves).
    """
    key = page_key or (lambda items: list(items))
    page: str | None = None
    previous_key: object = None
    page_number = 0
    while True:
        page_number += 1
        items, next_page = fetch(page)
        if items:
            current_key = key(items)
            if previous_key is not None and current_key == previous_key:
                raise PaginationStalledError(
                    "Page repeated previous page content", page=page_number, cursor=page, context=context
                )
            previous_key = current_key
        for it in items:
            yield it
        if not next_page:
            break
        if next_page == page:
            raise PaginationStalledError(
                "Server returned the same cursor twice", page=page_number, cursor=next_page, context=context
            )
        page = next_page


def paginate_watermark(
    fetch: Callable[[str | None], Sequence[T]],
    *,
    key: Callable[[T], str],
    page_size: int,
    context: Optional[str] = None,
) -> Generator[List[T], None, None]:
    """
    Yield pages from fetch(watermark) where watermark is the greatest key seen
    on the previous page. A page shorter than page_size is the last one.

    The backend must return rows sorted ascending by the same key, otherwise
    rows between pages can be skipped or repeated.
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    watermark: str | None = None
    page_number = 0
    while True:
        page_number += 1
        rows = list(fetch(watermark))
        yield rows
        if len(rows) < page_size:
            break
        keys = [k for k in (key(r) for r in rows) if k]
        if not keys:
            raise PaginationStalledError(
                "Full page without any sort key", page=page_number, cursor=watermark, context=context
            )
        next_watermark = max(keys)
        if watermark is not None and next_watermark <= watermark:
            raise PaginationStalledError(
                "Watermark did not advance", page=page_number, cursor=next_watermark, context=context
            )
        watermark = next_watermark
