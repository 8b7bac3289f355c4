"""Lazy page sequences over token-paginated remote listings.

Continuation tokens are stateful and ordered, so a listing is always consumed
sequentially: the next page is only requested once the caller has finished
with the current one.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterator

from qsrls.core.models import Page

logger = logging.getLogger(__name__)

FetchPage = Callable[[str | None], Page]


def iter_pages(fetch_page: FetchPage, *, label: str = "listing") -> Iterator[Page]:
    """
    Yield pages produced by `fetch_page(token)` until no token is returned.

    The token from each page is re-submitted verbatim. Iteration is lazy and
    restartable: calling `iter_pages` again starts from the first page.

    Args:
        fetch_page: Primitive returning one page for a token (None = first page).
        label: Name used in log messages.
    """
    token: str | None = None
    call = 1
    while True:
        logger.info("Fetching %s, page %d", label, call)
        page = fetch_page(token)
        yield page
        if not page.next_token:
            return
        if page.next_token == token:
            raise RuntimeError(f"{label}: remote returned the same continuation token twice")
        token = page.next_token
        call += 1
