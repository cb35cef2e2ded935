"""
HTTP client for the Limitless lifelog API.

Fetches pages of lifelogs newest-first, including markdown and the
hierarchical content tree. Pagination is cursor driven: the caller feeds
each returned cursor back in until the API stops returning one.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterator, Optional

import httpx

from .config import DEFAULT_API_URL
from .errors import (
    AuthConfigurationError,
    MalformedResponseError,
    RateLimitError,
    TerminalClientError,
    TransientNetworkError,
)
from .types import FetchPage

logger = logging.getLogger(__name__)

# Retry config: total attempts including the first
MAX_ATTEMPTS = 3
RETRY_BACKOFF_BASE = 1.0  # seconds

DEFAULT_TIMEOUT = 30.0
DEFAULT_PAGE_LIMIT = 100


class LimitlessClient:
    """HTTP client for GET /lifelogs."""

    def __init__(
        self,
        api_key: str | None,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        timezone: str | None = None,
    ):
        if not api_key:
            raise AuthConfigurationError("Missing LIMITLESS_API_KEY")

        self._api_url = api_url if api_url.endswith("/") else api_url + "/"
        self._timezone = timezone
        self._client = httpx.Client(
            base_url=self._api_url,
            headers={
                "X-API-KEY": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def _params(
        self,
        cursor: str | None,
        start: str | None,
        end: str | None,
        limit: int | None,
    ) -> dict[str, str]:
        params: dict[str, str] = {}
        if cursor:
            params["cursor"] = cursor
        if start:
            params["start"] = start
        if end:
            params["end"] = end
        if limit:
            params["limit"] = str(limit)
        if self._timezone:
            params["timezone"] = self._timezone
        params["includeMarkdown"] = "true"
        params["includeHeadings"] = "true"
        params["includeContents"] = "true"
        params["direction"] = "desc"
        return params

    def fetch_page(
        self,
        cursor: str | None = None,
        start: str | None = None,
        end: str | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> FetchPage:
        """GET /lifelogs -> FetchPage(items, next_cursor).

        Retries up to MAX_ATTEMPTS times with exponential backoff on
        5xx responses and transport errors. 4xx responses are terminal.
        """
        params = self._params(cursor, start, end, limit)
        logger.info("Fetching lifelogs cursor=%s start=%s", cursor or "-", start or "-")

        last_error: TransientNetworkError | None = None
        for attempt in range(MAX_ATTEMPTS):
            try:
                resp = self._client.get("lifelogs", params=params)
            except httpx.TransportError as e:
                last_error = TransientNetworkError(f"Limitless request failed: {e}")
            else:
                if resp.status_code >= 500:
                    last_error = TransientNetworkError(
                        f"Limitless API error: {resp.status_code} {resp.text[:200]}",
                        status_code=resp.status_code,
                    )
                elif resp.status_code >= 400:
                    raise self._client_error(resp)
                else:
                    return self._parse_page(resp)

            if attempt < MAX_ATTEMPTS - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "Lifelog fetch attempt %d failed, retrying in %.1fs: %s",
                    attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        logger.warning("Lifelog fetch failed after %d attempts", MAX_ATTEMPTS)
        raise last_error or TransientNetworkError(
            f"Limitless fetch failed after {MAX_ATTEMPTS} attempts"
        )

    @staticmethod
    def _client_error(resp) -> Exception:
        message = f"Limitless API error: {resp.status_code} {resp.text[:200]}"
        if resp.status_code in (401, 403):
            return AuthConfigurationError(message)
        if resp.status_code == 429:
            return RateLimitError(message)
        return TerminalClientError(message, status_code=resp.status_code)

    @staticmethod
    def _parse_page(resp) -> FetchPage:
        try:
            body = resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Limitless API returned non-JSON body", preview=resp.text[:160]
            ) from e
        if not isinstance(body, dict):
            raise MalformedResponseError("Limitless API returned unexpected JSON")

        items = (body.get("data") or {}).get("lifelogs") or []
        meta = (body.get("meta") or {}).get("lifelogs") or {}
        next_cursor = meta.get("nextCursor") or None
        logger.debug("Fetched %d lifelogs, next cursor %s", len(items), next_cursor)
        return FetchPage(items=list(items), next_cursor=next_cursor)

    def iter_pages(
        self,
        start: str | None = None,
        end: str | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> Iterator[FetchPage]:
        """Yield pages until the API returns no cursor."""
        return paginate(self.fetch_page, start=start, end=end, limit=limit)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def paginate(
    fetch_page: Callable[..., FetchPage],
    *,
    start: str | None = None,
    end: str | None = None,
    limit: int = DEFAULT_PAGE_LIMIT,
) -> Iterator[FetchPage]:
    """Drive a fetch_page callable until it returns no cursor.

    An absent, null or empty cursor is the only normal termination. A
    cursor that was already sent also stops the loop, so a provider that
    cycles through cursors cannot spin forever.
    """
    cursor: Optional[str] = None
    seen: set[str] = set()
    while True:
        page = fetch_page(cursor=cursor, start=start, end=end, limit=limit)
        yield page
        if not page.next_cursor:
            return
        if page.next_cursor in seen or page.next_cursor == cursor:
            logger.warning("Provider repeated cursor %s; stopping pagination", page.next_cursor)
            return
        cursor = page.next_cursor
        seen.add(cursor)
