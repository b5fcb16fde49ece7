from __future__ import annotations

import http.client
import json
import logging
import math
import os
import time
from datetime import datetime
from typing import Any, Callable, Iterator
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import FeedConfig
from .utils import isoformat_utc, log_event

_RETRY_STATUSES = {429, 503}


class FeedError(RuntimeError):
    def __init__(self, message: str, status: int | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class FeedClient:
    """Blocking client for the NVD CVE API 2.0 with a fixed delay between pages."""

    def __init__(
        self,
        config: FeedConfig,
        api_key: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.api_key = api_key
        self._sleep = sleep
        self._logger = logging.getLogger("cvealert.feed_client")

    @classmethod
    def from_env(cls, config: FeedConfig) -> "FeedClient":
        api_key = os.environ.get("NVD_API_KEY", "").strip() or None
        return cls(config, api_key=api_key)

    def build_params(
        self,
        start: datetime,
        end: datetime,
        start_index: int = 0,
        keyword: str | None = None,
    ) -> dict[str, object]:
        params: dict[str, object] = {
            "pubStartDate": isoformat_utc(start),
            "pubEndDate": isoformat_utc(end),
            "resultsPerPage": self.config.results_per_page,
            "startIndex": start_index,
        }
        if keyword:
            params["keywordSearch"] = keyword
        return params

    def fetch_page(self, params: dict[str, object]) -> tuple[list[dict[str, Any]], int]:
        url = f"{self.config.api_base}?{urlencode(params)}"
        payload = self._get_json(url)
        if not isinstance(payload, dict):
            raise FeedError("feed response is not a JSON object", url=url)
        records = payload.get("vulnerabilities") or []
        if not isinstance(records, list):
            records = []
        try:
            total = int(payload.get("totalResults") or 0)
        except (TypeError, ValueError):
            total = len(records)
        return [item for item in records if isinstance(item, dict)], total

    def fetch_all(self, params: dict[str, object]) -> Iterator[dict[str, Any]]:
        """Yield every record of a query; only a first-page failure raises."""
        page_size = self.config.results_per_page
        base_index = int(params.get("startIndex") or 0)
        first, total = self.fetch_page({**params, "startIndex": base_index})
        log_event(
            self._logger,
            logging.INFO,
            "feed_query_started",
            total=total,
            first_page=len(first),
        )
        yield from first
        remaining = max(total - base_index, 0)
        total_pages = math.ceil(remaining / page_size) if page_size else 1
        for page in range(1, total_pages):
            start_index = base_index + page * page_size
            self._sleep(self.config.page_delay_seconds)
            try:
                records, _ = self.fetch_page({**params, "startIndex": start_index})
            except FeedError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "feed_page_skipped",
                    page=page + 1,
                    pages=total_pages,
                    start_index=start_index,
                    status=exc.status,
                    error=exc,
                )
                continue
            log_event(
                self._logger,
                logging.DEBUG,
                "feed_page_fetched",
                page=page + 1,
                pages=total_pages,
                count=len(records),
            )
            yield from records

    def fetch_keyword(self, keyword: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        params = self.build_params(start, end, keyword=keyword)
        try:
            records, total = self.fetch_page(params)
        except FeedError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "feed_keyword_failed",
                keyword=keyword,
                status=exc.status,
                error=exc,
            )
            return []
        log_event(
            self._logger,
            logging.INFO,
            "feed_keyword_fetched",
            keyword=keyword,
            total=total,
            returned=len(records),
        )
        return records

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.config.user_agent}
        if self.api_key:
            headers["apiKey"] = self.api_key
        return headers

    def _get_json(self, url: str) -> Any:
        headers = self._headers()
        attempt = 0
        max_retries = self.config.max_retries
        while True:
            try:
                request = Request(url, headers=headers)
                with urlopen(request, timeout=self.config.timeout_seconds) as response:
                    return json.loads(response.read().decode("utf-8"))
            except HTTPError as exc:
                if exc.code in _RETRY_STATUSES and attempt < max_retries:
                    attempt += 1
                    self._sleep(self.config.backoff_seconds * attempt)
                    continue
                raise FeedError(f"feed returned HTTP {exc.code}", status=exc.code, url=url) from exc
            except (URLError, OSError, http.client.HTTPException) as exc:
                if attempt < max_retries:
                    attempt += 1
                    self._sleep(self.config.backoff_seconds * attempt)
                    continue
                reason = getattr(exc, "reason", exc)
                raise FeedError(f"feed unreachable: {reason}", url=url) from exc
            except (ValueError, UnicodeDecodeError) as exc:
                raise FeedError(f"invalid feed payload: {exc}", url=url) from exc
