"""
HTTP transport — JSON metadata and payload downloads with retries.

Both endpoints (GitHub API, arbitrary download hosts) are untrusted
and may be slow or failing.  Transient failures (connection errors,
timeouts, bodies cut short, HTTP 5xx and 429) are retried a fixed
small number of times with exponential backoff and jitter; anything
else fails immediately.
"""

from __future__ import annotations

import email.message
import http.client
import json
import logging
import random
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable

from blindspot import __version__

logger = logging.getLogger(__name__)

USER_AGENT = f"blindspot/{__version__}"

_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class TransportError(Exception):
    """A request failed after all attempts."""

    def __init__(self, url: str, message: str, status: int | None = None):
        self.url = url
        self.status = status
        super().__init__(f"{message} ({url})")


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed attempts, exponential backoff with jitter."""

    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * 0.3)


@dataclass
class Download:
    """A fully-read response body."""

    url: str
    data: bytes = field(repr=False)
    filename: str = ""


def filename_from_response(url: str, headers: email.message.Message | None) -> str:
    """Pick a filename: Content-Disposition first, then the URL path."""
    if headers is not None:
        cd = headers.get("Content-Disposition")
        if cd:
            msg = email.message.Message()
            msg["Content-Disposition"] = cd
            name = msg.get_filename()
            if name:
                return name.replace("\\", "/").rsplit("/", 1)[-1]
    path = urllib.parse.urlparse(url).path
    return urllib.parse.unquote(path.rstrip("/").rsplit("/", 1)[-1])


class HttpTransport:
    """urllib-based transport used by the resolver and the engine."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        token: str | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._timeout = timeout
        self._token = token
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    def get_json(self, url: str) -> Any:
        """GET a JSON document (GitHub API)."""
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        body, _, _ = self._fetch(url, headers)
        try:
            return json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TransportError(url, f"Invalid JSON response: {e}") from e

    def download(self, url: str) -> Download:
        """GET a payload, following redirects."""
        body, final_url, headers = self._fetch(url, {"User-Agent": USER_AGENT})
        filename = filename_from_response(final_url, headers) or filename_from_response(url, None)
        logger.info("Downloaded %d bytes from %s", len(body), final_url)
        return Download(url=final_url, data=body, filename=filename)

    def _fetch(
        self, url: str, headers: dict[str, str],
    ) -> tuple[bytes, str, email.message.Message]:
        last_error: TransportError | None = None

        for attempt in range(1, self._retry.attempts + 1):
            req = urllib.request.Request(url, headers=headers)
            try:
                with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                    return resp.read(), resp.geturl(), resp.headers
            except urllib.error.HTTPError as e:
                last_error = TransportError(url, f"HTTP {e.code} {e.reason}", status=e.code)
                if e.code not in _TRANSIENT_STATUS:
                    raise last_error from e
            except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
                reason = getattr(e, "reason", e)
                last_error = TransportError(url, f"Request failed: {reason}")

            if attempt < self._retry.attempts:
                delay = self._retry.delay(attempt)
                logger.warning(
                    "%s — retrying in %.1fs (attempt %d/%d)",
                    last_error, delay, attempt + 1, self._retry.attempts,
                )
                self._sleep(delay)

        assert last_error is not None
        raise last_error
