"""Outbound HTTP for source adapters.

Third-party feeds and pages are an unreliable boundary: every request has a
timeout, transient failures (network errors, 429, 5xx) are retried with a
quadratic backoff, and everything else fails fast.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import requests
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

DEFAULT_USER_AGENT = "FantasyReportBot/1.0 (+https://fantasyreport.app)"

_PRIVATE_NETS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


class FetchError(Exception):
    def __init__(self, url: str, message: str, *, status: Optional[int] = None):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status = status

    @property
    def transient(self) -> bool:
        return False


class TransientFetchError(FetchError):
    """Network error, timeout, 429 or 5xx; worth retrying."""

    @property
    def transient(self) -> bool:
        return True


def validate_fetch_url(url: str) -> Optional[str]:
    """Return an error string if the URL should not be fetched."""
    try:
        p = urlparse(url)
    except ValueError:
        return "invalid_url"
    if p.scheme not in ("http", "https"):
        return "bad_scheme"
    host = (p.hostname or "").strip().lower()
    if not host:
        return "missing_host"
    if host in ("localhost", "localhost.localdomain"):
        return "blocked_host"
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None
    if any(ip in net for net in _PRIVATE_NETS):
        return "blocked_private_ip"
    return None


@dataclass
class HttpClient:
    timeout: float = 15.0
    retries: int = 3
    retry_base: float = 0.5
    user_agent: str = DEFAULT_USER_AGENT
    max_bytes: int = 5_000_000
    sleep: Callable[[float], None] = time.sleep
    session: requests.Session = field(default_factory=requests.Session)

    @classmethod
    def from_config(cls, config) -> "HttpClient":
        return cls(
            timeout=config.http_timeout,
            retries=config.http_retries,
            retry_base=config.http_retry_base,
            user_agent=config.http_user_agent,
        )

    def _wait(self, retry_state) -> float:
        # base x attempt^2: 0.5s, 2s, 4.5s ...
        return self.retry_base * (retry_state.attempt_number ** 2)

    def get_text(self, url: str, *, headers: Optional[Dict[str, str]] = None) -> str:
        err = validate_fetch_url(url)
        if err:
            raise FetchError(url, f"refusing to fetch: {err}")
        retryer = Retrying(
            stop=stop_after_attempt(max(1, self.retries)),
            wait=self._wait,
            retry=retry_if_exception_type(TransientFetchError),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(self._fetch_once, url, headers or {})

    def get_json(self, url: str) -> Any:
        text = self.get_text(url, headers={"Accept": "application/json"})
        try:
            return json.loads(text)
        except ValueError as e:
            raise FetchError(url, f"invalid json: {e}") from e

    def _fetch_once(self, url: str, headers: Dict[str, str]) -> str:
        hdrs = {"User-Agent": self.user_agent, "Accept-Language": "en-US,en;q=0.8"}
        hdrs.update(headers)
        try:
            resp = self.session.get(
                url,
                headers=hdrs,
                timeout=(min(5.0, self.timeout), self.timeout),
                allow_redirects=True,
                stream=True,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientFetchError(url, f"network error: {e}") from e
        except requests.RequestException as e:
            raise FetchError(url, f"request failed: {e}") from e

        with resp:
            status = resp.status_code
            if status in RETRYABLE_STATUS:
                raise TransientFetchError(url, f"http_{status}", status=status)
            if status >= 400:
                raise FetchError(url, f"http_{status}", status=status)
            content = b""
            try:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    if not chunk:
                        continue
                    content += chunk
                    if len(content) > self.max_bytes:
                        raise FetchError(url, "too_large", status=status)
            except (requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
                raise TransientFetchError(url, f"read error: {e}") from e
            encoding = resp.encoding or "utf-8"
        try:
            return content.decode(encoding, errors="replace")
        except LookupError:
            return content.decode("utf-8", errors="replace")
