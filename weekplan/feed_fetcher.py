from __future__ import annotations

import ipaddress
import logging
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

USER_AGENT = "weekplan/1.0 (calendar-sync)"
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "0.0.0.0"}


class FeedFetchError(RuntimeError):
    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url


def _is_private_host(hostname: str) -> bool:
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".local") or hostname.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_loopback or address.is_private or address.is_link_local or address.is_unspecified


def validate_feed_url(url: str) -> str:
    text = str(url or "").strip()
    if not text:
        raise FeedFetchError(text, "Missing or invalid url")
    parsed = urlparse(text)
    if parsed.scheme not in {"http", "https"}:
        raise FeedFetchError(text, "URL must use http or https")
    hostname = (parsed.hostname or "").lower().strip("[]")
    if not hostname or _is_private_host(hostname):
        raise FeedFetchError(text, "Invalid calendar URL")
    return text


class FeedFetcher:
    def __init__(self, timeout_seconds: int = 10) -> None:
        self.timeout_seconds = timeout_seconds

    def fetch(self, url: str) -> str:
        target = validate_feed_url(url)
        try:
            response = requests.get(
                target,
                headers={"User-Agent": USER_AGENT, "Accept": "text/calendar, text/plain, */*"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise FeedFetchError(target, f"{type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise FeedFetchError(target, f"Failed to fetch calendar ({response.status_code})")
        logger.debug("Fetched %d bytes from %s", len(response.content), target)
        return response.text
