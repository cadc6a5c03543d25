from __future__ import annotations
"""
Concierge — Website Fetch
=========================
Fetches a business website and extracts clean text with trafilatura.
The blocking fetch runs in a worker thread so the event loop stays free.
"""

import asyncio
import logging
import re

import requests
import trafilatura

logger = logging.getLogger(__name__)

FETCH_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

MAX_CONTENT_CHARS = 12_000   # ~3K tokens
REQUEST_TIMEOUT   = 5        # seconds; onboarding continues without the site


class ScrapingError(Exception):
    """The website could not be fetched or held no usable text."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


def normalize_url(url: str) -> str:
    url = url.strip()
    if not re.match(r"^https?://", url, re.IGNORECASE):
        url = f"https://{url}"
    return url


def _fetch(url: str) -> str:
    try:
        resp = requests.get(
            url,
            headers=FETCH_HEADERS,
            timeout=REQUEST_TIMEOUT,
            allow_redirects=True,
        )
    except requests.Timeout as e:
        raise ScrapingError(f"Timed out fetching {url}", timed_out=True) from e
    except requests.RequestException as e:
        raise ScrapingError(f"Could not fetch {url}: {e}") from e

    if resp.status_code != 200:
        raise ScrapingError(f"{url} returned HTTP {resp.status_code}")

    text = trafilatura.extract(
        resp.text,
        include_tables=True,
        include_links=False,
        no_fallback=False,
        favor_precision=False,
    )
    if not text or not text.strip():
        raise ScrapingError(f"No readable text found at {url}")

    text = re.sub(r"\n{3,}", "\n\n", text.strip())
    if len(text) > MAX_CONTENT_CHARS:
        text = text[:MAX_CONTENT_CHARS] + "..."
    return text


async def fetch_website_text(url: str) -> str:
    """Return cleaned page text, or raise ScrapingError."""
    url = normalize_url(url)
    logger.info(f"[website] Fetching {url}")
    return await asyncio.to_thread(_fetch, url)
