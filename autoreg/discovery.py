"""Event discovery from a calendar or listing page."""
from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup

from autoreg.models import normalize_event_url
from autoreg.page_inspector import is_event_page

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"

_MONTH_DAY = re.compile(r"\b(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+\d{1,2}\b", re.IGNORECASE)
_LEADING_TIME = re.compile(r"^(\d{1,2}:\d{2}\s*(?:AM|PM)?)", re.IGNORECASE)
_NUMERIC_DATE = re.compile(r"\b(\d{1,2}/\d{1,2})\b")
_TIME_PREFIX_WITH_SEPARATOR = re.compile(r"^\d{1,2}:\d{2}\s*(?:AM|PM)?\s*[·\-–—]\s*", re.IGNORECASE)
_TIME_PREFIX = re.compile(r"^\d{1,2}:\d{2}\s*(?:AM|PM)?\s+", re.IGNORECASE)


class DiscoveryError(RuntimeError):
    """The listing page could not be fetched."""


def extract_date_from_title(title: str) -> str:
    """Pull a loose date out of a card title.

    Handles "Feb 10 Demo Night", "7:00 PM Demo Night" and "2/10 Demo Night".
    Returns an empty string when nothing matches.
    """
    if not title:
        return ""
    match = _MONTH_DAY.search(title)
    if match:
        return match.group(0)
    match = _LEADING_TIME.search(title)
    if match:
        return match.group(1).strip()
    match = _NUMERIC_DATE.search(title)
    if match:
        return match.group(1)
    return ""


def clean_title(title: str) -> str:
    if not title:
        return ""
    cleaned = re.sub(r"\s+", " ", title).strip()
    cleaned = _TIME_PREFIX_WITH_SEPARATOR.sub("", cleaned)
    cleaned = _TIME_PREFIX.sub("", cleaned)
    return cleaned.strip()


def _canonical_url(href: str) -> str:
    parts = urlsplit(href)
    return urlunsplit((parts.scheme or "https", parts.netloc.lower(), parts.path.rstrip("/"), "", ""))


def _anchor_title(anchor: Any) -> str:
    for attribute in ("aria-label", "title"):
        value = anchor.get(attribute)
        if value and str(value).strip():
            return str(value).strip()
    heading = anchor.find(["h1", "h2", "h3", "h4"])
    if heading is not None:
        return heading.get_text(" ", strip=True)
    return anchor.get_text(" ", strip=True)


def extract_event_links(html: str, base_url: str) -> list[dict[str, Any]]:
    """
    Collect event links from a rendered listing page.

    Args:
        html: Page source
        base_url: URL the page was loaded from, used to resolve relative links

    Returns:
        One ``{url, title, date}`` dict per event, in page order, deduplicated
        by event slug
    """
    soup = BeautifulSoup(html or "", "html.parser")
    events: list[dict[str, Any]] = []
    index: dict[str, dict[str, Any]] = {}
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.startswith(("#", "mailto:", "javascript:")):
            continue
        url = _canonical_url(urljoin(base_url, href))
        if not is_event_page(url):
            continue
        key = normalize_event_url(url)
        raw_title = _anchor_title(anchor)
        title = clean_title(raw_title)
        date = extract_date_from_title(raw_title)
        existing = index.get(key)
        if existing is not None:
            # Cards often link the same event twice (cover image + heading).
            if len(title) > len(existing["title"]):
                existing["title"] = title
            existing["date"] = existing["date"] or date
            continue
        event = {"url": url, "title": title, "date": date}
        index[key] = event
        events.append(event)
    for event in events:
        event["title"] = event["title"] or normalize_event_url(event["url"])
    logger.info("discovered %d event link(s) on %s", len(events), base_url)
    return events


def fetch_page(url: str, timeout: int = 30, session: requests.Session | None = None) -> str:
    client = session or requests.Session()
    try:
        response = client.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise DiscoveryError(f"could not fetch {url}: {exc}") from exc
    return response.text


def discover_events(
    url: str, *, html: str | None = None, timeout: int = 30, session: requests.Session | None = None
) -> list[dict[str, Any]]:
    """Discover events on ``url``; pass ``html`` to skip the fetch (e.g. a page rendered by an agent)."""
    if html is None:
        html = fetch_page(url, timeout=timeout, session=session)
    return extract_event_links(html, url)
