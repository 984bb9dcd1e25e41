"""Best-effort page classification for event pages.

The orchestrator only ever sees the closed set of states in
``autoreg.models.PAGE_STATES``. Heuristics live here so a new platform means a
new ``PageInspector``, never a change to the orchestrator.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Iterable
from urllib.parse import urlsplit

from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By

from autoreg.models import (
    STATE_ALREADY_REGISTERED,
    STATE_EVENT_FULL,
    STATE_NOT_EVENT_PAGE,
    STATE_READY_TO_REGISTER,
    STATE_UNKNOWN,
    ActivationResult,
    PageState,
)

logger = logging.getLogger(__name__)

PLATFORM_LUMA = "luma"
PLATFORM_LEMONADE = "lemonade"
PLATFORM_UNKNOWN = "unknown"

LUMA_EXCLUDED_PATHS = ("/calendar", "/profile", "/discover", "/create")

REGISTERED_PATTERNS = (
    "you're going",
    "you're registered",
    "you're in",
    "you are registered",
    "already registered",
    "see you there",
)
LEMONADE_REGISTERED_PATTERNS = (
    "ticket confirmed",
    "registration confirmed",
    "registration successful",
    "you have a ticket",
    "your ticket",
    "check-in",
    "checked in",
)
FULL_PATTERNS = (
    "event full",
    "sold out",
    "join waitlist",
    "waitlist",
    "capacity reached",
    "no tickets available",
)
REGISTER_CONTROL_PATTERNS = (
    "register",
    "rsvp",
    "sign up",
    "join event",
    "get tickets",
    "get ticket",
    "buy ticket",
    "claim ticket",
    "reserve",
    "attend",
)

CONTROL_SELECTORS = ("button", "a[role='button']", "[class*='button']", "[class*='btn']")

_APOSTROPHES = re.compile("[‘’‛]")
_LUMA_EVENT = re.compile(r"(?:lu\.ma|luma\.com)/[a-zA-Z0-9-]+", re.IGNORECASE)
_LEMONADE_EVENT = re.compile(r"lemonade\.social/(?:e|event)/[a-zA-Z0-9-]+", re.IGNORECASE)


def detect_platform(url: str) -> str:
    host = (urlsplit(url).hostname or "").lower() if "://" in url else url.lower()
    if "lemonade.social" in host:
        return PLATFORM_LEMONADE
    if "lu.ma" in host or "luma.com" in host:
        return PLATFORM_LUMA
    return PLATFORM_UNKNOWN


def is_event_page(url: str) -> bool:
    platform = detect_platform(url)
    if platform == PLATFORM_LUMA:
        return bool(_LUMA_EVENT.search(url)) and not any(part in url for part in LUMA_EXCLUDED_PATHS)
    if platform == PLATFORM_LEMONADE:
        return bool(_LEMONADE_EVENT.search(url))
    return False


def normalize_text(text: str) -> str:
    return _APOSTROPHES.sub("'", str(text or "").lower())


def is_already_registered(text: str, platform: str = PLATFORM_LUMA) -> bool:
    normalized = normalize_text(text)
    patterns: Iterable[str] = REGISTERED_PATTERNS
    if platform == PLATFORM_LEMONADE:
        patterns = REGISTERED_PATTERNS + LEMONADE_REGISTERED_PATTERNS
    return any(pattern in normalized for pattern in patterns)


def is_event_full(text: str) -> bool:
    normalized = normalize_text(text)
    return any(pattern in normalized for pattern in FULL_PATTERNS)


def find_register_control(labels: list[str]) -> int | None:
    for index, label in enumerate(labels):
        normalized = normalize_text(label).strip()
        if any(pattern in normalized for pattern in REGISTER_CONTROL_PATTERNS):
            return index
    return None


def classify_page(url: str, text: str, control_labels: list[str]) -> PageState:
    """Classify a rendered page from its URL, body text and clickable labels.

    Precedence matters: an attendee page still shows "register" buttons for
    other sessions, and a full event may still offer "join waitlist".
    """
    if not is_event_page(url):
        return PageState(type=STATE_NOT_EVENT_PAGE)
    platform = detect_platform(url)
    if is_already_registered(text, platform):
        return PageState(type=STATE_ALREADY_REGISTERED)
    if is_event_full(text):
        return PageState(type=STATE_EVENT_FULL)
    index = find_register_control(control_labels)
    if index is not None:
        return PageState(type=STATE_READY_TO_REGISTER, action_handle=str(index), detail=control_labels[index])
    return PageState(type=STATE_UNKNOWN)


class PageInspector(ABC):
    @abstractmethod
    def get_state(self) -> PageState:
        raise NotImplementedError

    @abstractmethod
    def activate(self) -> ActivationResult:
        raise NotImplementedError


class SeleniumPageInspector(PageInspector):
    def __init__(self, driver: Any) -> None:
        self.driver = driver

    def _controls(self) -> list[Any]:
        seen: set[str] = set()
        controls: list[Any] = []
        for selector in CONTROL_SELECTORS:
            for element in self.driver.find_elements(By.CSS_SELECTOR, selector):
                element_id = getattr(element, "id", None) or str(id(element))
                if element_id in seen:
                    continue
                seen.add(element_id)
                controls.append(element)
        return controls

    @staticmethod
    def _label(element: Any) -> str:
        try:
            return (element.text or "").strip()
        except WebDriverException:
            return ""

    def _snapshot(self) -> tuple[PageState, list[Any]]:
        url = self.driver.current_url
        body_text = self.driver.find_element(By.TAG_NAME, "body").text
        controls = self._controls()
        state = classify_page(url, body_text, [self._label(control) for control in controls])
        return state, controls

    def get_state(self) -> PageState:
        state, _ = self._snapshot()
        return state

    def activate(self) -> ActivationResult:
        state, controls = self._snapshot()
        if state.type != STATE_READY_TO_REGISTER or state.action_handle is None:
            return ActivationResult(success=False, reason=state.type)
        element = controls[int(state.action_handle)]
        try:
            self.driver.execute_script("arguments[0].scrollIntoView({block:'center'});", element)
            element.click()
        except WebDriverException as exc:
            logger.warning("register control click rejected on %s: %s", self.driver.current_url, exc)
            return ActivationResult(success=False, reason=state.type)
        return ActivationResult(success=True)
