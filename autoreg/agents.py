from __future__ import annotations

import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

from autoreg.models import ActivationResult, BrowserConfig, PageState
from autoreg.page_inspector import PageInspector, SeleniumPageInspector

logger = logging.getLogger(__name__)


class AgentLostError(RuntimeError):
    """The browsing context behind an agent is gone or stopped answering."""


class ExecutionAgent(ABC):
    """One disposable browsing context bound to a single event URL."""

    def __init__(self, handle: str, url: str) -> None:
        self.handle = handle
        self.url = url

    @abstractmethod
    def open(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_state(self) -> PageState:
        raise NotImplementedError

    @abstractmethod
    def activate(self) -> ActivationResult:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def is_alive(self) -> bool:
        raise NotImplementedError

    def focus(self) -> bool:
        """Bring the agent's window in front of the operator. False when unsupported."""
        return False


def build_driver(config: BrowserConfig) -> Any:
    opts = Options()
    if config.headless:
        opts.add_argument("--headless=new")
        opts.add_argument(f"--window-size={config.window_size}")
    else:
        opts.add_argument("--start-maximized")
    if config.user_data_dir:
        # A logged-in profile lets the platform prefill name and email.
        opts.add_argument(f"--user-data-dir={config.user_data_dir}")
    opts.add_experimental_option("excludeSwitches", ["enable-automation"])
    opts.add_experimental_option("useAutomationExtension", False)
    service = Service(ChromeDriverManager().install())
    driver = webdriver.Chrome(service=service, options=opts)
    driver.set_page_load_timeout(config.page_load_timeout_seconds)
    return driver


class BrowserAgent(ExecutionAgent):
    def __init__(
        self,
        handle: str,
        url: str,
        config: BrowserConfig,
        driver_builder: Callable[[BrowserConfig], Any] = build_driver,
    ) -> None:
        super().__init__(handle, url)
        self.config = config
        self._driver_builder = driver_builder
        self._driver: Any = None
        self._inspector: PageInspector | None = None

    def open(self) -> None:
        try:
            self._driver = self._driver_builder(self.config)
            self._driver.get(self.url)
        except WebDriverException as exc:
            raise AgentLostError(f"could not open {self.url}: {exc.msg or exc}") from exc
        time.sleep(self.config.settle_seconds)
        self._inspector = SeleniumPageInspector(self._driver)

    def _require_inspector(self) -> PageInspector:
        if self._driver is None or self._inspector is None:
            raise AgentLostError(f"agent {self.handle} is not open")
        return self._inspector

    def get_state(self) -> PageState:
        inspector = self._require_inspector()
        try:
            return inspector.get_state()
        except WebDriverException as exc:
            raise AgentLostError(f"agent {self.handle} stopped responding: {exc.msg or exc}") from exc

    def activate(self) -> ActivationResult:
        inspector = self._require_inspector()
        try:
            result = inspector.activate()
        except WebDriverException as exc:
            raise AgentLostError(f"agent {self.handle} stopped responding: {exc.msg or exc}") from exc
        if result.success:
            time.sleep(self.config.settle_seconds)
        return result

    def focus(self) -> bool:
        if self._driver is None:
            raise AgentLostError(f"agent {self.handle} is not open")
        try:
            self._driver.switch_to.window(self._driver.current_window_handle)
            self._driver.maximize_window()
        except WebDriverException as exc:
            raise AgentLostError(f"agent {self.handle} stopped responding: {exc.msg or exc}") from exc
        return True

    def close(self) -> None:
        if self._driver is None:
            return
        try:
            self._driver.quit()
        except WebDriverException as exc:
            logger.debug("agent %s already gone on close: %s", self.handle, exc)
        finally:
            self._driver = None
            self._inspector = None

    def is_alive(self) -> bool:
        if self._driver is None:
            return False
        try:
            _ = self._driver.current_url
            return True
        except WebDriverException:
            return False


AgentFactory = Callable[[str, str], ExecutionAgent]


class AgentRegistry:
    """Live agents keyed by handle; shared between coordinator and worker threads."""

    def __init__(self, factory: AgentFactory) -> None:
        self.factory = factory
        self._agents: dict[str, ExecutionAgent] = {}
        self._counter = itertools.count(1)
        self._lock = threading.RLock()

    def create(self, url: str) -> ExecutionAgent:
        with self._lock:
            handle = f"agent-{next(self._counter)}"
            agent = self.factory(handle, url)
            self._agents[handle] = agent
            return agent

    def get(self, handle: str | None) -> ExecutionAgent | None:
        if not handle:
            return None
        with self._lock:
            return self._agents.get(handle)

    def discard(self, handle: str | None) -> ExecutionAgent | None:
        if not handle:
            return None
        with self._lock:
            return self._agents.pop(handle, None)

    def close(self, handle: str | None) -> None:
        agent = self.discard(handle)
        if agent is None:
            return
        try:
            agent.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("closing agent %s failed: %s", handle, exc)

    def close_all(self) -> None:
        with self._lock:
            handles = list(self._agents)
        for handle in handles:
            self.close(handle)

    def handles(self) -> list[str]:
        with self._lock:
            return list(self._agents)
