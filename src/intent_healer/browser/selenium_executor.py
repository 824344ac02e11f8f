"""Performs healed actions in a live browser through Selenium WebDriver."""

import logging
from typing import Optional

from selenium.common.exceptions import NoSuchElementException, WebDriverException
from selenium.webdriver.common.action_chains import ActionChains
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import Select, WebDriverWait

from ..core.exceptions import ActionExecutionError
from ..core.models.healing_models import ActionKind, ElementCandidate
from ..services.capabilities import ActionExecutor
from ..services.locator_pattern_matcher import to_selenium_by


logger = logging.getLogger("healer.engine")


class SeleniumActionExecutor(ActionExecutor):
    """ActionExecutor over a Selenium WebDriver session."""

    def __init__(self, driver, wait_seconds: float = 5.0):
        self.driver = driver
        self.wait_seconds = wait_seconds

    def find(self, candidate: ElementCandidate):
        by_name, value = to_selenium_by(candidate.locator)
        by = getattr(By, by_name)
        try:
            return WebDriverWait(self.driver, self.wait_seconds).until(
                EC.presence_of_element_located((by, value)))
        except WebDriverException as e:
            raise ActionExecutionError(f"Element '{candidate.describe()}' not found: {e.msg or e}") from e

    def execute(self, action: ActionKind, candidate: ElementCandidate,
                payload: Optional[str] = None) -> None:
        element = self.find(candidate)
        logger.debug(f"Executing {action.value} on '{candidate.describe()}'")

        try:
            if action == ActionKind.CLICK:
                element.click()
            elif action == ActionKind.TYPE:
                if payload is None:
                    raise ActionExecutionError("TYPE action needs a payload")
                element.clear()
                element.send_keys(payload)
            elif action == ActionKind.SELECT:
                if payload is None:
                    raise ActionExecutionError("SELECT action needs a payload")
                self._select(element, payload)
            elif action == ActionKind.HOVER:
                ActionChains(self.driver).move_to_element(element).perform()
            elif action == ActionKind.CLEAR:
                element.clear()
            elif action == ActionKind.SUBMIT:
                element.submit()
            else:
                raise ActionExecutionError(f"Action '{action.value}' cannot be executed on an element")
        except WebDriverException as e:
            raise ActionExecutionError(f"{action.value} on '{candidate.describe()}' failed: {e.msg or e}") from e

    def _select(self, element, payload: str) -> None:
        select = Select(element)
        try:
            select.select_by_visible_text(payload)
        except NoSuchElementException:
            select.select_by_value(payload)
