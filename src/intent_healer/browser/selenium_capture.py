"""Captures page snapshots from a live Selenium WebDriver session."""

import logging
from dataclasses import replace
from typing import Optional

from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By

from ..core.models.healing_models import BoundingBox, FailureContext, UiSnapshot
from ..services.capabilities import SnapshotCapture
from ..services.locator_pattern_matcher import to_selenium_by
from .snapshot_builder import SnapshotBuilder


logger = logging.getLogger("healer.engine")


class SeleniumSnapshotCapture(SnapshotCapture):
    """SnapshotCapture over a WebDriver, with bounding boxes where the element resolves."""

    def __init__(self, driver, builder: Optional[SnapshotBuilder] = None,
                 include_bounds: bool = True):
        self.driver = driver
        self.builder = builder or SnapshotBuilder()
        self.include_bounds = include_bounds

    def capture(self, failure: FailureContext) -> UiSnapshot:
        snapshot = self.builder.build_from_html(
            self.driver.page_source,
            url=self.driver.current_url or failure.page_url,
            title=self.driver.title or ""
        )
        if not self.include_bounds:
            return snapshot

        candidates = []
        for candidate in snapshot.candidates:
            by_name, value = to_selenium_by(candidate.locator)
            try:
                element = self.driver.find_element(getattr(By, by_name), value)
                rect = element.rect
                candidate = replace(
                    candidate,
                    bounds=BoundingBox(rect["x"], rect["y"], rect["width"], rect["height"]),
                    visible=element.is_displayed(),
                    enabled=element.is_enabled()
                )
            except WebDriverException as e:
                logger.debug(f"No bounds for '{candidate.describe()}': {type(e).__name__}")
            candidates.append(candidate)

        return replace(snapshot, candidates=tuple(candidates))
