"""Find and rewrite locator literals inside a single line of test source."""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..core.models.healing_models import Locator, LocatorStrategy


# Selenium's By attribute name for each strategy
SELENIUM_BY = {
    LocatorStrategy.ID: "ID",
    LocatorStrategy.NAME: "NAME",
    LocatorStrategy.CSS: "CSS_SELECTOR",
    LocatorStrategy.XPATH: "XPATH",
    LocatorStrategy.LINK_TEXT: "LINK_TEXT",
    LocatorStrategy.PARTIAL_LINK_TEXT: "PARTIAL_LINK_TEXT",
    LocatorStrategy.TAG_NAME: "TAG_NAME",
    LocatorStrategy.CLASS_NAME: "CLASS_NAME",
}

# SeleniumLibrary prefix for each strategy
ROBOT_PREFIX = {
    LocatorStrategy.ID: "id",
    LocatorStrategy.NAME: "name",
    LocatorStrategy.CSS: "css",
    LocatorStrategy.XPATH: "xpath",
    LocatorStrategy.LINK_TEXT: "link",
    LocatorStrategy.PARTIAL_LINK_TEXT: "partial link",
    LocatorStrategy.TAG_NAME: "tag",
    LocatorStrategy.CLASS_NAME: "class",
}

_BY_TUPLE = re.compile(
    r"By\.(ID|NAME|CSS_SELECTOR|XPATH|LINK_TEXT|PARTIAL_LINK_TEXT|TAG_NAME|CLASS_NAME)"
    r"(\s*,\s*)(r?)([\"'])((?:\\.|(?!\4).)*)\4"
)
_CELL_START = r"(^|\s{2,}|\t|\|\s)"
_CELL_END = r"(?=\s{2,}|\t|\s\||\s*$)"


def to_native(locator: Locator) -> Locator:
    """Rewrite TEXT and ROLE locators into strategies browsers understand."""
    if locator.strategy == LocatorStrategy.TEXT:
        return Locator(LocatorStrategy.XPATH, f"//*[normalize-space()={_xpath_literal(locator.value)}]")
    if locator.strategy == LocatorStrategy.ROLE:
        return Locator(LocatorStrategy.CSS, f"[role='{locator.value}']")
    return locator


def to_selenium_by(locator: Locator) -> Tuple[str, str]:
    """Return the ``By`` attribute name and value for a locator."""
    native = to_native(locator)
    return SELENIUM_BY[native.strategy], native.value


def to_robot_locator(locator: Locator, separator: str = ":") -> str:
    native = to_native(locator)
    return f"{ROBOT_PREFIX[native.strategy]}{separator}{native.value}"


def _xpath_literal(value: str) -> str:
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    parts = value.split("'")
    return "concat(" + ", \"'\", ".join(f"'{p}'" for p in parts) + ")"


@dataclass(frozen=True)
class LocatorMatch:
    """Outcome of a replacement attempt on one line."""
    found: bool
    updated_line: Optional[str] = None
    style: str = ""

    @classmethod
    def not_found(cls) -> 'LocatorMatch':
        return cls(found=False)


class LocatorPatternMatcher:
    """Rewrites locators in Selenium ``By`` tuples, Robot Framework cells and quoted strings."""

    def replace_locator(self, line: str, original: str, replacement: str) -> LocatorMatch:
        """Replace the first occurrence of ``original`` in ``line``.

        Args:
            line: One line of source text
            original: Locator text as it failed at runtime
            replacement: Healed locator in ``strategy=value`` form

        Returns:
            LocatorMatch with the rewritten line when found
        """
        if not line or not original or not replacement:
            return LocatorMatch.not_found()

        old = Locator.parse(original)
        new = Locator.parse(replacement)

        for attempt in (self._replace_selenium_by, self._replace_robot_cell, self._replace_quoted):
            match = attempt(line, original.strip(), old, new)
            if match.found:
                return match
        return LocatorMatch.not_found()

    def _replace_selenium_by(self, line: str, original: str, old: Locator, new: Locator) -> LocatorMatch:
        for match in _BY_TUPLE.finditer(line):
            by_name, comma, raw_prefix, quote, value = match.groups()
            if value != old.value and value != original:
                continue
            if by_name != SELENIUM_BY.get(old.strategy, by_name) and value != original:
                continue
            new_by, new_value = to_selenium_by(new)
            escaped = new_value.replace("\\", "\\\\") if not raw_prefix else new_value
            escaped = escaped.replace(quote, "\\" + quote)
            rewritten = f"By.{new_by}{comma}{raw_prefix}{quote}{escaped}{quote}"
            return LocatorMatch(True, line[:match.start()] + rewritten + line[match.end():], "selenium_by")
        return LocatorMatch.not_found()

    def _replace_robot_cell(self, line: str, original: str, old: Locator, new: Locator) -> LocatorMatch:
        for text, separator in self._robot_variants(original, old):
            pattern = re.compile(_CELL_START + re.escape(text) + _CELL_END)
            match = pattern.search(line)
            if match:
                rendered = to_robot_locator(new, separator) if separator else to_robot_locator(new)
                updated = line[:match.end(1)] + rendered + line[match.end():]
                return LocatorMatch(True, updated, "robot")
        return LocatorMatch.not_found()

    def _replace_quoted(self, line: str, original: str, old: Locator, new: Locator) -> LocatorMatch:
        for text in dict.fromkeys((original, old.describe(), old.value)):
            for quote in ('"', "'"):
                needle = f"{quote}{text}{quote}"
                index = line.find(needle)
                if index < 0:
                    continue
                if text == old.value and old.strategy == new.strategy:
                    rendered = new.value
                elif "=" in text or ":" in text.split("/")[0]:
                    separator = ":" if ":" in text and "=" not in text.split(":")[0] else "="
                    rendered = to_robot_locator(new, separator)
                else:
                    rendered = new.describe()
                rendered = rendered.replace(quote, "\\" + quote)
                updated = line[:index] + quote + rendered + quote + line[index + len(needle):]
                return LocatorMatch(True, updated, "quoted")
        return LocatorMatch.not_found()

    def _robot_variants(self, original: str, old: Locator) -> List[Tuple[str, str]]:
        variants: List[Tuple[str, str]] = []
        prefix = ROBOT_PREFIX.get(old.strategy)
        if prefix:
            variants.append((f"{prefix}:{old.value}", ":"))
            variants.append((f"{prefix}={old.value}", "="))
        variants.append((f"{old.strategy.value}={old.value}", "="))
        if original not in [text for text, _ in variants]:
            variants.append((original, ""))
        return variants
