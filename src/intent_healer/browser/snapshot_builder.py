"""
Page snapshot construction from raw HTML.

Enumerates the interactive elements of a page and gives each one the most
stable locator available: a unique id, a unique name, an aria-label, a test
attribute, link text, visible text, and finally a positional XPath.
"""

import logging
import re
from collections import Counter
from typing import Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from ..core.models.healing_models import ElementCandidate, LocatorStrategy, UiSnapshot


logger = logging.getLogger("healer.engine")

INTERACTIVE_TAGS = ("a", "button", "input", "select", "textarea", "option", "label", "summary")
INTERACTIVE_ROLES = {"button", "link", "checkbox", "radio", "tab", "menuitem", "option",
                     "switch", "combobox", "textbox", "searchbox"}
TEST_ATTRIBUTES = ("data-testid", "data-test", "data-test-id", "data-qa", "data-cy")
KEPT_ATTRIBUTES = ("id", "name", "type", "class", "role", "aria-label", "placeholder", "title",
                   "href", "value") + TEST_ATTRIBUTES

MAX_CANDIDATES = 200
MAX_STRUCTURE_CHARS = 20000
MAX_TEXT_LENGTH = 120

_WHITESPACE = re.compile(r"\s+")


class SnapshotBuilder:
    """Builds UiSnapshot objects from page HTML."""

    def __init__(self, max_candidates: int = MAX_CANDIDATES,
                 max_structure_chars: int = MAX_STRUCTURE_CHARS):
        self.max_candidates = max_candidates
        self.max_structure_chars = max_structure_chars

    def build_from_html(self, html: str, url: str = "", title: str = "") -> UiSnapshot:
        """Parse ``html`` and list its interactive elements as candidates.

        Args:
            html: Page source
            url: Page URL at capture time
            title: Page title; taken from the document when empty

        Returns:
            UiSnapshot with candidates indexed in document order
        """
        soup = BeautifulSoup(html or "", "html.parser")
        for tag in soup(["script", "style", "noscript", "template"]):
            tag.decompose()

        if not title and soup.title and soup.title.string:
            title = soup.title.string.strip()

        elements = [el for el in soup.find_all(True) if self._is_interactive(el)]
        if len(elements) > self.max_candidates:
            logger.debug(f"Page has {len(elements)} interactive elements, keeping {self.max_candidates}")
            elements = elements[:self.max_candidates]

        id_counts = Counter(el.get("id") for el in soup.find_all(id=True))
        name_counts = Counter(el.get("name") for el in soup.find_all(attrs={"name": True}))

        candidates = []
        for element in elements:
            strategy, value = self.best_locator(element, id_counts, name_counts)
            candidates.append(ElementCandidate(
                index=len(candidates),
                strategy=strategy,
                value=value,
                text=self._text_of(element),
                tag_name=element.name,
                attributes=self._attributes_of(element),
                visible=self._is_visible(element),
                enabled=not element.has_attr("disabled")
            ))

        structure = str(soup.body or soup)
        if len(structure) > self.max_structure_chars:
            structure = structure[:self.max_structure_chars]

        return UiSnapshot(url=url, structure=structure, candidates=tuple(candidates), title=title)

    def best_locator(self, element: Tag, id_counts: Optional[Counter] = None,
                     name_counts: Optional[Counter] = None) -> tuple:
        """Most stable (strategy, value) pair that identifies ``element``."""
        element_id = element.get("id")
        if element_id and (id_counts is None or id_counts[element_id] == 1):
            return LocatorStrategy.ID, element_id

        name = element.get("name")
        if name and (name_counts is None or name_counts[name] == 1):
            return LocatorStrategy.NAME, name

        aria_label = element.get("aria-label")
        if aria_label:
            return LocatorStrategy.CSS, f'{element.name}[aria-label="{_css_escape(aria_label)}"]'

        for attribute in TEST_ATTRIBUTES:
            if element.get(attribute):
                return LocatorStrategy.CSS, f'[{attribute}="{_css_escape(element[attribute])}"]'

        text = _WHITESPACE.sub(" ", element.get_text(" ", strip=True))
        if element.name == "a" and text and element.get("href") is not None:
            return LocatorStrategy.LINK_TEXT, text
        if text and len(text) <= MAX_TEXT_LENGTH:
            return LocatorStrategy.TEXT, text

        return LocatorStrategy.XPATH, self._positional_xpath(element)

    def _is_interactive(self, element: Tag) -> bool:
        if element.name == "input" and (element.get("type") or "").lower() == "hidden":
            return False
        if element.name in INTERACTIVE_TAGS:
            return True
        if (element.get("role") or "").lower() in INTERACTIVE_ROLES:
            return True
        return element.has_attr("onclick") or element.get("contenteditable") == "true"

    def _is_visible(self, element: Tag) -> bool:
        for node in [element] + list(element.parents):
            if not isinstance(node, Tag):
                continue
            if node.has_attr("hidden") or node.get("aria-hidden") == "true":
                return False
            style = (node.get("style") or "").replace(" ", "").lower()
            if "display:none" in style or "visibility:hidden" in style:
                return False
        return True

    def _text_of(self, element: Tag) -> str:
        text = _WHITESPACE.sub(" ", element.get_text(" ", strip=True))
        if not text and element.name == "input":
            text = element.get("value") or element.get("placeholder") or ""
        return text[:MAX_TEXT_LENGTH]

    def _attributes_of(self, element: Tag) -> Dict[str, str]:
        attributes = {}
        for name in KEPT_ATTRIBUTES:
            value = element.get(name)
            if value is None:
                continue
            attributes[name] = " ".join(value) if isinstance(value, list) else str(value)
        return attributes

    def _positional_xpath(self, element: Tag) -> str:
        parts: List[str] = []
        current = element
        while current is not None and current.name not in (None, "[document]"):
            parent = current.parent
            if parent is None:
                parts.append(current.name)
                break
            siblings = parent.find_all(current.name, recursive=False)
            if len(siblings) > 1:
                position = next(i for i, sibling in enumerate(siblings) if sibling is current) + 1
                parts.append(f"{current.name}[{position}]")
            else:
                parts.append(current.name)
            current = parent
        parts.reverse()
        return "/" + "/".join(parts)


def _css_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')
