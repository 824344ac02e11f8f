"""Failure fingerprinting for the decision cache."""

import hashlib
import logging

from ..core.healing_utils import normalize_step_text, url_pattern
from ..core.models.healing_models import FailureContext, Locator


logger = logging.getLogger("healer.cache")


class FingerprintingService:
    """Derives a stable cache key for a failure.

    Two failures share a fingerprint when they come from the same step
    wording, the same broken locator and the same page, regardless of record
    ids in the URL, Gherkin keyword or whitespace.
    """

    SEPARATOR = "\x1f"

    def fingerprint(self, failure: FailureContext) -> str:
        """Return the hex SHA-256 fingerprint of a failure."""
        components = self.components(failure)
        digest = hashlib.sha256(self.SEPARATOR.join(components).encode("utf-8")).hexdigest()
        logger.debug(f"Fingerprint {digest[:12]} for step '{components[0]}' on '{components[2]}'")
        return digest

    def components(self, failure: FailureContext) -> tuple:
        """Normalized parts that feed the fingerprint, in hashing order."""
        return (
            normalize_step_text(failure.step_text),
            Locator.parse(failure.original_locator).describe(),
            url_pattern(failure.page_url)
        )
