"""Unit tests for the fingerprinting service."""

from src.intent_healer.core.healing_utils import normalize_step_text, url_pattern
from src.intent_healer.services.fingerprinting_service import FingerprintingService
from tests.utils.healing_fakes import make_failure


class TestFingerprintingService:
    """Test cases for FingerprintingService."""

    def setup_method(self):
        self.service = FingerprintingService()

    def test_fingerprint_is_stable_sha256(self):
        first = self.service.fingerprint(make_failure())
        second = self.service.fingerprint(make_failure(run_id="run-2", scenario="Other"))

        assert first == second
        assert len(first) == 64

    def test_gherkin_keyword_and_whitespace_ignored(self):
        a = make_failure(step_text="When I click   the sign in button")
        b = make_failure(step_text="And i click the sign in button")

        assert self.service.fingerprint(a) == self.service.fingerprint(b)

    def test_record_ids_and_query_in_url_ignored(self):
        a = make_failure(page_url="https://shop.example.com/orders/1234?tab=2")
        b = make_failure(page_url="https://shop.example.com/orders/98#top")

        assert self.service.fingerprint(a) == self.service.fingerprint(b)

    def test_different_locator_changes_fingerprint(self):
        a = make_failure(original_locator="id=login-btn")
        b = make_failure(original_locator="id=logout-btn")

        assert self.service.fingerprint(a) != self.service.fingerprint(b)

    def test_equivalent_locator_spellings_match(self):
        a = make_failure(original_locator="css:.btn-primary")
        b = make_failure(original_locator="css=.btn-primary")

        assert self.service.fingerprint(a) == self.service.fingerprint(b)

    def test_different_page_changes_fingerprint(self):
        a = make_failure(page_url="https://shop.example.com/login")
        b = make_failure(page_url="https://shop.example.com/register")

        assert self.service.fingerprint(a) != self.service.fingerprint(b)

    def test_components(self):
        components = self.service.components(make_failure(page_url="https://Shop.Example.com/users/42"))

        assert components == ("i click the sign in button", "id=login-btn",
                              "https://shop.example.com/users/{id}")


class TestNormalizationHelpers:
    """Test cases for the text and URL normalization helpers."""

    def test_normalize_step_text(self):
        assert normalize_step_text("  Given I am on the   home page ") == "i am on the home page"
        assert normalize_step_text("") == ""

    def test_url_pattern_replaces_identifier_segments(self):
        assert url_pattern("https://x.test/items/550e8400-e29b-41d4-a716-446655440000/edit") == \
            "https://x.test/items/{id}/edit"
        assert url_pattern("https://x.test/a/deadbeefdeadbeef") == "https://x.test/a/{id}"
        assert url_pattern("https://x.test/settings/profile") == "https://x.test/settings/profile"
        assert url_pattern("") == ""
