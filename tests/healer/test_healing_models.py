"""Unit tests for healing data models and helpers."""

import pytest

from src.intent_healer.core.healing_utils import (
    classify_failure_kind,
    create_failure_context,
    is_assertion_step,
    is_healable_failure,
    mask_secret
)
from src.intent_healer.core.models.healing_models import (
    ActionKind,
    FailureKind,
    HealDecision,
    IntentContract,
    Locator,
    LocatorStrategy,
    SourceLocation
)
from tests.utils.healing_fakes import make_failure, make_intent


class TestFailureClassification:
    """Test cases for failure kind classification."""

    @pytest.mark.parametrize("exception_type,message,expected", [
        ("NoSuchElementException", "", FailureKind.ELEMENT_NOT_FOUND),
        ("ElementNotFound", "Element 'id=x' did not match any elements after 5 seconds",
         FailureKind.ELEMENT_NOT_FOUND),
        ("StaleElementReferenceException", "", FailureKind.STALE_ELEMENT),
        ("WebDriverException", "Other element would receive the click", FailureKind.CLICK_INTERCEPTED),
        ("ElementNotInteractableException", "", FailureKind.NOT_INTERACTABLE),
        ("TimeoutException", "", FailureKind.TIMEOUT),
        ("AssertionError", "expected 3 items", FailureKind.ASSERTION_FAILURE),
        ("KeyError", "token", FailureKind.UNKNOWN),
    ])
    def test_classify(self, exception_type, message, expected):
        assert classify_failure_kind(exception_type, message) == expected

    def test_create_failure_context(self):
        failure = create_failure_context(
            feature="Login", scenario="User signs in", step_text="When I click sign in",
            original_locator="id=login-btn", exception_type="NoSuchElementException",
            exception_message="no such element", tags=["smoke"],
            source_location=SourceLocation("tests/login.robot", 8)
        )

        assert failure.failure_kind == FailureKind.ELEMENT_NOT_FOUND
        assert failure.tags == ("smoke",)
        assert is_healable_failure(failure)

    def test_unknown_failures_are_not_healable(self):
        assert not is_healable_failure(make_failure(exception_type="ValueError", exception_message="bad"))


class TestAssertionSteps:
    """Test cases for is_assertion_step."""

    def test_assert_intent(self):
        assert is_assertion_step(make_failure(), make_intent(ActionKind.ASSERT))

    def test_then_step(self):
        assert is_assertion_step(make_failure(step_text="Then the cart is empty"), make_intent())

    def test_action_step(self):
        assert not is_assertion_step(make_failure(), make_intent())


class TestIntentContract:
    """Test cases for IntentContract."""

    @pytest.mark.parametrize("step_text,expected", [
        ("When I click the sign in button", ActionKind.CLICK),
        ("When I enter alice as the user name", ActionKind.TYPE),
        ("And I select Express shipping", ActionKind.SELECT),
        ("Then I should see the dashboard", ActionKind.ASSERT),
        ("Given the store has stock", ActionKind.UNKNOWN),
    ])
    def test_default_for_infers_action(self, step_text, expected):
        intent = IntentContract.default_for(step_text)

        assert intent.action == expected
        assert intent.description == step_text

    def test_validation_declared(self):
        assert not make_intent().has_validation
        assert make_intent(outcome_check="Dashboard is shown").has_validation


class TestLocator:
    """Test cases for Locator parsing."""

    @pytest.mark.parametrize("text,strategy,value", [
        ("id=login-btn", LocatorStrategy.ID, "login-btn"),
        ("css:.btn.primary", LocatorStrategy.CSS, ".btn.primary"),
        ("link=Forgot password?", LocatorStrategy.LINK_TEXT, "Forgot password?"),
        ("//button[@type='submit']", LocatorStrategy.XPATH, "//button[@type='submit']"),
        ("button.primary", LocatorStrategy.CSS, "button.primary"),
        ("data-id=7", LocatorStrategy.CSS, "data-id=7"),
    ])
    def test_parse(self, text, strategy, value):
        locator = Locator.parse(text)

        assert (locator.strategy, locator.value) == (strategy, value)

    def test_describe(self):
        assert str(Locator(LocatorStrategy.NAME, "email")) == "name=email"


class TestHealDecision:
    """Test cases for HealDecision invariants."""

    def test_confidence_bounds(self):
        with pytest.raises(ValueError):
            HealDecision.can_heal(0, 1.5)

    def test_refusal_reason_present_iff_not_healable(self):
        assert HealDecision(0.2, None).refusal_reason == "No candidate selected"
        with pytest.raises(ValueError):
            HealDecision(0.9, 1, refusal_reason="nope")

    def test_dict_layout(self):
        decision = HealDecision.from_dict({"confidence": 0.9, "candidate_index": 2})

        assert decision.to_dict()["candidate_index"] == 2
        assert decision.provider == ""


def test_mask_secret():
    assert mask_secret(None) == "<unset>"
    assert mask_secret("short") == "****"
    assert mask_secret("AIzaSyA1234567890") == "AIza****90"
