"""Tests for LLM output cleanup, checks and confidence scoring."""

import uuid

import pytest

from app.models.business import Business
from app.schemas.pipeline import ContextBundle, ContextResult
from app.services.response_processor import SUGGESTIONS, ResponseProcessor, clean_response


@pytest.fixture
def business():
    return Business(
        id=uuid.uuid4(),
        name="Pizza Palace",
        business_type="restaurant",
        phone="(555) 123-4567",
        email="hello@pizzapalace.example",
        website="https://pizzapalace.example",
    )


@pytest.fixture
def processor():
    return ResponseProcessor()


@pytest.fixture
def context(business):
    result = ContextResult(
        id=uuid.uuid4(),
        business_id=business.id,
        content_type="MENU_ITEM",
        content_id="margherita",
        content="Margherita Pizza - fresh mozzarella, tomato sauce and basil.",
        title="Margherita Pizza",
        similarity=0.85,
        confidence=0.85,
        text_snippet="Margherita Pizza",
    )
    return ContextBundle(results=[result], average_confidence=0.85)


GOOD_ANSWER = "Our most popular pizza is the Margherita Pizza, made with fresh mozzarella and basil."


def test_confidence_blends_quality_with_context(processor, business, context):
    processed = processor.process_response(GOOD_ANSWER, context, business, "MENU_INQUIRY")

    assert processed.confidence == pytest.approx(0.6 * 1.0 + 0.4 * 0.85)
    assert processed.validation_result.is_valid is True
    assert processed.sources == context.results
    assert processed.suggestions == SUGGESTIONS["MENU_INQUIRY"][:3]
    assert processed.business_info_extracted.name == "Pizza Palace"


def test_no_context_scales_confidence(processor, business):
    processed = processor.process_response(GOOD_ANSWER, ContextBundle(), business)

    assert processed.confidence == pytest.approx(0.7)
    assert processed.sources == []


def test_professional_advice_is_penalised(processor, business):
    processed = processor.process_response(
        "You should get a diagnosis from your doctor about those symptoms.", ContextBundle(), business
    )

    assert processed.confidence == pytest.approx(0.7 * 0.3)
    assert "Contains medical advice" in processed.validation_result.issues
    assert "Low confidence response" in processed.validation_result.issues
    assert processed.validation_result.is_valid is False


def test_inappropriate_content_zeroes_quality(processor, business, context):
    processed = processor.process_response("That is a stupid question about our pizza menu.", context, business)

    assert processed.confidence == pytest.approx(0.4 * 0.85)
    assert "Contains inappropriate content" in processed.validation_result.issues


def test_contact_contradictions_are_flagged(processor, business):
    text = "Call us at (555) 987-6543 or visit www.other-pizza.example for the full menu."

    found = processor.find_contact_contradictions(text, business)
    processed = processor.process_response(text, ContextBundle(), business)

    assert found == ["Phone number contradicts business record", "Website contradicts business record"]
    assert processed.confidence == pytest.approx(0.7 * 0.5)


def test_matching_contact_details_are_not_contradictions(processor, business):
    text = "Call (555) 123-4567, email hello@pizzapalace.example or see https://pizzapalace.example/menu."

    assert processor.find_contact_contradictions(text, business) == []


def test_wrong_email_is_a_contradiction(processor, business):
    found = processor.find_contact_contradictions("Write to orders@elsewhere.example anytime.", business)

    assert found == ["Email address contradicts business record"]


def test_early_stop_is_penalised(processor, business):
    processed = processor.process_response(GOOD_ANSWER, ContextBundle(), business, finish_reason="MAX_TOKENS")

    assert processed.confidence == pytest.approx(0.7 * 0.8)
    assert "Generation stopped early (MAX_TOKENS)" in processed.validation_result.issues


def test_short_and_empty_responses(processor, business):
    short = processor.process_response("Yes.", ContextBundle(), business)
    empty = processor.process_response("   ", ContextBundle(), business)

    assert short.confidence == pytest.approx(0.7 * 0.6)
    assert "Response too short" in short.validation_result.issues
    assert empty.confidence == 0.0
    assert "Empty response" in empty.validation_result.issues


def test_extract_business_information(processor, business):
    text = "Visit us at 123 Main Street. We are open: 11am-10pm daily. Call (555) 123-4567."

    info = processor.extract_business_information(text, business)

    assert info.phone == "(555) 123-4567"
    assert info.address.startswith("123 Main Street")
    assert info.hours == "11am-10pm daily"
    assert info.website is None


def test_suggestions_for_unknown_intent(processor):
    assert processor.generate_suggestions("NOT_AN_INTENT") == SUGGESTIONS["UNKNOWN"][:3]
    assert len(processor.generate_suggestions("PRICING_QUESTION")) == 3


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("  hello   there\n\n\n\nfriend  ", "Hello there\n\nfriend."),
        ("done. .", "Done."),
        ("Really?", "Really?"),
        ("", ""),
    ],
)
def test_clean_response(raw, expected):
    assert clean_response(raw) == expected
