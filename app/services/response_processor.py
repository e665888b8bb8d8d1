"""
Post-processing of LLM output: cleanup, content checks, confidence and suggestions.

Confidence starts at 1.0, takes multiplicative penalties for each problem
found, and is then blended with the average confidence of the retrieved
context (0.6 / 0.4), or scaled by 0.7 when nothing was retrieved.
"""

import logging
import re
import time
from typing import Optional
from urllib.parse import urlparse

from app.models.business import Business
from app.schemas.pipeline import (
    BusinessInformation,
    ContextBundle,
    ProcessedResponse,
    QueryIntent,
    ResponseValidation,
)

logger = logging.getLogger(__name__)

MIN_LENGTH = 20
MAX_LENGTH = 1000
SUGGESTION_COUNT = 3


def _word_list(*words: str) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE)


INAPPROPRIATE_RE = _word_list(
    "hate", "stupid", "idiot", "kill", "die", "murder", "suicide",
    "bomb", "terrorist", "racist", "sexist", "homophobic",
)
MEDICAL_RE = _word_list(
    "diagnosis", "diagnose", "prescription", "medical advice", "symptoms", "treatment plan", "cure",
)
LEGAL_RE = _word_list(
    "legal advice", "lawyer", "attorney", "lawsuit", "legal action", "liability", "legal rights",
)
FINANCIAL_RE = _word_list(
    "investment advice", "financial advice", "financial planning", "tax advice", "accounting advice", "stock tips",
)
COMPETITOR_RE = _word_list("competitor", "competitors", "rival", "better than", "cheaper than")

PHONE_RE = re.compile(r"(?:\+?1[-.\s]?)?\(?\b\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
URL_RE = re.compile(r"\b(?:https?://|www\.)[^\s,;)]+", re.IGNORECASE)
SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
ADDRESS_RE = re.compile(
    r"\b\d+\s+[A-Za-z][A-Za-z\s]*?\s(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr)\b\.?",
    re.IGNORECASE,
)
HOURS_RE = re.compile(r"\b(?:hours?|open)\b[:\s]+([^.!?\n]+)", re.IGNORECASE)

SUGGESTIONS = {
    QueryIntent.MENU_INQUIRY.value: [
        "What are your most popular items?",
        "Do you have any specials today?",
        "What ingredients do you use?",
        "Do you have vegetarian options?",
    ],
    QueryIntent.HOURS_POLICY.value: [
        "What are your busiest times?",
        "Do you have holiday hours?",
        "What is your cancellation policy?",
        "Do you take reservations?",
    ],
    QueryIntent.PRICING_QUESTION.value: [
        "Do you offer any discounts?",
        "What payment methods do you accept?",
        "Do you have package deals?",
        "Are there any additional fees?",
    ],
    QueryIntent.DIETARY_RESTRICTIONS.value: [
        "What other dietary options do you have?",
        "Can you accommodate other allergies?",
        "Do you have a nutrition guide?",
        "Are your ingredients locally sourced?",
    ],
    QueryIntent.LOCATION_INFO.value: [
        "Do you offer delivery?",
        "What is your delivery area?",
        "Is parking available?",
        "Are you accessible by public transit?",
    ],
    QueryIntent.GENERAL_CHAT.value: [
        "How long have you been in business?",
        "What do customers love most about you?",
        "Do you have any upcoming events?",
        "What are your most popular items?",
    ],
    QueryIntent.COMPLAINT_FEEDBACK.value: [
        "Would you like to speak with a manager?",
        "How can we make this right?",
        "What would you like us to improve?",
        "Can we contact you about this?",
    ],
    QueryIntent.UNKNOWN.value: [
        "How can I help you today?",
        "What would you like to know?",
        "Is there anything specific you need?",
        "Would you like to speak with someone?",
    ],
}


def _digits(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    return digits[-10:]


def _domain(value: str) -> str:
    if "://" not in value:
        value = "http://" + value
    host = urlparse(value).hostname or ""
    return host.lower().removeprefix("www.")


def clean_response(text: str) -> str:
    """Collapse runs of spaces, keep paragraph breaks, end on terminal punctuation."""
    cleaned = text.strip()
    cleaned = re.sub(r"[ \t]+", " ", cleaned)
    cleaned = re.sub(r" *\n *", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = re.sub(r"\.\s*\.(?!\.)", ".", cleaned)
    if cleaned and cleaned[-1] not in ".!?":
        cleaned += "."
    if cleaned:
        cleaned = cleaned[0].upper() + cleaned[1:]
    return cleaned


class ResponseProcessor:
    def process_response(
        self,
        raw_text: str,
        context: ContextBundle,
        business: Business,
        intent: str = QueryIntent.UNKNOWN.value,
        finish_reason: Optional[str] = "STOP",
    ) -> ProcessedResponse:
        started = time.perf_counter()
        text = clean_response(raw_text)

        quality, issues, fixes = self._assess(text, business)
        if finish_reason and finish_reason.upper() != "STOP":
            quality *= 0.8
            issues.append(f"Generation stopped early ({finish_reason})")
            fixes.append("Allow a longer response")

        if context.has_context:
            confidence = 0.6 * quality + 0.4 * context.average_confidence
        else:
            confidence = 0.7 * quality
        confidence = max(0.0, min(1.0, confidence))

        if confidence < 0.5:
            issues.append("Low confidence response")
            fixes.append("Consider regenerating response")

        return ProcessedResponse(
            text=text,
            confidence=confidence,
            sources=context.results,
            suggestions=self.generate_suggestions(intent),
            business_info_extracted=self.extract_business_information(text, business),
            validation_result=ResponseValidation(
                is_valid=not issues,
                confidence=confidence,
                issues=issues,
                suggestions=fixes,
            ),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )

    def _assess(self, text: str, business: Business) -> tuple[float, list[str], list[str]]:
        quality = 1.0
        issues: list[str] = []
        fixes: list[str] = []

        if not text:
            return 0.0, ["Empty response"], ["Regenerate the response"]

        if INAPPROPRIATE_RE.search(text):
            quality = 0.0
            issues.append("Contains inappropriate content")
        for pattern, label in ((MEDICAL_RE, "medical"), (LEGAL_RE, "legal"), (FINANCIAL_RE, "financial")):
            if pattern.search(text):
                quality *= 0.3
                issues.append(f"Contains {label} advice")
                fixes.append(f"Avoid providing {label} advice")
        if COMPETITOR_RE.search(text):
            quality *= 0.7
            issues.append("Mentions competitors")
            fixes.append("Focus on your own business")

        contradictions = self.find_contact_contradictions(text, business)
        if contradictions:
            quality *= 0.5
            issues.extend(contradictions)
            fixes.append("Use only the contact details on record")
        elif self._contains_personal_information(text, business):
            quality *= 0.5
            issues.append("Contains personal information")
            fixes.append("Avoid sharing personal information")

        if len(text) < MIN_LENGTH:
            quality *= 0.6
            issues.append("Response too short")
            fixes.append("Provide more detailed information")
        if len(text) > MAX_LENGTH:
            quality *= 0.8
            issues.append("Response too long")
            fixes.append("Keep response concise")

        return quality, issues, fixes

    @staticmethod
    def find_contact_contradictions(text: str, business: Business) -> list[str]:
        """Phone numbers, emails or website domains in the text that differ from the business record."""
        found: list[str] = []
        if business.phone:
            known = _digits(business.phone)
            if any(_digits(m.group(0)) != known for m in PHONE_RE.finditer(text)):
                found.append("Phone number contradicts business record")
        if business.email:
            known_email = business.email.lower()
            if any(m.group(0).lower() != known_email for m in EMAIL_RE.finditer(text)):
                found.append("Email address contradicts business record")
        if business.website:
            known_domain = _domain(business.website)
            if any(_domain(m.group(0)) != known_domain for m in URL_RE.finditer(text)):
                found.append("Website contradicts business record")
        return found

    @staticmethod
    def _contains_personal_information(text: str, business: Business) -> bool:
        if SSN_RE.search(text):
            return True
        if not business.phone and PHONE_RE.search(text):
            return True
        if not business.email and EMAIL_RE.search(text):
            return True
        return False

    @staticmethod
    def extract_business_information(text: str, business: Business) -> BusinessInformation:
        info = BusinessInformation(name=business.name)
        phone = PHONE_RE.search(text)
        if phone:
            info.phone = phone.group(0).strip()
        website = URL_RE.search(text)
        if website:
            info.website = website.group(0).rstrip(".")
        address = ADDRESS_RE.search(text)
        if address:
            info.address = address.group(0).strip()
        hours = HOURS_RE.search(text)
        if hours:
            info.hours = hours.group(1).strip()
        return info

    @staticmethod
    def generate_suggestions(intent: str) -> list[str]:
        templates = SUGGESTIONS.get(intent, SUGGESTIONS[QueryIntent.UNKNOWN.value])
        return templates[:SUGGESTION_COUNT]
