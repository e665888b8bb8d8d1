"""
Rule-based intent classification.

A classifier is an ordered list of rules evaluated in priority order:

1. explicit intent-change rules (confidence 0.9, always persisted);
2. supporting-information rules for the session's current intent (0.8);
3. keyword/regex scoring across every intent (keyword hit +1, regex hit +2,
   confidence = min(score / 3, 0.9)); ties go to the intent declared first.

With no signal at all the classifier falls back to its generic intent at 0.5.
Two rule sets are prebuilt: customer queries (menu, hours, pricing, ...) and
order management (lookup/new/cancel/modify order, support, general).
"""

import logging
import re
from typing import Callable, NamedTuple, Optional, Sequence

from app.schemas.pipeline import IntentContext, IntentResult, OrderIntent, QueryIntent

logger = logging.getLogger(__name__)

EXPLICIT_CONFIDENCE = 0.9
SUPPORTING_CONFIDENCE = 0.8
FALLBACK_CONFIDENCE = 0.5
ERROR_CONFIDENCE = 0.1
MAX_SCORED_CONFIDENCE = 0.9
PERSIST_THRESHOLD = 0.6

DEFAULT_GUIDANCE = "How can I help you today?"


class IntentRule(NamedTuple):
    """Fires `intent` at `confidence` when `predicate(lowercased_text)` holds."""

    predicate: Callable[[str], bool]
    intent: str
    confidence: float
    reasoning: str


class IntentSignals(NamedTuple):
    """Scoring inputs for one intent."""

    intent: str
    keywords: Sequence[str]
    patterns: Sequence[re.Pattern]


def matches(pattern: str) -> Callable[[str], bool]:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda text: bool(compiled.search(text))


def contains_all(*words: str) -> Callable[[str], bool]:
    return lambda text: all(w in text for w in words)


def _keyword_regex(keyword: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(keyword.lower()) + r"\b")


TOPIC_CHANGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"now i want to", r"let me", r"i want to", r"can i", r"help me")
]
END_OF_CONVERSATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"thank you", r"goodbye", r"\bbye\b", r"that's all", r"nothing else")
]


class IntentClassifier:
    def __init__(
        self,
        signals: Sequence[IntentSignals],
        explicit_rules: Sequence[IntentRule] = (),
        supporting_rules: Optional[dict[str, Sequence[IntentRule]]] = None,
        fallback_intent: str = QueryIntent.UNKNOWN.value,
        guidance: Optional[dict[str, Sequence[str]]] = None,
    ):
        self.signals = list(signals)
        self.explicit_rules = list(explicit_rules)
        self.supporting_rules = supporting_rules or {}
        self.fallback_intent = fallback_intent
        self.guidance = guidance or {}
        self._keyword_res = {
            s.intent: [_keyword_regex(k) for k in s.keywords] for s in self.signals
        }

    @property
    def intents(self) -> list[str]:
        return [s.intent for s in self.signals]

    def detect_intent(self, message: str, context: Optional[IntentContext] = None) -> IntentResult:
        """Classify one message. Never raises; errors degrade to the fallback intent at 0.1."""
        try:
            return self._detect(message, context)
        except Exception as e:
            logger.warning("Intent detection failed, using %s: %s", self.fallback_intent, e)
            return IntentResult(
                intent=self.fallback_intent,
                confidence=ERROR_CONFIDENCE,
                reasoning="Intent detection failed; using fallback",
                should_persist=False,
            )

    def _detect(self, message: str, context: Optional[IntentContext]) -> IntentResult:
        text = message.lower().strip()

        for rule in self.explicit_rules:
            if rule.predicate(text):
                return IntentResult(
                    intent=rule.intent,
                    confidence=rule.confidence,
                    reasoning=rule.reasoning,
                    should_persist=True,
                )

        current = context.current_intent if context else None
        if current:
            for rule in self.supporting_rules.get(current, ()):
                if rule.predicate(text):
                    return IntentResult(
                        intent=current,
                        confidence=rule.confidence,
                        reasoning=f"Supporting information for current intent: {current} ({rule.reasoning})",
                        should_persist=True,
                    )

        best_intent, best_score = self._score(text)
        if best_score == 0:
            return IntentResult(
                intent=self.fallback_intent,
                confidence=FALLBACK_CONFIDENCE,
                reasoning=f"No clear intent detected, using {self.fallback_intent}",
                should_persist=False,
            )

        confidence = min(best_score / 3, MAX_SCORED_CONFIDENCE)
        return IntentResult(
            intent=best_intent,
            confidence=confidence,
            reasoning=f"Detected {best_intent} with score {best_score}",
            should_persist=confidence > PERSIST_THRESHOLD,
        )

    def _score(self, text: str) -> tuple[Optional[str], int]:
        best_intent, best_score = None, 0
        for signal in self.signals:
            score = sum(1 for kw in self._keyword_res[signal.intent] if kw.search(text))
            score += sum(2 for p in signal.patterns if p.search(text))
            # strict comparison keeps the first-declared intent on ties
            if score > best_score:
                best_intent, best_score = signal.intent, score
        return best_intent, best_score

    def should_persist_intent(self, message: str, current_intent: Optional[str] = None) -> bool:
        """False when the customer changes topic or wraps up the conversation."""
        text = message.lower()
        if any(p.search(text) for p in TOPIC_CHANGE_PATTERNS):
            return False
        if any(p.search(text) for p in END_OF_CONVERSATION_PATTERNS):
            return False
        return True

    def get_intent_guidance(self, intent: Optional[str], step: int) -> str:
        """Next-step prompt for a multi-turn intent; the last entry covers every later step."""
        steps = self.guidance.get(intent or "")
        if not steps:
            return DEFAULT_GUIDANCE
        index = min(max(step, 1), len(steps)) - 1
        return steps[index]


def _compile(*patterns: str) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


FOOD_ITEMS = r"\b(?:pizza|burger|fries|drink|salad|sandwich|pasta|dessert|appetizer|wings|soup)s?\b"


def build_query_intent_classifier() -> IntentClassifier:
    """Classifier for customer-support queries."""
    q = QueryIntent
    signals = [
        IntentSignals(
            q.MENU_INQUIRY.value,
            ["menu", "food", "dish", "pizza", "burger", "pasta", "salad", "appetizer", "entree",
             "dessert", "drink", "beverage", "special", "recommendation", "ingredients", "recipe"],
            _compile(
                r"what.*on.*menu",
                r"do you have.*food",
                r"what.*recommend",
                r"\b(?:best|popular|favorite)\b.*\b(?:dish|dishes|item|items|pizza|burger|pasta|meal)\b",
                r"what.*ingredients",
                r"is.*available",
            ),
        ),
        IntentSignals(
            q.HOURS_POLICY.value,
            ["hours", "open", "close", "closed", "time", "when", "policy", "rules", "delivery",
             "pickup", "reservation", "booking"],
            _compile(
                r"what.*hours",
                r"when.*open",
                r"when.*close",
                r"are you.*open",
                r"delivery.*policy",
                r"reservation.*policy",
            ),
        ),
        IntentSignals(
            q.PRICING_QUESTION.value,
            ["price", "cost", "how much", "expensive", "cheap", "deal", "discount", "special",
             "promotion", "offer", "dollar"],
            _compile(
                r"how much.*cost",
                r"what.*price",
                r"how much.*dollar",
                r"any.*deal",
                r"discount.*available",
                r"\$\d+",
            ),
        ),
        IntentSignals(
            q.DIETARY_RESTRICTIONS.value,
            ["vegan", "vegetarian", "gluten", "allergy", "allergic", "dairy", "nuts", "peanut",
             "soy", "kosher", "halal", "keto", "paleo", "diet"],
            _compile(
                r"do you have.*vegan",
                r"is.*gluten.*free",
                r"allergic.*to",
                r"dietary.*restriction",
                r"special.*diet",
            ),
        ),
        IntentSignals(
            q.LOCATION_INFO.value,
            ["where", "location", "address", "directions", "near", "close", "delivery", "area",
             "zip", "city", "street"],
            _compile(
                r"where.*located",
                r"what.*address",
                r"how.*get.*there",
                r"deliver.*to",
                r"near.*me",
            ),
        ),
        IntentSignals(
            q.GENERAL_CHAT.value,
            ["hello", "hi", "hey", "good morning", "good afternoon", "good evening", "how are you",
             "thank you", "thanks", "bye", "goodbye"],
            _compile(
                r"^(?:hello|hi|hey)[!.?]*$",
                r"good.*morning",
                r"how.*are.*you",
                r"thank.*you",
            ),
        ),
        IntentSignals(
            q.COMPLAINT_FEEDBACK.value,
            ["complaint", "problem", "issue", "wrong", "bad", "terrible", "awful", "disappointed",
             "angry", "upset", "refund", "money back"],
            _compile(
                r"my.*order.*wrong",
                r"terrible.*service",
                r"want.*refund",
                r"very.*disappointed",
                r"worst.*ever",
            ),
        ),
    ]

    explicit_rules = [
        IntentRule(
            matches(r"\b(?:i want to|i'd like to|i would like to)\s+(?:complain|file a complaint|leave (?:a |some )?(?:feedback|review))"),
            q.COMPLAINT_FEEDBACK.value, EXPLICIT_CONFIDENCE, "Explicit request to leave feedback",
        ),
        IntentRule(
            matches(r"\b(?:speak|talk) (?:to|with) (?:a |the |your )?manager\b"),
            q.COMPLAINT_FEEDBACK.value, EXPLICIT_CONFIDENCE, "Customer asked for a manager",
        ),
        IntentRule(
            matches(r"\bhow (?:do|can) i get (?:there|to you)\b"),
            q.LOCATION_INFO.value, EXPLICIT_CONFIDENCE, "Explicit request for directions",
        ),
        IntentRule(
            matches(r"\bwhat time do you (?:open|close)\b"),
            q.HOURS_POLICY.value, EXPLICIT_CONFIDENCE, "Explicit opening hours question",
        ),
        IntentRule(
            matches(r"\bi(?:'m| am) allergic to\b"),
            q.DIETARY_RESTRICTIONS.value, EXPLICIT_CONFIDENCE, "Customer stated an allergy",
        ),
    ]

    supporting_rules = {
        q.MENU_INQUIRY.value: [
            IntentRule(matches(FOOD_ITEMS), q.MENU_INQUIRY.value, SUPPORTING_CONFIDENCE, "food item mentioned"),
        ],
        q.DIETARY_RESTRICTIONS.value: [
            IntentRule(
                matches(r"\b(?:vegan|vegetarian|gluten|dairy|nuts?|peanuts?|soy|shellfish|lactose)\b"),
                q.DIETARY_RESTRICTIONS.value, SUPPORTING_CONFIDENCE, "dietary term mentioned",
            ),
        ],
        q.PRICING_QUESTION.value: [
            IntentRule(
                matches(r"\$\d+|\bhow much\b|\bprices?\b"),
                q.PRICING_QUESTION.value, SUPPORTING_CONFIDENCE, "price mentioned",
            ),
        ],
        q.LOCATION_INFO.value: [
            IntentRule(
                matches(r"\b\d{5}\b|\b\d+\s+\w+\s+(?:st|street|ave|avenue|rd|road|blvd|boulevard)\b"),
                q.LOCATION_INFO.value, SUPPORTING_CONFIDENCE, "address or zip code mentioned",
            ),
        ],
        q.HOURS_POLICY.value: [
            IntentRule(
                matches(
                    r"\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|today|tomorrow|tonight|weekend)\b"
                    r"|\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b"
                ),
                q.HOURS_POLICY.value, SUPPORTING_CONFIDENCE, "day or time mentioned",
            ),
        ],
    }

    return IntentClassifier(
        signals=signals,
        explicit_rules=explicit_rules,
        supporting_rules=supporting_rules,
        fallback_intent=q.UNKNOWN.value,
    )


def build_order_intent_classifier() -> IntentClassifier:
    """Classifier for the order-management conversation flow."""
    o = OrderIntent
    signals = [
        IntentSignals(
            o.LOOKUP_ORDER.value,
            ["lookup", "look up", "track", "check order", "recent order", "order status",
             "where is my order", "order details", "find order", "order id", "order number",
             "tracking", "status", "my last order", "what did i order", "order history"],
            [],
        ),
        IntentSignals(
            o.NEW_ORDER.value,
            ["order", "buy", "menu", "want to order", "place order", "get food", "hungry", "food",
             "pizza", "burger", "meal", "lunch", "dinner", "what do you have", "show me", "i want",
             "can i get", "i would like", "i need", "give me", "i'll have", "i'll take"],
            [],
        ),
        IntentSignals(
            o.CANCEL_ORDER.value,
            ["cancel", "delete", "remove order", "cancel item", "don't want", "stop order",
             "cancel my order", "remove", "delete order"],
            [],
        ),
        IntentSignals(
            o.MODIFY_ORDER.value,
            ["update", "add item", "change item", "modify", "edit", "change", "add to order",
             "remove from order", "change order"],
            [],
        ),
        IntentSignals(
            o.SUPPORT.value,
            ["help", "agent", "problem", "issue", "complaint", "refund", "support", "assistance",
             "trouble", "error", "wrong"],
            [],
        ),
    ]

    def ambiguous_my_order(text: str) -> bool:
        if "my order" not in text or any(w in text for w in ("check", "look up", "track")):
            return False
        return any(w in text for w in ("want to", "would like to", "need to", "place"))

    explicit_rules = [
        IntentRule(matches(r"now i want to|i want to place|let me order"), o.NEW_ORDER.value,
                   EXPLICIT_CONFIDENCE, "Explicit intent change detected: new_order"),
        IntentRule(matches(r"help me look up|track my order"), o.LOOKUP_ORDER.value,
                   EXPLICIT_CONFIDENCE, "Explicit intent change detected: lookup_order"),
        IntentRule(matches(r"cancel my order|remove my order"), o.CANCEL_ORDER.value,
                   EXPLICIT_CONFIDENCE, "Explicit intent change detected: cancel_order"),
        IntentRule(matches(r"modify|update|change my order"), o.MODIFY_ORDER.value,
                   EXPLICIT_CONFIDENCE, "Explicit intent change detected: modify_order"),
        IntentRule(matches(r"i need help|support|problem"), o.SUPPORT.value,
                   EXPLICIT_CONFIDENCE, "Explicit intent change detected: support"),
        IntentRule(contains_all("yes", "cancel"), o.CANCEL_ORDER.value,
                   EXPLICIT_CONFIDENCE, "Confirmation of cancellation intent detected"),
        IntentRule(ambiguous_my_order, o.NEW_ORDER.value,
                   SUPPORTING_CONFIDENCE, 'Ambiguous "my order" phrase with new order indicators'),
    ]

    order_id = r"\b(?=[a-z0-9]*\d)[a-z0-9]{6,}\b"
    supporting_rules = {
        o.LOOKUP_ORDER.value: [
            IntentRule(
                matches(r"(?:name is|i'm|i am|call me)\s+[a-z]+|\d{3}[-.]?\d{3}[-.]?\d{4}|" + order_id),
                o.LOOKUP_ORDER.value, SUPPORTING_CONFIDENCE, "name, phone or order id provided",
            ),
        ],
        o.NEW_ORDER.value: [
            IntentRule(
                matches(FOOD_ITEMS + r"|\d+\s*(?:x|times|of)\b"),
                o.NEW_ORDER.value, SUPPORTING_CONFIDENCE, "food items or quantities provided",
            ),
        ],
        o.CANCEL_ORDER.value: [
            IntentRule(matches(order_id), o.CANCEL_ORDER.value, SUPPORTING_CONFIDENCE,
                       "order id for cancellation provided"),
        ],
        o.MODIFY_ORDER.value: [
            IntentRule(matches(r"\b(?:add|remove|change)\s+[a-z]+"), o.MODIFY_ORDER.value,
                       SUPPORTING_CONFIDENCE, "modification details provided"),
        ],
    }

    guidance = {
        o.LOOKUP_ORDER.value: [
            "Please provide your name, phone number, or order ID to look up your order.",
            "I'm looking up your order details...",
            "Is there anything else I can help you with regarding your order?",
        ],
        o.NEW_ORDER.value: [
            "Great! Let me show you our menu. What would you like to order?",
            "What else would you like to add to your order?",
            "Please provide your name and phone number to complete the order.",
        ],
        o.CANCEL_ORDER.value: [
            "I can help you cancel your order. Please provide your order ID.",
            "I'm processing your cancellation request...",
            "Your order has been cancelled. Is there anything else I can help you with?",
        ],
        o.MODIFY_ORDER.value: [
            "I can help you modify your order. Please provide your order ID and what you'd like to change.",
            "I'm updating your order...",
            "Your order has been updated. Is there anything else you'd like to change?",
        ],
        o.SUPPORT.value: [
            "I'm here to help! What seems to be the issue?",
            "I understand your concern. Let me connect you with our support team.",
            "Our support team will contact you shortly. Is there anything else I can help with?",
        ],
    }

    return IntentClassifier(
        signals=signals,
        explicit_rules=explicit_rules,
        supporting_rules=supporting_rules,
        fallback_intent=o.GENERAL.value,
        guidance=guidance,
    )
