"""
Derived memory over a session's recent turns.

Pure helpers used by the session manager and the prompt builder: topic and
fact extraction, follow-up detection, naive pronoun substitution and the
context summary stored on the session row. Intentionally approximate; this
is keyword matching, not coreference resolution.
"""

import re
from typing import Optional, Sequence

from app.schemas.pipeline import HistoryTurn, SessionMemory

MAX_SUMMARY_LENGTH = 500
MAX_KEY_FACTS = 5

# (pattern, topic). A topic of None means "use the matched word", so specific
# dishes survive as topics and can stand in for "it" in a follow-up.
TOPIC_PATTERNS: list[tuple[re.Pattern, Optional[str]]] = [
    (re.compile(r"\b(pizza|burger|pasta|salad|sandwich|dessert|wings|soup|steak|sushi|tacos?)\b"), None),
    (re.compile(r"\b(?:menu|dish|dishes|special|specials)\b"), "menu"),
    (re.compile(r"\b(?:hours|open|opening|close|closing)\b"), "hours"),
    (re.compile(r"\b(?:price|prices|cost|costs|how much)\b"), "prices"),
    (re.compile(r"\b(?:delivery|deliver|shipping|pickup)\b"), "delivery"),
    (re.compile(r"\b(?:reservation|reservations|book|booking|table)\b"), "reservations"),
    (re.compile(r"\b(?:vegan|vegetarian|gluten|allergy|allergic|dairy)\b"), "dietary options"),
    (re.compile(r"\b(?:address|location|located|parking|directions)\b"), "location"),
    (re.compile(r"\brefund"), "refund policy"),
    (re.compile(r"\b(?:order|orders|purchase)\b"), "orders"),
    (re.compile(r"\b(?:payment|pay|card|cash)\b"), "payment"),
    (re.compile(r"\b(?:discount|coupon|deal|deals|promotion)\b"), "discounts"),
    (re.compile(r"\bcancel"), "cancellation"),
]

FOLLOW_UP_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(?:it|this|that|they|them|those|these)\b",
        r"\b(?:also|and|what about|how about)\b",
        r"^(?:so|well|ok|okay|alright|then|now)\b",
        r"\b(?:does it|can it|will it|is it|do they)\b",
        r"\b(?:what should|what do|how do|where do|when do)\b",
        r"\b(?:apply|applicable|work|works|include|includes)\b",
    )
]
_PROGRESSIVE_RE = re.compile(r"\b(?:what should|what do|how do|next|now|then)\b", re.IGNORECASE)
_SINGULAR_PRONOUN_RE = re.compile(r"\b(?:it|this|that)\b", re.IGNORECASE)
_PLURAL_PRONOUN_RE = re.compile(r"\b(?:they|them|those|these)\b", re.IGNORECASE)

SUMMARY_STOPWORDS = {
    "what", "when", "where", "how", "why", "the", "and", "but", "for", "are", "you", "your",
    "does", "have", "with", "this", "that", "about", "there", "which", "would", "could",
}

PREFERENCE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b(?:vegan|vegetarian)\b"), "vegetarian"),
    (re.compile(r"\b(?:gluten|celiac)\b"), "gluten-free"),
    (re.compile(r"\b(?:allergic|allergy|allergies)\b"), "allergies"),
    (re.compile(r"\b(?:spicy|hot)\b"), "spicy food"),
    (re.compile(r"\b(?:mild|not spicy)\b"), "mild food"),
]


def extract_topics(turns: Sequence[HistoryTurn]) -> list[str]:
    """Topics from user turns, in order of first mention."""
    topics: list[str] = []
    for turn in turns:
        if turn.role != "user":
            continue
        text = turn.content.lower()
        for pattern, topic in TOPIC_PATTERNS:
            for match in pattern.finditer(text):
                label = topic or match.group(1)
                if label not in topics:
                    topics.append(label)
    return topics


def extract_session_context(turns: Sequence[HistoryTurn]) -> SessionMemory:
    if not turns:
        return SessionMemory()

    key_facts: list[str] = []
    for turn in turns:
        if turn.role == "assistant" and len(turn.content) > 50:
            sentences = [s.strip() for s in re.split(r"[.!?]+", turn.content) if len(s.strip()) > 20]
            if sentences and len(sentences[0]) < 200:
                key_facts.append(sentences[0])

    user_turns = [t for t in turns if t.role == "user"]
    assistant_turns = [t for t in turns if t.role == "assistant"]
    recent_questions = [t.content for t in user_turns[-3:]]

    return SessionMemory(
        key_topics=extract_topics(turns),
        key_facts=key_facts[-MAX_KEY_FACTS:],
        last_question=user_turns[-1].content if user_turns else None,
        last_answer=assistant_turns[-1].content if assistant_turns else None,
        conversation_flow=f"Recent questions: {' -> '.join(recent_questions)}" if recent_questions else "",
    )


def is_follow_up_question(question: str, memory: SessionMemory) -> bool:
    lowered = question.lower().strip()
    if any(p.search(lowered) for p in FOLLOW_UP_PATTERNS):
        return True
    is_short = len(question.split()) <= 8
    if is_short and any(topic.lower() in lowered for topic in memory.key_topics):
        return True
    return bool(_PROGRESSIVE_RE.search(lowered))


def resolve_question_context(question: str, memory: SessionMemory) -> str:
    """Replace pronouns with the most recent topic(s); annotate vague questions with the topic."""
    if not memory.key_topics or not is_follow_up_question(question, memory):
        return question

    resolved = question
    last_topic = memory.key_topics[-1]
    if _SINGULAR_PRONOUN_RE.search(resolved):
        resolved = _SINGULAR_PRONOUN_RE.sub(last_topic, resolved)
    if _PLURAL_PRONOUN_RE.search(resolved):
        plural = " and ".join(memory.key_topics[-2:])
        resolved = _PLURAL_PRONOUN_RE.sub(plural, resolved)

    if (len(question) < 30 or _PROGRESSIVE_RE.search(question)) and last_topic.lower() not in resolved.lower():
        resolved = f"{resolved} (in context of {last_topic})"
    return resolved


def build_session_context_prompt(memory: SessionMemory, turns: Sequence[HistoryTurn]) -> str:
    """Memory block for the prompt: current topic, last exchange and facts already given."""
    if not turns:
        return ""

    parts: list[str] = []
    if memory.key_topics:
        parts.append(f"Current topic: {memory.key_topics[-1]}")
        if len(memory.key_topics) > 1:
            parts.append(f"Previously discussed: {', '.join(memory.key_topics[:-1])}")

    if memory.last_question and memory.last_answer:
        answer = memory.last_answer
        if len(answer) > 300:
            answer = answer[:300] + "..."
        parts.append(f'Last exchange:\nCustomer: "{memory.last_question}"\nYou: "{answer}"')

    if memory.key_facts:
        facts = "\n- ".join(memory.key_facts[-3:])
        parts.append(f"Already explained to the customer:\n- {facts}")

    return "\n".join(parts)


def is_already_explained(question: str, memory: SessionMemory) -> bool:
    question_words = {w for w in question.lower().split() if len(w) > 4}
    for fact in memory.key_facts:
        fact_words = {w for w in fact.lower().split() if len(w) > 4}
        if len(question_words & fact_words) >= 2:
            return True
    return False


def build_context_summary(turns: Sequence[HistoryTurn]) -> str:
    """`Customer interested in: <intents>. Topics discussed: <words>` over the last 5 messages."""
    user_turns = [t for t in turns[-5:] if t.role == "user"]
    if not user_turns:
        return ""

    intents: list[str] = []
    words: list[str] = []
    for turn in user_turns:
        if turn.intent and turn.intent not in intents:
            intents.append(turn.intent)
        for word in re.findall(r"[a-z0-9'-]+", turn.content.lower()):
            if len(word) > 3 and word not in SUMMARY_STOPWORDS and word not in words:
                words.append(word)

    summary = ""
    if intents:
        summary += f"Customer interested in: {', '.join(intents)}. "
    if words:
        summary += f"Topics discussed: {', '.join(words[:5])}."
    summary = summary.strip()
    if len(summary) > MAX_SUMMARY_LENGTH:
        summary = summary[:MAX_SUMMARY_LENGTH - 3] + "..."
    return summary


def extract_user_preferences(turns: Sequence[HistoryTurn]) -> list[str]:
    preferences: list[str] = []
    for turn in turns:
        if turn.role != "user":
            continue
        text = turn.content.lower()
        for pattern, preference in PREFERENCE_PATTERNS:
            if pattern.search(text) and preference not in preferences:
                preferences.append(preference)
    return preferences
