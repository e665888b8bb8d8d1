"""
Prompt construction for business-grounded answers.

build_prompt is a pure function of its inputs: no clock, no randomness, no
I/O. Identical inputs give byte-identical prompts.
"""

import logging
import math
import re
from typing import Optional, Sequence

from app.models.business import Business
from app.schemas.pipeline import (
    ContextBundle,
    HistoryTurn,
    PromptTemplate,
    PromptValidation,
    QueryIntent,
)

logger = logging.getLogger(__name__)

HISTORY_TURNS = 10
CONTEXT_CONTENT_CHARS = 500
_PLACEHOLDER_RE = re.compile(r"\{[a-z_]+\}")

DEFAULT_TEMPLATE = """You are a helpful AI assistant for {business_name}, a {business_type} business.
You help customers with information about {business_description}.
Always be professional, helpful, and accurate. Provide specific information when available,
and suggest contacting the business directly when you don't have the information."""

INDUSTRY_TEMPLATES = {
    "default": DEFAULT_TEMPLATE,
    "restaurant": """You are a helpful AI assistant for {business_name}, a {business_category} restaurant.
Help customers with menu information, dietary options, reservations, and general questions.
Always be friendly and food-focused. If asked about specific ingredients or allergens,
recommend contacting the restaurant directly for the most accurate information.""",
    "retail": """You are a customer service AI for {business_name}, a {business_category} store.
Help customers find products, check availability, compare options, and provide store information.
Be helpful and product-focused. For specific product details or availability,
suggest calling the store or checking the website.""",
    "service": """You are an AI assistant for {business_name}, providing {service_type} services.
Help customers understand services, pricing, booking procedures, and policies.
Be professional and service-oriented. For detailed service information or bookings,
recommend contacting the business directly.""",
    "healthcare": """You are a helpful AI assistant for {business_name}, a {business_category} healthcare provider.
Help with general information about services, hours, and policies.
IMPORTANT: Do not provide medical advice, diagnosis, or treatment recommendations.
Always recommend consulting with healthcare professionals for medical concerns.""",
    "automotive": """You are a customer service AI for {business_name}, an automotive {business_category}.
Help customers with service information, appointments, and general questions.
Be knowledgeable about automotive services. For specific technical issues or repairs,
recommend scheduling an appointment with qualified technicians.""",
    "beauty": """You are a helpful AI assistant for {business_name}, a {business_category} beauty business.
Help customers with service information, appointments, and product recommendations.
Be friendly and beauty-focused. For specific treatments or skin concerns,
recommend scheduling a consultation with qualified professionals.""",
    "fitness": """You are an AI assistant for {business_name}, a {business_category} fitness facility.
Help customers with membership information, class schedules, and general questions.
Be motivational and fitness-focused. For specific fitness goals or health concerns,
recommend consulting with fitness professionals or healthcare providers.""",
    "education": """You are a helpful AI assistant for {business_name}, an educational {business_category}.
Help students and parents with program information, schedules, and policies.
Be supportive and education-focused. For specific academic concerns or enrollment,
recommend contacting the appropriate department or staff member.""",
}

INTENT_DESCRIPTIONS = {
    QueryIntent.MENU_INQUIRY.value: "Customer is asking about menu items, food options, or products",
    QueryIntent.HOURS_POLICY.value: "Customer is asking about operating hours, policies, or procedures",
    QueryIntent.PRICING_QUESTION.value: "Customer is asking about prices, costs, or payment information",
    QueryIntent.DIETARY_RESTRICTIONS.value: "Customer has dietary restrictions or special dietary needs",
    QueryIntent.LOCATION_INFO.value: "Customer is asking about location, directions, or delivery areas",
    QueryIntent.GENERAL_CHAT.value: "Customer is making small talk or general conversation",
    QueryIntent.COMPLAINT_FEEDBACK.value: "Customer has a complaint or is providing feedback",
    QueryIntent.UNKNOWN.value: "Customer query intent is unclear or ambiguous",
}


class PromptBuilder:
    def __init__(self, context_window_tokens: int = 4000, max_response_chars: int = 500):
        self.context_window_tokens = context_window_tokens
        self.max_response_chars = max_response_chars

    def build_prompt(
        self,
        business: Business,
        context: ContextBundle,
        history: Sequence[HistoryTurn],
        query: str,
        intent: str = QueryIntent.UNKNOWN.value,
        session_notes: str = "",
    ) -> PromptTemplate:
        return PromptTemplate(
            system_message=self._system_message(business),
            business_context=self._business_context(context),
            conversation_history=self._conversation_history(history, session_notes),
            current_query=self._current_query(query, intent),
            response_guidelines=self._response_guidelines(business),
            constraints=self._constraints(business),
        )

    def _system_message(self, business: Business) -> str:
        if business.custom_instructions:
            return business.custom_instructions

        template = INDUSTRY_TEMPLATES.get((business.business_type or "").lower(), DEFAULT_TEMPLATE)
        services = business.services or []
        return (
            template.replace("{business_name}", business.name)
            .replace("{business_type}", business.business_type or "local")
            .replace("{business_category}", business.category or business.business_type or "local")
            .replace("{business_description}", business.description or "its products and services")
            .replace("{service_type}", services[0] if services else "professional")
        )

    @staticmethod
    def _business_context(context: ContextBundle) -> str:
        facts = context.business_facts
        lines = ["Business Information:"]
        for label, key in (
            ("Name", "name"),
            ("Type", "type"),
            ("Description", "description"),
            ("Phone", "phone"),
            ("Email", "email"),
            ("Website", "website"),
            ("Address", "address"),
            ("Hours", "hours"),
        ):
            if facts.get(key):
                lines.append(f"- {label}: {facts[key]}")
        for label, key in (
            ("Services", "services"),
            ("Products", "products"),
            ("Special Offers", "special_offers"),
            ("Policies", "policies"),
        ):
            if facts.get(key):
                lines.append(f"- {label}: {', '.join(facts[key])}")

        if context.results:
            lines.append("")
            lines.append("Relevant Information:")
            for result in context.results:
                content = result.content
                if len(content) > CONTEXT_CONTENT_CHARS:
                    content = content[:CONTEXT_CONTENT_CHARS] + "..."
                heading = f"[{result.content_type}] {result.title}" if result.title else f"[{result.content_type}]"
                lines.append(f"- {heading}: {content}")
        return "\n".join(lines)

    @staticmethod
    def _conversation_history(history: Sequence[HistoryTurn], session_notes: str) -> str:
        if not history:
            return "Conversation History: This is the start of the conversation."

        lines = ["Conversation History:"]
        for index, turn in enumerate(history[-HISTORY_TURNS:], start=1):
            role = "Customer" if turn.role == "user" else "Assistant"
            intent = f" (Intent: {turn.intent})" if turn.intent and turn.role == "user" else ""
            lines.append(f"{index}. {role}{intent}: {turn.content}")
        if session_notes:
            lines.append("")
            lines.append(session_notes)
        return "\n".join(lines)

    @staticmethod
    def _current_query(query: str, intent: str) -> str:
        description = INTENT_DESCRIPTIONS.get(intent, "Unknown intent")
        return f'Current Customer Query: "{query}"\nIntent: {intent} - {description}'

    def _response_guidelines(self, business: Business) -> str:
        lines = [
            "Response Guidelines:",
            "- Tone: professional",
            "- Length: moderate",
            "- Style: conversational",
            f"- Maximum length: {self.max_response_chars} characters",
            "- Include helpful follow-up suggestions",
        ]
        if business.custom_instructions:
            lines.append("- Follow business-specific instructions")
        return "\n".join(lines)

    @staticmethod
    def _constraints(business: Business) -> str:
        lines = [
            "Constraints and Limitations:",
            "- Only provide information about this specific business",
            "- Do not make up information not provided in the context",
            "- If you don't know something, say so and suggest contacting the business directly",
            "- Maintain a professional and helpful tone",
            "- Do not provide medical, legal, or financial advice",
            "- Do not discuss competitors unless specifically asked",
        ]
        if business.policies:
            lines.append("- Follow all business policies and procedures")
        return "\n".join(lines)

    @staticmethod
    def estimate_token_count(prompt: PromptTemplate) -> int:
        """Roughly one token per four characters."""
        return math.ceil(len("\n\n".join(prompt.sections())) / 4)

    def validate_prompt(self, prompt: PromptTemplate) -> PromptValidation:
        issues = []
        estimated = self.estimate_token_count(prompt)

        if not prompt.system_message.strip():
            issues.append("Missing system message")
        if not prompt.business_context.strip():
            issues.append("Missing business context")
        if not prompt.current_query.strip():
            issues.append("Missing current query")
        if _PLACEHOLDER_RE.search(prompt.system_message):
            issues.append("Unreplaced placeholders in system message")
        if estimated > self.context_window_tokens:
            issues.append(f"Prompt too long: {estimated} tokens (max: {self.context_window_tokens})")

        return PromptValidation(is_valid=not issues, issues=issues, estimated_tokens=estimated)

    def fit_to_budget(
        self,
        business: Business,
        context: ContextBundle,
        history: Sequence[HistoryTurn],
        query: str,
        intent: str = QueryIntent.UNKNOWN.value,
        session_notes: str = "",
    ) -> PromptTemplate:
        """
        Build the prompt, then drop the oldest history turns and after that the
        lowest-confidence context items until the estimate fits the context window.
        """
        history = list(history[-HISTORY_TURNS:])
        results = sorted(context.results, key=lambda r: r.confidence, reverse=True)
        notes: Optional[str] = session_notes

        while True:
            bundle = context.model_copy(update={"results": results})
            prompt = self.build_prompt(business, bundle, history, query, intent, notes or "")
            if self.estimate_token_count(prompt) <= self.context_window_tokens:
                return prompt
            if notes:
                notes = None
            elif history:
                history = history[1:]
            elif results:
                results = results[:-1]
            else:
                logger.warning("Prompt exceeds context window even without history or context")
                return prompt
