from app.models.business import Business
from app.models.api_key import ApiKey
from app.models.conversation import ConversationSession, ConversationMessage
from app.models.query_log import QueryLog
from app.models.embedding import Embedding
from app.models.usage import UsageCounter, UsageAlert

__all__ = [
    "Business",
    "ApiKey",
    "ConversationSession",
    "ConversationMessage",
    "QueryLog",
    "Embedding",
    "UsageCounter",
    "UsageAlert",
]
