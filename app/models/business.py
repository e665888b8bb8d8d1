import uuid
from sqlalchemy import Column, String, Text, DateTime, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship

from app.db.base import Base

BUSINESS_STATUS_ACTIVE = "ACTIVE"
BUSINESS_STATUS_TRIAL = "TRIAL"
BUSINESS_STATUS_SUSPENDED = "SUSPENDED"


class Business(Base):
    """Tenant root. Never hard-deleted; deleted_at marks a soft delete."""

    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, index=True)
    business_type = Column(String, nullable=False, default="restaurant")  # drives the prompt template
    category = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    website = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    timezone = Column(String, nullable=True, default="UTC")
    operating_hours = Column(Text, nullable=True)  # free text, e.g. "Mon-Sun 11am-10pm"
    status = Column(String(16), nullable=False, default=BUSINESS_STATUS_TRIAL)
    policies = Column(JSONB, nullable=True)  # list[str]
    services = Column(JSONB, nullable=True)  # list[str]
    products = Column(JSONB, nullable=True)  # list[str]
    special_offers = Column(JSONB, nullable=True)  # list[str]
    custom_instructions = Column(Text, nullable=True)  # replaces the industry system template
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    api_keys = relationship("ApiKey", back_populates="business", cascade="all, delete-orphan")
    conversations = relationship("ConversationSession", back_populates="business", cascade="all, delete-orphan")
    embeddings = relationship("Embedding", back_populates="business", cascade="all, delete-orphan")

    @property
    def is_available(self) -> bool:
        """True if the business may serve queries (not deleted, not suspended)."""
        return self.deleted_at is None and self.status != BUSINESS_STATUS_SUSPENDED
