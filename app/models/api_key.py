"""API keys issued to a business for widget and server-to-server access."""

import uuid
from sqlalchemy import Boolean, Column, String, DateTime, ForeignKey, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship

from app.db.base import Base


class ApiKey(Base):
    """
    A hashed API key. The raw key is shown once at creation and never stored;
    lookups hash the presented key with SHA-256 and match key_hash.
    """

    __tablename__ = "api_keys"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    name = Column(String, nullable=False, default="default")
    key_hash = Column(String(64), nullable=False, unique=True, index=True)
    permissions = Column(JSONB, nullable=True)  # list[str], e.g. ["query", "analytics:read"]
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    business = relationship("Business", back_populates="api_keys")
