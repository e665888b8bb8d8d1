"""Vector representation of one unit of business content."""

import uuid
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from pgvector.sqlalchemy import Vector

from app.db.base import Base

EMBEDDING_DIMENSIONS = 1536

CONTENT_TYPE_MENU_ITEM = "MENU_ITEM"
CONTENT_TYPE_POLICY = "POLICY"
CONTENT_TYPE_FAQ = "FAQ"
CONTENT_TYPE_BUSINESS_INFO = "BUSINESS_INFO"

CONTENT_TYPES = (
    CONTENT_TYPE_MENU_ITEM,
    CONTENT_TYPE_POLICY,
    CONTENT_TYPE_FAQ,
    CONTENT_TYPE_BUSINESS_INFO,
)


class Embedding(Base):
    """
    Created or updated when business content changes; read-only during query processing.
    metadata_ carries display fields such as "title" and "price".
    """

    __tablename__ = "embeddings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    content_type = Column(String(32), nullable=False)
    content_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    metadata_ = Column("metadata", JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    business = relationship("Business", back_populates="embeddings")

    __table_args__ = (
        Index("ix_embeddings_business_type", "business_id", "content_type"),
        Index("ix_embeddings_business_content", "business_id", "content_type", "content_id"),
    )
