from sqlalchemy import Column, String, DateTime, ForeignKey, Text, func
import uuid

from portal.infrastructure.database import Base


def gen_uuid():
    return str(uuid.uuid4())


class ResultAccessLog(Base):
    """One row per staff view of a result's risk flags. Append-only."""
    __tablename__ = "ai_review_logs"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    result_id = Column(String(36), ForeignKey("lab_results.id"), nullable=False, index=True)
    viewed_by = Column(String(36), nullable=False, index=True)
    viewed_at = Column(DateTime(timezone=True), default=func.now(), nullable=False, index=True)


class AILog(Base):
    """Trace of a model call made for a result"""
    __tablename__ = "ai_logs"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    result_id = Column(String(36), ForeignKey("lab_results.id"), nullable=False, index=True)
    model = Column(String(100), nullable=False)
    # Never the full model response
    response_snippet = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
