from sqlalchemy import Column, String, DateTime, Integer, JSON, Text, func
import uuid

from portal.infrastructure.database import Base


def gen_uuid():
    return str(uuid.uuid4())


class LabResult(Base):
    """Uploaded lab result with its parsed payload and AI risk columns"""
    __tablename__ = "lab_results"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    user_id = Column(String(36), nullable=False, index=True)

    # Output of the upstream document parser, PII included
    parsed_data = Column(JSON, nullable=True)

    # Risk columns, readable by staff only
    ai_flags = Column(JSON, nullable=True)
    ai_risk_score = Column(Integer, nullable=True, index=True)
    ai_risk_level = Column(String(16), nullable=True)
    ai_summary = Column(Text, nullable=True)
    ai_generated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)


# Columns any permitted viewer may project
PUBLIC_RESULT_COLUMNS = (
    LabResult.id,
    LabResult.user_id,
    LabResult.parsed_data,
    LabResult.created_at,
)

# Columns only staff may project
RISK_RESULT_COLUMNS = (
    LabResult.ai_flags,
    LabResult.ai_risk_score,
    LabResult.ai_risk_level,
    LabResult.ai_summary,
    LabResult.ai_generated_at,
)
