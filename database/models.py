# database/models.py
"""SQLAlchemy models for the downloaded medical database"""
from sqlalchemy import Column, Integer, LargeBinary, String, Text
from sqlalchemy.orm import declarative_base, deferred

Base = declarative_base()

# --- SQLAlchemy Models ---

class DocumentEntity(Base):
    __tablename__ = "documents"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    # float32 little-endian blob (libSQL F32_BLOB); only loaded by the vector queries
    vector = deferred(Column(LargeBinary, nullable=True))
    created_at = Column(String, nullable=True)
    url = Column(String, nullable=True)
    year = Column(Integer, nullable=True, index=True)
    specialty = Column(String, nullable=True, index=True)


class MedicalQAEntity(Base):
    __tablename__ = "medical_qa"
    id = Column(String, primary_key=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    vector = deferred(Column(LargeBinary, nullable=True))
    # no FK constraint: the shipped artifact may carry Q&A whose document was pruned
    document_id = Column(String, nullable=False, index=True)
