"""
SQLAlchemy ORM Models for the enrollment directory

Defines the enrollments table:
CREATE TABLE enrollments (
    subject_id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    image_refs JSON NOT NULL,
    created_at TIMESTAMP DEFAULT NOW(),
    updated_at TIMESTAMP DEFAULT NOW()
);
"""
from datetime import datetime
from sqlalchemy import Column, DateTime, JSON, Text

from biomatch.database import Base


class EnrollmentDB(Base):
    """
    SQLAlchemy model for the enrollments table.

    One row per subject; ``image_refs`` is the ordered list of blob
    references the subject was enrolled with.
    """
    __tablename__ = "enrollments"

    subject_id = Column(Text, primary_key=True)
    display_name = Column(Text, nullable=False)
    image_refs = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<EnrollmentDB(subject_id='{self.subject_id}', display_name='{self.display_name}')>"

    def to_dict(self):
        """Convert model to dictionary."""
        return {
            "subject_id": self.subject_id,
            "display_name": self.display_name,
            "image_refs": list(self.image_refs or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None
        }
